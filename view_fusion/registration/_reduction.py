"""Multi-pass tree reduction of device buffers.

Statistics over a whole volume are computed in several passes: each pass
reduces every work-group of ``group_size`` elements to its mean, shrinking the
data by a factor of ``group_size``. The sequence of intermediate lengths (the
reduction ladder) is planned once per volume extent, together with three scratch
buffers per level so that 1, 2 or 3 channels can be reduced in lockstep. Once
the length is small enough, the remaining values are transferred to the host and
averaged in double precision.
"""
import logging
from typing import Dict, List, Sequence

import numpy as np

from ._compute_context import ComputeContext, DeviceBuffer, Program
from ._typing_utils import Float32Array, as_extent
from ._work_groups import group_size_exponent

logger = logging.getLogger(__name__)

BUFFERS_PER_LEVEL = 3

_REDUCE_KERNELS = {
    1: "reduce_mean_1buffer",
    2: "reduce_mean_2buffer",
    3: "reduce_mean_3buffer",
}


def plan_reduction_ladder(
    group_size: int,
    global_size: Sequence[int],
    host_reduction_threshold: int,
) -> List[int]:
    """Plan the buffer lengths of a tree reduction.

    The first level is the number of voxels and the second the number of
    work-groups, which the volume kernels write directly. Further levels are
    added while the current length is divisible by the group size and still
    above the host reduction threshold.

    Args:
        group_size: Work-group size, a power of two larger than one
        global_size: Volume extent (nx, ny, nz)
        host_reduction_threshold: Lengths at or below this are reduced on the host

    Returns:
        Strictly decreasing list of lengths, each the previous one divided by
        ``group_size``

    Raises:
        ValueError: If the group size is invalid or does not divide the number of voxels
    """
    group_size_exponent(group_size)
    nx, ny, nz = as_extent(global_size)
    num_voxels = nx * ny * nz
    if num_voxels % group_size != 0:
        raise ValueError(
            f"Number of voxels {num_voxels} is not a multiple of the group size {group_size}"
        )
    ladder = [num_voxels, num_voxels // group_size]
    while ladder[-1] % group_size == 0 and ladder[-1] > host_reduction_threshold:
        ladder.append(ladder[-1] // group_size)
    return ladder


class ReductionEngine:
    """Executes mean reductions of 1-3 device buffers along a planned ladder.

    The engine exclusively owns its scratch buffers. Passes are enqueued in
    decreasing-size order, each reading the previous pass's output.
    """

    def __init__(
        self,
        context: ComputeContext,
        program: Program,
        group_size: int,
        host_reduction_threshold: int,
        wait_to_finish: bool = False,
    ):
        group_size_exponent(group_size)
        if group_size > program.max_group_size:
            raise ValueError(
                f"Group size {group_size} exceeds the program's MAX_GROUP_SIZE {program.max_group_size}"
            )
        self.context = context
        self.program = program
        self.group_size = group_size
        self.host_reduction_threshold = host_reduction_threshold
        self.wait_to_finish = wait_to_finish
        self.ladder: List[int] = []
        self._buffers: List[List[DeviceBuffer]] = []
        self._host_buffers: Dict[int, Float32Array] = {}

    @property
    def num_reductions(self) -> int:
        """Number of device-side passes from the first ladder level to the last."""
        return len(self.ladder) - 1

    def prepare(self, global_size: Sequence[int]) -> List[int]:
        """(Re)plan the ladder for a volume extent and allocate scratch buffers."""
        ladder = plan_reduction_ladder(self.group_size, global_size, self.host_reduction_threshold)
        self.release()
        self.ladder = ladder
        self._buffers = [
            [self.context.create_buffer(size) for _ in range(BUFFERS_PER_LEVEL)]
            for size in ladder[1:]
        ]
        logger.debug(f"Planned reduction ladder {ladder} for extent {tuple(global_size)}")
        return ladder

    def release(self) -> None:
        """Release all scratch buffers and forget cached host arrays."""
        for level in self._buffers:
            for buffer in level:
                buffer.release()
        self._buffers = []
        self.ladder = []
        self._host_buffers.clear()

    def level_buffers(self, level: int) -> List[DeviceBuffer]:
        """Scratch buffers written by the pass starting at ladder ``level``."""
        return self._buffers[level]

    def level_of(self, *buffers: DeviceBuffer) -> int:
        """Return the ladder level matching the (common) length of ``buffers``."""
        if not 1 <= len(buffers) <= BUFFERS_PER_LEVEL:
            raise ValueError(f"Can reduce 1 to {BUFFERS_PER_LEVEL} buffers, got {len(buffers)}")
        length = buffers[0].length
        if any(b.length != length for b in buffers[1:]):
            raise ValueError(f"Buffers must share one length, got {[b.length for b in buffers]}")
        try:
            return self.ladder.index(length)
        except ValueError:
            raise ValueError(f"Buffer length {length} is not on the reduction ladder {self.ladder}")

    def reduce_mean(self, *buffers: DeviceBuffer) -> List[float]:
        """Compute the mean of each of 1-3 same-length buffers.

        Returns:
            One mean per input buffer
        """
        if not self.ladder:
            raise ValueError("Reduction ladder has not been prepared")
        start = self.level_of(*buffers)
        if start == self.num_reductions:
            return self._reduce_mean_on_host(*buffers)

        kernel = self.program.kernel(_REDUCE_KERNELS[len(buffers)])
        kernel.set_local_sizes(self.group_size)
        sources = list(buffers)
        for level in range(start, self.num_reductions):
            destinations = self._buffers[level][: len(buffers)]
            arguments = []
            for dst, src in zip(destinations, sources):
                arguments.extend((dst, src))
            kernel.set_arguments(*arguments)
            kernel.set_global_sizes(self.ladder[level])
            kernel.run(self.wait_to_finish)
            sources = destinations
        return self._reduce_mean_on_host(*sources)

    def _reduce_mean_on_host(self, *buffers: DeviceBuffer) -> List[float]:
        means = []
        for buffer in buffers:
            host = self._host_buffer(buffer.length)
            self.context.read_buffer(buffer, host, blocking=True)
            # accumulate in double precision
            means.append(float(np.sum(host, dtype=np.float64) / buffer.length))
        return means

    def _host_buffer(self, length: int) -> Float32Array:
        host = self._host_buffers.get(length)
        if host is None:
            host = np.empty(length, dtype=np.float32)
            self._host_buffers[length] = host
        return host

    def __repr__(self) -> str:
        return f"ReductionEngine(group_size={self.group_size}, ladder={self.ladder})"
