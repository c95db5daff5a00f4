"""Normalized cross-correlation objective for affine volume registration.

NCC between the reference volume A and the moving volume B resampled under a
candidate transform is computed in a single pass with the shifted-data
algorithm: the device accumulates ``b' = B(M p) - meanB_approx``, ``b'^2`` and
``a * b'`` per work-group, the reduction engine averages them, and the host
derives

    var_b = mean(b'^2) - mean(b')^2
    cov   = mean(a b') - mean_a * mean(b')
    ncc   = cov / sqrt(var_a * var_b)

``mean_a``, ``var_a`` and the approximate mean of B are computed once per
registration since the reference never moves during the search.
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ._compute_context import ComputeContext, DeviceBuffer, DeviceImage, Program
from ._reduction import ReductionEngine
from ._typing_utils import Extent3

logger = logging.getLogger(__name__)

# A variance at or below this fraction of the corresponding second moment is
# float32 round-off, which makes the correlation undefined
RELATIVE_VARIANCE_EPSILON = 1e-5
# NCC reported for undefined correlations, i.e. the worst possible score
DEGENERATE_NCC = -1.0


@dataclass(frozen=True)
class BaseStatistics:
    """Statistics of the bound volume pair that do not depend on the transform."""

    mean_a: float
    mean_b_approx: float
    var_a: float


def is_degenerate_variance(variance: float, second_moment: float) -> bool:
    """True if ``variance`` cannot be told apart from round-off of ``second_moment``."""
    return not (variance > 0.0 and variance > RELATIVE_VARIANCE_EPSILON * second_moment)


def correlation_from_moments(
    mean_a: float, var_a: float, mean_b: float, mean_bb: float, mean_ab: float
) -> float:
    """NCC from first and second moments, guarding against degenerate variances."""
    var_b = mean_bb - mean_b * mean_b
    cov_ab = mean_ab - mean_a * mean_b
    if is_degenerate_variance(var_a, var_a + mean_a * mean_a) or is_degenerate_variance(var_b, mean_bb):
        logger.debug(f"Degenerate variance (var_a={var_a:.3g}, var_b={var_b:.3g}), NCC undefined")
        return DEGENERATE_NCC
    ncc = cov_ab / (math.sqrt(var_a) * math.sqrt(var_b))
    if not math.isfinite(ncc):
        return DEGENERATE_NCC
    return ncc


class ObjectiveEvaluator:
    """Dispatches the statistics kernels and turns their reductions into NCC values."""

    def __init__(
        self,
        context: ComputeContext,
        program: Program,
        reduction: ReductionEngine,
        wait_to_finish: bool = False,
    ):
        self.context = context
        self.program = program
        self.reduction = reduction
        self.wait_to_finish = wait_to_finish
        self.global_size: Optional[Extent3] = None
        self.local_size: Optional[Extent3] = None
        self._matrix_buffer: Optional[DeviceBuffer] = None

    def set_geometry(self, global_size: Extent3, local_size: Extent3) -> None:
        self.global_size = global_size
        self.local_size = local_size

    def upload_matrix(self, matrix: np.ndarray) -> DeviceBuffer:
        """Write a transform matrix into the (reused) device matrix buffer."""
        self._matrix_buffer = self.context.write_matrix(matrix, self._matrix_buffer)
        return self._matrix_buffer

    def _run_volume_kernel(self, name: str, *arguments) -> None:
        if self.global_size is None or self.local_size is None:
            raise ValueError("Objective geometry has not been set")
        kernel = self.program.kernel(name)
        kernel.set_arguments(*arguments)
        kernel.set_global_sizes(*self.global_size)
        kernel.set_local_sizes(*self.local_size)
        kernel.run(self.wait_to_finish)

    def reduce_image_means(self, image_a: DeviceImage, image_b: DeviceImage) -> Tuple[float, float]:
        b0, b1, _ = self.reduction.level_buffers(0)
        self._run_volume_kernel("reduce_mean_2imagef", b0, image_a, b1, image_b)
        mean_a, mean_b = self.reduction.reduce_mean(b0, b1)
        return mean_a, mean_b

    def reduce_image_variance(self, image: DeviceImage, mean: float) -> float:
        b0 = self.reduction.level_buffers(0)[0]
        self._run_volume_kernel("reduce_var_1imagef", b0, image, np.float32(mean))
        return self.reduction.reduce_mean(b0)[0]

    def base_statistics(self, image_a: DeviceImage, image_b: DeviceImage) -> BaseStatistics:
        mean_a, mean_b = self.reduce_image_means(image_a, image_b)
        var_a = self.reduce_image_variance(image_a, mean_a)
        logger.debug(f"Base statistics: mean_a={mean_a:.6g}, mean_b={mean_b:.6g}, var_a={var_a:.6g}")
        return BaseStatistics(mean_a=mean_a, mean_b_approx=mean_b, var_a=var_a)

    def ncc(
        self,
        matrix: np.ndarray,
        image_a: DeviceImage,
        image_b: DeviceImage,
        stats: BaseStatistics,
    ) -> float:
        """NCC between ``image_a`` and ``image_b`` sampled under ``matrix``."""
        matrix_buffer = self.upload_matrix(matrix)
        b0, b1, b2 = self.reduction.level_buffers(0)
        self._run_volume_kernel(
            "reduce_ncc_affine",
            b0,
            b1,
            b2,
            image_a,
            image_b,
            matrix_buffer,
            np.float32(stats.mean_b_approx),
        )
        mean_b, mean_bb, mean_ab = self.reduction.reduce_mean(b0, b1, b2)
        return correlation_from_moments(stats.mean_a, stats.var_a, mean_b, mean_bb, mean_ab)

    def release(self) -> None:
        if self._matrix_buffer is not None:
            self._matrix_buffer.release()
            self._matrix_buffer = None
