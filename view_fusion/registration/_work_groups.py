"""Work-group shape selection for volume kernels.

The reduction kernels are built for a single scalar work-group size, but volume
kernels are dispatched over 3D work-groups. This module chooses a 3D local size
whose product is the group size and which evenly tiles the volume extent,
staying as close to a balanced cube as the extent allows.
"""
import itertools
import logging
import math
from typing import List, Sequence

from ._typing_utils import Extent3, as_extent

logger = logging.getLogger(__name__)


def group_size_exponent(group_size: int) -> int:
    """Return ``log2(group_size)``, checking it is a power of two larger than one."""
    if group_size <= 1 or group_size & (group_size - 1) != 0:
        raise ValueError(f"Group size must be a power of two larger than 1, got {group_size}")
    return group_size.bit_length() - 1


def ideal_exponents(exponent: int) -> Extent3:
    """Split ``exponent`` over three axes as evenly as possible, larger parts first."""
    e0 = math.ceil(exponent / 3)
    e1 = math.ceil((exponent - e0) / 2)
    return e0, e1, exponent - e0 - e1


def _divisor_exponents(extent: int, max_exponent: int) -> List[int]:
    return [e for e in range(max_exponent, -1, -1) if extent % (1 << e) == 0]


def compute_local_size(group_size: int, global_size: Sequence[int]) -> Extent3:
    """Compute a balanced 3D local work-group size.

    Args:
        group_size: Total work-group size, a power of two larger than one
        global_size: Volume extent (nx, ny, nz)

    Returns:
        Local size (lx, ly, lz) with ``lx*ly*lz == group_size`` and each
        ``global_size[i] % local[i] == 0``

    Raises:
        ValueError: If the group size is invalid, does not divide the number of
            voxels, or no valid 3D shape exists
    """
    exponent = group_size_exponent(group_size)
    global_size = as_extent(global_size)
    num_voxels = global_size[0] * global_size[1] * global_size[2]
    if num_voxels % group_size != 0:
        raise ValueError(
            f"Number of voxels {num_voxels} of extent {global_size} is not a multiple "
            f"of the group size {group_size}"
        )

    ideal = ideal_exponents(exponent)
    if all(g % (1 << e) == 0 for g, e in zip(global_size, ideal)):
        return tuple(1 << e for e in ideal)

    candidates = [_divisor_exponents(g, exponent) for g in global_size]
    chosen = None
    min_cost = math.inf
    for exps in itertools.product(*candidates):
        if sum(exps) != exponent:
            continue
        cost = sum((i - e) ** 2 for i, e in zip(ideal, exps))
        if cost < min_cost:
            min_cost = cost
            chosen = exps

    if chosen is None:
        raise ValueError(
            f"No 3D work-group of size {group_size} evenly tiles the extent {global_size}"
        )
    local_size = tuple(1 << e for e in chosen)
    logger.debug(
        f"Extent {global_size} does not fit balanced work-group {tuple(1 << e for e in ideal)}, "
        f"using {local_size}"
    )
    return local_size
