"""Synthetic two-view stacks for testing and benchmarking registration.

Generates bead phantoms and a second view related to the first by a known
affine transform, optionally mirrored (as seen by an opposing camera) and with
added noise.
"""
import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import scipy.ndimage
import skimage.filters

from .registration._affine import build_transform_matrix, scaling, to_array_order
from .registration._typing_utils import Theta, as_extent

logger = logging.getLogger(__name__)

MIRROR_X = scaling(-1, 1, 1)


def generate_bead_volume(
    dimensions: Sequence[int],
    num_beads: int = 200,
    bead_sigma: float = 2.0,
    intensity: float = 1000.0,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Generate a ``(nz, ny, nx)`` float32 volume of blurred point beads.

    Args:
        dimensions: Volume extent (nx, ny, nz)
        num_beads: Number of beads
        bead_sigma: Gaussian blur of every bead, in voxels
        intensity: Peak intensity scale
        seed: Random seed
    """
    nx, ny, nz = as_extent(dimensions)
    rng = np.random.default_rng(seed)
    volume = np.zeros((nz, ny, nx), dtype=np.float32)
    # keep beads away from the border so moderate transforms keep them in view
    margin = np.maximum(np.array([nz, ny, nx]) // 8, 1)
    coords = [
        rng.integers(m, max(n - m, m + 1), size=num_beads)
        for n, m in zip((nz, ny, nx), margin)
    ]
    volume[tuple(coords)] = rng.uniform(0.5, 1.0, size=num_beads)
    volume = skimage.filters.gaussian(volume, sigma=bead_sigma, preserve_range=True)
    peak = volume.max()
    if peak > 0:
        volume *= intensity / peak
    return volume.astype(np.float32)


def warp_volume(
    volume: np.ndarray,
    theta: Theta,
    scale_z: float = 1.0,
    zero_transform: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Warp ``volume`` such that registering it back onto ``volume`` yields ``theta``.

    The registration samples the moving volume at ``M p``; the moving view is
    therefore the reference sampled at ``M⁻¹ q``.
    """
    nz, ny, nx = volume.shape
    if zero_transform is None:
        zero_transform = np.eye(4, dtype=np.float32)
    matrix = build_transform_matrix(theta, zero_transform, (nx, ny, nz), scale_z)
    inverse = np.linalg.inv(matrix.astype(np.float64))
    return scipy.ndimage.affine_transform(
        volume,
        to_array_order(inverse),
        output=np.float32,
        order=1,
        mode="constant",
        cval=0.0,
    )


def generate_view_pair(
    dimensions: Sequence[int],
    theta: Theta,
    scale_z: float = 1.0,
    mirror_x: bool = False,
    noise_sigma: float = 0.0,
    seed: Optional[int] = None,
    **bead_kwargs,
) -> Tuple[np.ndarray, np.ndarray]:
    """Generate a reference view and a moving view misaligned by ``theta``.

    Args:
        dimensions: Volume extent (nx, ny, nz)
        theta: Misalignment [tx, ty, tz, rx, ry, rz]
        scale_z: Voxel anisotropy factor used by the registration
        mirror_x: Whether the moving view is additionally mirrored along x
        noise_sigma: Standard deviation of additive gaussian noise
        seed: Random seed
        **bead_kwargs: Passed to :func:`generate_bead_volume`

    Returns:
        (reference, moving) float32 volumes of shape (nz, ny, nx)
    """
    reference = generate_bead_volume(dimensions, seed=seed, **bead_kwargs)
    zero_transform = MIRROR_X if mirror_x else None
    moving = warp_volume(reference, theta, scale_z=scale_z, zero_transform=zero_transform)
    if noise_sigma > 0:
        rng = np.random.default_rng(None if seed is None else seed + 1)
        reference = reference + rng.normal(0.0, noise_sigma, reference.shape).astype(np.float32)
        moving = moving + rng.normal(0.0, noise_sigma, moving.shape).astype(np.float32)
    logger.debug(f"Generated view pair of extent {tuple(dimensions)} misaligned by {list(theta)}")
    return reference, moving
