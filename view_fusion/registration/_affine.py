"""Affine matrix construction for volume registration.

All matrices are 4x4 homogeneous matrices acting on (x, y, z, 1) column
vectors and are computed in single precision, matching what is uploaded to the
device.
"""
import math
from typing import Sequence

import numpy as np

from ._typing_utils import Float32Array, Theta, as_extent, as_theta

IDENTITY = np.eye(4, dtype=np.float32)


def translation(tx: float, ty: float, tz: float) -> Float32Array:
    m = np.eye(4, dtype=np.float32)
    m[:3, 3] = (tx, ty, tz)
    return m


def scaling(sx: float, sy: float, sz: float) -> Float32Array:
    return np.diag(np.array([sx, sy, sz, 1.0], dtype=np.float32))


def rotation_x(degrees: float) -> Float32Array:
    c, s = _cos_sin(degrees)
    m = np.eye(4, dtype=np.float32)
    m[1, 1], m[1, 2] = c, -s
    m[2, 1], m[2, 2] = s, c
    return m


def rotation_y(degrees: float) -> Float32Array:
    c, s = _cos_sin(degrees)
    m = np.eye(4, dtype=np.float32)
    m[0, 0], m[0, 2] = c, s
    m[2, 0], m[2, 2] = -s, c
    return m


def rotation_z(degrees: float) -> Float32Array:
    c, s = _cos_sin(degrees)
    m = np.eye(4, dtype=np.float32)
    m[0, 0], m[0, 1] = c, -s
    m[1, 0], m[1, 1] = s, c
    return m


def _cos_sin(degrees: float):
    radians = np.float32(math.radians(degrees))
    return np.float32(math.cos(radians)), np.float32(math.sin(radians))


def rotation(rx: float, ry: float, rz: float) -> Float32Array:
    """Rotation about x, then y, then z (``Rz · Ry · Rx``), angles in degrees."""
    return multiply(rotation_z(rz), rotation_y(ry), rotation_x(rx))


def multiply(*matrices: np.ndarray) -> Float32Array:
    """Left-to-right product of 4x4 matrices."""
    result = IDENTITY.copy()
    for m in matrices:
        result = result @ np.asarray(m, dtype=np.float32)
    return result


def center_and_scale(global_size: Sequence[int], scale_z: float) -> Float32Array:
    """Move the volume center to the origin, then scale z to isotropic units."""
    nx, ny, nz = as_extent(global_size)
    cx, cy, cz = nx // 2, ny // 2, nz // 2
    return multiply(scaling(1, 1, scale_z), translation(-cx, -cy, -cz))


def build_transform_matrix(
    theta: Theta,
    zero_transform: np.ndarray,
    global_size: Sequence[int],
    scale_z: float,
) -> Float32Array:
    """Compose the matrix mapping output voxel coordinates to moving-volume coordinates.

    The result is ``CS⁻¹ · Z · T(tx, ty, tz) · R(rx, ry, rz) · CS`` where ``CS``
    centers the volume and scales z by ``scale_z``, and ``Z`` is the fixed zero
    transform (e.g. a mirroring between two cameras), applied in the centered
    frame.

    Args:
        theta: Parameters [tx, ty, tz, rx, ry, rz], translations in voxels and
            rotations in degrees
        zero_transform: 4x4 matrix composed with every candidate transform
        global_size: Volume extent (nx, ny, nz)
        scale_z: Voxel anisotropy factor along z

    Returns:
        4x4 float32 matrix
    """
    theta = as_theta(theta).astype(np.float32)
    zero_transform = np.asarray(zero_transform, dtype=np.float32)
    if zero_transform.shape != (4, 4):
        raise ValueError(f"Zero transform must be a 4x4 matrix, got shape {zero_transform.shape}")
    if scale_z == 0:
        raise ValueError("scale_z must be non-zero")
    cs = center_and_scale(global_size, scale_z)
    cs_inverse = np.linalg.inv(cs).astype(np.float32)
    return multiply(
        cs_inverse,
        zero_transform,
        translation(*theta[:3]),
        rotation(*theta[3:]),
        cs,
    )


def to_array_order(matrix: np.ndarray) -> np.ndarray:
    """Re-express a homogeneous (x, y, z) matrix for arrays indexed (z, y, x)."""
    perm = np.array([2, 1, 0, 3])
    return np.asarray(matrix)[np.ix_(perm, perm)]
