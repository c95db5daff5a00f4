"""Type aliases and utilities for volume registration.

This module provides commonly used type aliases for numpy arrays, numeric types
and volume geometry used throughout the registration package.
"""
from typing import Any, Sequence, Tuple, Union

import numpy as np
import numpy.typing as npt

# Array type aliases
NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
Float32Array = npt.NDArray[np.float32]
IntArray = npt.NDArray[np.int_]

# Numeric type aliases
Int = Union[int, np.integer]
Float = Union[float, np.floating]

# Volume geometry, always ordered (x, y, z)
Extent3 = Tuple[int, int, int]

# Transformation parameters [tx, ty, tz, rx, ry, rz]
Theta = Union[Sequence[float], FloatArray]

NUM_PARAMETERS = 6


def as_theta(theta: Theta) -> FloatArray:
    """Convert a parameter vector to a float64 array, checking its length."""
    arr = np.asarray(theta, dtype=np.float64)
    if arr.shape != (NUM_PARAMETERS,):
        raise ValueError(
            f"Transformation parameters must be a vector of length {NUM_PARAMETERS}, "
            f"got shape {arr.shape}"
        )
    return arr


def as_extent(extent: Sequence[int]) -> Extent3:
    """Convert a 3D extent to a tuple of python ints."""
    if len(extent) != 3:
        raise ValueError(f"Expected a 3D extent (nx, ny, nz), got {tuple(extent)}")
    nx, ny, nz = (int(e) for e in extent)
    if min(nx, ny, nz) <= 0:
        raise ValueError(f"Extent must be positive, got {(nx, ny, nz)}")
    return nx, ny, nz
