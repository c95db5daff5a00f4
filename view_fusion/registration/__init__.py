"""Registration module for two-view light-sheet volumes.

This module provides the device-side NCC objective, its multi-pass reduction,
the bounded parameter search and the engine combining them.
"""

from .engine import RegistrationEngine, RegistrationResult
from ._affine import build_transform_matrix
from ._optimizer import AffineParameterOptimizer, OptimizationResult
from ._reduction import ReductionEngine, plan_reduction_ladder
from ._smoothing import SimpleExponentialSmoothing
from ._work_groups import compute_local_size

__all__ = [
    'RegistrationEngine',
    'RegistrationResult',
    'build_transform_matrix',
    'AffineParameterOptimizer',
    'OptimizationResult',
    'ReductionEngine',
    'plan_reduction_ladder',
    'SimpleExponentialSmoothing',
    'compute_local_size',
]
