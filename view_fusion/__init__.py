"""View Fusion Package.

This package registers the two opposing views of a light-sheet acquisition
frame by frame, so that they can be fused into one volume.

Main functionality:
- Affine registration: Six-parameter (translation and rotation) alignment
  maximizing normalized cross-correlation
- Temporal smoothing: Exponential smoothing of the parameters across frames
- Pipeline tasks: Register preprocessed views and transform the original view
- Fusion: Average or Tenengrad-weighted fusion of the registered views
- Multiple tensor backends for CPU and GPU acceleration

The package exposes the registration engine and its parameters at the top level
for convenience.
"""

from .parameters import RegistrationParameters, RegisterStacksParameters
from .registration.engine import RegistrationEngine, RegistrationResult
from .registration._compute_context import ComputeContext, ChannelDataType, DeviceImage
from .registration._tensor_backend import create_tensor_backend, TensorBackend
from .registration_task import RegistrationTask, GaussianBlurTask, ImageSlots
from .fusion_tasks import AverageFusionTask, TenengradFusionTask, fuse_with_smooth_weights

__all__ = [
    'RegistrationParameters',
    'RegisterStacksParameters',
    'RegistrationEngine',
    'RegistrationResult',
    'ComputeContext',
    'ChannelDataType',
    'DeviceImage',
    'create_tensor_backend',
    'TensorBackend',
    'RegistrationTask',
    'GaussianBlurTask',
    'ImageSlots',
    'AverageFusionTask',
    'TenengradFusionTask',
    'fuse_with_smooth_weights',
]
