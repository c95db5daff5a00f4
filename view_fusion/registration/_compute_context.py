"""Device compute context for volume registration.

This module provides the small device abstraction the registration engine is
written against. It mirrors an OpenCL-style compute API on top of a
:class:`TensorBackend`:

- Device images (3D single-channel volumes) and 1D float buffers
- A program holding the fixed set of registration kernels, built for a given
  maximum work-group size
- Kernels with positional arguments, global/local dispatch sizes and an
  optional blocking wait
- Blocking and non-blocking transfers of buffers to host arrays

Kernels are enqueued in program order on the backend's default queue, so the
writes of one kernel are visible to the next kernel without explicit barriers.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from ._affine import to_array_order
from ._tensor_backend import TensorBackend, create_tensor_backend
from ._typing_utils import Extent3, Float32Array, as_extent

logger = logging.getLogger(__name__)

KERNEL_NAMES = (
    "reduce_mean_1buffer",
    "reduce_mean_2buffer",
    "reduce_mean_3buffer",
    "reduce_mean_2imagef",
    "reduce_var_1imagef",
    "affine_transform",
    "reduce_ncc_affine",
)


class ChannelDataType(enum.Enum):
    """Element type of a single-channel device image."""

    FLOAT = "float32"
    UNSIGNED_INT16 = "uint16"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @classmethod
    def from_dtype(cls, dtype: Any) -> "ChannelDataType":
        dtype = np.dtype(dtype)
        for member in cls:
            if member.numpy_dtype == dtype:
                return member
        raise ValueError(f"Unsupported image element type: {dtype}")


@dataclass(eq=False)
class DeviceImage:
    """A 3D single-channel device volume.

    ``data`` is a backend array of shape ``(nz, ny, nx)``; ``dimensions`` is
    reported as ``(nx, ny, nz)``.
    """

    data: Any
    released: bool = field(default=False, init=False)

    @property
    def dimensions(self) -> Extent3:
        nz, ny, nx = self.data.shape
        return int(nx), int(ny), int(nz)

    @property
    def channel_data_type(self) -> ChannelDataType:
        return ChannelDataType.from_dtype(self.data.dtype)

    @property
    def size_in_bytes(self) -> int:
        return int(self.data.nbytes)

    def release(self) -> None:
        self.data = None
        self.released = True

    def __repr__(self) -> str:
        if self.released:
            return "DeviceImage(released)"
        return f"DeviceImage(dimensions={self.dimensions}, type={self.channel_data_type.name})"


@dataclass(eq=False)
class DeviceBuffer:
    """A 1D float device buffer."""

    data: Any
    released: bool = field(default=False, init=False)

    @property
    def length(self) -> int:
        return int(self.data.shape[0])

    @property
    def size_in_bytes(self) -> int:
        return int(self.data.nbytes)

    def release(self) -> None:
        self.data = None
        self.released = True

    def __repr__(self) -> str:
        if self.released:
            return "DeviceBuffer(released)"
        return f"DeviceBuffer(length={self.length})"


class ComputeContext:
    """Allocation, program building and host transfers for one backend."""

    def __init__(self, backend: TensorBackend):
        self.backend = backend

    @classmethod
    def create(cls, engine: Optional[str] = None, allow_fallback: bool = True) -> "ComputeContext":
        return cls(create_tensor_backend(engine, allow_fallback))

    def create_image(
        self,
        dimensions: Sequence[int],
        data_type: ChannelDataType = ChannelDataType.FLOAT,
    ) -> DeviceImage:
        nx, ny, nz = as_extent(dimensions)
        return DeviceImage(self.backend.zeros((nz, ny, nx), data_type.numpy_dtype))

    def image_from_array(self, array: Any, dtype: Any = np.float32) -> DeviceImage:
        """Upload a ``(nz, ny, nx)`` host array as a device image."""
        if array.ndim != 3:
            raise ValueError(f"Expected a 3D (z, y, x) array, got shape {array.shape}")
        return DeviceImage(self.backend.asarray(array, dtype=dtype))

    def read_image(self, image: DeviceImage) -> np.ndarray:
        return self.backend.asnumpy(image.data)

    def create_buffer(self, length: int) -> DeviceBuffer:
        if length <= 0:
            raise ValueError(f"Buffer length must be positive, got {length}")
        return DeviceBuffer(self.backend.zeros((int(length),), np.float32))

    def fill_buffer(self, buffer: DeviceBuffer, values: Any) -> DeviceBuffer:
        buffer.data[...] = self.backend.asarray(values, dtype=np.float32)
        return buffer

    def write_matrix(self, matrix: np.ndarray, buffer: Optional[DeviceBuffer] = None) -> DeviceBuffer:
        """Upload a 4x4 matrix (row-major) into a 16 element buffer, reusing it if given."""
        flat = np.asarray(matrix, dtype=np.float32).reshape(16)
        if buffer is None or buffer.released or buffer.length != 16:
            buffer = self.create_buffer(16)
        buffer.data[...] = self.backend.asarray(flat, dtype=np.float32)
        return buffer

    def read_buffer(self, buffer: DeviceBuffer, out: Float32Array, blocking: bool = True) -> Float32Array:
        if out.shape != (buffer.length,):
            raise ValueError(
                f"Host array of shape {out.shape} does not match buffer length {buffer.length}"
            )
        return self.backend.copy_to_host(buffer.data, out, blocking)

    def create_program(self, max_group_size: int) -> "Program":
        return Program(self, {"MAX_GROUP_SIZE": int(max_group_size)})

    def cleanup_memory(self) -> None:
        self.backend.cleanup_memory()


KernelFunction = Callable[..., None]
_KERNELS: Dict[str, KernelFunction] = {}


def _kernel(name: str) -> Callable[[KernelFunction], KernelFunction]:
    def register(func: KernelFunction) -> KernelFunction:
        _KERNELS[name] = func
        return func
    return register


class Program:
    """The registration kernel set, built with a set of integer defines."""

    def __init__(self, context: ComputeContext, defines: Dict[str, int]):
        self.context = context
        self.defines = dict(defines)
        self._kernels = {name: Kernel(self, name, _KERNELS[name]) for name in KERNEL_NAMES}
        logger.debug(f"Built registration program with defines {self.defines}")

    @property
    def max_group_size(self) -> int:
        return self.defines["MAX_GROUP_SIZE"]

    def kernel(self, name: str) -> "Kernel":
        try:
            return self._kernels[name]
        except KeyError:
            raise ValueError(f"Unknown kernel '{name}'. Available kernels: {list(self._kernels)}")


class Kernel:
    """A named kernel with bound arguments and dispatch sizes."""

    def __init__(self, program: Program, name: str, func: KernelFunction):
        self.program = program
        self.name = name
        self._func = func
        self._arguments: Tuple[Any, ...] = ()
        self._global_sizes: Tuple[int, ...] = ()
        self._local_sizes: Tuple[int, ...] = ()

    def set_arguments(self, *arguments: Any) -> None:
        self._arguments = arguments

    def set_global_sizes(self, *sizes: int) -> None:
        self._global_sizes = tuple(int(s) for s in sizes)

    def set_local_sizes(self, *sizes: int) -> None:
        self._local_sizes = tuple(int(s) for s in sizes)

    def run(self, wait_to_finish: bool = False) -> None:
        if not self._global_sizes:
            raise ValueError(f"Kernel '{self.name}': global sizes not set")
        if self._local_sizes:
            if len(self._local_sizes) != len(self._global_sizes):
                raise ValueError(
                    f"Kernel '{self.name}': local sizes {self._local_sizes} do not match "
                    f"global sizes {self._global_sizes}"
                )
            if int(np.prod(self._local_sizes)) > self.program.max_group_size:
                raise ValueError(
                    f"Kernel '{self.name}': work-group {self._local_sizes} exceeds "
                    f"MAX_GROUP_SIZE={self.program.max_group_size}"
                )
            for g, l in zip(self._global_sizes, self._local_sizes):
                if g % l != 0:
                    raise ValueError(
                        f"Kernel '{self.name}': global sizes {self._global_sizes} are not "
                        f"multiples of local sizes {self._local_sizes}"
                    )
        backend = self.program.context.backend
        self._func(backend, self._global_sizes, self._local_sizes, *self._arguments)
        if wait_to_finish:
            backend.synchronize()


# Kernel implementations. Each receives the backend, the global and local
# dispatch sizes and the bound arguments. Volume kernels reduce each 3D
# work-group to its mean, written in work-group order (x fastest).

def _check_volume(image: DeviceImage, global_sizes: Tuple[int, ...], kernel: str) -> None:
    if image.dimensions != tuple(global_sizes):
        raise ValueError(
            f"{kernel}: volume of dimensions {image.dimensions} does not match "
            f"global sizes {global_sizes}"
        )


def _group_means(backend: TensorBackend, volume: Any, local_sizes: Tuple[int, ...]) -> Any:
    nz, ny, nx = volume.shape
    lx, ly, lz = local_sizes
    blocks = volume.reshape(nz // lz, lz, ny // ly, ly, nx // lx, lx)
    return blocks.mean(axis=(1, 3, 5), dtype=backend.xp.float32).ravel()


def _store(dst: DeviceBuffer, values: Any, kernel: str) -> None:
    if dst.length != values.shape[0]:
        raise ValueError(
            f"{kernel}: destination buffer of length {dst.length} cannot hold "
            f"{values.shape[0]} group results"
        )
    dst.data[...] = values


def _resample(backend: TensorBackend, source: Any, matrix_buffer: DeviceBuffer, output_shape: Tuple[int, ...]) -> Any:
    """Sample ``source`` at ``M p`` for every voxel ``p`` of the output grid."""
    matrix = backend.asnumpy(matrix_buffer.data).astype(np.float64).reshape(4, 4)
    matrix = backend.asarray(to_array_order(matrix), dtype=np.float64)
    return backend.ndimage.affine_transform(
        source,
        matrix,
        output_shape=output_shape,
        output=backend.xp.float32,
        order=1,
        mode="constant",
        cval=0.0,
    )


def _reduce_mean_buffers(backend: TensorBackend, global_sizes, local_sizes, *arguments) -> None:
    (length,) = global_sizes
    (group_size,) = local_sizes
    for dst, src in zip(arguments[0::2], arguments[1::2]):
        if src.length < length:
            raise ValueError(f"reduce_mean: source of length {src.length} shorter than {length}")
        means = src.data[:length].reshape(-1, group_size).mean(axis=1, dtype=backend.xp.float32)
        _store(dst, means, "reduce_mean")


@_kernel("reduce_mean_1buffer")
def _reduce_mean_1buffer(backend, global_sizes, local_sizes, dst0, src0) -> None:
    _reduce_mean_buffers(backend, global_sizes, local_sizes, dst0, src0)


@_kernel("reduce_mean_2buffer")
def _reduce_mean_2buffer(backend, global_sizes, local_sizes, dst0, src0, dst1, src1) -> None:
    _reduce_mean_buffers(backend, global_sizes, local_sizes, dst0, src0, dst1, src1)


@_kernel("reduce_mean_3buffer")
def _reduce_mean_3buffer(backend, global_sizes, local_sizes, dst0, src0, dst1, src1, dst2, src2) -> None:
    _reduce_mean_buffers(backend, global_sizes, local_sizes, dst0, src0, dst1, src1, dst2, src2)


@_kernel("reduce_mean_2imagef")
def _reduce_mean_2imagef(backend, global_sizes, local_sizes, dst0, image_a, dst1, image_b) -> None:
    _check_volume(image_a, global_sizes, "reduce_mean_2imagef")
    _check_volume(image_b, global_sizes, "reduce_mean_2imagef")
    _store(dst0, _group_means(backend, image_a.data, local_sizes), "reduce_mean_2imagef")
    _store(dst1, _group_means(backend, image_b.data, local_sizes), "reduce_mean_2imagef")


@_kernel("reduce_var_1imagef")
def _reduce_var_1imagef(backend, global_sizes, local_sizes, dst, image, mean) -> None:
    _check_volume(image, global_sizes, "reduce_var_1imagef")
    centered = image.data - backend.xp.float32(mean)
    _store(dst, _group_means(backend, centered * centered, local_sizes), "reduce_var_1imagef")


@_kernel("affine_transform")
def _affine_transform(backend, global_sizes, local_sizes, dst, src, matrix_buffer) -> None:
    _check_volume(dst, global_sizes, "affine_transform")
    dst.data[...] = _resample(backend, src.data, matrix_buffer, dst.data.shape)


@_kernel("reduce_ncc_affine")
def _reduce_ncc_affine(
    backend, global_sizes, local_sizes, dst_b, dst_bb, dst_ab, image_a, image_b, matrix_buffer, mean_b_approx
) -> None:
    _check_volume(image_a, global_sizes, "reduce_ncc_affine")
    # shifted data: b' = B(M p) - meanBapprox
    shifted_b = _resample(backend, image_b.data, matrix_buffer, image_a.data.shape)
    shifted_b -= backend.xp.float32(mean_b_approx)
    _store(dst_b, _group_means(backend, shifted_b, local_sizes), "reduce_ncc_affine")
    _store(dst_bb, _group_means(backend, shifted_b * shifted_b, local_sizes), "reduce_ncc_affine")
    _store(dst_ab, _group_means(backend, image_a.data * shifted_b, local_sizes), "reduce_ncc_affine")
