"""Tests for the tensor backend abstraction and compute context."""
import numpy as np
import pytest

from .._compute_context import KERNEL_NAMES, ChannelDataType
from .._tensor_backend import NumpyBackend, create_tensor_backend


def test_numpy_backend():
    backend = create_tensor_backend("numpy")
    assert isinstance(backend, NumpyBackend)
    assert backend.name == "numpy"
    assert not backend.is_gpu
    out = np.empty(3, dtype=np.float32)
    backend.copy_to_host(backend.asarray([1, 2, 3], dtype=np.float32), out)
    np.testing.assert_array_equal(out, [1, 2, 3])


def test_auto_backend():
    # falls back to numpy with a warning when no GPU is available
    backend = create_tensor_backend()
    assert backend.name in ("cupy", "numpy")


def test_unknown_backend_without_fallback():
    with pytest.raises(RuntimeError):
        create_tensor_backend("metal", allow_fallback=False)


def test_images_and_buffers(context):
    image = context.create_image((16, 8, 4))
    assert image.data.shape == (4, 8, 16)
    assert image.dimensions == (16, 8, 4)
    assert image.channel_data_type == ChannelDataType.FLOAT
    image.release()
    assert image.released

    buffer = context.fill_buffer(context.create_buffer(4), [1, 2, 3, 4])
    out = np.empty(4, dtype=np.float32)
    np.testing.assert_array_equal(context.read_buffer(buffer, out), [1, 2, 3, 4])
    with pytest.raises(ValueError):
        context.read_buffer(buffer, np.empty(3, dtype=np.float32))
    with pytest.raises(ValueError):
        context.create_buffer(0)
    with pytest.raises(ValueError):
        context.image_from_array(np.zeros((4, 4)))


def test_program_kernels(context):
    program = context.create_program(64)
    assert program.max_group_size == 64
    for name in KERNEL_NAMES:
        assert program.kernel(name).name == name
    with pytest.raises(ValueError):
        program.kernel("reduce_max")


def test_kernel_dispatch_checks(context):
    program = context.create_program(64)
    kernel = program.kernel("reduce_mean_1buffer")
    src = context.fill_buffer(context.create_buffer(256), np.arange(256))
    dst = context.create_buffer(2)
    kernel.set_arguments(dst, src)
    kernel.set_global_sizes(256)

    kernel.set_local_sizes(128)
    with pytest.raises(ValueError):
        kernel.run()
    kernel.set_local_sizes(96)
    with pytest.raises(ValueError):
        kernel.run()

    kernel.set_local_sizes(64)
    with pytest.raises(ValueError):
        kernel.run()  # four groups do not fit a buffer of two
    kernel.set_arguments(context.create_buffer(4), src)
    kernel.run(wait_to_finish=True)


def test_volume_kernel_writes_groups_x_fastest(context):
    program = context.create_program(8)
    kernel = program.kernel("reduce_mean_2imagef")
    # value = x index; groups of (2, 2, 2) over an (4, 2, 2) extent
    volume = np.broadcast_to(np.arange(4, dtype=np.float32), (2, 2, 4)).copy()
    image = context.image_from_array(volume)
    dst0, dst1 = context.create_buffer(2), context.create_buffer(2)
    kernel.set_arguments(dst0, image, dst1, image)
    kernel.set_global_sizes(4, 2, 2)
    kernel.set_local_sizes(2, 2, 2)
    kernel.run()
    np.testing.assert_array_equal(context.backend.asnumpy(dst0.data), [0.5, 2.5])
