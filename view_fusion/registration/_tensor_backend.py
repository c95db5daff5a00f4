"""Tensor backend abstraction for supporting cupy and numpy."""

from abc import ABC, abstractmethod
from typing import Any, Tuple, Optional
import logging
import warnings

import numpy as np

logger = logging.getLogger(__name__)


class TensorBackend(ABC):
    """Abstract base class for tensor backends.

    The registration kernels are written once against ``xp`` (a numpy
    compatible array module) and ``ndimage`` (a scipy.ndimage compatible
    module), so every backend only has to provide those plus host transfers.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def is_gpu(self) -> bool:
        pass

    @property
    @abstractmethod
    def xp(self) -> Any:
        """Numpy compatible array module."""
        pass

    @property
    @abstractmethod
    def ndimage(self) -> Any:
        """scipy.ndimage compatible module operating on ``xp`` arrays."""
        pass

    @abstractmethod
    def asarray(self, array: Any, dtype: Any = None) -> Any:
        pass

    @abstractmethod
    def asnumpy(self, array: Any) -> np.ndarray:
        pass

    @abstractmethod
    def copy_to_host(self, array: Any, out: np.ndarray, blocking: bool = True) -> np.ndarray:
        pass

    @abstractmethod
    def zeros(self, shape: Tuple[int, ...], dtype: Any) -> Any:
        pass

    @abstractmethod
    def synchronize(self) -> None:
        """Block until all enqueued device work has finished."""
        pass

    @abstractmethod
    def cleanup_memory(self) -> None:
        """Return cached device memory of released arrays to the device."""
        pass


class CupyBackend(TensorBackend):
    """CuPy tensor backend."""

    def __init__(self):
        try:
            import cupy as cp
            import cupyx.scipy.ndimage as cp_ndimage
            self.cp = cp
            self._ndimage = cp_ndimage
            # Test GPU functionality with a simple operation
            test_array = cp.array([1.0, 2.0, 3.0])
            _ = cp.sum(test_array)
            cp.cuda.Device().synchronize()
            self.available = True
        except ImportError:
            self.available = False
            raise ImportError("CuPy not available")
        except Exception as e:
            self.available = False
            raise RuntimeError(f"CuPy available but CUDA operations failed: {e}")

    @property
    def name(self) -> str:
        return "cupy"

    @property
    def is_gpu(self) -> bool:
        return True

    @property
    def xp(self) -> Any:
        return self.cp

    @property
    def ndimage(self) -> Any:
        return self._ndimage

    def asarray(self, array: Any, dtype: Any = None) -> Any:
        return self.cp.asarray(array, dtype=dtype)

    def asnumpy(self, array: Any) -> np.ndarray:
        return self.cp.asnumpy(array)

    def copy_to_host(self, array: Any, out: np.ndarray, blocking: bool = True) -> np.ndarray:
        # cupy's device-to-host copy into an existing array is always blocking
        array.get(out=out)
        return out

    def zeros(self, shape: Tuple[int, ...], dtype: Any) -> Any:
        return self.cp.zeros(shape, dtype=dtype)

    def synchronize(self) -> None:
        self.cp.cuda.get_current_stream().synchronize()

    def cleanup_memory(self) -> None:
        try:
            mempool = self.cp.get_default_memory_pool()
            pinned_mempool = self.cp.get_default_pinned_memory_pool()
            mempool.free_all_blocks()
            pinned_mempool.free_all_blocks()
            self.cp.cuda.Device().synchronize()
        except Exception as e:
            logger.debug(f"CuPy memory cleanup failed: {e}")


class NumpyBackend(TensorBackend):
    """NumPy tensor backend (CPU only)."""

    def __init__(self):
        import scipy.ndimage
        self._ndimage = scipy.ndimage
        self.available = True

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_gpu(self) -> bool:
        return False

    @property
    def xp(self) -> Any:
        return np

    @property
    def ndimage(self) -> Any:
        return self._ndimage

    def asarray(self, array: Any, dtype: Any = None) -> Any:
        return np.asarray(array, dtype=dtype)

    def asnumpy(self, array: Any) -> np.ndarray:
        return np.asarray(array)

    def copy_to_host(self, array: Any, out: np.ndarray, blocking: bool = True) -> np.ndarray:
        np.copyto(out, array)
        return out

    def zeros(self, shape: Tuple[int, ...], dtype: Any) -> Any:
        return np.zeros(shape, dtype=dtype)

    def synchronize(self) -> None:
        pass  # Work runs eagerly on the host

    def cleanup_memory(self) -> None:
        pass  # No GPU memory to clean up


def create_tensor_backend(engine: Optional[str] = None, allow_fallback: bool = True) -> TensorBackend:
    """Create a tensor backend with optional automatic fallback.

    Args:
        engine: Preferred engine ('cupy', 'numpy'), None for auto
        allow_fallback: Whether to try fallback engines if preferred engine fails

    Returns:
        TensorBackend instance

    Raises:
        RuntimeError: If no backends are available
    """
    engines_to_try = []

    if engine:
        engines_to_try.append(engine)
    else:
        engines_to_try = ['cupy', 'numpy']

    # Add remaining engines as fallbacks only if allowed
    if allow_fallback:
        for fallback in ['cupy', 'numpy']:
            if fallback not in engines_to_try:
                engines_to_try.append(fallback)

    for engine_name in engines_to_try:
        try:
            if engine_name == 'cupy':
                backend = CupyBackend()
            elif engine_name == 'numpy':
                backend = NumpyBackend()
            else:
                continue

            logger.info(f"Using tensor backend: {backend.name} ({'GPU' if backend.is_gpu else 'CPU'})")
            return backend

        except Exception as e:
            warnings.warn(f"Failed to initialize {engine_name} backend: {e}")
            continue

    raise RuntimeError("No tensor backends available")
