"""Online smoothing of registration parameters across frames."""
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

import numpy as np

from ._typing_utils import FloatArray, Theta

T = TypeVar("T")


class OnlineSmoothingFilter(ABC, Generic[T]):
    """A filter fed one value at a time that keeps a smoothed estimate."""

    @abstractmethod
    def update(self, value: T) -> T:
        """Add a new value and return the updated smoothed estimate."""
        pass

    @abstractmethod
    def peek(self, value: T) -> T:
        """Return the estimate update(value) would produce, without changing the filter."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Forget all history; the next value becomes the new baseline."""
        pass

    @property
    @abstractmethod
    def count(self) -> int:
        """Number of updates since the last reset."""
        pass

    @property
    @abstractmethod
    def current(self) -> Optional[T]:
        """Current smoothed estimate, None before the first update."""
        pass


class SimpleExponentialSmoothing(OnlineSmoothingFilter[FloatArray]):
    """Exponential moving average of fixed-length vectors.

    ``smoothed <- smoothed + alpha * (value - smoothed)``; the first value
    after construction or :meth:`reset` initializes the estimate.
    """

    def __init__(self, dimension: int, alpha: float):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"Smoothing factor alpha must be in (0, 1], got {alpha}")
        self.dimension = dimension
        self.alpha = alpha
        self._current: Optional[FloatArray] = None
        self._count = 0

    def peek(self, value: Theta) -> FloatArray:
        value = np.asarray(value, dtype=np.float64)
        if value.shape != (self.dimension,):
            raise ValueError(f"Expected a vector of length {self.dimension}, got shape {value.shape}")
        if self._current is None:
            return value.copy()
        return self._current + self.alpha * (value - self._current)

    def update(self, value: Theta) -> FloatArray:
        self._current = self.peek(value)
        self._count += 1
        return self._current.copy()

    def reset(self) -> None:
        self._current = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def current(self) -> Optional[FloatArray]:
        return None if self._current is None else self._current.copy()

    def __repr__(self) -> str:
        return f"SimpleExponentialSmoothing(dimension={self.dimension}, alpha={self.alpha}, count={self._count})"
