"""Tests for online parameter smoothing."""
import numpy as np
import pytest

from .._smoothing import SimpleExponentialSmoothing


def test_first_value_is_baseline():
    smoother = SimpleExponentialSmoothing(6, alpha=0.1)
    assert smoother.current is None
    value = np.arange(6, dtype=float)
    np.testing.assert_array_equal(smoother.update(value), value)
    assert smoother.count == 1


def test_exponential_update():
    smoother = SimpleExponentialSmoothing(2, alpha=0.25)
    smoother.update([0.0, 4.0])
    np.testing.assert_allclose(smoother.update([4.0, 0.0]), [1.0, 3.0])
    np.testing.assert_allclose(smoother.update([4.0, 0.0]), [1.75, 2.25])


def test_converges_to_constant_input():
    smoother = SimpleExponentialSmoothing(6, alpha=0.1)
    smoother.update(np.zeros(6))
    target = np.array([2.0, -1.0, 0.5, 1.0, 0.0, -3.0])
    for _ in range(300):
        smoothed = smoother.update(target)
    np.testing.assert_allclose(smoothed, target, atol=1e-9)


def test_alpha_one_tracks_input():
    smoother = SimpleExponentialSmoothing(3, alpha=1.0)
    smoother.update([1.0, 1.0, 1.0])
    np.testing.assert_array_equal(smoother.update([5.0, 6.0, 7.0]), [5.0, 6.0, 7.0])


def test_reset():
    smoother = SimpleExponentialSmoothing(2, alpha=0.5)
    smoother.update([10.0, 10.0])
    smoother.reset()
    assert smoother.count == 0
    assert smoother.current is None
    np.testing.assert_array_equal(smoother.update([1.0, 2.0]), [1.0, 2.0])


def test_returns_copies():
    smoother = SimpleExponentialSmoothing(2, alpha=0.5)
    smoothed = smoother.update([1.0, 2.0])
    smoothed[0] = 100.0
    np.testing.assert_array_equal(smoother.current, [1.0, 2.0])


def test_invalid_input():
    with pytest.raises(ValueError):
        SimpleExponentialSmoothing(6, alpha=0.0)
    with pytest.raises(ValueError):
        SimpleExponentialSmoothing(6, alpha=1.5)
    with pytest.raises(ValueError):
        SimpleExponentialSmoothing(6, alpha=0.5).update(np.zeros(5))


def test_peek_does_not_change_state():
    smoother = SimpleExponentialSmoothing(2, alpha=0.5)
    np.testing.assert_array_equal(smoother.peek([2.0, 4.0]), [2.0, 4.0])
    assert smoother.count == 0
    assert smoother.current is None

    smoother.update([0.0, 0.0])
    np.testing.assert_allclose(smoother.peek([2.0, 4.0]), [1.0, 2.0])
    np.testing.assert_array_equal(smoother.current, [0.0, 0.0])
    np.testing.assert_allclose(smoother.update([2.0, 4.0]), [1.0, 2.0])
