"""Tests for the registration engine."""
import numpy as np
import pytest

from .._compute_context import ComputeContext
from .._tensor_backend import NumpyBackend
from ..engine import RegistrationEngine
from ...stack_generator import warp_volume
from ...testutil import fast_registration_parameters


@pytest.fixture
def engine(context):
    return RegistrationEngine(fast_registration_parameters(), context)


def bind_arrays(engine, reference, moving):
    images = engine.context.image_from_array(reference), engine.context.image_from_array(moving)
    engine.bind(*images)
    return images


def test_self_registration(engine, beads):
    bind_arrays(engine, beads, beads)
    result = engine.register()
    assert not result.fallback
    assert result.score > 0.999
    assert result.smoothed_score > 0.999
    assert np.all(np.abs(result.raw_theta) < 0.5)
    assert 0 < result.evaluations <= engine.params.max_evaluations


def test_recovers_known_translation(engine, beads):
    engine.params.max_evaluations = 120
    bind_arrays(engine, beads, warp_volume(beads, [2.0, 0, 0, 0, 0, 0]))
    result = engine.register()
    assert result.raw_theta[0] == pytest.approx(2.0, abs=0.5)
    assert np.all(np.abs(result.raw_theta[1:3]) < 0.5)
    assert result.score > 0.98
    assert result.score >= engine.compute_score(np.zeros(6))


def test_warm_start_and_smoothing(engine, beads):
    engine.params.smoothing_alpha = 0.5
    bind_arrays(engine, beads, warp_volume(beads, [2.0, 0, 0, 0, 0, 0]))
    first = engine.register()
    np.testing.assert_array_equal(first.theta, first.raw_theta)
    np.testing.assert_allclose(engine.params.get_initial_transformation(), first.theta)

    second = engine.register()
    np.testing.assert_allclose(second.theta, first.theta + 0.5 * (second.raw_theta - first.theta))
    np.testing.assert_allclose(engine.params.get_initial_transformation(), second.theta)

    engine.reset_smoothing()
    third = engine.register()
    np.testing.assert_array_equal(third.theta, third.raw_theta)


def test_budget_of_one_returns_initial_parameters(engine, beads):
    engine.params.max_evaluations = 1
    initial = [0.5, 0.0, 0.0, 0.0, 0.0, 0.0]
    engine.params.initial_transformation = initial
    bind_arrays(engine, beads, beads)
    result = engine.register()
    np.testing.assert_allclose(result.raw_theta, initial)
    assert result.evaluations == 1
    assert result.score == pytest.approx(engine.compute_score(initial))


def test_bounds_are_respected(engine, beads):
    engine.params.lower_bounds = [-0.5] * 6
    engine.params.upper_bounds = [0.5] * 6
    bind_arrays(engine, beads, warp_volume(beads, [3.0, 0, 0, 0, 0, 0]))
    result = engine.register()
    assert np.all(result.raw_theta <= 0.5 + 1e-9)
    assert np.all(result.raw_theta >= -0.5 - 1e-9)


def test_seeded_restarts_are_reproducible(context, beads):
    results = []
    for _ in range(2):
        engine = RegistrationEngine(
            fast_registration_parameters(number_of_restarts=1, max_evaluations=20, seed=5), context
        )
        bind_arrays(engine, beads, warp_volume(beads, [1.0, 0, 0, 0, 0, 0]))
        results.append(engine.register().raw_theta)
    np.testing.assert_array_equal(results[0], results[1])


def test_failed_search_falls_back(engine, beads, monkeypatch):
    engine.params.initial_transformation = [1.0, 0, 0, 0, 0, 0]
    bind_arrays(engine, beads, beads)

    def failing_ncc(*args, **kwargs):
        raise RuntimeError("device lost")

    monkeypatch.setattr(engine.objective, "ncc", failing_ncc)
    result = engine.register()
    assert result.fallback
    np.testing.assert_array_equal(result.theta, [1.0, 0, 0, 0, 0, 0])
    assert np.isnan(result.score)
    assert engine.smoother.count == 0
    assert engine.params.initial_transformation == [1.0, 0, 0, 0, 0, 0]


def test_failure_after_search_leaves_smoothing_untouched(engine, beads, monkeypatch):
    engine.params.max_evaluations = 5
    bind_arrays(engine, beads, warp_volume(beads, [1.0, 0, 0, 0, 0, 0]))
    engine.register()
    smoothed_before = engine.smoother.current
    warm_start_before = list(engine.params.initial_transformation)

    # the initial score and the budgeted search succeed, scoring the smoothed parameters fails
    ncc = engine._ncc
    calls = []

    def ncc_failing_after_search(theta, stats):
        calls.append(theta)
        if len(calls) > 1 + engine.params.max_evaluations:
            raise RuntimeError("device lost")
        return ncc(theta, stats)

    monkeypatch.setattr(engine, "_ncc", ncc_failing_after_search)
    result = engine.register()
    assert result.fallback
    assert len(calls) == 2 + engine.params.max_evaluations
    assert engine.smoother.count == 1
    np.testing.assert_array_equal(engine.smoother.current, smoothed_before)
    assert engine.params.initial_transformation == warm_start_before


def test_compute_score(engine, beads):
    bind_arrays(engine, beads, warp_volume(beads, [2.0, 0, 0, 0, 0, 0]))
    assert engine.compute_score([2.0, 0, 0, 0, 0, 0]) > 0.99
    assert engine.compute_score(np.zeros(6)) < engine.compute_score([2.0, 0, 0, 0, 0, 0])
    with pytest.raises(ValueError):
        engine.compute_score(np.zeros(5))


def test_rebinding_replans_ladder(engine, beads):
    bind_arrays(engine, beads, beads)
    assert engine.ladder == [16384, 256, 4]
    assert engine.local_size == (4, 4, 4)

    larger = np.zeros((16, 64, 64), dtype=np.float32)
    bind_arrays(engine, larger, larger)
    assert engine.global_size == (64, 64, 16)
    assert engine.ladder == [65536, 1024, 16]


def test_parameter_changes_take_effect(engine, beads):
    bind_arrays(engine, beads, beads)
    engine.params.group_size = 128
    assert engine.compute_score(np.zeros(6)) == pytest.approx(1.0, abs=1e-5)
    assert engine.ladder == [16384, 128, 1]
    assert engine.local_size == (8, 4, 4)


def test_bind_validation(engine, context):
    a = context.image_from_array(np.zeros((16, 32, 32), dtype=np.float32))
    b = context.image_from_array(np.zeros((16, 32, 16), dtype=np.float32))
    c = context.image_from_array(np.zeros((16, 32, 32), dtype=np.uint16), dtype=np.uint16)
    with pytest.raises(ValueError):
        engine.bind(a, b)
    with pytest.raises(ValueError):
        engine.bind(a, c)
    with pytest.raises(ValueError):
        engine.register()


def test_released_volumes(engine, beads):
    reference, _ = bind_arrays(engine, beads, beads)
    reference.release()
    with pytest.raises(ValueError):
        engine.register()


def test_transform(engine, beads, context):
    moving = warp_volume(beads, [2.0, -1.0, 0, 0, 0, 0])
    _, moving_image = bind_arrays(engine, beads, moving)
    destination = context.create_image(moving_image.dimensions)

    engine.transform(destination, moving_image, np.zeros(6))
    np.testing.assert_allclose(context.read_image(destination), moving, atol=1e-4)

    engine.transform(destination, moving_image, [2.0, -1.0, 0, 0, 0, 0])
    registered = context.read_image(destination)
    assert np.corrcoef(registered.ravel(), beads.ravel())[0, 1] > 0.99


def test_transform_other_extent(engine, beads, context):
    bind_arrays(engine, beads, beads)
    source = context.image_from_array(np.ones((8, 16, 16), dtype=np.float32))
    destination = context.create_image((16, 16, 8))
    engine.transform(destination, source, np.zeros(6))
    np.testing.assert_allclose(context.read_image(destination), 1.0)
    with pytest.raises(ValueError):
        engine.transform(context.create_image((16, 16, 4)), source, np.zeros(6))


def test_release(engine, beads):
    bind_arrays(engine, beads, beads)
    buffers = engine.reduction.level_buffers(0)
    engine.release()
    assert all(b.released for b in buffers)
    assert engine.ladder == []
    # the next call re-plans from the bound volumes
    assert engine.compute_score(np.zeros(6)) == pytest.approx(1.0, abs=1e-5)


class CleanupCountingBackend(NumpyBackend):
    def __init__(self):
        super().__init__()
        self.cleanups = 0

    def cleanup_memory(self) -> None:
        self.cleanups += 1


def test_release_returns_device_memory(beads):
    backend = CleanupCountingBackend()
    engine = RegistrationEngine(fast_registration_parameters(), ComputeContext(backend))
    bind_arrays(engine, beads, beads)
    before = backend.cleanups
    engine.release()
    assert backend.cleanups == before + 1
