import numpy as np
import pytest

from .._compute_context import ComputeContext
from .._tensor_backend import NumpyBackend
from ...stack_generator import generate_bead_volume


@pytest.fixture
def context():
    """Compute context on the CPU backend."""
    return ComputeContext(NumpyBackend())


@pytest.fixture
def beads():
    """A (nz, ny, nx) = (16, 32, 32) bead volume."""
    return generate_bead_volume((32, 32, 16), num_beads=60, bead_sigma=2.5, seed=0)


@pytest.fixture
def rng():
    return np.random.default_rng(0)
