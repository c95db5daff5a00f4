import contextlib
import pathlib
import tempfile
from typing import Generator, Optional, Sequence

import numpy as np
import tifffile

from .parameters import RegisterStacksParameters, RegistrationParameters
from .stack_generator import generate_bead_volume, warp_volume, MIRROR_X


def fast_registration_parameters(**overrides) -> RegistrationParameters:
    """Registration parameters small enough for unit tests on the CPU."""
    values = dict(
        group_size=64,
        host_reduction_threshold=64,
        max_evaluations=60,
        number_of_restarts=0,
        smoothing_alpha=1.0,
        seed=0,
        tensor_backend_engine="numpy",
    )
    values.update(overrides)
    return RegistrationParameters(**values)


@contextlib.contextmanager
def temporary_stack_directory_params(
    n_frames: int,
    dimensions: Sequence[int],
    thetas: Optional[Sequence[Sequence[float]]] = None,
    mirror_x: bool = False,
    name: str = "stack_inputs",
    seed: int = 0,
) -> Generator[RegisterStacksParameters, None, None]:
    """Write a time series of synthetic two-view TIFF stacks and yield CLI parameters for it.

    This includes:
        - a `reference` folder with one bead volume per frame
        - a `moving` folder with the same volumes warped by the frame's theta
    """
    if thetas is None:
        thetas = [[0.0] * 6] * n_frames
    with tempfile.TemporaryDirectory() as d:
        base_dir = pathlib.Path(d) / name
        reference_dir = base_dir / "reference"
        moving_dir = base_dir / "moving"
        reference_dir.mkdir(parents=True)
        moving_dir.mkdir(parents=True)

        for frame in range(n_frames):
            reference = generate_bead_volume(dimensions, num_beads=60, seed=seed + frame)
            moving = warp_volume(
                reference, thetas[frame], zero_transform=MIRROR_X if mirror_x else None
            )
            filename = f"frame_{frame:04d}.tif"
            tifffile.imwrite(reference_dir / filename, reference)
            tifffile.imwrite(moving_dir / filename, moving)

        yield RegisterStacksParameters(
            reference_folder=str(reference_dir),
            moving_folder=str(moving_dir),
            output_folder=base_dir / "registered",
            registration=fast_registration_parameters(),
            blur_sigma=0.0,
            mirror_x=mirror_x,
        )
