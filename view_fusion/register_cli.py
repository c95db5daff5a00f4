import contextlib
import logging
import pathlib
import sys
from typing import Optional

import numpy as np
import pandas as pd
import tifffile
from pydantic_settings import CliApp
from tqdm import tqdm

from .benchmarking_util import profile_context
from .fusion_tasks import create_fusion_tasks
from .parameters import RegisterStacksParameters
from .registration._compute_context import ComputeContext
from .registration_task import GaussianBlurTask, ImageSlots, RegistrationTask
from .stack_generator import MIRROR_X

TIFF_SUFFIXES = (".tif", ".tiff")
THETA_NAMES = ["tx", "ty", "tz", "rx", "ry", "rz"]
RESULTS_FILENAME = "registration.csv"
FUSED_FOLDER = "fused"

logger = logging.getLogger(__name__)


def list_stacks(folder: str) -> list[pathlib.Path]:
    return sorted(
        p for p in pathlib.Path(folder).iterdir() if p.suffix.lower() in TIFF_SUFFIXES
    )


def pair_stacks(params: RegisterStacksParameters) -> list[tuple[pathlib.Path, pathlib.Path]]:
    """Pair reference and moving stacks frame by frame, in file name order."""
    reference = list_stacks(params.reference_folder)
    moving = list_stacks(params.moving_folder)
    if not reference:
        raise ValueError(f"No TIFF stacks found in {params.reference_folder}")
    if len(reference) != len(moving):
        raise ValueError(
            f"Found {len(reference)} reference stacks but {len(moving)} moving stacks"
        )
    return list(zip(reference, moving))


class StackRegistration:
    """Registers a time series of two-view stacks with one registration task and fuses the views."""

    def __init__(self, params: RegisterStacksParameters, context: Optional[ComputeContext] = None):
        self.params = params
        if params.mirror_x:
            params.registration.set_zero_transform_matrix(MIRROR_X)
        self.context = context if context is not None else ComputeContext.create(
            params.registration.tensor_backend_engine
        )
        self.slots = ImageSlots(self.context)
        self.preprocessing = []
        if params.blur_sigma > 0:
            self.preprocessing = [
                GaussianBlurTask("reference", "reference-blur", params.blur_sigma),
                GaussianBlurTask("moving", "moving-blur", params.blur_sigma),
            ]
            processed = ("reference-blur", "moving-blur")
        else:
            processed = ("reference", "moving")
        self.task = RegistrationTask(
            *processed, "reference", "moving", "moving-registered", params=params.registration
        )
        self.fusion = create_fusion_tasks(
            params.fusion, "fused", ("reference", "moving-registered"), params.fusion_sigma
        )

    def register_frame(self, reference: np.ndarray, moving: np.ndarray) -> dict:
        self.slots.put("reference", reference.astype(np.float32))
        self.slots.put("moving", moving.astype(np.float32))
        for task in self.preprocessing:
            task.enqueue(self.slots)
        outcome = self.task.enqueue(self.slots)
        for task in self.fusion:
            task.enqueue(self.slots)
        result = outcome.registration
        row = {"score": result.score, "smoothed_score": result.smoothed_score,
               "original_score": outcome.original_score, "evaluations": result.evaluations,
               "fallback": result.fallback}
        row.update({f"raw_{n}": v for n, v in zip(THETA_NAMES, result.raw_theta)})
        row.update({n: v for n, v in zip(THETA_NAMES, result.theta)})
        return row

    def run(self) -> pd.DataFrame:
        output_folder = self.params.resolved_output_folder
        output_folder.mkdir(parents=True, exist_ok=True)
        fused_folder = output_folder / FUSED_FOLDER
        write_fused = self.params.write_fused and bool(self.fusion)
        if write_fused:
            fused_folder.mkdir(exist_ok=True)
        rows = []
        try:
            for frame, (ref_path, mov_path) in enumerate(tqdm(pair_stacks(self.params), desc="Registering")):
                row = self.register_frame(tifffile.imread(ref_path), tifffile.imread(mov_path))
                row.update({"frame": frame, "reference": ref_path.name, "moving": mov_path.name})
                rows.append(row)
                if self.params.write_transformed:
                    tifffile.imwrite(output_folder / mov_path.name, self.slots.read("moving-registered"))
                if write_fused:
                    tifffile.imwrite(fused_folder / ref_path.name, self.slots.read("fused"))
        finally:
            self.release()

        results = pd.DataFrame(rows).set_index("frame")
        results_path = output_folder / RESULTS_FILENAME
        results.to_csv(results_path)
        logger.info(f"Wrote registration results of {len(results)} frames to {results_path}")
        return results

    def release(self) -> None:
        """Release the device volumes and buffers of all tasks."""
        if self.task.engine is not None:
            self.task.engine.release()
        self.slots.release_all()


def main(args: list[str]) -> None:
    params = CliApp.run(RegisterStacksParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    profiling = profile_context(params.profile) if params.profile else contextlib.nullcontext()
    with profiling:
        StackRegistration(params).run()


def run() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    run()
