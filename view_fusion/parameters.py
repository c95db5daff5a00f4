import os
import pathlib
from typing import Annotated, Literal, Optional

import numpy as np
from pydantic import AfterValidator, BaseModel, Field, model_validator

# [tx, ty, tz, rx, ry, rz]
NUM_PARAMETERS = 6

IDENTITY_4X4 = [[1.0 if i == j else 0.0 for j in range(4)] for i in range(4)]


def power_of_two(value: int) -> int:
    """Pydantic validator for work-group sizes."""
    if value <= 1 or value & (value - 1) != 0:
        raise ValueError(f"Group size must be a power of two larger than 1, got {value}")
    return value


def six_vector(value: Optional[list[float]]) -> Optional[list[float]]:
    """Pydantic validator for transformation parameter vectors."""
    if value is not None and len(value) != NUM_PARAMETERS:
        raise ValueError(
            f"Expected {NUM_PARAMETERS} values [tx, ty, tz, rx, ry, rz], got {len(value)}"
        )
    return value


def matrix_4x4(value: list[list[float]]) -> list[list[float]]:
    """Pydantic validator for homogeneous matrices."""
    if len(value) != 4 or any(len(row) != 4 for row in value):
        raise ValueError("Zero transform must be a 4x4 matrix")
    return value


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input folder does not exist: {path}")

    return path


class RegistrationParameters(
    BaseModel,
    use_attribute_docstrings=True,
    validate_assignment=True,
):
    """Parameters of the affine volume registration.

    All fields may be changed between registration calls; assignments are
    validated.
    """

    group_size: Annotated[int, AfterValidator(power_of_two)] = 128
    """Work-group size of the reduction kernels (power of two)."""

    host_reduction_threshold: int = Field(default=1024, ge=1)
    """Buffers at or below this length are reduced on the host."""

    max_evaluations: int = Field(default=200, ge=1)
    """Objective evaluation budget of every optimization run."""

    number_of_restarts: int = Field(default=2, ge=0)
    """Additional optimization runs started from randomly perturbed parameters."""

    random_search_samples: int = Field(default=30, ge=1)
    """Random candidates evaluated to pick the starting point of a restart."""

    scale_z: float = 1.0
    """Ratio of z voxel size to xy voxel size, applied before rotating."""

    translation_bound: float = Field(default=20.0, ge=0.0)
    """Default symmetric bound on translations, in voxels."""

    rotation_bound: float = Field(default=10.0, ge=0.0)
    """Default symmetric bound on rotations, in degrees."""

    lower_bounds: Annotated[Optional[list[float]], AfterValidator(six_vector)] = None
    """Explicit lower bounds; defaults to minus the translation/rotation bounds."""

    upper_bounds: Annotated[Optional[list[float]], AfterValidator(six_vector)] = None
    """Explicit upper bounds; defaults to the translation/rotation bounds."""

    translation_perturbation: float = Field(default=5.0, ge=0.0)
    """Radius of random translation offsets used by restarts, in voxels."""

    rotation_perturbation: float = Field(default=2.0, ge=0.0)
    """Radius of random rotation offsets used by restarts, in degrees."""

    zero_transform: Annotated[list[list[float]], AfterValidator(matrix_4x4)] = Field(
        default_factory=lambda: [row[:] for row in IDENTITY_4X4]
    )
    """Fixed 4x4 matrix composed with every transform, e.g. a camera mirroring."""

    initial_transformation: Annotated[list[float], AfterValidator(six_vector)] = Field(
        default_factory=lambda: [0.0] * NUM_PARAMETERS
    )
    """Starting parameters of the next registration (updated with the smoothed result)."""

    smoothing_alpha: float = Field(default=0.1, gt=0.0, le=1.0)
    """Exponential smoothing factor applied to per-frame results."""

    wait_to_finish: bool = False
    """Block after every kernel dispatch."""

    optimizer_method: Literal["COBYQA", "Powell"] = "COBYQA"
    """Derivative-free bounded optimizer used by scipy.optimize.minimize."""

    seed: Optional[int] = None
    """Seed of the random perturbations used by restarts."""

    tensor_backend_engine: Optional[Literal["cupy", "numpy"]] = None
    """Preferred compute backend, None to pick the best available."""

    @model_validator(mode="after")
    def check_bounds(self) -> "RegistrationParameters":
        lower = self.get_lower_bounds()
        upper = self.get_upper_bounds()
        if np.any(lower > upper):
            raise ValueError(f"Lower bounds {lower.tolist()} exceed upper bounds {upper.tolist()}")
        return self

    def get_lower_bounds(self) -> np.ndarray:
        if self.lower_bounds is not None:
            return np.asarray(self.lower_bounds, dtype=np.float64)
        return -self._symmetric_bounds()

    def get_upper_bounds(self) -> np.ndarray:
        if self.upper_bounds is not None:
            return np.asarray(self.upper_bounds, dtype=np.float64)
        return self._symmetric_bounds()

    def _symmetric_bounds(self) -> np.ndarray:
        return np.array(
            [self.translation_bound] * 3 + [self.rotation_bound] * 3, dtype=np.float64
        )

    def get_zero_transform_matrix(self) -> np.ndarray:
        return np.asarray(self.zero_transform, dtype=np.float32)

    def set_zero_transform_matrix(self, matrix: np.ndarray) -> None:
        self.zero_transform = np.asarray(matrix, dtype=np.float64).tolist()

    def get_initial_transformation(self) -> np.ndarray:
        return np.asarray(self.initial_transformation, dtype=np.float64)

    def set_initial_transformation(self, theta: np.ndarray) -> None:
        self.initial_transformation = np.asarray(theta, dtype=np.float64).tolist()

    @classmethod
    def from_json_file(cls, json_path: str) -> "RegistrationParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            RegistrationParameters: New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class RegisterStacksParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters for registering a time series of two-view stacks."""

    reference_folder: Annotated[str, AfterValidator(input_path_exists)]
    """Folder of TIFF stacks of the reference view, one file per frame."""

    moving_folder: Annotated[str, AfterValidator(input_path_exists)]
    """Folder of TIFF stacks of the view to register, one file per frame."""

    output_folder: Optional[pathlib.Path] = None
    """Where transformed stacks and the per-frame CSV are written.

    Defaults to a `registered` folder next to the moving folder.
    """

    registration: RegistrationParameters = Field(default_factory=RegistrationParameters)
    """Registration engine parameters."""

    blur_sigma: float = Field(default=0.5, ge=0.0)
    """Gaussian blur applied to both views before registering; 0 disables it."""

    mirror_x: bool = False
    """Use a mirroring along x as zero transform (opposing cameras)."""

    write_transformed: bool = True
    """Write the transformed moving stacks as TIFF files."""

    fusion: Literal["tenengrad", "average", "none"] = "tenengrad"
    """How the reference and the registered moving view are fused.

    `tenengrad` weights each view by its blurred local sharpness, `average`
    takes the plain mean and `none` skips fusion.
    """

    fusion_sigma: float = Field(default=2.0, ge=0.0)
    """Gaussian blur of the Tenengrad weights."""

    write_fused: bool = True
    """Write the fused stacks as TIFF files into a `fused` subfolder of the output folder."""

    profile: Optional[str] = None
    """If set, write cProfile statistics of the run to this file."""

    verbose: bool = False
    """Show debug-level logging."""

    @property
    def resolved_output_folder(self) -> pathlib.Path:
        if self.output_folder is not None:
            return self.output_folder
        return pathlib.Path(self.moving_folder).resolve().parent / "registered"

    @classmethod
    def from_json_file(cls, json_path: str) -> "RegisterStacksParameters":
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))
