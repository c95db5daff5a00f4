"""Affine registration of two light-sheet views.

The :class:`RegistrationEngine` aligns a moving volume to a reference volume
once per acquired frame. It owns the reduction buffers planned for the bound
volume extent, evaluates the NCC objective on the device, searches the six
affine parameters with a bounded derivative-free optimizer, and smooths the
accepted parameters over time. The smoothed parameters are the warm start of
the next frame and the ones applied to the output.

The engine is meant to be driven serially by a processing pipeline. It does no
locking: calling one instance from several threads at once is not supported.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..benchmarking_util import debug_timing
from ..parameters import RegistrationParameters
from ._affine import build_transform_matrix
from ._compute_context import ChannelDataType, ComputeContext, DeviceImage, Program
from ._objective import BaseStatistics, ObjectiveEvaluator
from ._optimizer import AffineParameterOptimizer, OptimizationState
from ._reduction import ReductionEngine
from ._smoothing import SimpleExponentialSmoothing
from ._typing_utils import NUM_PARAMETERS, Extent3, FloatArray, Theta, as_theta
from ._work_groups import compute_local_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of one :meth:`RegistrationEngine.register` call.

    Attributes:
        theta: Smoothed parameters, to be applied to this frame's output
        raw_theta: Best parameters found for this frame
        score: NCC of the bound volumes under ``raw_theta``
        smoothed_score: NCC of the bound volumes under ``theta``
        evaluations: Objective evaluations spent by the optimizer runs
        fallback: True if the search failed and the previous parameters were kept
    """

    theta: FloatArray
    raw_theta: FloatArray
    score: float
    smoothed_score: float
    evaluations: int = 0
    fallback: bool = False


class RegistrationEngine:
    """Registers a moving volume onto a reference volume.

    Args:
        params: Registration parameters, read at every call
        context: Compute context; created from ``params.tensor_backend_engine`` if None
        reference: Optional reference volume to bind right away
        moving: Optional moving volume to bind right away
    """

    def __init__(
        self,
        params: Optional[RegistrationParameters] = None,
        context: Optional[ComputeContext] = None,
        reference: Optional[DeviceImage] = None,
        moving: Optional[DeviceImage] = None,
    ):
        self.params = params if params is not None else RegistrationParameters()
        self.context = context if context is not None else ComputeContext.create(
            self.params.tensor_backend_engine
        )
        self.smoother = SimpleExponentialSmoothing(NUM_PARAMETERS, self.params.smoothing_alpha)
        self.rng = np.random.default_rng(self.params.seed)

        self._group_size: Optional[int] = None
        self._host_reduction_threshold: Optional[int] = None
        self._program: Optional[Program] = None
        self._reduction: Optional[ReductionEngine] = None
        self._objective: Optional[ObjectiveEvaluator] = None
        self.global_size: Optional[Extent3] = None
        self.local_size: Optional[Extent3] = None

        self._reference: Optional[DeviceImage] = None
        self._moving: Optional[DeviceImage] = None
        if reference is not None and moving is not None:
            self.bind(reference, moving)

    @property
    def ladder(self) -> list:
        return [] if self._reduction is None else list(self._reduction.ladder)

    @property
    def reduction(self) -> ReductionEngine:
        self._ensure_bound()
        return self._reduction

    @property
    def objective(self) -> ObjectiveEvaluator:
        self._ensure_bound()
        return self._objective

    def bind(self, reference: DeviceImage, moving: DeviceImage) -> None:
        """Bind the volume pair used by the next calls, replanning buffers if the extent changed."""
        check_float_volumes(reference, moving)
        if reference.dimensions != moving.dimensions:
            raise ValueError(
                f"Reference {reference.dimensions} and moving {moving.dimensions} volumes "
                "must have the same dimensions"
            )
        self._reference = reference
        self._moving = moving
        self._prepare(reference.dimensions)

    def _prepare(self, global_size: Extent3) -> None:
        group_size = self.params.group_size
        threshold = self.params.host_reduction_threshold
        rebuild = (
            self._program is None
            or group_size != self._group_size
            or threshold != self._host_reduction_threshold
        )
        if not rebuild and global_size == self.global_size:
            self._reduction.wait_to_finish = self.params.wait_to_finish
            self._objective.wait_to_finish = self.params.wait_to_finish
            return

        local_size = compute_local_size(group_size, global_size)
        if rebuild:
            self.release()
            self._program = self.context.create_program(group_size)
            self._reduction = ReductionEngine(
                self.context, self._program, group_size, threshold, self.params.wait_to_finish
            )
            self._objective = ObjectiveEvaluator(
                self.context, self._program, self._reduction, self.params.wait_to_finish
            )
            self._group_size = group_size
            self._host_reduction_threshold = threshold

        self._reduction.prepare(global_size)
        self._objective.set_geometry(global_size, local_size)
        self.global_size = global_size
        self.local_size = local_size
        logger.debug(repr(self))

    def _ensure_bound(self) -> None:
        if self._reference is None or self._moving is None:
            raise ValueError("No volumes bound, call bind(reference, moving) first")
        if self._reference.released or self._moving.released:
            raise ValueError("Bound volumes have been released, bind new volumes first")
        # parameters may have changed since the volumes were bound
        self._prepare(self._reference.dimensions)

    def transform_matrix(self, theta: Theta, global_size: Optional[Extent3] = None) -> np.ndarray:
        return build_transform_matrix(
            theta,
            self.params.get_zero_transform_matrix(),
            global_size if global_size is not None else self.global_size,
            self.params.scale_z,
        )

    def base_statistics(self) -> BaseStatistics:
        self._ensure_bound()
        return self._objective.base_statistics(self._reference, self._moving)

    def _ncc(self, theta: Theta, stats: BaseStatistics) -> float:
        return self._objective.ncc(self.transform_matrix(theta), self._reference, self._moving, stats)

    def compute_score(self, theta: Theta) -> float:
        """NCC of the bound volumes under ``theta``, without any search."""
        theta = as_theta(theta)
        return self._ncc(theta, self.base_statistics())

    def make_optimizer(self, stats: BaseStatistics) -> AffineParameterOptimizer:
        params = self.params
        return AffineParameterOptimizer(
            objective=lambda theta: 1.0 - self._ncc(theta, stats),
            lower_bounds=params.get_lower_bounds(),
            upper_bounds=params.get_upper_bounds(),
            max_evaluations=params.max_evaluations,
            number_of_restarts=params.number_of_restarts,
            translation_perturbation=params.translation_perturbation,
            rotation_perturbation=params.rotation_perturbation,
            random_search_samples=params.random_search_samples,
            method=params.optimizer_method,
            rng=self.rng,
        )

    def register(self) -> RegistrationResult:
        """Find, smooth and return the parameters registering the bound volumes.

        Starts from ``params.initial_transformation`` and writes the smoothed
        result back to it as the next frame's warm start. Failures during the
        search are logged and yield the previous parameters instead of raising.

        Raises:
            ValueError: For configuration errors (unbound volumes, invalid parameters)
        """
        self._ensure_bound()
        initial_theta = as_theta(self.params.get_initial_transformation())
        self.smoother.alpha = self.params.smoothing_alpha

        try:
            with debug_timing("registration"):
                stats = self._objective.base_statistics(self._reference, self._moving)
                state: OptimizationState = self.make_optimizer(stats).optimize(initial_theta)
                if not np.isfinite(state.best_score):
                    raise RuntimeError("No objective evaluation succeeded")
                score = 1.0 - state.best_score
                smoothed = self.smoother.peek(state.best_theta)
                smoothed_score = self._ncc(smoothed, stats)
        except Exception:
            logger.warning(
                "Finding an updated volume registration failed, using the last parameters instead",
                exc_info=True,
            )
            return RegistrationResult(
                theta=initial_theta,
                raw_theta=initial_theta.copy(),
                score=float("nan"),
                smoothed_score=float("nan"),
                fallback=True,
            )

        # only an accepted frame enters the smoothing history
        smoothed = self.smoother.update(state.best_theta)
        self.params.set_initial_transformation(smoothed)
        logger.info(
            f"score = {smoothed_score:.6f} for smoothed parameters "
            f"{np.array2string(smoothed, precision=3)} (best {score:.6f})"
        )
        return RegistrationResult(
            theta=smoothed,
            raw_theta=state.best_theta,
            score=score,
            smoothed_score=smoothed_score,
            evaluations=state.evaluations_used,
        )

    def transform(self, destination: DeviceImage, source: DeviceImage, theta: Theta) -> None:
        """Write ``source`` resampled under ``theta`` into ``destination``.

        The transform is built for the extent of the two volumes, which may
        differ from the bound registration volumes.
        """
        check_float_volumes(destination, source)
        if destination.dimensions != source.dimensions:
            raise ValueError(
                f"Destination {destination.dimensions} and source {source.dimensions} volumes "
                "must have the same dimensions"
            )
        self._ensure_bound()
        matrix = self.transform_matrix(theta, destination.dimensions)
        kernel = self._program.kernel("affine_transform")
        kernel.set_arguments(destination, source, self._objective.upload_matrix(matrix))
        kernel.set_global_sizes(*destination.dimensions)
        kernel.set_local_sizes()
        kernel.run(self.params.wait_to_finish)

    def reset_smoothing(self) -> None:
        self.smoother.reset()

    def release(self) -> None:
        """Release all device buffers owned by the engine."""
        if self._reduction is not None:
            self._reduction.release()
        if self._objective is not None:
            self._objective.release()
        self._program = None
        self._reduction = None
        self._objective = None
        self.global_size = None
        self.local_size = None
        self.context.cleanup_memory()

    def __repr__(self) -> str:
        return (
            f"RegistrationEngine(group size = {self._group_size}, global size = {self.global_size}, "
            f"local size = {self.local_size}, buffer sizes = {self.ladder})"
        )


def check_float_volumes(*images: DeviceImage) -> None:
    for image in images:
        if image.released:
            raise ValueError("Volume has been released")
        if image.channel_data_type != ChannelDataType.FLOAT:
            raise ValueError(
                f"Registration volumes must be 32-bit float, got {image.channel_data_type.name}"
            )
