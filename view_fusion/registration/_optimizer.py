"""Bounded derivative-free search over the six affine parameters.

The search minimizes ``1 - NCC`` with a trust-region quadratic-model optimizer
(scipy's COBYQA by default) under box constraints. Every run is budgeted in
objective evaluations. The budget is enforced here rather than by the
optimizer, and the best point seen so far is tracked for every run, so a run
that hits its budget still produces a usable result.

Multiple restarts are supported: restarts after the first begin at the best of
a few random perturbations of the initial parameters.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np
from scipy.optimize import Bounds, minimize

from ._typing_utils import NUM_PARAMETERS, FloatArray, Theta, as_theta

logger = logging.getLogger(__name__)

# Number of random candidates tried when choosing a restart's starting point
RANDOM_SEARCH_SAMPLES = 30
DEFAULT_METHOD = "COBYQA"
SUPPORTED_METHODS = ("COBYQA", "Powell")

Objective = Callable[[FloatArray], float]


class EvaluationBudgetExhausted(Exception):
    """Raised by a budgeted objective once its evaluation budget is used up."""


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of one bounded optimization run.

    Attributes:
        best_point: Best parameters evaluated during the run
        best_value: Objective value at ``best_point``
        evaluations_used: Number of objective evaluations performed
        converged: True if the optimizer stopped on its own criteria, False if
            the evaluation budget ran out first
    """

    best_point: FloatArray
    best_value: float
    evaluations_used: int
    converged: bool


@dataclass
class OptimizationState:
    """Incumbent parameters over all restarts of one registration."""

    best_theta: FloatArray
    best_score: float
    runs: List[OptimizationResult] = field(default_factory=list)
    failed_runs: int = 0

    def offer(self, theta: FloatArray, score: float) -> bool:
        """Replace the incumbent if ``score`` improves on it."""
        if score < self.best_score:
            self.best_theta = np.array(theta, dtype=np.float64)
            self.best_score = float(score)
            return True
        return False

    @property
    def evaluations_used(self) -> int:
        return sum(run.evaluations_used for run in self.runs)


class _BudgetedObjective:
    """Counts evaluations, enforces the budget and remembers the best point."""

    def __init__(self, func: Objective, max_evaluations: int):
        self.func = func
        self.max_evaluations = max_evaluations
        self.evaluations = 0
        self.best_point: Optional[FloatArray] = None
        self.best_value = np.inf

    def __call__(self, x: np.ndarray) -> float:
        if self.evaluations >= self.max_evaluations:
            raise EvaluationBudgetExhausted(
                f"Objective evaluation budget of {self.max_evaluations} exhausted"
            )
        self.evaluations += 1
        x = np.array(x, dtype=np.float64)
        value = float(self.func(x))
        if self.best_point is None or value < self.best_value:
            self.best_point = x
            self.best_value = value
        return value


def minimize_bounded(
    func: Objective,
    x0: Theta,
    lower: FloatArray,
    upper: FloatArray,
    max_evaluations: int,
    method: str = DEFAULT_METHOD,
) -> OptimizationResult:
    """Minimize ``func`` within ``[lower, upper]`` using at most ``max_evaluations`` calls.

    Args:
        func: Objective function to minimize
        x0: Starting point, clamped to the bounds
        lower: Lower bounds
        upper: Upper bounds
        max_evaluations: Evaluation budget (at least 1)
        method: scipy.optimize.minimize method ('COBYQA' or 'Powell')

    Returns:
        OptimizationResult with the best evaluated point, even if the budget ran out

    Raises:
        ValueError: If inputs are invalid
    """
    if max_evaluations < 1:
        raise ValueError(f"max_evaluations must be at least 1, got {max_evaluations}")
    if method not in SUPPORTED_METHODS:
        raise ValueError(f"Unsupported optimizer method '{method}'. Choose from {SUPPORTED_METHODS}")
    lower = np.asarray(lower, dtype=np.float64)
    upper = np.asarray(upper, dtype=np.float64)
    x0 = np.clip(np.asarray(x0, dtype=np.float64), lower, upper)

    objective = _BudgetedObjective(func, max_evaluations)
    converged = False
    try:
        result = minimize(
            objective,
            x0,
            method=method,
            bounds=Bounds(lower, upper),
            # COBYQA needs room for its initial interpolation set; the budget is
            # enforced by the wrapper
            options={"maxfev": max(max_evaluations, 2 * x0.size + 2)},
        )
        converged = bool(result.success)
        logger.debug(f"{method} stopped after {objective.evaluations} evaluations: {result.message}")
    except EvaluationBudgetExhausted:
        logger.debug(f"{method} used its budget of {max_evaluations} evaluations")

    return OptimizationResult(
        best_point=objective.best_point,
        best_value=objective.best_value,
        evaluations_used=objective.evaluations,
        converged=converged,
    )


class AffineParameterOptimizer:
    """Multi-start bounded search for the six affine registration parameters."""

    def __init__(
        self,
        objective: Objective,
        lower_bounds: Theta,
        upper_bounds: Theta,
        max_evaluations: int,
        number_of_restarts: int = 0,
        translation_perturbation: float = 5.0,
        rotation_perturbation: float = 2.0,
        random_search_samples: int = RANDOM_SEARCH_SAMPLES,
        method: str = DEFAULT_METHOD,
        rng: Optional[np.random.Generator] = None,
    ):
        self.objective = objective
        self.lower_bounds = as_theta(lower_bounds)
        self.upper_bounds = as_theta(upper_bounds)
        if np.any(self.lower_bounds > self.upper_bounds):
            raise ValueError(
                f"Lower bounds {self.lower_bounds} exceed upper bounds {self.upper_bounds}"
            )
        if number_of_restarts < 0:
            raise ValueError(f"number_of_restarts must be non-negative, got {number_of_restarts}")
        self.max_evaluations = max_evaluations
        self.number_of_restarts = number_of_restarts
        self.perturbation_radius = np.array(
            [translation_perturbation] * 3 + [rotation_perturbation] * 3, dtype=np.float64
        )
        self.random_search_samples = random_search_samples
        self.method = method
        self.rng = rng if rng is not None else np.random.default_rng()

    def clamp(self, theta: Theta) -> FloatArray:
        return np.clip(as_theta(theta), self.lower_bounds, self.upper_bounds)

    def perturb(self, theta: Theta) -> FloatArray:
        """Uniformly perturb ``theta`` within the per-parameter radius, clamped to the bounds."""
        offset = self.rng.uniform(-1.0, 1.0, size=NUM_PARAMETERS) * self.perturbation_radius
        return self.clamp(as_theta(theta) + offset)

    def random_search(self, theta: Theta, num_samples: int) -> FloatArray:
        """Best of ``num_samples`` perturbations of ``theta``."""
        best_theta = as_theta(theta)
        best_score = np.inf
        for _ in range(num_samples):
            candidate = self.perturb(theta)
            score = self.objective(candidate)
            if score < best_score:
                best_theta = candidate
                best_score = score
        return best_theta

    def optimize(self, initial_theta: Theta) -> OptimizationState:
        """Search for the parameters minimizing the objective.

        Never raises for failures during the search: a failed restart is
        logged and skipped, and the initial parameters are returned if nothing
        better was found.
        """
        initial_theta = self.clamp(initial_theta)
        try:
            initial_score = float(self.objective(initial_theta))
        except Exception:
            logger.warning("Evaluating the initial parameters failed", exc_info=True)
            initial_score = np.inf
        state = OptimizationState(best_theta=initial_theta.copy(), best_score=initial_score)

        for i in range(1 + self.number_of_restarts):
            try:
                if i == 0:
                    start = initial_theta
                else:
                    start = self.random_search(initial_theta, self.random_search_samples)
                run = minimize_bounded(
                    self.objective,
                    start,
                    self.lower_bounds,
                    self.upper_bounds,
                    self.max_evaluations,
                    self.method,
                )
            except Exception:
                state.failed_runs += 1
                logger.warning(f"Optimization run {i + 1} failed, keeping best result so far", exc_info=True)
                continue

            state.runs.append(run)
            improved = state.offer(run.best_point, run.best_value)
            logger.info(
                f"run {i + 1} - {run.best_value:.6f}: {np.array2string(run.best_point, precision=3)}, "
                f"evaluations = {run.evaluations_used}{'' if run.converged else ' (budget exhausted)'}"
                f"{' *' if improved else ''}"
            )

        logger.info(f"best = {state.best_score:.6f}: {np.array2string(state.best_theta, precision=3)}")
        return state
