"""
Problem wrapper, iterates and the shared quantities of a nonsmooth solve.

The direction computation never touches user callables directly: it asks an
`Iterate` to evaluate itself, and the iterate caches whatever it obtained
(value, gradient, or the fact that evaluation failed). Every evaluation is
performed at most once per iterate.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np
from scipy.optimize import approx_fprime

from .blocks.aux import _as_float_array, _is_finite
from .blocks.bundle import PointBundle


# =============================================================================
# Problem
# =============================================================================
class Problem:
    """
    Objective f: R^n -> R with an (optional) gradient callable.

    Evaluation never raises: an exception inside a user callable, a non-finite
    value or a wrongly shaped gradient is reported as a failed evaluation.
    Without `grad`, gradients are forward differences (scipy `approx_fprime`).
    """

    def __init__(
        self,
        f: Callable[[np.ndarray], float],
        grad: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        n: Optional[int] = None,
        *,
        fd_epsilon: float = 1.4901161193847656e-08,
    ):
        if n is None or n <= 0:
            raise ValueError(f"Number of variables n must be positive, got {n}")
        if not callable(f):
            raise ValueError("Objective function f must be callable")
        if grad is not None and not callable(grad):
            raise ValueError("Gradient grad must be callable")
        self.n = int(n)
        self.f = f
        self.grad = grad
        self.fd_epsilon = float(fd_epsilon)

    def evaluate_objective(self, x: np.ndarray) -> tuple[bool, float]:
        try:
            fv = float(self.f(x))
        except Exception as e:
            logging.debug(f"[Problem] objective evaluation raised: {e!r}")
            return False, np.inf
        if not np.isfinite(fv):
            logging.debug(f"[Problem] non-finite objective value: {fv}")
            return False, np.inf
        return True, fv

    def evaluate_gradient(self, x: np.ndarray) -> tuple[bool, Optional[np.ndarray]]:
        try:
            if self.grad is not None:
                g = _as_float_array(self.grad(x)).ravel()
            else:
                g = approx_fprime(x, lambda z: float(self.f(z)), self.fd_epsilon)
        except Exception as e:
            logging.debug(f"[Problem] gradient evaluation raised: {e!r}")
            return False, None
        if g.shape != (self.n,) or not _is_finite(g):
            logging.debug(f"[Problem] invalid gradient (shape={g.shape})")
            return False, None
        return True, g


# =============================================================================
# Iterate
# =============================================================================
class Iterate:
    """
    A point x with lazily evaluated, cached objective and gradient.

    `evaluate_*` return True on success. Repeated calls return the cached
    outcome (including a cached failure) without calling the problem again.
    """

    __slots__ = (
        "problem",
        "x",
        "_f",
        "_g",
        "objective_evaluated",
        "gradient_evaluated",
        "objective_ok",
        "gradient_ok",
    )

    def __init__(self, problem: Problem, x):
        self.problem = problem
        self.x = _as_float_array(x).ravel().copy()
        if self.x.size != problem.n:
            raise ValueError(f"Iterate size {self.x.size} does not match n={problem.n}")
        self._f = np.inf
        self._g: Optional[np.ndarray] = None
        self.objective_evaluated = False
        self.gradient_evaluated = False
        self.objective_ok = False
        self.gradient_ok = False

    @property
    def vector(self) -> np.ndarray:
        return self.x

    @property
    def objective(self) -> float:
        return self._f

    @property
    def gradient(self) -> Optional[np.ndarray]:
        return self._g

    def evaluate_objective(self, quantities: Optional["Quantities"] = None) -> bool:
        if not self.objective_evaluated:
            self.objective_evaluated = True
            self.objective_ok, self._f = self.problem.evaluate_objective(self.x)
            if quantities is not None:
                quantities.function_counter += 1
        return self.objective_ok

    def evaluate_gradient(self, quantities: Optional["Quantities"] = None) -> bool:
        if not self.gradient_evaluated:
            self.gradient_evaluated = True
            self.gradient_ok, self._g = self.problem.evaluate_gradient(self.x)
            if quantities is not None:
                quantities.gradient_counter += 1
        return self.gradient_ok

    def evaluate_objective_and_gradient(self, quantities: Optional["Quantities"] = None) -> bool:
        return self.evaluate_objective(quantities) and self.evaluate_gradient(quantities)

    def make_new_linear_combination(self, a: float, b: float, d: np.ndarray) -> "Iterate":
        """Return a fresh iterate at a*x + b*d."""
        return Iterate(self.problem, a * self.x + b * np.asarray(d, float))

    def __repr__(self) -> str:
        return f"Iterate(x={self.x!r}, f={self._f!r})"


# =============================================================================
# Quantities
# =============================================================================
class Quantities:
    """
    State shared between the outer solver and the direction computation:
    current/trial iterates, direction, point bundle, radii, counters and the
    CPU budget.
    """

    def __init__(
        self,
        problem: Problem,
        x0,
        *,
        stationarity_radius: float = 1e-1,
        trust_region_radius: float = 1e0,
        evaluate_function_with_gradient: bool = False,
        cpu_time_limit: float = 1e4,
        start_time: Optional[float] = None,
    ):
        if stationarity_radius <= 0:
            raise ValueError(f"stationarity_radius must be positive, got {stationarity_radius}")
        if trust_region_radius <= 0:
            raise ValueError(f"trust_region_radius must be positive, got {trust_region_radius}")
        if cpu_time_limit < 0:
            raise ValueError(f"cpu_time_limit must be nonnegative, got {cpu_time_limit}")

        self.problem = problem
        self.current_iterate = Iterate(problem, x0)
        self.trial_iterate = self.current_iterate
        self.direction = np.zeros(problem.n)
        self.point_set = PointBundle()

        self.stationarity_radius = float(stationarity_radius)
        self.trust_region_radius = float(trust_region_radius)
        self.evaluate_function_with_gradient = bool(evaluate_function_with_gradient)

        # counters
        self.inner_iteration_counter = 0
        self.qp_iteration_counter = 0
        self.total_inner_iteration_counter = 0
        self.total_qp_iteration_counter = 0
        self.function_counter = 0
        self.gradient_counter = 0

        # timing (CPU seconds, time.process_time)
        self.start_time = time.process_time() if start_time is None else float(start_time)
        self.cpu_time_limit = float(cpu_time_limit)
        self.direction_computation_time = 0.0

    @property
    def number_of_variables(self) -> int:
        return self.problem.n

    # ---------- iterates ----------
    def set_trial_iterate(self, iterate: Iterate) -> None:
        self.trial_iterate = iterate

    def set_trial_iterate_to_current_iterate(self) -> None:
        self.trial_iterate = self.current_iterate

    def make_trial_iterate(self, stepsize: float) -> Iterate:
        """Set and return trial = current + stepsize * direction."""
        self.trial_iterate = self.current_iterate.make_new_linear_combination(
            1.0, stepsize, self.direction
        )
        return self.trial_iterate

    def evaluate_trial_objective(self) -> bool:
        if self.evaluate_function_with_gradient:
            return self.trial_iterate.evaluate_objective_and_gradient(self)
        return self.trial_iterate.evaluate_objective(self)

    # ---------- counters ----------
    def reset_inner_iteration_counter(self) -> None:
        self.inner_iteration_counter = 0

    def reset_qp_iteration_counter(self) -> None:
        self.qp_iteration_counter = 0

    def increment_inner_iteration_counter(self, k: int = 1) -> None:
        self.inner_iteration_counter += int(k)

    def increment_qp_iteration_counter(self, k: int) -> None:
        self.qp_iteration_counter += int(k)

    def increment_total_inner_iteration_counter(self) -> None:
        self.total_inner_iteration_counter += self.inner_iteration_counter

    def increment_total_qp_iteration_counter(self) -> None:
        self.total_qp_iteration_counter += self.qp_iteration_counter

    # ---------- time ----------
    def cpu_time_elapsed(self) -> float:
        return time.process_time() - self.start_time

    def increment_direction_computation_time(self, seconds: float) -> None:
        self.direction_computation_time += float(seconds)
