"""
Cutting-plane QP subproblem and a scipy-backed reference solver.

Given cuts (g_i, b_i), i = 1..m, and a scalar Δ (trust-region radius), the
subproblem is

    minimize_d      max_i ( b_i + g_iᵀ d ) + ½ ||d||₂²
    subject to      ||d||∞ ≤ Δ

Its dual over the unit simplex is

    maximize_ω      bᵀω + ½ ||d(ω)||₂² + (Gω)ᵀ d(ω),     ω ≥ 0,  Σ ω_i = 1
    with            d(ω) = clip(-Gω, -Δ, Δ)

which is concave and differentiable with ∂/∂ω_i = b_i + g_iᵀ d(ω). The dual
multipliers ω are the convex-combination weights used for aggregation, and
d(ω*) is the primal step.

Conventions
-----------
- `set_cuts` replaces the data (cold); `add_cuts` appends to it (incremental).
- `solve` starts from uniform weights; `solve_warm` starts from the previous
  multipliers padded with zeros for cuts appended since that solve.
- `dual_multipliers()` returns a fresh array owned by the caller.
- The inexact tolerance never loosens SLSQP itself. It widens the dual gap that
  still counts as solved after a non-converged exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

import numpy as np
from scipy.optimize import minimize

# -----------------------------------------------------------------------------#
# Defaults
# -----------------------------------------------------------------------------#
QP_TOL_DEFAULT = 1e-12
QP_MAX_ITER_DEFAULT = 500
QP_WEIGHT_FLOOR = 0.0     # multipliers below this are clipped before renormalizing
QP_GAP_ACCEPT = 1e-9      # duality gap that certifies an SLSQP point despite a failed exit
QP_INEXACT_FRACTION = 1e-4  # share of the inexact tolerance allowed as gap on a non-converged exit


class QPStatus(Enum):
    UNSET = "unset"
    SUCCESS = "success"
    ITERATION_LIMIT = "iteration_limit"
    NUMERICAL_FAILURE = "numerical_failure"
    INPUT_ERROR = "input_error"


# =============================================================================
# Collaborator contract
# =============================================================================
class CutQPSolver(Protocol):
    """What the direction computation needs from a QP solver."""

    status: QPStatus
    iterations: int

    def set_scalar(self, scalar: float) -> None: ...
    def set_inexact_solution_tolerance(self, tol: float) -> None: ...
    def set_cuts(self, coefficients: Sequence[np.ndarray], biases: Sequence[float]) -> None: ...
    def add_cuts(self, coefficients: Sequence[np.ndarray], biases: Sequence[float]) -> None: ...
    def solve(self) -> QPStatus: ...
    def solve_warm(self) -> QPStatus: ...
    def set_primal_solution_to_zero(self) -> None: ...
    def primal_solution(self) -> np.ndarray: ...
    def dual_multipliers(self) -> np.ndarray: ...

    @property
    def number_of_cuts(self) -> int: ...
    @property
    def dual_multipliers_length(self) -> int: ...
    @property
    def primal_solution_norm_inf(self) -> float: ...
    @property
    def primal_solution_norm2_squared(self) -> float: ...
    @property
    def dual_objective_quadratic_value(self) -> float: ...
    @property
    def combination_norm2_squared(self) -> float: ...
    @property
    def combination_norm_inf(self) -> float: ...
    @property
    def kkt_error_dual(self) -> float: ...


@dataclass
class QPSettings:
    """Settings for `DualQPSolver` (mapped onto scipy SLSQP options)."""

    eps_abs: float = QP_TOL_DEFAULT
    max_iter: int = QP_MAX_ITER_DEFAULT
    verbose: bool = False


# =============================================================================
# Reference solver: dual over the simplex with SLSQP
# =============================================================================
class DualQPSolver:
    """
    Solves the cutting-plane QP through its simplex-constrained dual.

    Parameters
    ----------
    n : int
        Number of variables (length of every cut coefficient).
    settings : QPSettings, optional
        Tolerance / iteration limit for SLSQP.

    Attributes
    ----------
    status : QPStatus
        Outcome of the last solve.
    iterations : int
        SLSQP iterations of the last solve.
    """

    def __init__(self, n: int, settings: Optional[QPSettings] = None):
        if n <= 0:
            raise ValueError(f"Number of variables n must be positive, got {n}")
        self.n = int(n)
        self.settings = settings or QPSettings()
        self.scalar = np.inf
        self.inexact_tol = 0.0
        self._G = np.zeros((self.n, 0))
        self._b = np.zeros(0)
        self._omega = np.zeros(0)
        self._omega_prev: Optional[np.ndarray] = None
        self._d = np.zeros(self.n)
        self._v = np.zeros(self.n)
        self.status = QPStatus.UNSET
        self.iterations = 0

    # ------------------------------ data ------------------------------
    def set_scalar(self, scalar: float) -> None:
        self.scalar = float(scalar) if scalar is not None and scalar > 0 else np.inf

    def set_inexact_solution_tolerance(self, tol: float) -> None:
        self.inexact_tol = max(0.0, float(tol))

    def _stack(self, coefficients, biases):
        if len(coefficients) != len(biases):
            raise ValueError(
                f"{len(coefficients)} coefficient vectors but {len(biases)} biases"
            )
        if not len(coefficients):
            return np.zeros((self.n, 0)), np.zeros(0)
        G = np.column_stack([np.asarray(g, float).ravel() for g in coefficients])
        if G.shape[0] != self.n:
            raise ValueError(f"Cut coefficients have size {G.shape[0]}, expected {self.n}")
        return G, np.asarray(biases, float).ravel()

    def set_cuts(self, coefficients: Sequence[np.ndarray], biases: Sequence[float]) -> None:
        self._G, self._b = self._stack(coefficients, biases)
        self._omega_prev = None

    def add_cuts(self, coefficients: Sequence[np.ndarray], biases: Sequence[float]) -> None:
        G_new, b_new = self._stack(coefficients, biases)
        self._G = np.hstack([self._G, G_new])
        self._b = np.concatenate([self._b, b_new])
        self._omega_prev = self._omega.copy() if self._omega.size else None

    # ------------------------------ internals ------------------------------
    def _step(self, omega: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        v = self._G @ omega
        return v, np.clip(-v, -self.scalar, self.scalar)

    def _neg_dual(self, omega: np.ndarray) -> float:
        v, d = self._step(omega)
        return -float(self._b @ omega + 0.5 * (d @ d) + v @ d)

    def _neg_dual_grad(self, omega: np.ndarray) -> np.ndarray:
        _, d = self._step(omega)
        return -(self._b + self._G.T @ d)

    def _gap(self, omega: np.ndarray) -> float:
        """Frank-Wolfe gap of the concave dual: max_i grad_i - ω·grad."""
        _, d = self._step(omega)
        vals = self._b + self._G.T @ d
        return float(np.max(vals) - omega @ vals)

    def _gap_tolerance(self) -> float:
        return max(QP_GAP_ACCEPT, QP_INEXACT_FRACTION * self.inexact_tol)

    def _run(self, omega0: np.ndarray) -> QPStatus:
        m = self._b.size
        self.iterations = 0
        if m == 0 or not (np.isfinite(self._G).all() and np.isfinite(self._b).all()):
            self.status = QPStatus.INPUT_ERROR if m == 0 else QPStatus.NUMERICAL_FAILURE
            logging.debug(f"[QP] cannot solve: {self.status.value} ({m} cuts)")
            self._omega = np.zeros(m)
            self._v = np.zeros(self.n)
            self._d = np.zeros(self.n)
            return self.status

        if m == 1:
            omega = np.ones(1)
            status = QPStatus.SUCCESS
        else:
            res = minimize(
                self._neg_dual,
                omega0,
                jac=self._neg_dual_grad,
                method="SLSQP",
                bounds=[(0.0, None)] * m,
                constraints=[{
                    "type": "eq",
                    "fun": lambda w: np.sum(w) - 1.0,
                    "jac": lambda w: np.ones_like(w),
                }],
                options={
                    "ftol": self.settings.eps_abs,
                    "maxiter": self.settings.max_iter,
                    "disp": self.settings.verbose,
                },
            )
            self.iterations = int(getattr(res, "nit", 0))
            omega = np.maximum(np.asarray(res.x, float), QP_WEIGHT_FLOOR)
            total = omega.sum()
            if res.status == 0:
                status = QPStatus.SUCCESS
            elif res.status == 9:
                status = QPStatus.ITERATION_LIMIT
            else:
                status = QPStatus.NUMERICAL_FAILURE
                logging.debug(f"[QP] SLSQP failed: {res.message}")
            if not np.isfinite(total) or total <= 0.0:
                status = QPStatus.NUMERICAL_FAILURE
            else:
                omega = omega / total
                if status is not QPStatus.SUCCESS:
                    gap = self._gap(omega)
                    if gap <= self._gap_tolerance():
                        logging.debug(f"[QP] accepting SLSQP point (exit {res.status}), gap={gap:.2e}")
                        status = QPStatus.SUCCESS

        v, d = self._step(omega)
        if not (np.isfinite(d).all() and np.isfinite(omega).all()):
            status = QPStatus.NUMERICAL_FAILURE
        self._omega, self._v, self._d = omega, v, d
        self.status = status
        return status

    # ------------------------------ solves ------------------------------
    def solve(self) -> QPStatus:
        m = self._b.size
        omega0 = np.full(m, 1.0 / m) if m else np.zeros(0)
        return self._run(omega0)

    def solve_warm(self) -> QPStatus:
        m = self._b.size
        prev = self._omega_prev
        if prev is None or prev.size > m or prev.sum() <= 0.0:
            return self.solve()
        omega0 = np.concatenate([prev, np.zeros(m - prev.size)])
        return self._run(omega0)

    # ------------------------------ results ------------------------------
    def set_primal_solution_to_zero(self) -> None:
        self._d = np.zeros(self.n)

    def primal_solution(self) -> np.ndarray:
        return self._d.copy()

    def dual_multipliers(self) -> np.ndarray:
        return self._omega.copy()

    @property
    def number_of_cuts(self) -> int:
        return int(self._b.size)

    @property
    def dual_multipliers_length(self) -> int:
        return int(self._omega.size)

    @property
    def primal_solution_norm_inf(self) -> float:
        return float(np.linalg.norm(self._d, ord=np.inf)) if self._d.size else 0.0

    @property
    def primal_solution_norm2_squared(self) -> float:
        return float(self._d @ self._d)

    @property
    def dual_objective_quadratic_value(self) -> float:
        return 0.5 * float(self._d @ self._d)

    @property
    def combination_norm2_squared(self) -> float:
        return float(self._v @ self._v)

    @property
    def combination_norm_inf(self) -> float:
        return float(np.linalg.norm(self._v, ord=np.inf)) if self._v.size else 0.0

    @property
    def kkt_error_dual(self) -> float:
        if self._omega.size == 0 or self._omega.size != self._b.size:
            return 0.0
        vals = self._b + self._G.T @ self._d
        return float(np.max(vals) - self._omega @ vals)
