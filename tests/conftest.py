from __future__ import annotations

import numpy as np
import pytest

from nsopt.blocks.qp import DualQPSolver, QPStatus
from nsopt.quantities import Problem, Quantities


def abs_value(x):
    return float(np.abs(x).sum())


def abs_subgradient(x):
    return np.where(np.asarray(x) >= 0, 1.0, -1.0)


class NeverTerminate:
    """Radius check that never fires."""

    def __init__(self):
        self.checks = 0

    def check_conditions_direction_computation(self, quantities, qp):
        self.checks += 1

    def update_radii_direction_computation(self):
        return False

    def iteration_null_values(self):
        return ""


class FlakyQP(DualQPSolver):
    """
    Fails the solves numbered in `fail_on` (cold and warm alike, counted from 1).

    Records the size of every cold load in `loads` and
    (number_of_cuts, dual_multipliers_length) after every solve in `history`.
    """

    def __init__(self, n, fail_on=(1,)):
        super().__init__(n)
        self.fail_on = set(fail_on)
        self.runs = 0
        self.loads = []
        self.history = []

    def set_cuts(self, coefficients, biases):
        self.loads.append(len(biases))
        super().set_cuts(coefficients, biases)

    def _run(self, omega0):
        status = super()._run(omega0)
        self.runs += 1
        if self.runs in self.fail_on:
            self.status = status = QPStatus.NUMERICAL_FAILURE
        self.history.append((self.number_of_cuts, self.dual_multipliers_length))
        return status


@pytest.fixture
def abs_problem():
    return Problem(abs_value, abs_subgradient, n=1)


@pytest.fixture
def make_quantities(abs_problem):
    def _make(x0, radius=1.0, problem=None, trust_region=None, **kw):
        return Quantities(
            problem or abs_problem,
            np.atleast_1d(np.asarray(x0, dtype=float)),
            stationarity_radius=radius,
            trust_region_radius=radius if trust_region is None else trust_region,
            **kw,
        )

    return _make
