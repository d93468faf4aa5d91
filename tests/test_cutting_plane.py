from __future__ import annotations

import logging

import numpy as np
import pytest

import nsopt.cutting_plane as cutting_plane
from nsopt.blocks.aux import CuttingPlaneConfig
from nsopt.blocks.qp import DualQPSolver
from nsopt.blocks.report import Reporter
from nsopt.blocks.termination import RadiusTermination
from nsopt.cutting_plane import CpuTimeLimitError, CuttingPlaneDirection, DirectionStatus
from nsopt.quantities import Iterate, Problem, Quantities

from conftest import FlakyQP, NeverTerminate, abs_subgradient, abs_value


def _direction(qp=None, termination=None, **cfg):
    cfg.setdefault("try_gradient_step", False)
    cfg.setdefault("try_shortened_step", False)
    return CuttingPlaneDirection(
        CuttingPlaneConfig(**cfg),
        qp=qp,
        termination=termination or RadiusTermination(stationarity_tolerance_factor=0.0),
        reporter=Reporter(),
    )


def _add_point(q, x):
    it = Iterate(q.problem, np.atleast_1d(np.asarray(x, dtype=float)))
    return q.point_set.append(it)


# -----------------------------------------------------------------------------#
# Basic outcomes
# -----------------------------------------------------------------------------#
def test_full_step_accepted_immediately(make_quantities) -> None:
    q = make_quantities(1.0, radius=2.0)
    d = _direction()
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.status is DirectionStatus.SUCCESS
    assert d.solves == 1
    np.testing.assert_allclose(q.direction, [-1.0])
    np.testing.assert_allclose(q.trial_iterate.vector, [0.0])
    assert q.inner_iteration_counter == 1
    assert q.total_inner_iteration_counter == 1
    assert q.direction_computation_time >= 0.0


def test_rejected_step_adds_cut_and_warm_resolves(make_quantities) -> None:
    q = make_quantities(0.01)
    d = _direction()
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.solves == 2
    assert len(q.point_set) == 1
    np.testing.assert_allclose(q.point_set[0].vector, [-0.99])
    # second cut: linearization -0.01 beats downshifted 0.0
    assert d.full_cuts[1].bias == pytest.approx(-0.01)
    assert len(d.active_cuts) == d.qp.number_of_cuts == 2
    assert q.direction[0] == pytest.approx(-0.01, abs=1e-5)
    np.testing.assert_allclose(d.qp.dual_multipliers(), [0.505, 0.495], atol=1e-4)
    assert q.trial_iterate.objective < q.current_iterate.objective


def test_shortened_step_accepted(make_quantities) -> None:
    q = make_quantities(0.01)
    d = _direction(try_shortened_step=True)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.solves == 1
    np.testing.assert_allclose(q.trial_iterate.vector, [0.0], atol=1e-15)
    # the rejected full step was still sampled
    assert len(q.point_set) == 1


def test_gradient_step_accepted(make_quantities) -> None:
    q = make_quantities(1.0, radius=2.0)
    d = _direction(try_gradient_step=True)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.solves == 1
    assert d.qp.number_of_cuts == 1
    np.testing.assert_allclose(q.direction, [-1.0])
    np.testing.assert_allclose(q.trial_iterate.vector, [0.9999])


def test_nearby_bundle_points_enter_the_full_cut_set(make_quantities) -> None:
    q = make_quantities(1.0)
    _add_point(q, 1.5)
    _add_point(q, 5.0)
    d = _direction()
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert len(d.full_cuts) == 2
    assert d.full_cuts[1].index == 0
    assert d.full_cuts[1].bias == pytest.approx(0.9975)
    # far point never evaluated
    assert not q.point_set[1].objective_evaluated


# -----------------------------------------------------------------------------#
# Limits
# -----------------------------------------------------------------------------#
def test_iteration_limit(make_quantities) -> None:
    q = make_quantities(0.01)
    d = _direction(inner_iteration_limit=0, fail_on_iteration_limit=True)
    assert d.compute_direction(q) is DirectionStatus.ITERATION_LIMIT
    assert d.solves == 1


def test_iteration_limit_is_success_by_default(make_quantities) -> None:
    q = make_quantities(0.01)
    d = _direction(inner_iteration_limit=0)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.solves == 1
    np.testing.assert_allclose(q.direction, [-1.0])


def test_cpu_time_limit_raises_after_setting_status(make_quantities) -> None:
    q = make_quantities(0.01, cpu_time_limit=0.0)
    d = _direction()
    with pytest.raises(CpuTimeLimitError):
        d.compute_direction(q)
    assert d.status is DirectionStatus.CPU_TIME_LIMIT
    assert q.total_inner_iteration_counter == 1


# -----------------------------------------------------------------------------#
# Evaluation failures
# -----------------------------------------------------------------------------#
def test_current_iterate_failure() -> None:
    prob = Problem(lambda x: np.inf, abs_subgradient, n=1)
    q = Quantities(prob, [1.0])
    d = _direction()
    assert d.compute_direction(q) is DirectionStatus.EVALUATION_FAILURE
    assert d.solves == 0


def test_first_trial_failure_is_fatal(make_quantities) -> None:
    def f(x):
        if x[0] < 0.5:
            raise FloatingPointError("outside domain")
        return abs_value(x)

    q = make_quantities(1.0, radius=2.0, problem=Problem(f, abs_subgradient, n=1))
    d = _direction()
    assert d.compute_direction(q) is DirectionStatus.EVALUATION_FAILURE
    assert d.solves == 1


def test_later_trial_failure_only_blocks_acceptance(make_quantities) -> None:
    def f(x):
        if abs(x[0]) < 1e-3:
            return np.nan
        return abs_value(x)

    q = make_quantities(0.01, problem=Problem(f, abs_subgradient, n=1))
    d = _direction(inner_iteration_limit=3)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert q.inner_iteration_counter > 3


# -----------------------------------------------------------------------------#
# QP failures
# -----------------------------------------------------------------------------#
def test_qp_failure_falls_back_to_gradient_cut(make_quantities) -> None:
    q = make_quantities(1.0)
    _add_point(q, 1.5)
    qp = FlakyQP(1)
    d = _direction(qp=qp)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert qp.loads == [2, 1]
    assert len(d.full_cuts) == 1
    np.testing.assert_allclose(q.direction, [-1.0])


def test_qp_failure_is_fatal_when_requested(make_quantities) -> None:
    q = make_quantities(1.0)
    _add_point(q, 1.5)
    qp = FlakyQP(1)
    d = _direction(qp=qp, fail_on_qp_failure=True)
    assert d.compute_direction(q) is DirectionStatus.QP_FAILURE
    assert qp.loads == [2]


def _snapshot_resolves(d):
    """Record (full, aggregated, active, QP) cut counts after every resolve."""
    snaps = []
    resolve = d._resolve

    def wrapped(quantities, qp, new_cuts, aggregating):
        out = resolve(quantities, qp, new_cuts, aggregating)
        snaps.append((len(d.full_cuts), len(d.aggregated_cuts), len(d.active_cuts), qp.number_of_cuts))
        return out

    d._resolve = wrapped
    return snaps


def test_warm_resolve_failure_falls_back(make_quantities) -> None:
    q = make_quantities(0.0)
    qp = FlakyQP(1, fail_on=(3,))
    d = _direction(qp=qp, termination=NeverTerminate(), inner_iteration_limit=6)
    snaps = _snapshot_resolves(d)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert qp.history == [(1, 1), (2, 2), (3, 3), (1, 1), (2, 2), (3, 3), (4, 4)]
    assert qp.loads == [1, 1]
    # the failed second resolve leaves only the gradient cut everywhere
    assert snaps[1] == (1, 1, 1, 1)
    assert all(active == in_qp for _, _, active, in_qp in snaps)


def test_aggregated_resolve_failure_falls_back(make_quantities) -> None:
    q = make_quantities(0.0)
    qp = FlakyQP(1, fail_on=(3,))
    d = _direction(qp=qp, termination=NeverTerminate(), try_aggregation=True, inner_iteration_limit=6)
    snaps = _snapshot_resolves(d)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert qp.history[:4] == [(1, 1), (3, 3), (3, 3), (1, 1)]
    assert snaps[1] == (1, 1, 1, 1)
    assert all(active == in_qp for _, _, active, in_qp in snaps)
    assert all(cuts == duals for cuts, duals in qp.history)
    assert not d.switched_to_full


def test_resolve_failure_is_fatal_when_requested(make_quantities) -> None:
    q = make_quantities(0.0)
    qp = FlakyQP(1, fail_on=(3,))
    d = _direction(
        qp=qp, termination=NeverTerminate(), inner_iteration_limit=6, fail_on_qp_failure=True
    )
    assert d.compute_direction(q) is DirectionStatus.QP_FAILURE
    assert qp.runs == d.solves == 3
    assert qp.loads == [1]


# -----------------------------------------------------------------------------#
# Cut / multiplier correspondence and step conversion
# -----------------------------------------------------------------------------#
@pytest.mark.parametrize(
    "options",
    [
        {},
        {"try_aggregation": True},
        {"try_aggregation": True, "aggregation_size_threshold": 2.0},
        {"add_far_points": True, "try_shortened_step": True},
    ],
)
def test_every_solve_has_one_multiplier_per_cut(make_quantities, options) -> None:
    q = make_quantities(0.0, radius=0.5, trust_region=5.0)
    qp = FlakyQP(1, fail_on=())
    d = _direction(qp=qp, termination=NeverTerminate(), inner_iteration_limit=5, **options)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert len(qp.history) == d.solves
    assert all(cuts == duals for cuts, duals in qp.history)
    assert len(d.active_cuts) == qp.number_of_cuts


def test_conversion_is_idempotent(make_quantities) -> None:
    q = make_quantities(0.01)
    d = _direction()
    d.compute_direction(q)
    direction = q.direction.copy()
    trial = q.trial_iterate.vector.copy()
    for _ in range(2):
        d.convert_qp_solution_to_step(q, d.qp)
        np.testing.assert_array_equal(q.direction, direction)
        np.testing.assert_array_equal(q.trial_iterate.vector, trial)


# -----------------------------------------------------------------------------#
# New cuts beyond the radius
# -----------------------------------------------------------------------------#
@pytest.mark.parametrize("add_far_points, bundle", [(False, []), (True, [-1.0])])
def test_far_points_sampled_only_when_enabled(make_quantities, add_far_points, bundle) -> None:
    # full step -1 lies outside the stationarity radius 0.5
    q = make_quantities(0.0, radius=0.5, trust_region=5.0)
    d = _direction(termination=NeverTerminate(), add_far_points=add_far_points, inner_iteration_limit=1)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert [p.vector[0] for p in q.point_set] == bundle
    assert len(d.full_cuts) == 1 + len(bundle)


def test_rejected_shortened_step_becomes_a_cut(make_quantities) -> None:
    q = make_quantities(0.0, radius=0.5, trust_region=5.0)
    d = _direction(termination=NeverTerminate(), try_shortened_step=True, inner_iteration_limit=1)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    np.testing.assert_allclose([p.vector[0] for p in q.point_set], [-0.005])
    assert len(d.full_cuts) == 2
    assert d.full_cuts[1].index == 0
    # linearization 0 vs downshifted -0.01 * 0.005^2
    assert d.full_cuts[1].bias == pytest.approx(-2.5e-7)


def test_far_point_and_shortened_step_both_kept(make_quantities) -> None:
    q = make_quantities(0.0, radius=0.5, trust_region=5.0)
    d = _direction(
        termination=NeverTerminate(),
        add_far_points=True,
        try_shortened_step=True,
        inner_iteration_limit=1,
    )
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    np.testing.assert_allclose([p.vector[0] for p in q.point_set], [-1.0, -0.005])
    assert [c.index for c in d.full_cuts] == [None, 0, 1]
    assert d.full_cuts[1].bias == pytest.approx(-0.01)


# -----------------------------------------------------------------------------#
# Aggregation
# -----------------------------------------------------------------------------#
def _spy_aggregation(monkeypatch):
    sizes = []
    real = cutting_plane.aggregate_cuts

    def spy(cuts, omega, bundle, current):
        out = real(cuts, omega, bundle, current)
        sizes.append(len(out))
        return out

    monkeypatch.setattr(cutting_plane, "aggregate_cuts", spy)
    return sizes


def test_aggregation_keeps_two_cuts_plus_new(make_quantities, monkeypatch) -> None:
    sizes = _spy_aggregation(monkeypatch)
    q = make_quantities(0.0)
    d = _direction(termination=NeverTerminate(), try_aggregation=True, inner_iteration_limit=5)
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert sizes == [2] * 5
    assert not d.switched_to_full
    assert len(q.point_set) == 5
    assert len(d.full_cuts) == 6
    assert len(d.active_cuts) == d.qp.number_of_cuts == 3


def test_aggregation_switches_to_full_set(make_quantities, monkeypatch) -> None:
    sizes = _spy_aggregation(monkeypatch)
    q = make_quantities(0.0)
    d = _direction(
        termination=NeverTerminate(),
        try_aggregation=True,
        aggregation_size_threshold=2.0,
        inner_iteration_limit=5,
    )
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert d.switched_to_full
    assert sizes == [2, 2]
    assert d.active_cuts is d.full_cuts
    assert len(d.active_cuts) == d.qp.number_of_cuts


# -----------------------------------------------------------------------------#
# Radius update and reuse
# -----------------------------------------------------------------------------#
def test_radius_update_accepts_and_shrinks_radii(make_quantities) -> None:
    # cuts on both sides of the kink nearly cancel
    q = make_quantities(0.0)
    _add_point(q, -0.5)
    d = CuttingPlaneDirection(
        CuttingPlaneConfig(try_gradient_step=False, try_shortened_step=False),
        termination=RadiusTermination(),
        reporter=Reporter(),
    )
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    assert q.stationarity_radius == pytest.approx(0.1)
    assert q.trust_region_radius == pytest.approx(0.1)


def test_repeated_calls_reuse_cached_evaluations(make_quantities) -> None:
    q = make_quantities(1.0, radius=2.0)
    d = _direction()
    d.compute_direction(q)
    evaluations = q.function_counter
    assert d.compute_direction(q) is DirectionStatus.SUCCESS
    # only the new trial point is evaluated
    assert q.function_counter == evaluations + 1
    assert q.total_inner_iteration_counter == 2
    np.testing.assert_allclose(q.direction, [-1.0])


def test_qp_created_for_problem_size(make_quantities) -> None:
    d = _direction(qp=DualQPSolver(3))
    d.compute_direction(make_quantities(1.0, radius=2.0))
    assert d.qp.n == 1


# -----------------------------------------------------------------------------#
# Reporting
# -----------------------------------------------------------------------------#
def test_report_lines(make_quantities, caplog) -> None:
    q = make_quantities(0.01)
    d = _direction()
    with caplog.at_level(logging.DEBUG, logger="nsopt"):
        d.compute_direction(q)
    assert len(d.reporter.lines) == 2
    assert d.reporter.pending == 0
    inner, last = (line.split() for line in d.reporter.lines)
    assert inner[:4] == ["1", "1", "0", "0"]
    assert last[0] == "2" and last[1] == "2" and last[3] == "0"
    assert any(r.levelno == logging.INFO for r in caplog.records if r.name == "nsopt")


def test_header_and_null_values_line_up() -> None:
    header = CuttingPlaneDirection.iteration_header()
    blank = CuttingPlaneDirection.iteration_null_values()
    assert len(header.split()) > 0
    assert len(blank.split()) == 7
