# Cutting-plane direction computation for nonsmooth, nonconvex minimization.
# - Cuts from nearby bundle points, downshifted around the current iterate
# - Optional gradient step before the full subproblem
# - Inner loop: evaluate trial, accept / limits, new cuts, (aggregated|full) resolve
# - Warm resolves with incremental cuts; single-gradient-cut fallback on QP failure
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import List, Optional

from .blocks.aux import CuttingPlaneConfig
from .blocks.bundle import (
    Cut,
    CutCollection,
    PointBundle,
    aggregate_cuts,
    bundle_cut,
)
from .blocks.qp import CutQPSolver, DualQPSolver, QPStatus
from .blocks.report import Reporter, ReportKind
from .blocks.termination import RadiusTermination
from .quantities import Quantities


class DirectionStatus(Enum):
    UNSET = "unset"
    SUCCESS = "success"
    CPU_TIME_LIMIT = "cpu_time_limit"
    EVALUATION_FAILURE = "evaluation_failure"
    ITERATION_LIMIT = "iteration_limit"
    QP_FAILURE = "qp_failure"


class CpuTimeLimitError(RuntimeError):
    """CPU time limit reached during the direction computation."""


_QP_STATUS_CODE = {
    QPStatus.UNSET: -1,
    QPStatus.SUCCESS: 0,
    QPStatus.ITERATION_LIMIT: 1,
    QPStatus.NUMERICAL_FAILURE: 2,
    QPStatus.INPUT_ERROR: 3,
}

_LINE_FMT = " %8d %8d %8d %2d %+.2e %+.2e %+.2e"


# =============================================================================
# Direction computation
# =============================================================================
class CuttingPlaneDirection:
    """
    Computes a search direction by repeatedly solving cutting-plane QPs.

    Collaborators
    -------------
    qp : CutQPSolver
        Subproblem solver. Defaults to a `DualQPSolver` sized on first use.
    termination : RadiusTermination
        Radius-update check; a positive check accepts the current trial.
    reporter : Reporter
        Buffered progress output.

    After `compute_direction`, `quantities.direction` and
    `quantities.trial_iterate` hold the last computed step whatever the
    outcome; check `status` before trusting them.
    """

    def __init__(
        self,
        cfg: Optional[CuttingPlaneConfig] = None,
        qp: Optional[CutQPSolver] = None,
        termination: Optional[RadiusTermination] = None,
        reporter: Optional[Reporter] = None,
    ):
        self.cfg = cfg if cfg is not None else CuttingPlaneConfig()
        self.qp = qp
        self.termination = termination if termination is not None else RadiusTermination()
        self.reporter = reporter if reporter is not None else Reporter()
        self.status = DirectionStatus.UNSET

        # per-call state (kept for inspection)
        self.full_cuts = CutCollection()
        self.aggregated_cuts = CutCollection()
        self.active_cuts = CutCollection()
        self.switched_to_full = False
        self.solves = 0

    # ------------------------------------------------------------------ #
    # Report strings
    # ------------------------------------------------------------------ #
    @staticmethod
    def iteration_header() -> str:
        return "In. Its.  QP Pts.  QP Its. QP   QP KKT    |Step|   |Step|_H"

    @staticmethod
    def iteration_null_values() -> str:
        return "-------- -------- -------- -- --------- --------- ---------"

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def compute_direction(self, quantities: Quantities) -> DirectionStatus:
        """
        Run the direction computation and return its status.

        Raises
        ------
        CpuTimeLimitError
            If the CPU budget in `quantities` ran out (status is set first).
        """
        self.status = DirectionStatus.UNSET
        qp = self._qp_for(quantities)
        qp.set_primal_solution_to_zero()
        quantities.reset_inner_iteration_counter()
        quantities.reset_qp_iteration_counter()
        quantities.set_trial_iterate_to_current_iterate()
        self.full_cuts = CutCollection()
        self.aggregated_cuts = CutCollection()
        self.active_cuts = CutCollection()
        self.switched_to_full = False
        self.solves = 0
        start_time = time.process_time()

        status = self._run(quantities, qp)
        if status is DirectionStatus.UNSET:
            raise RuntimeError("direction computation ended without a status")
        self.status = status

        self.reporter.report(ReportKind.PER_ITERATION, _LINE_FMT, *self._line_values(quantities, qp))
        self.reporter.flush_buffer()
        quantities.increment_total_inner_iteration_counter()
        quantities.increment_total_qp_iteration_counter()
        quantities.increment_direction_computation_time(time.process_time() - start_time)
        logging.debug(
            f"[CuttingPlane] status={status.value}, inner its={quantities.inner_iteration_counter}, "
            f"QP its={quantities.qp_iteration_counter}, solves={self.solves}, bundle={len(quantities.point_set)}"
        )

        if status is DirectionStatus.CPU_TIME_LIMIT:
            raise CpuTimeLimitError("CPU time limit has been reached.")
        return status

    def convert_qp_solution_to_step(self, quantities: Quantities, qp: CutQPSolver) -> None:
        """Update counters, copy the QP primal solution into the direction, set trial = x + d."""
        quantities.increment_qp_iteration_counter(qp.iterations)
        quantities.increment_inner_iteration_counter(1)
        quantities.direction[:] = qp.primal_solution()
        quantities.make_trial_iterate(1.0)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _qp_for(self, quantities: Quantities) -> CutQPSolver:
        n = quantities.number_of_variables
        if self.qp is None or getattr(self.qp, "n", n) != n:
            self.qp = DualQPSolver(n)
        return self.qp

    def _line_values(self, quantities: Quantities, qp: CutQPSolver):
        return (
            quantities.inner_iteration_counter,
            qp.number_of_cuts,
            quantities.qp_iteration_counter,
            _QP_STATUS_CODE.get(qp.status, -1),
            qp.kkt_error_dual,
            qp.primal_solution_norm_inf,
            qp.dual_objective_quadratic_value,
        )

    def _load(self, qp: CutQPSolver, cuts: CutCollection, bundle: PointBundle) -> None:
        qp.set_cuts(cuts.coefficients(bundle), cuts.biases())
        self.active_cuts = cuts

    def _solve(self, qp: CutQPSolver, quantities: Quantities, *, warm: bool = False) -> QPStatus:
        status = qp.solve_warm() if warm else qp.solve()
        self.solves += 1
        self.convert_qp_solution_to_step(quantities, qp)
        return status

    def _fallback(self, qp: CutQPSolver, quantities: Quantities) -> CutCollection:
        """Cold-solve the single current-gradient cut subproblem."""
        logging.debug(f"[CuttingPlane] QP status {qp.status.value}; falling back to gradient cut")
        single = CutCollection.from_iterate(quantities.current_iterate)
        self._load(qp, single, quantities.point_set)
        if self._solve(qp, quantities) != QPStatus.SUCCESS:
            logging.warning(f"[CuttingPlane] gradient-cut fallback QP also failed ({qp.status.value})")
        return single

    def _sufficient_decrease(self, quantities: Quantities, qp: CutQPSolver, stepsize: float = 1.0) -> bool:
        model_decrease = min(
            qp.dual_objective_quadratic_value,
            max(qp.combination_norm2_squared, qp.primal_solution_norm2_squared),
        )
        actual = quantities.trial_iterate.objective - quantities.current_iterate.objective
        return actual < -self.cfg.step_acceptance_tolerance * stepsize * model_decrease

    def _accept(self, quantities: Quantities, qp: CutQPSolver, evaluated: bool, stepsize: float = 1.0) -> bool:
        self.termination.check_conditions_direction_computation(quantities, qp)
        if evaluated and self._sufficient_decrease(quantities, qp, stepsize):
            return True
        return self.termination.update_radii_direction_computation()

    def _trial_cut(self, quantities: Quantities, evaluated: bool) -> Optional[Cut]:
        """Add the (objective-evaluated) trial iterate to the bundle and build its cut."""
        if not evaluated:
            return None
        trial = quantities.trial_iterate
        if not trial.evaluate_gradient(quantities):
            return None
        bundle = quantities.point_set
        index = bundle.append(trial)
        return bundle_cut(bundle, index, quantities.current_iterate, self.cfg.downshift_constant)

    # ------------------------------------------------------------------ #
    # Phases
    # ------------------------------------------------------------------ #
    def _run(self, quantities: Quantities, qp: CutQPSolver) -> DirectionStatus:
        cfg = self.cfg
        current = quantities.current_iterate
        bundle = quantities.point_set

        if not current.evaluate_objective_and_gradient(quantities):
            logging.debug("[CuttingPlane] evaluation failed at current iterate")
            return DirectionStatus.EVALUATION_FAILURE

        qp.set_scalar(quantities.trust_region_radius)
        qp.set_inexact_solution_tolerance(quantities.stationarity_radius)

        # ---- gradient step ----
        if cfg.try_gradient_step:
            status = self._gradient_step(quantities, qp)
            if status is not None:
                return status

        # ---- full cut set ----
        status = self._full_cut_set(quantities, qp)
        if status is not None:
            return status

        # ---- inner loop ----
        self.aggregated_cuts = self.full_cuts.copy()
        first_round = True
        while True:
            self.reporter.flush_buffer()
            evaluated = quantities.evaluate_trial_objective()
            if not evaluated and first_round:
                logging.debug("[CuttingPlane] evaluation failed at first trial iterate")
                return DirectionStatus.EVALUATION_FAILURE
            first_round = False

            status = self._check_acceptance_and_limits(quantities, qp, evaluated)
            if status is not None:
                return status

            aggregating = cfg.try_aggregation and not self.switched_to_full
            if aggregating:
                self.aggregated_cuts = aggregate_cuts(
                    self.aggregated_cuts, qp.dual_multipliers(), bundle, current
                )

            new_cuts: List[Cut] = []
            if cfg.add_far_points or qp.primal_solution_norm_inf <= quantities.stationarity_radius:
                cut = self._trial_cut(quantities, evaluated)
                if cut is not None:
                    new_cuts.append(cut)

            if cfg.try_shortened_step:
                accepted, cut = self._shortened_step(quantities, qp)
                if accepted:
                    return DirectionStatus.SUCCESS
                if cut is not None:
                    new_cuts.append(cut)

            self.full_cuts.extend(new_cuts)
            if aggregating:
                self.aggregated_cuts.extend(new_cuts)

            self.reporter.report(ReportKind.PER_INNER_ITERATION, _LINE_FMT, *self._line_values(quantities, qp))
            blank = self.termination.iteration_null_values()
            if blank:
                self.reporter.report(ReportKind.PER_INNER_ITERATION, " %s", blank)

            status = self._resolve(quantities, qp, new_cuts, aggregating)
            if status is not None:
                return status

    def _gradient_step(self, quantities: Quantities, qp: CutQPSolver) -> Optional[DirectionStatus]:
        """Single-cut solve and a tiny step along it; success if already acceptable."""
        single = CutCollection.from_iterate(quantities.current_iterate)
        self._load(qp, single, quantities.point_set)
        self._solve(qp, quantities)
        quantities.make_trial_iterate(self.cfg.gradient_stepsize)
        evaluated = quantities.evaluate_trial_objective()
        if self._accept(quantities, qp, evaluated, self.cfg.gradient_stepsize):
            logging.debug("[CuttingPlane] gradient step accepted")
            return DirectionStatus.SUCCESS
        return None

    def _full_cut_set(self, quantities: Quantities, qp: CutQPSolver) -> Optional[DirectionStatus]:
        current = quantities.current_iterate
        bundle = quantities.point_set
        cuts = CutCollection.from_iterate(current)
        for i in bundle.near(current.vector, quantities.stationarity_radius):
            if bundle[i].evaluate_objective_and_gradient(quantities):
                cuts.append(bundle_cut(bundle, i, current, self.cfg.downshift_constant))
        logging.debug(f"[CuttingPlane] full cut set: {len(cuts)} cuts from {len(bundle)} points")

        self.full_cuts = cuts
        self._load(qp, cuts, bundle)
        if self._solve(qp, quantities) != QPStatus.SUCCESS:
            if self.cfg.fail_on_qp_failure:
                return DirectionStatus.QP_FAILURE
            self.full_cuts = self._fallback(qp, quantities)
        return None

    def _check_acceptance_and_limits(
        self, quantities: Quantities, qp: CutQPSolver, evaluated: bool
    ) -> Optional[DirectionStatus]:
        if self._accept(quantities, qp, evaluated):
            return DirectionStatus.SUCCESS
        if quantities.inner_iteration_counter > self.cfg.inner_iteration_limit:
            if self.cfg.fail_on_iteration_limit:
                return DirectionStatus.ITERATION_LIMIT
            return DirectionStatus.SUCCESS
        if quantities.cpu_time_elapsed() >= quantities.cpu_time_limit:
            return DirectionStatus.CPU_TIME_LIMIT
        return None

    def _shortened_step(self, quantities: Quantities, qp: CutQPSolver) -> tuple[bool, Optional[Cut]]:
        norm_inf = qp.primal_solution_norm_inf
        if norm_inf <= 0.0:
            return False, None
        stepsize = self.cfg.shortened_stepsize * min(quantities.stationarity_radius, norm_inf) / norm_inf
        quantities.make_trial_iterate(stepsize)
        evaluated = quantities.evaluate_trial_objective()
        if self._accept(quantities, qp, evaluated):
            logging.debug(f"[CuttingPlane] shortened step accepted (stepsize={stepsize:.3e})")
            return True, None
        return False, self._trial_cut(quantities, evaluated)

    def _resolve(
        self, quantities: Quantities, qp: CutQPSolver, new_cuts: List[Cut], aggregating: bool
    ) -> Optional[DirectionStatus]:
        bundle = quantities.point_set
        threshold = int(self.cfg.aggregation_size_threshold * quantities.number_of_variables)
        if aggregating and len(bundle) < threshold:
            self._load(qp, self.aggregated_cuts, bundle)
            status = self._solve(qp, quantities)
        elif aggregating:
            logging.debug(f"[CuttingPlane] bundle size {len(bundle)} ≥ {threshold}; switching to full cut set")
            self._load(qp, self.full_cuts, bundle)
            status = self._solve(qp, quantities)
            self.switched_to_full = True
        else:
            qp.add_cuts([c.coefficient(bundle) for c in new_cuts], [c.bias for c in new_cuts])
            self.active_cuts = self.full_cuts
            status = self._solve(qp, quantities, warm=True)

        if status != QPStatus.SUCCESS:
            if self.cfg.fail_on_qp_failure:
                return DirectionStatus.QP_FAILURE
            self.full_cuts = self._fallback(qp, quantities)
            self.aggregated_cuts = self.full_cuts.copy()
        return None
