# nonsmooth.py
# Minimal driver for the cutting-plane direction on a nonsmooth Rosenbrock
# variant:  f(x) = w |x1^2 - x2| + (1 - x1)^2,  minimizer (1, 1), f = 0.
# Run from the repository root:  python -m nsopt.examples.nonsmooth

import logging

import numpy as np

from nsopt.blocks.aux import CuttingPlaneConfig
from nsopt.cutting_plane import CpuTimeLimitError, CuttingPlaneDirection, DirectionStatus
from nsopt.quantities import Problem, Quantities

# ---------------------------
# Test problem
# ---------------------------

W = 8.0


def nonsmooth_rosenbrock(x: np.ndarray) -> float:
    return W * abs(x[0] ** 2 - x[1]) + (1.0 - x[0]) ** 2


def nonsmooth_rosenbrock_grad(x: np.ndarray) -> np.ndarray:
    s = 1.0 if x[0] ** 2 - x[1] >= 0 else -1.0
    return np.array([2.0 * W * s * x[0] - 2.0 * (1.0 - x[0]), -W * s])


# ---------------------------
# Backtracking along the direction
# ---------------------------

ARMIJO = 1e-4
BACKTRACK = 0.5
MIN_ALPHA = 1e-8


def backtrack(q: Quantities):
    """Halve alpha until f(x + alpha d) < f(x) - ARMIJO * alpha * |d|^2; None if alpha underflows."""
    d = q.direction
    f0 = q.current_iterate.objective
    slope = float(d @ d)
    alpha = 1.0
    while alpha >= MIN_ALPHA:
        trial = q.make_trial_iterate(alpha)
        if trial.evaluate_objective(q) and trial.objective < f0 - ARMIJO * alpha * slope:
            return trial
        alpha *= BACKTRACK
    return None


# ---------------------------
# Outer loop
# ---------------------------

def run(x0, max_iter: int = 200, tol: float = 1e-6):
    prob = Problem(nonsmooth_rosenbrock, nonsmooth_rosenbrock_grad, n=2)
    q = Quantities(prob, x0, stationarity_radius=1e-1, trust_region_radius=1e0)
    dirn = CuttingPlaneDirection(CuttingPlaneConfig(try_aggregation=True))

    print(" Iter. " + dirn.iteration_header())
    for k in range(max_iter):
        try:
            status = dirn.compute_direction(q)
        except CpuTimeLimitError as e:
            print(f"stopped: {e}")
            break
        if status is not DirectionStatus.SUCCESS:
            print(f"stopped: direction status {status.value}")
            break
        # the direction engine may stop at a tiny gradient step; search the full step instead
        engine_trial = q.trial_iterate
        trial = backtrack(q)
        if trial is None and engine_trial.objective < q.current_iterate.objective:
            trial = engine_trial
        if trial is None:
            q.stationarity_radius *= BACKTRACK
            q.trust_region_radius *= BACKTRACK
        else:
            q.current_iterate = trial
        print(f" {k:5d} {dirn.reporter.lines[-1]}  f={q.current_iterate.objective:.6e}")
        if q.stationarity_radius <= tol:
            break

    print("x* =", q.current_iterate.vector, " f* =", q.current_iterate.objective)
    print(f"function evals={q.function_counter}, gradient evals={q.gradient_counter}, "
          f"inner its={q.total_inner_iteration_counter}, QP its={q.total_qp_iteration_counter}")
    return q


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    run(np.array([-1.2, 1.0]))
