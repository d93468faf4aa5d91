# Shared configuration and small array helpers for the cutting-plane
# direction computation.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass, fields
from typing import Dict, List, Mapping, Optional, Tuple

# =========================
# Third-party
# =========================
import numpy as np

# Prefix of the solver-level option names (e.g. DCCP_try_aggregation)
OPTION_PREFIX = "DCCP_"


# ======================================
# Option table
# ======================================
# name -> (lower, upper, description); bools carry (None, None, ...)
_OPTION_INFO: Dict[str, Tuple[Optional[float], Optional[float], str]] = {
    "add_far_points": (
        None, None,
        "Determines whether to add points far outside stationarity radius "
        "to point set during subproblem solve.",
    ),
    "fail_on_iteration_limit": (
        None, None,
        "Determines whether to fail if iteration limit exceeded.",
    ),
    "fail_on_qp_failure": (
        None, None,
        "Determines whether to fail if QP solver ever fails.",
    ),
    "try_aggregation": (
        None, None,
        "Determines whether to consider aggregating subgradients.",
    ),
    "try_gradient_step": (
        None, None,
        "Determines whether to consider gradient step before solving cutting "
        "plane subproblem. Stepsize set by gradient_stepsize.",
    ),
    "try_shortened_step": (
        None, None,
        "Determines whether to consider shortened step if subproblem solver does "
        "not terminate after considering full QP step. Stepsize set by shortened_stepsize.",
    ),
    "aggregation_size_threshold": (
        0.0, np.inf,
        "Threshold for switching from aggregation to full point set "
        "(scaled by the number of variables).",
    ),
    "downshift_constant": (
        0.0, np.inf,
        "Downshifting constant. The linear term of an added cut is the minimum of "
        "the linearization value at the bundle point and the current objective minus "
        "this value times the squared distance to the current iterate.",
    ),
    "gradient_stepsize": (
        0.0, np.inf,
        "Gradient stepsize. If the step computed from the current gradient alone is "
        "acceptable with this stepsize, the full cutting plane subproblem is avoided.",
    ),
    "shortened_stepsize": (
        0.0, np.inf,
        "Shortened stepsize. The stepsize considered is "
        "shortened_stepsize*min(stat. rad.,||qp_step||_inf)/||qp_step||_inf.",
    ),
    "step_acceptance_tolerance": (
        0.0, 1.0,
        "Tolerance for step acceptance.",
    ),
    "inner_iteration_limit": (
        0, np.inf,
        "Limit on the number of inner iterations that will be performed.",
    ),
}

# solver-level option names spell QP in capitals
_ALIASES = {"fail_on_QP_failure": "fail_on_qp_failure"}


# ======================================
# Global configuration
# ======================================
@dataclass
class CuttingPlaneConfig:
    """
    Configuration for the cutting-plane direction computation.

    Notes
    -----
    • Defaults match the solver-level option defaults.
    • Ranges are checked in `__post_init__`; a bad value raises ValueError.
    """

    # ---------------- Toggles ----------------
    add_far_points: bool = False
    fail_on_iteration_limit: bool = False
    fail_on_qp_failure: bool = False
    try_aggregation: bool = False
    try_gradient_step: bool = True
    try_shortened_step: bool = True

    # ---------------- Numerics ----------------
    aggregation_size_threshold: float = 1e01
    downshift_constant: float = 1e-02
    gradient_stepsize: float = 1e-04
    shortened_stepsize: float = 1e-02
    step_acceptance_tolerance: float = 1e-08

    # ---------------- Limits ----------------
    inner_iteration_limit: int = 20

    def __post_init__(self):
        for f in fields(self):
            lo, hi, _ = _OPTION_INFO[f.name]
            val = getattr(self, f.name)
            if lo is None:
                setattr(self, f.name, bool(val))
                continue
            if f.name == "inner_iteration_limit":
                if int(val) != val:
                    raise ValueError(f"{f.name} must be an integer, got {val}")
                val = int(val)
            else:
                val = float(val)
            if not (lo <= val <= hi):
                raise ValueError(f"{f.name} must lie in [{lo}, {hi}], got {val}")
            setattr(self, f.name, val)

    @classmethod
    def from_options(cls, options: Mapping[str, object]) -> "CuttingPlaneConfig":
        """
        Build a config from a mapping of option names to values.

        Keys may be field names (`try_aggregation`) or the prefixed option names
        (`DCCP_try_aggregation`, `DCCP_fail_on_QP_failure`).
        """
        kwargs = {}
        for key, val in options.items():
            name = key[len(OPTION_PREFIX):] if key.startswith(OPTION_PREFIX) else key
            name = _ALIASES.get(name, name)
            if name not in _OPTION_INFO:
                raise KeyError(f"Unknown cutting-plane option: {key}")
            kwargs[name] = val
        cfg = cls(**kwargs)
        logging.debug(f"[Config] cutting-plane options set: {sorted(kwargs)}")
        return cfg

    @classmethod
    def describe(cls) -> List[Tuple[str, object, str]]:
        """Return (option name, default, description) for every option."""
        return [
            (OPTION_PREFIX + f.name, f.default, _OPTION_INFO[f.name][2])
            for f in fields(cls)
        ]


# ======================================
# Array helpers
# ======================================
def _as_float_array(a, shape=None) -> np.ndarray:
    out = np.asarray(a, dtype=float)
    if shape is not None and out.shape != shape:
        out = out.reshape(shape)
    return out


def _is_finite(a) -> bool:
    return bool(np.isfinite(a).all())
