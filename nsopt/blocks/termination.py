"""
Radius-update check used during the direction computation.

When the combination of cut gradients chosen by the QP is small relative to
the stationarity radius, the current iterate is approximately stationary for
that radius: the direction computation stops and the radii are shrunk.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .qp import CutQPSolver, QPStatus

if TYPE_CHECKING:
    from ..quantities import Quantities


class RadiusTermination:
    def __init__(
        self,
        stationarity_tolerance_factor: float = 1e-1,
        radius_update_factor: float = 1e-1,
        *,
        apply_update: bool = True,
    ):
        if stationarity_tolerance_factor < 0:
            raise ValueError(
                f"stationarity_tolerance_factor must be nonnegative, got {stationarity_tolerance_factor}"
            )
        if not (0.0 < radius_update_factor <= 1.0):
            raise ValueError(f"radius_update_factor must lie in (0, 1], got {radius_update_factor}")
        self.stationarity_tolerance_factor = float(stationarity_tolerance_factor)
        self.radius_update_factor = float(radius_update_factor)
        self.apply_update = bool(apply_update)
        self._update_radii = False
        self.checks = 0

    def check_conditions_direction_computation(
        self, quantities: "Quantities", qp: CutQPSolver
    ) -> None:
        self.checks += 1
        self._update_radii = False
        if qp.status != QPStatus.SUCCESS:
            return
        if qp.combination_norm_inf <= self.stationarity_tolerance_factor * quantities.stationarity_radius:
            self._update_radii = True
            if self.apply_update:
                quantities.stationarity_radius *= self.radius_update_factor
                quantities.trust_region_radius *= self.radius_update_factor
            logging.debug(
                f"[Termination] radii update: |Gω|∞={qp.combination_norm_inf:.3e}, "
                f"stat. rad.={quantities.stationarity_radius:.3e}"
            )

    def update_radii_direction_computation(self) -> bool:
        return self._update_radii

    def iteration_null_values(self) -> str:
        return ""
