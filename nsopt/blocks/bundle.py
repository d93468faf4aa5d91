"""
Point bundle, cuts and cut aggregation for the cutting-plane subproblem.

A cut is an affine minorant  m_i(d) = b_i + g_iᵀd  of the objective around the
current iterate x. Cuts built from sampled points do not hold the gradient
themselves: they store the index of the point in the `PointBundle`, so the
bundle can keep growing without invalidating them. Cuts built from the current
gradient or from aggregation own their coefficient vector.

Downshifting
------------
For a point p with value f(p) and gradient g(p), the bias is

    b = min( f(p) + g(p)ᵀ(x - p),  f(x) - c ||x - p||₂² )

which keeps stale linearizations from being optimistic near x.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from ..quantities import Iterate


# =============================================================================
# Point bundle (arena of sampled points)
# =============================================================================
class PointBundle:
    """Append-only sequence of sampled iterates; positions are stable."""

    def __init__(self, points: Optional[Sequence["Iterate"]] = None):
        self._points: List["Iterate"] = list(points or [])

    def append(self, point: "Iterate") -> int:
        self._points.append(point)
        return len(self._points) - 1

    def near(self, x: np.ndarray, radius: float) -> Iterator[int]:
        """Yield indices of points with ||x - p||_inf <= radius, in bundle order."""
        for i, p in enumerate(self._points):
            if np.linalg.norm(x - p.vector, ord=np.inf) <= radius:
                yield i

    def __getitem__(self, i: int) -> "Iterate":
        return self._points[i]

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator["Iterate"]:
        return iter(self._points)


# =============================================================================
# Cuts
# =============================================================================
@dataclass(frozen=True, eq=False)
class Cut:
    """
    Linear cut (coefficient, bias).

    Exactly one of `index` (position of the sampled point in the bundle) or
    `vector` (owned coefficient) is set.
    """

    bias: float
    index: Optional[int] = None
    vector: Optional[np.ndarray] = None

    def __post_init__(self):
        if (self.index is None) == (self.vector is None):
            raise ValueError("Cut needs exactly one of index or vector")

    def coefficient(self, bundle: PointBundle) -> np.ndarray:
        if self.index is None:
            return self.vector
        return bundle[self.index].gradient


class CutCollection:
    """
    Ordered cuts. Position i matches dual multiplier i of the QP solve that
    consumed this collection.
    """

    def __init__(self, cuts: Optional[Sequence[Cut]] = None):
        self._cuts: List[Cut] = list(cuts or [])

    @classmethod
    def from_iterate(cls, iterate: "Iterate") -> "CutCollection":
        """Single cut (gradient, objective) at an evaluated iterate."""
        return cls([gradient_cut(iterate)])

    def append(self, cut: Cut) -> None:
        self._cuts.append(cut)

    def extend(self, cuts: Sequence[Cut]) -> None:
        self._cuts.extend(cuts)

    def copy(self) -> "CutCollection":
        return CutCollection(self._cuts)

    def coefficients(self, bundle: PointBundle) -> List[np.ndarray]:
        return [c.coefficient(bundle) for c in self._cuts]

    def biases(self) -> np.ndarray:
        return np.array([c.bias for c in self._cuts], dtype=float)

    def __getitem__(self, i: int) -> Cut:
        return self._cuts[i]

    def __len__(self) -> int:
        return len(self._cuts)

    def __iter__(self) -> Iterator[Cut]:
        return iter(self._cuts)


# =============================================================================
# Cut builder
# =============================================================================
def gradient_cut(iterate: "Iterate") -> Cut:
    """Cut of the current iterate: coefficient = gradient, bias = objective."""
    return Cut(bias=float(iterate.objective), vector=iterate.gradient)


def downshifted_bias(
    point_objective: float,
    point_gradient: np.ndarray,
    point_x: np.ndarray,
    current_x: np.ndarray,
    current_objective: float,
    downshift_constant: float,
) -> float:
    """min(linearization value at x, f(x) - c ||x - p||₂²)."""
    diff = current_x - point_x
    linearization_value = point_objective + float(point_gradient @ diff)
    downshifting_value = current_objective - downshift_constant * float(diff @ diff)
    return min(linearization_value, downshifting_value)


def bundle_cut(
    bundle: PointBundle, index: int, current: "Iterate", downshift_constant: float
) -> Cut:
    """Cut for the evaluated bundle point at `index`, relative to `current`."""
    p = bundle[index]
    bias = downshifted_bias(
        p.objective, p.gradient, p.vector,
        current.vector, current.objective, downshift_constant,
    )
    return Cut(bias=bias, index=index)


# =============================================================================
# Aggregation
# =============================================================================
def aggregate_cuts(
    cuts: CutCollection,
    omega: np.ndarray,
    bundle: PointBundle,
    current: "Iterate",
) -> CutCollection:
    """
    Compress `cuts` into two: the current-gradient cut and the
    ω-weighted combination (Σ ω_i g_i, Σ ω_i b_i).

    `omega` must be the dual multipliers of the solve that consumed `cuts`.
    """
    omega = np.asarray(omega, dtype=float).ravel()
    if omega.size != len(cuts):
        raise ValueError(
            f"Dual multiplier length {omega.size} does not match cut count {len(cuts)}"
        )
    aggregation_vector = np.zeros(current.vector.size)
    aggregation_scalar = 0.0
    for w, cut in zip(omega, cuts):
        aggregation_vector += w * cut.coefficient(bundle)
        aggregation_scalar += w * cut.bias
    logging.debug(
        f"[Bundle] aggregated {len(cuts)} cuts (sum ω={omega.sum():.3e}, "
        f"|g_agg|={np.linalg.norm(aggregation_vector):.3e})"
    )
    return CutCollection(
        [gradient_cut(current), Cut(bias=aggregation_scalar, vector=aggregation_vector)]
    )
