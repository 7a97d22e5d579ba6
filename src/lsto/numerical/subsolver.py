"""
subsolver.py - Constrained boundary step by Newton-Raphson on the area multiplier.

The step is a move-limited steepest descent of the objective, shifted by a
single multiplier so that the area change meets the remaining budget:

    z_i(lambda) = clip(-m * (g_i / max|g| + lambda * c_i), lo_i, hi_i)
    sum_i l_i * c_i * z_i(lambda) = constraint_distance

z_i is the boundary displacement (positive into the material), g_i and c_i
the objective and constraint gradients and l_i the boundary length of point i.
"""

import warnings
import numpy as np
from typing import Sequence, Tuple
import logging

from ..core.errors import ConstraintInfeasibleStep
from ..core.state import ConstraintState, OptimizationResult
from .level_set import BoundaryPoint

logger = logging.getLogger(__name__)


class NewtonRaphsonSubsolver:
    """
    Single-constraint sub-solver.

    Attributes:
        max_iterations: Newton-Raphson iteration cap
        tolerance: Tolerance on the area change, relative to the budget
    """

    def __init__(self, max_iterations: int = 50, tolerance: float = 1e-10):
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def solve(
        self,
        points: Sequence[BoundaryPoint],
        move_limit: float,
        domain_extents: Tuple[float, float],
        constraint: ConstraintState
    ) -> OptimizationResult:
        """
        Compute the boundary step and set the point velocities in place.

        Args:
            points: Boundary points with [objective, constraint] gradients
            move_limit: Largest displacement of a point
            domain_extents: (width, height) of the design domain
            constraint: Current area budget

        Returns:
            OptimizationResult with time step and multipliers [lambda, 0]
        """
        if len(points) == 0:
            return OptimizationResult(time_step=0.0, lambdas=np.zeros(2))

        g = np.array([p.sensitivities[0] for p in points], dtype=np.float64)
        c = np.array([p.sensitivities[1] for p in points], dtype=np.float64)
        lengths = np.array([p.length for p in points], dtype=np.float64)
        lo, hi = self._displacement_bounds(points, move_limit, domain_extents)

        g_max = np.max(np.abs(g[hi > lo])) if np.any(hi > lo) else 0.0
        g_scaled = g / g_max if g_max > 0 else np.zeros_like(g)
        m = move_limit
        target = constraint.constraint_distance

        def displacement(lam: float) -> np.ndarray:
            return np.clip(-m * (g_scaled + lam * c), lo, hi)

        def area_change(lam: float) -> float:
            return float(np.sum(lengths * c * displacement(lam)))

        def slope(lam: float) -> float:
            # only points strictly inside their bounds respond to lambda
            z = displacement(lam)
            free = (z > lo) & (z < hi)
            return float(-m * np.sum(lengths[free] * c[free] ** 2))

        lam = 0.0
        is_feasible = True
        if area_change(0.0) > target:
            lam, is_feasible = self._find_multiplier(area_change, displacement, slope, target)
            if not is_feasible:
                warnings.warn(
                    f"Area budget {target:.4g} out of reach within move limit {m:g} "
                    f"(best change {area_change(lam):.4g})",
                    ConstraintInfeasibleStep,
                )

        z = displacement(lam)
        time_step = float(np.max(np.abs(z)))
        velocities = z / time_step if time_step > 0 else np.zeros_like(z)
        for point, v in zip(points, velocities):
            point.velocity = float(v)

        logger.debug("Sub-solve: lambda=%.4e, time step=%.4f, area change=%.4f (target %.4f)",
                     lam, time_step, area_change(lam), target)
        return OptimizationResult(time_step=time_step, lambdas=np.array([lam, 0.0]),
                                  is_feasible=is_feasible)

    @staticmethod
    def _displacement_bounds(
        points: Sequence[BoundaryPoint],
        move_limit: float,
        domain_extents: Tuple[float, float]
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Per-point bounds; fixed points stay put, edge points cannot leave the domain."""
        coords = np.array([p.coord for p in points], dtype=np.float64)
        fixed = np.array([p.is_fixed for p in points])
        width, height = domain_extents
        eps = 1e-6
        on_edge = (
            (coords[:, 0] < eps) | (coords[:, 0] > width - eps)
            | (coords[:, 1] < eps) | (coords[:, 1] > height - eps)
        )
        lo = np.where(on_edge, 0.0, -move_limit)
        hi = np.full(len(points), move_limit)
        lo[fixed] = 0.0
        hi[fixed] = 0.0
        return lo, hi

    def _find_multiplier(self, area_change, displacement, slope, target) -> Tuple[float, bool]:
        """Safeguarded Newton-Raphson for area_change(lambda) = target, lambda >= 0."""
        # area_change is non-increasing in lambda: bracket the root first
        lam_lo, lam_hi = 0.0, 1.0
        while area_change(lam_hi) > target:
            if np.array_equal(displacement(lam_hi), displacement(2.0 * lam_hi)):
                # every point sits at a bound, the budget is out of reach
                return lam_hi, False
            lam_lo, lam_hi = lam_hi, 2.0 * lam_hi

        tol = self.tolerance * max(1.0, abs(target))
        lam = lam_hi
        for _ in range(self.max_iterations):
            residual = area_change(lam) - target
            if abs(residual) <= tol:
                break
            if residual > 0:
                lam_lo = lam
            else:
                lam_hi = lam
            d = slope(lam)
            lam_new = lam - residual / d if d < 0 else 0.5 * (lam_lo + lam_hi)
            if not lam_lo < lam_new < lam_hi:
                lam_new = 0.5 * (lam_lo + lam_hi)
            lam = lam_new
        return lam, True
