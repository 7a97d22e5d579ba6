"""
sensitivity.py - P-norm stress aggregation and boundary sensitivities.

This module handles:
- Von Mises stress at the Gauss points (ersatz material: stress scaled
  by the element area fraction)
- P-norm objective and its adjoint sensitivities at the Gauss points
- Compliance sensitivities (strain energy density)
- Least-squares interpolation of Gauss point values to boundary points
"""

import numpy as np
from scipy.spatial import cKDTree
from enum import IntEnum
from typing import Dict, List, Sequence, Tuple

from .fem import (
    ElasticitySolver,
    GAUSS_POINTS,
    get_strain_displacement_matrices,
    get_gauss_point_stiffness,
)

# Von Mises quadratic form: vm^2 = s^T V s (plane stress, Voigt)
VON_MISES_MATRIX = np.array([
    [1.0, -0.5, 0.0],
    [-0.5, 1.0, 0.0],
    [0.0, 0.0, 3.0],
])

# Samples needed for a quadratic / linear least-squares fit
QUADRATIC_FIT_SAMPLES = 10
LINEAR_FIT_SAMPLES = 3


class SensitivityField(IntEnum):
    """Gauss point field interpolated to the boundary."""
    COMPLIANCE = 0
    STRESS = 1


class SensitivityEngine:
    """
    Stress and compliance sensitivities for the area-fraction FE model.

    Attributes:
        objective: P-norm stress of the last analysis
        von_mises_max: Largest Gauss point von Mises stress
        field_sensitivities: Per-field arrays (n_elements, 4) of
            sensitivities per unit area at the Gauss points
        boundary_sensitivities: Values interpolated since the last clear
    """

    def __init__(self, solver: ElasticitySolver, min_area_fraction: float = 0.1):
        """
        Args:
            solver: Elasticity solver holding the current displacements
            min_area_fraction: Gauss points of elements below this area
                fraction are not used for boundary interpolation
        """
        self.solver = solver
        self.min_area_fraction = min_area_fraction

        h = solver.domain.element_size
        self.B, self.detJ = get_strain_displacement_matrices(h)
        self.Kg = get_gauss_point_stiffness(h, solver.material)
        self.D = solver.material.constitutive_matrix

        local = (GAUSS_POINTS + 1.0) * h / 2
        origins = solver.domain.element_origins()
        self.gauss_coords = (origins[:, None, :] + local[None, :, :]).reshape(-1, 2)
        self._tree = cKDTree(self.gauss_coords)

        self.objective = 0.0
        self.von_mises_max = 0.0
        self.von_mises = np.zeros((solver.n_elements, len(GAUSS_POINTS)))
        self.field_sensitivities: Dict[SensitivityField, np.ndarray] = {}
        self.boundary_sensitivities: List[float] = []
        self._p_norm = None

    def compute_field_sensitivities(self, p_norm: float) -> Tuple[float, float]:
        """
        Compute the p-norm stress and the Gauss point sensitivities.

        Args:
            p_norm: Aggregation exponent

        Returns:
            (objective, max von Mises stress)
        """
        p = float(p_norm)
        rho = self.solver.area_fractions
        ue = self.solver.element_displacements()

        strain = np.einsum("gkj,ej->egk", self.B, ue)
        stress = np.einsum("kl,egl->egk", self.D, strain)
        vm_solid = np.sqrt(np.maximum(
            np.einsum("egk,kl,egl->eg", stress, VON_MISES_MATRIX, stress), 0.0))
        vm = rho[:, None] * vm_solid

        vm_max = float(vm.max())
        if vm_max > 0.0:
            objective = vm_max * float(np.sum((vm / vm_max) ** p)) ** (1.0 / p)
            # d(objective)/d(vm_g)
            weight = (vm / objective) ** (p - 1.0)
        else:
            objective = 0.0
            weight = np.zeros_like(vm)

        # d(vm_solid)/d(sigma), zero where the stress vanishes
        safe_vm = np.where(vm_solid > 0.0, vm_solid, 1.0)
        dvm_dsigma = np.einsum("kl,egl->egk", VON_MISES_MATRIX, stress) / safe_vm[:, :, None]
        dvm_dsigma[vm_solid <= 0.0] = 0.0

        # d(objective)/d(u_e) = sum_g w_g rho_e B_g^T D dvm/dsigma
        dsigma_du = np.einsum("gkj,kl,egl->egj", self.B, self.D, dvm_dsigma)
        dobj_due = np.einsum("eg,egj->ej", weight * rho[:, None], dsigma_du)

        rhs = np.zeros(self.solver.n_dofs)
        np.add.at(rhs, self.solver.edof, dobj_due)
        adjoint = self.solver.solve_adjoint(-rhs)
        adjoint_e = adjoint[self.solver.edof]

        explicit = weight * vm_solid
        implicit = np.einsum("ei,gij,ej->eg", adjoint_e, self.Kg, ue)
        strain_energy = np.einsum("ei,gij,ej->eg", ue, self.Kg, ue)

        self.field_sensitivities = {
            SensitivityField.STRESS: (explicit + implicit) / self.detJ,
            SensitivityField.COMPLIANCE: -strain_energy / self.detJ,
        }
        self.von_mises = vm
        self.objective = objective
        self.von_mises_max = vm_max
        self._p_norm = p
        return objective, vm_max

    def interpolate_boundary(
        self,
        point: Sequence[float],
        radius: float,
        field_selector: int,
        p_norm: float
    ) -> float:
        """
        Least-squares interpolation of a Gauss point field at a boundary point.

        Args:
            point: Boundary point (x, y)
            radius: Neighbourhood radius for the fit
            field_selector: SensitivityField to interpolate
            p_norm: Aggregation exponent of the stress field

        Returns:
            Interpolated sensitivity
        """
        if self._p_norm is None or float(p_norm) != self._p_norm:
            self.compute_field_sensitivities(p_norm)

        point = np.asarray(point, dtype=np.float64)
        values = self.field_sensitivities[SensitivityField(field_selector)].ravel()
        solid = np.repeat(self.solver.area_fractions > self.min_area_fraction, len(GAUSS_POINTS))

        idx = np.asarray(self._tree.query_ball_point(point, radius), dtype=np.int64)
        idx = idx[solid[idx]] if idx.size else idx
        if idx.size == 0:
            candidates = np.flatnonzero(solid)
            if candidates.size == 0:
                candidates = np.arange(len(values))
            dist = np.linalg.norm(self.gauss_coords[candidates] - point, axis=1)
            idx = candidates[[int(np.argmin(dist))]]

        value = _weighted_least_squares(point, self.gauss_coords[idx], values[idx], radius)
        self.boundary_sensitivities.append(value)
        return value

    def clear_boundary_cache(self) -> None:
        """Discard the interpolated boundary values."""
        self.boundary_sensitivities.clear()


def _weighted_least_squares(
    point: np.ndarray,
    coords: np.ndarray,
    values: np.ndarray,
    radius: float
) -> float:
    """Value at `point` of an inverse-distance weighted polynomial fit."""
    d = coords - point
    dist = np.linalg.norm(d, axis=1)
    w = 1.0 / np.maximum(dist, 1e-3 * radius)

    n = len(values)
    if n >= QUADRATIC_FIT_SAMPLES:
        A = np.column_stack([np.ones(n), d[:, 0], d[:, 1],
                             d[:, 0] ** 2, d[:, 0] * d[:, 1], d[:, 1] ** 2])
    elif n >= LINEAR_FIT_SAMPLES:
        A = np.column_stack([np.ones(n), d[:, 0], d[:, 1]])
    else:
        return float(np.sum(w * values) / np.sum(w))

    sw = np.sqrt(w)
    coef, *_ = np.linalg.lstsq(A * sw[:, None], values * sw, rcond=None)
    return float(coef[0])
