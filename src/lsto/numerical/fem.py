"""
fem.py - 2D plane-stress FEM with area-fraction stiffness scaling.

This module handles:
- Bilinear quadrilateral (Q4) element stiffness, 2x2 Gauss integration
- Sparse global stiffness assembly, scaled per element by area fraction
- Solution of K*u = F with clamped DOFs
- The ElasticitySolver used by the optimization loop
"""

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve, cg
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Optional
import logging

from ..core.geometry import LevelSetDomain
from ..core.loads import LoadCase, DOFS_PER_NODE

logger = logging.getLogger(__name__)


# Local node coordinates of the reference element [-1, 1]^2 (counter-clockwise)
NODES_LOCAL = np.array([
    [-1, -1],
    [+1, -1],
    [+1, +1],
    [-1, +1],
], dtype=float)

_gp = 1.0 / np.sqrt(3)
GAUSS_POINTS = np.array([
    [-_gp, -_gp],
    [+_gp, -_gp],
    [+_gp, +_gp],
    [-_gp, +_gp],
])


class SolveStatus(Enum):
    """Outcome of a linear solve."""
    CONVERGED = 0
    DIVERGED = 1


@dataclass
class MaterialProperties:
    """
    Linear elastic material.

    Attributes:
        E: Young's modulus
        nu: Poisson's ratio
        rho: Density
    """
    E: float = 1.0
    nu: float = 0.3
    rho: float = 1.0

    @property
    def constitutive_matrix(self) -> np.ndarray:
        """Plane-stress constitutive matrix (Voigt notation)."""
        E, nu = self.E, self.nu
        return E / (1 - nu ** 2) * np.array([
            [1, nu, 0],
            [nu, 1, 0],
            [0, 0, (1 - nu) / 2],
        ])


def get_strain_displacement_matrices(element_size: float) -> Tuple[np.ndarray, float]:
    """
    Strain-displacement matrices of a square Q4 element at its Gauss points.

    Args:
        element_size: Edge length of the element

    Returns:
        (B, detJ): B has shape (4, 3, 8), one matrix per Gauss point;
        detJ is the (constant) Jacobian determinant
    """
    a = element_size / 2
    detJ = a ** 2
    B = np.zeros((len(GAUSS_POINTS), 3, 8))

    for g, (xi, eta) in enumerate(GAUSS_POINTS):
        dN_dxi = 0.25 * NODES_LOCAL[:, 0] * (1 + NODES_LOCAL[:, 1] * eta)
        dN_deta = 0.25 * NODES_LOCAL[:, 1] * (1 + NODES_LOCAL[:, 0] * xi)
        # Jacobian is a*I for a square element
        dN_dx = dN_dxi / a
        dN_dy = dN_deta / a

        B[g, 0, 0::2] = dN_dx      # epsilon_xx
        B[g, 1, 1::2] = dN_dy      # epsilon_yy
        B[g, 2, 0::2] = dN_dy      # gamma_xy
        B[g, 2, 1::2] = dN_dx

    return B, detJ


def get_gauss_point_stiffness(
    element_size: float,
    material: MaterialProperties
) -> np.ndarray:
    """Contribution (4, 8, 8) of each Gauss point to the element stiffness."""
    B, detJ = get_strain_displacement_matrices(element_size)
    D = material.constitutive_matrix
    return np.einsum("gki,kl,glj->gij", B, D, B) * detJ


def get_element_stiffness_matrix(
    element_size: float,
    material: MaterialProperties
) -> np.ndarray:
    """
    Stiffness matrix of a full (solid) Q4 element.

    Args:
        element_size: Edge length of the element
        material: Material properties

    Returns:
        8x8 matrix (4 nodes x 2 DOF)
    """
    return get_gauss_point_stiffness(element_size, material).sum(axis=0)


def get_element_dof_indices(element_nodes: np.ndarray) -> np.ndarray:
    """
    Global DOF indices of each element.

    Args:
        element_nodes: Node indices (n_elements, 4)

    Returns:
        Array (n_elements, 8): [ux0, uy0, ux1, uy1, ...]
    """
    edof = np.empty((element_nodes.shape[0], 4 * DOFS_PER_NODE), dtype=np.int64)
    edof[:, 0::2] = DOFS_PER_NODE * element_nodes
    edof[:, 1::2] = DOFS_PER_NODE * element_nodes + 1
    return edof


def assemble_global_stiffness(
    edof: np.ndarray,
    area_fractions: np.ndarray,
    Ke0: np.ndarray,
    n_dofs: int
) -> sparse.csr_matrix:
    """
    Assemble the global stiffness matrix (sparse).

    Each element contributes area_fraction * Ke0 (area fraction method).

    Args:
        edof: Element DOF indices (n_elements, 8)
        area_fractions: Area fraction of each element
        Ke0: Solid element stiffness
        n_dofs: Total number of DOFs

    Returns:
        Global K in CSR format
    """
    rows = np.repeat(edof, edof.shape[1], axis=1).ravel()
    cols = np.tile(edof, (1, edof.shape[1])).ravel()
    data = (area_fractions[:, None, None] * Ke0[None, :, :]).ravel()

    K = sparse.coo_matrix((data, (rows, cols)), shape=(n_dofs, n_dofs)).tocsr()
    K = (K + K.T) / 2  # ensure symmetry
    return K


def solve_fem(
    K: sparse.csr_matrix,
    F: np.ndarray,
    constrained_dofs: np.ndarray,
    method: str = "direct"
) -> Tuple[np.ndarray, bool]:
    """
    Solve K*u = F with homogeneous constraints.

    Args:
        K: Global stiffness matrix
        F: Force vector
        constrained_dofs: Clamped DOF indices
        method: 'direct' (spsolve) or 'iterative' (CG)

    Returns:
        (u, converged)
    """
    n_dofs = K.shape[0]
    free_dofs = np.setdiff1d(np.arange(n_dofs), constrained_dofs)

    K_ff = K[free_dofs, :][:, free_dofs]
    F_f = F[free_dofs]

    u_f, converged = _solve_reduced(K_ff, F_f, method)

    u = np.zeros(n_dofs)
    u[free_dofs] = u_f
    return u, converged


def _solve_reduced(K_ff, F_f, method: str) -> Tuple[np.ndarray, bool]:
    if method == "direct":
        u_f = spsolve(K_ff.tocsc(), F_f)
        converged = True
    elif method == "iterative":
        u_f, info = cg(K_ff, F_f, rtol=1e-10, maxiter=20000)
        converged = info == 0
    else:
        raise ValueError(f"Unknown solve method: {method}")
    converged = converged and bool(np.all(np.isfinite(u_f)))
    return np.asarray(u_f, dtype=np.float64), converged


class ElasticitySolver:
    """
    Stationary linear elasticity on the structured grid.

    The FE mesh shares node and element numbering with the level-set
    domain; element stiffness is scaled by the element area fraction.
    """

    def __init__(
        self,
        domain: LevelSetDomain,
        material: MaterialProperties = None,
        method: str = "direct"
    ):
        self.domain = domain
        self.material = material or MaterialProperties()
        self.method = method

        self.n_dofs = DOFS_PER_NODE * domain.n_nodes
        self.element_nodes = domain.element_nodes()
        self.edof = get_element_dof_indices(self.element_nodes)
        self.Ke0 = get_element_stiffness_matrix(domain.element_size, self.material)

        self.area_fractions = np.ones(self.n_elements)
        self.K: Optional[sparse.csr_matrix] = None
        self.F = np.zeros(self.n_dofs)
        self.constrained_dofs = np.zeros(0, dtype=np.int64)
        self.free_dofs = np.arange(self.n_dofs)
        self.u = np.zeros(self.n_dofs)

    @property
    def n_elements(self) -> int:
        return self.element_nodes.shape[0]

    def assemble(self, area_fractions: np.ndarray) -> None:
        """Assemble K with the given element area fractions."""
        area_fractions = np.asarray(area_fractions, dtype=np.float64)
        if area_fractions.shape != (self.n_elements,):
            raise ValueError(
                f"Expected {self.n_elements} area fractions, got {area_fractions.shape}"
            )
        self.area_fractions = area_fractions
        self.K = assemble_global_stiffness(self.edof, area_fractions, self.Ke0, self.n_dofs)

    def assemble_loads(self, load_case: LoadCase) -> None:
        """Assemble the force vector and the clamped DOFs of a load case."""
        self.F = load_case.get_force_vector(self.n_dofs)
        self.constrained_dofs = load_case.get_constrained_dofs()
        self.free_dofs = np.setdiff1d(np.arange(self.n_dofs), self.constrained_dofs)

    def solve(self) -> SolveStatus:
        """Solve for the displacements; the status reports divergence."""
        if self.K is None:
            raise RuntimeError("assemble() must be called before solve()")
        self.u, converged = solve_fem(self.K, self.F, self.constrained_dofs, self.method)
        if not converged:
            logger.warning("Elasticity solve did not converge (%s)", self.method)
            return SolveStatus.DIVERGED
        return SolveStatus.CONVERGED

    def solve_adjoint(self, rhs: np.ndarray) -> np.ndarray:
        """Solve K*x = rhs on the same constrained system (K is symmetric)."""
        x, converged = solve_fem(self.K, rhs, self.constrained_dofs, self.method)
        if not converged:
            logger.warning("Adjoint solve did not converge (%s)", self.method)
        return x

    def element_displacements(self, u: np.ndarray = None) -> np.ndarray:
        """Element displacement vectors (n_elements, 8)."""
        u = self.u if u is None else u
        return u[self.edof]
