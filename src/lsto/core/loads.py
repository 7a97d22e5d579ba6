"""
loads.py - Load cases and boundary conditions for the 2D elasticity problem.

This module handles:
- Displacement constraints (clamped nodes)
- Point loads split uniformly over the nodes found near a coordinate
- Node queries by coordinate and tolerance box
"""

import numpy as np
from dataclasses import dataclass, field
from typing import List, Sequence
from enum import Enum

from .errors import ConfigurationError
from .geometry import LevelSetDomain


class DOF(Enum):
    """Degrees of freedom of a 2D node."""
    UX = 0
    UY = 1


DOFS_PER_NODE = len(DOF)


def nodes_by_coordinates(
    coords: np.ndarray,
    center: Sequence[float],
    tol: Sequence[float],
) -> np.ndarray:
    """
    Find the nodes inside a tolerance box around a coordinate.

    Args:
        coords: Node coordinates (N, 2)
        center: Box centre (x, y)
        tol: Half-widths of the box (tx, ty)

    Returns:
        Indices of the matching nodes

    Raises:
        ConfigurationError: if no node matches
    """
    mask = (
        (np.abs(coords[:, 0] - center[0]) <= tol[0])
        & (np.abs(coords[:, 1] - center[1]) <= tol[1])
    )
    nodes = np.flatnonzero(mask).astype(np.int64)
    if nodes.size == 0:
        raise ConfigurationError(
            f"No nodes found at {tuple(center)} with tolerance {tuple(tol)}"
        )
    return nodes


@dataclass
class BoundaryCondition:
    """
    Homogeneous Dirichlet condition.

    Attributes:
        node_indices: Constrained nodes
        constrained_dofs: DOFs fixed at every node
    """
    node_indices: np.ndarray
    constrained_dofs: List[DOF] = field(default_factory=lambda: [DOF.UX, DOF.UY])

    @property
    def n_nodes(self) -> int:
        return len(self.node_indices)

    def get_dof_indices(self) -> np.ndarray:
        """Global indices of the constrained DOFs."""
        dof_indices = [
            node_idx * DOFS_PER_NODE + dof.value
            for node_idx in self.node_indices
            for dof in self.constrained_dofs
        ]
        return np.array(dof_indices, dtype=np.int64)


@dataclass
class PointLoad:
    """
    Concentrated load spread uniformly over a group of nodes.

    Attributes:
        node_indices: Nodes sharing the load
        total_force: Total force [Fx, Fy]
    """
    node_indices: np.ndarray
    total_force: np.ndarray

    def __post_init__(self):
        self.node_indices = np.asarray(self.node_indices, dtype=np.int64)
        self.total_force = np.asarray(self.total_force, dtype=np.float64)
        assert self.total_force.shape == (DOFS_PER_NODE,), "Force vector must be (2,)"

    def get_nodal_forces(self) -> np.ndarray:
        """Forces (N, 2) applied at each node."""
        return np.tile(self.total_force / len(self.node_indices), (len(self.node_indices), 1))


@dataclass
class LoadCase:
    """
    Complete load case for the FE analysis.

    Attributes:
        name: Identifier of the case
        description: Human readable description
        boundary_conditions: Displacement constraints
        point_loads: Applied loads
    """
    name: str
    description: str = ""
    boundary_conditions: List[BoundaryCondition] = field(default_factory=list)
    point_loads: List[PointLoad] = field(default_factory=list)

    def get_force_vector(self, n_dofs: int) -> np.ndarray:
        """Global force vector (n_dofs,)."""
        F = np.zeros(n_dofs, dtype=np.float64)
        for load in self.point_loads:
            for node_idx, force in zip(load.node_indices, load.get_nodal_forces()):
                for dof in DOF:
                    F[node_idx * DOFS_PER_NODE + dof.value] += force[dof.value]
        return F

    def get_constrained_dofs(self) -> np.ndarray:
        """All constrained DOFs, sorted and unique."""
        all_dofs = []
        for bc in self.boundary_conditions:
            all_dofs.extend(bc.get_dof_indices())
        return np.unique(np.array(all_dofs, dtype=np.int64))


def create_lbeam_load_case(
    domain: LevelSetDomain,
    magnitude: float = 3.0,
) -> LoadCase:
    """
    L-beam load case.

    - Clamp: every node of the top edge (y = height)
    - Load: `magnitude` downwards at the tip of the horizontal arm,
      at (width, 2/5 height)

    Args:
        domain: Grid shared with the FE mesh
        magnitude: Total downward force

    Returns:
        Configured LoadCase
    """
    coords = domain.node_coords()

    clamped = nodes_by_coordinates(
        coords,
        center=(0.0, domain.height),
        tol=(domain.width + 0.1, 0.1),
    )
    bc_top = BoundaryCondition(node_indices=clamped)

    load_nodes = nodes_by_coordinates(
        coords,
        center=(domain.width, domain.height * 2 / 5),
        tol=(1.1, 0.1),
    )
    tip_load = PointLoad(node_indices=load_nodes, total_force=np.array([0.0, -magnitude]))

    return LoadCase(
        name="lbeam_tip_load",
        description=f"{magnitude:g} downward at the L-beam tip, top edge clamped",
        boundary_conditions=[bc_top],
        point_loads=[tip_load],
    )
