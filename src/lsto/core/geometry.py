"""
geometry.py - Structured 2D grid shared by the level-set and FE meshes.

This module handles:
- The rectangular element grid (unit elements by default)
- Node/element numbering shared by both meshes (row-major from bottom-left)
- Seed holes for the initial level set
- Killed (excluded) and fixed regions of level-set nodes
- The L-beam benchmark domain
"""

import numpy as np
from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass
class Hole:
    """
    Circular seed hole of the initial level set.

    Attributes:
        x: Centre x coordinate
        y: Centre y coordinate
        radius: Hole radius
    """
    x: float
    y: float
    radius: float


@dataclass
class Region:
    """
    Axis-aligned rectangle [lower, upper] selecting level-set nodes.

    Attributes:
        lower: Lower-left corner (x, y)
        upper: Upper-right corner (x, y)
    """
    lower: Tuple[float, float]
    upper: Tuple[float, float]

    def contains(self, coords: np.ndarray) -> np.ndarray:
        """Boolean mask of the points (N, 2) lying inside the rectangle."""
        coords = np.atleast_2d(coords)
        return (
            (coords[:, 0] >= self.lower[0]) & (coords[:, 0] <= self.upper[0])
            & (coords[:, 1] >= self.lower[1]) & (coords[:, 1] <= self.upper[1])
        )


@dataclass
class LevelSetDomain:
    """
    Structured grid for level-set topology optimization.

    Node (i, j) has index j * (nelx + 1) + i and element (i, j) has index
    j * nelx + i. The FE mesh uses the same numbering, so element arrays
    are index-aligned between the two meshes.

    Attributes:
        nelx: Number of elements along x
        nely: Number of elements along y
        element_size: Edge length of the square elements
        holes: Seed holes of the initial design
        excluded: Regions of killed level-set nodes (outside the domain)
        fixed: Regions of level-set nodes that are never updated
    """
    nelx: int
    nely: int
    element_size: float = 1.0
    holes: List[Hole] = field(default_factory=list)
    excluded: List[Region] = field(default_factory=list)
    fixed: List[Region] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        """Grid dimensions (nelx, nely)."""
        return (self.nelx, self.nely)

    @property
    def n_elements(self) -> int:
        return self.nelx * self.nely

    @property
    def n_nodes(self) -> int:
        return (self.nelx + 1) * (self.nely + 1)

    @property
    def width(self) -> float:
        return self.nelx * self.element_size

    @property
    def height(self) -> float:
        return self.nely * self.element_size

    @property
    def element_area(self) -> float:
        return self.element_size ** 2

    def node_coords(self) -> np.ndarray:
        """Coordinates (n_nodes, 2) of the grid nodes."""
        xs = np.arange(self.nelx + 1) * self.element_size
        ys = np.arange(self.nely + 1) * self.element_size
        X, Y = np.meshgrid(xs, ys)
        return np.column_stack([X.ravel(), Y.ravel()])

    def element_nodes(self) -> np.ndarray:
        """
        Node indices (n_elements, 4) of each element, counter-clockwise
        from the lower-left corner.
        """
        i, j = np.meshgrid(np.arange(self.nelx), np.arange(self.nely))
        i = i.ravel()
        j = j.ravel()
        n0 = j * (self.nelx + 1) + i
        n3 = (j + 1) * (self.nelx + 1) + i
        return np.column_stack([n0, n0 + 1, n3 + 1, n3]).astype(np.int64)

    def element_origins(self) -> np.ndarray:
        """Lower-left corner (n_elements, 2) of each element."""
        return self.node_coords()[self.element_nodes()[:, 0]]

    @property
    def active_nodes(self) -> np.ndarray:
        """Mask of nodes not killed by an excluded region."""
        coords = self.node_coords()
        active = np.ones(self.n_nodes, dtype=bool)
        for region in self.excluded:
            active &= ~region.contains(coords)
        return active

    @property
    def fixed_nodes(self) -> np.ndarray:
        """Mask of nodes inside a fixed region."""
        coords = self.node_coords()
        fixed = np.zeros(self.n_nodes, dtype=bool)
        for region in self.fixed:
            fixed |= region.contains(coords)
        return fixed & self.active_nodes

    @property
    def active_elements(self) -> np.ndarray:
        """Mask of elements whose four nodes are all active."""
        return np.all(self.active_nodes[self.element_nodes()], axis=1)

    @property
    def mesh_area(self) -> float:
        """Area of the design domain (active elements only)."""
        return float(np.sum(self.active_elements)) * self.element_area

    def is_fixed_point(self, coord: np.ndarray) -> bool:
        """True if the point lies in one of the fixed regions."""
        return any(bool(region.contains(coord)[0]) for region in self.fixed)


def create_lbeam_domain(
    n_elements: int = 100,
    hole_radius: float = 10.0,
) -> LevelSetDomain:
    """
    Create the L-beam benchmark domain.

    Geometry:
    - Square n x n grid with the upper-right quadrant removed beyond the
      inner corner at 2/5 of the width
    - Five seed holes along the two arms
    - Fixed level-set nodes around the load point at (n, 2n/5)

    Args:
        n_elements: Elements per side of the bounding square
        hole_radius: Radius of the seed holes for a 100-element grid

    Returns:
        LevelSetDomain for the L-beam
    """
    n = float(n_elements)
    scale = n / 100.0
    inner_corner = n * 2 / 5

    # upper-right quadrant is not part of the L-beam
    excluded = Region(
        lower=(inner_corner + 0.01, inner_corner + 0.01),
        upper=(n + 0.01, n + 0.01),
    )

    radius = hole_radius * scale
    hole_centres = [(20, 20), (20, 50), (20, 80), (50, 20), (80, 20)]
    holes = [Hole(x * scale, y * scale, radius) for x, y in hole_centres]

    # keep material around the load point
    tol_x, tol_y = 3.01, 2.01
    load_x, load_y = n, inner_corner
    fixed = Region(
        lower=(load_x - tol_x, load_y - tol_y),
        upper=(load_x + 0.01, load_y + 0.01),
    )

    return LevelSetDomain(
        nelx=n_elements,
        nely=n_elements,
        holes=holes,
        excluded=[excluded],
        fixed=[fixed],
    )
