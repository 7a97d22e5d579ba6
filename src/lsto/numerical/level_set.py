"""
level_set.py - Level-set field, boundary discretisation and evolution.

This module handles:
- Nodal signed distance function (positive inside the material)
- Marching-squares discretisation of the zero contour into boundary points
- Exact area fraction of every element cut by the boundary
- Velocity extension, upwind gradients and advection in the narrow band
- Reinitialisation to an exact signed distance
"""

import numpy as np
from scipy.spatial import cKDTree
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple
import logging

from ..core.geometry import LevelSetDomain

logger = logging.getLogger(__name__)

# Candidate segments checked per node during reinitialisation
_REINIT_CANDIDATES = 8


@dataclass
class BoundaryPoint:
    """
    Sample point of the zero contour.

    Attributes:
        coord: Position (x, y)
        sensitivities: [objective_gradient, constraint_gradient]
        velocity: Normal velocity, positive when the boundary moves into the material
        length: Boundary length represented by the point
        is_fixed: Point lies in a fixed region and does not move
    """
    coord: np.ndarray
    sensitivities: np.ndarray = field(default_factory=lambda: np.zeros(2))
    velocity: float = 0.0
    length: float = 0.0
    is_fixed: bool = False

    @property
    def objective_gradient(self) -> float:
        return float(self.sensitivities[0])

    @property
    def constraint_gradient(self) -> float:
        return float(self.sensitivities[1])


class LevelSet:
    """
    Level-set function on the nodes of the structured grid.

    Killed nodes (outside the domain) are held negative, fixed nodes are
    never changed by updates or reinitialisation.
    """

    def __init__(
        self,
        domain: LevelSetDomain,
        move_limit: float = 0.5,
        band_width: float = 6.0
    ):
        """
        Args:
            domain: Grid, holes and node regions
            move_limit: Maximum boundary advance per update (CFL limit)
            band_width: Half-width of the narrow band
        """
        self.domain = domain
        self.move_limit = move_limit
        self.band_width = band_width

        self.coords = domain.node_coords()
        self.is_active = domain.active_nodes
        self.is_fixed = domain.fixed_nodes

        self.signed_distance = self._initialise_from_holes()
        self.velocity = np.zeros(domain.n_nodes)
        self.gradient = np.zeros(domain.n_nodes)

    @property
    def grid_shape(self) -> Tuple[int, int]:
        """Nodal grid shape (rows = y, columns = x)."""
        return (self.domain.nely + 1, self.domain.nelx + 1)

    @property
    def narrow_band(self) -> np.ndarray:
        """Mask of active nodes within the narrow band."""
        return self.is_active & (np.abs(self.signed_distance) < self.band_width)

    def _initialise_from_holes(self) -> np.ndarray:
        phi = np.full(self.domain.n_nodes, max(self.domain.width, self.domain.height))
        for hole in self.domain.holes:
            dist = np.hypot(self.coords[:, 0] - hole.x, self.coords[:, 1] - hole.y)
            phi = np.minimum(phi, dist - hole.radius)
        phi[self.is_fixed] = np.maximum(phi[self.is_fixed], 0.0)
        phi[~self.is_active] = -self.band_width
        return phi

    def extend_velocities(self, points: Sequence[BoundaryPoint]) -> None:
        """Extend the boundary point velocities to the narrow band nodes."""
        self.velocity[:] = 0.0
        if len(points) == 0:
            return
        band = self.narrow_band & ~self.is_fixed
        point_coords = np.array([p.coord for p in points])
        point_velocity = np.array([p.velocity for p in points])
        _, nearest = cKDTree(point_coords).query(self.coords[band])
        self.velocity[band] = point_velocity[nearest]

    def compute_gradients(self) -> None:
        """First-order Godunov upwind gradient norm for the current velocities."""
        h = self.domain.element_size
        P = self.signed_distance.reshape(self.grid_shape)
        active = self.is_active.reshape(self.grid_shape)

        def neighbour(axis: int, step: int) -> np.ndarray:
            # killed neighbours and the grid border contribute zero difference
            nb = np.roll(P, -step, axis=axis)
            nb_active = np.roll(active, -step, axis=axis)
            edge = [slice(None), slice(None)]
            edge[axis] = -1 if step > 0 else 0
            nb_active[tuple(edge)] = False
            return np.where(nb_active, nb, P)

        bx = (P - neighbour(1, -1)) / h
        fx = (neighbour(1, 1) - P) / h
        by = (P - neighbour(0, -1)) / h
        fy = (neighbour(0, 1) - P) / h

        grad_plus = np.sqrt(np.maximum(bx, 0) ** 2 + np.minimum(fx, 0) ** 2
                            + np.maximum(by, 0) ** 2 + np.minimum(fy, 0) ** 2)
        grad_minus = np.sqrt(np.minimum(bx, 0) ** 2 + np.maximum(fx, 0) ** 2
                             + np.minimum(by, 0) ** 2 + np.maximum(fy, 0) ** 2)

        V = self.velocity.reshape(self.grid_shape)
        self.gradient = np.where(V > 0, grad_plus, grad_minus).ravel()

    def update(self, time_step: float) -> bool:
        """
        Advance the level set by one time step inside the narrow band.

        Returns:
            True if the front reached the outer layer of the band and the
            function was reinitialised as part of the update
        """
        band = self.narrow_band & ~self.is_fixed
        mines = band & (np.abs(self.signed_distance) >= self.band_width - 1.0)

        displacement = time_step * np.abs(self.velocity[band])
        if displacement.size and displacement.max() > self.move_limit * self.domain.element_size:
            logger.warning("Level-set update exceeds the move limit (%.3f > %.3f)",
                           displacement.max(), self.move_limit)

        self.signed_distance[band] -= time_step * self.velocity[band] * self.gradient[band]

        if np.any(np.abs(self.signed_distance[mines]) < self.domain.element_size):
            self.reinitialise()
            return True
        return False

    def reinitialise(self) -> None:
        """Reset the function to the exact signed distance from its zero contour."""
        point_coords, segments = discretise_zero_contour(self)
        if len(segments) == 0:
            logger.debug("No boundary segments, reinitialisation skipped")
            return

        seg_a = point_coords[segments[:, 0]]
        seg_b = point_coords[segments[:, 1]]
        k = min(_REINIT_CANDIDATES, len(segments))

        nodes = self.is_active & ~self.is_fixed
        P = self.coords[nodes]
        _, cand = cKDTree(0.5 * (seg_a + seg_b)).query(P, k=k)
        cand = np.asarray(cand).reshape(len(P), k)

        A = seg_a[cand]
        AB = seg_b[cand] - A
        AP = P[:, None, :] - A
        ab2 = np.einsum("nkd,nkd->nk", AB, AB)
        t = np.einsum("nkd,nkd->nk", AP, AB) / np.where(ab2 > 0, ab2, 1.0)
        t = np.clip(t, 0.0, 1.0)
        closest = A + t[:, :, None] * AB
        dist = np.linalg.norm(P[:, None, :] - closest, axis=2).min(axis=1)

        phi = self.signed_distance[nodes]
        self.signed_distance[nodes] = np.where(phi >= 0, dist, -dist)


def discretise_zero_contour(level_set: LevelSet) -> Tuple[np.ndarray, np.ndarray]:
    """
    Marching-squares discretisation of the zero contour.

    Only elements with four active nodes produce segments; saddle elements
    are resolved with the element-centre value.

    Returns:
        (point_coords, segments): point coordinates (N, 2) and segment
        point indices (M, 2)
    """
    domain = level_set.domain
    h = domain.element_size
    nelx, nely = domain.nelx, domain.nely
    P = level_set.signed_distance.reshape(level_set.grid_shape)
    solid = P >= 0

    # crossings on horizontal edges (j, i)-(j, i+1)
    a, b = P[:, :-1], P[:, 1:]
    cross_h = solid[:, :-1] != solid[:, 1:]
    t_h = np.where(cross_h, a / np.where(cross_h, a - b, 1.0), 0.0)
    jh, ih = np.nonzero(cross_h)
    coords_h = np.column_stack([(ih + t_h[jh, ih]) * h, jh * h])

    # crossings on vertical edges (j, i)-(j+1, i)
    a, b = P[:-1, :], P[1:, :]
    cross_v = solid[:-1, :] != solid[1:, :]
    t_v = np.where(cross_v, a / np.where(cross_v, a - b, 1.0), 0.0)
    jv, iv = np.nonzero(cross_v)
    coords_v = np.column_stack([iv * h, (jv + t_v[jv, iv]) * h])

    id_h = np.full(cross_h.shape, -1, dtype=np.int64)
    id_h[jh, ih] = np.arange(len(jh))
    id_v = np.full(cross_v.shape, -1, dtype=np.int64)
    id_v[jv, iv] = np.arange(len(jv)) + len(jh)
    all_coords = np.vstack([coords_h, coords_v]) if len(jh) + len(jv) else np.zeros((0, 2))

    # element edges: bottom, right, top, left
    edges = np.stack([
        id_h[:-1, :], id_v[:, 1:], id_h[1:, :], id_v[:, :-1]
    ], axis=-1).reshape(-1, 4)
    active = domain.active_elements
    n_cross = np.sum(edges >= 0, axis=1)

    segments = []
    simple = active & (n_cross == 2)
    if np.any(simple):
        ids = np.sort(np.where(edges[simple] >= 0, edges[simple], np.iinfo(np.int64).max), axis=1)
        segments.append(ids[:, :2])

    saddle = np.flatnonzero(active & (n_cross == 4))
    if saddle.size:
        corners = _element_corner_values(P, nelx)[saddle]
        centre_solid = corners.mean(axis=1) >= 0
        cut_c0 = centre_solid != (corners[:, 0] >= 0)
        e = edges[saddle]
        bottom, right, top, left = e[:, 0], e[:, 1], e[:, 2], e[:, 3]
        first = np.where(cut_c0[:, None], np.column_stack([left, bottom]),
                         np.column_stack([bottom, right]))
        second = np.where(cut_c0[:, None], np.column_stack([right, top]),
                          np.column_stack([top, left]))
        segments.extend([first, second])

    if not segments:
        return np.zeros((0, 2)), np.zeros((0, 2), dtype=np.int64)

    segments = np.vstack(segments)
    used, compact = np.unique(segments, return_inverse=True)
    return all_coords[used], compact.reshape(-1, 2).astype(np.int64)


def _element_corner_values(P: np.ndarray, nelx: int) -> np.ndarray:
    """Nodal values (n_elements, 4) counter-clockwise from the lower-left corner."""
    return np.stack([P[:-1, :-1], P[:-1, 1:], P[1:, 1:], P[1:, :-1]], axis=-1).reshape(-1, 4)


def cut_element_area(phi: np.ndarray) -> float:
    """
    Solid area fraction of a unit square from its four corner values.

    The boundary is linear along each edge; saddles follow the centre value.
    """
    solid = phi >= 0
    if solid.all():
        return 1.0
    if not solid.any():
        return 0.0

    saddle = solid[0] == solid[2] and solid[1] == solid[3] and solid[0] != solid[1]
    if saddle and phi.mean() < 0:
        # isolated solid corners
        area = 0.0
        for k in np.flatnonzero(solid):
            s1 = phi[k] / (phi[k] - phi[(k + 1) % 4])
            s2 = phi[k] / (phi[k] - phi[(k - 1) % 4])
            area += 0.5 * s1 * s2
        return float(area)

    corners = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
    verts = []
    for k in range(4):
        n = (k + 1) % 4
        if solid[k]:
            verts.append(corners[k])
        if solid[k] != solid[n]:
            t = phi[k] / (phi[k] - phi[n])
            verts.append(corners[k] + t * (corners[n] - corners[k]))
    verts = np.array(verts)
    x, y = verts[:, 0], verts[:, 1]
    return float(0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


class Boundary:
    """
    Discretised structural boundary of a level set.

    Attributes:
        points: Boundary points of the current iteration
        segments: Point index pairs (M, 2)
        element_areas: Solid area fraction of every level-set element
        area: Material area enclosed by the boundary
    """

    def __init__(self, level_set: LevelSet):
        self.level_set = level_set
        self.domain = level_set.domain
        self.points: List[BoundaryPoint] = []
        self.segments = np.zeros((0, 2), dtype=np.int64)
        self.element_areas = np.zeros(self.domain.n_elements)
        self.area = 0.0

    @property
    def n_elements(self) -> int:
        return self.domain.n_elements

    def discretise(self, n_sensitivities: int = 2) -> None:
        """Rebuild the boundary points and element areas from the current zero contour."""
        point_coords, segments = discretise_zero_contour(self.level_set)

        lengths = np.zeros(len(point_coords))
        if len(segments):
            seg_len = np.linalg.norm(
                point_coords[segments[:, 1]] - point_coords[segments[:, 0]], axis=1)
            np.add.at(lengths, segments[:, 0], 0.5 * seg_len)
            np.add.at(lengths, segments[:, 1], 0.5 * seg_len)

        fixed = np.zeros(len(point_coords), dtype=bool)
        for region in self.domain.fixed:
            fixed |= region.contains(point_coords)

        self.segments = segments
        self.points = [
            BoundaryPoint(
                coord=point_coords[k].copy(),
                sensitivities=np.zeros(n_sensitivities),
                length=float(lengths[k]),
                is_fixed=bool(fixed[k]),
            )
            for k in range(len(point_coords))
        ]
        self.compute_area_fractions()

    def compute_area_fractions(self) -> np.ndarray:
        """Area fraction of every element; updates the enclosed area."""
        P = self.level_set.signed_distance.reshape(self.level_set.grid_shape)
        corners = _element_corner_values(P, self.domain.nelx)
        active = self.domain.active_elements

        areas = np.zeros(self.domain.n_elements)
        full = active & np.all(corners >= 0, axis=1)
        areas[full] = 1.0
        cut = active & np.any(corners >= 0, axis=1) & ~full
        for e in np.flatnonzero(cut):
            areas[e] = cut_element_area(corners[e])

        self.element_areas = areas
        self.area = float(areas.sum()) * self.domain.element_area
        return areas

    def segment_coords(self) -> np.ndarray:
        """Segment end points (M, 4): x1, y1, x2, y2."""
        if not self.points:
            return np.zeros((0, 4))
        coords = np.array([p.coord for p in self.points])
        return np.hstack([coords[self.segments[:, 0]], coords[self.segments[:, 1]]])
