import numpy as np
import pytest

from src.lsto.core.geometry import Hole, LevelSetDomain, Region, create_lbeam_domain
from src.lsto.numerical.level_set import (
    Boundary,
    BoundaryPoint,
    LevelSet,
    cut_element_area,
)


def _make_circle(radius=8.0, n=40):
    domain = LevelSetDomain(nelx=n, nely=n, holes=[Hole(n / 2, n / 2, radius)])
    level_set = LevelSet(domain)
    boundary = Boundary(level_set)
    boundary.discretise()
    return domain, level_set, boundary


def test_cut_element_area_cases():
    assert cut_element_area(np.array([1.0, 1.0, 1.0, 1.0])) == 1.0
    assert cut_element_area(np.array([-1.0, -1.0, -1.0, -1.0])) == 0.0
    assert cut_element_area(np.array([1.0, 1.0, -1.0, -1.0])) == pytest.approx(0.5)
    assert cut_element_area(np.array([1.0, -1.0, -1.0, -1.0])) == pytest.approx(0.125)
    # saddles follow the centre value
    assert cut_element_area(np.array([1.0, -1.0, 1.0, -1.0])) == pytest.approx(0.75)
    assert cut_element_area(np.array([1.0, -2.0, 1.0, -2.0])) == pytest.approx(1.0 / 9.0)


def test_circular_hole_area_and_perimeter():
    domain, _, boundary = _make_circle()
    assert boundary.area == pytest.approx(40 * 40 - np.pi * 64, rel=2e-3)
    assert sum(p.length for p in boundary.points) == pytest.approx(2 * np.pi * 8, rel=1e-2)
    assert boundary.element_areas.shape == (domain.n_elements,)
    assert np.all((boundary.element_areas >= 0) & (boundary.element_areas <= 1))


def test_boundary_points_lie_on_circle():
    _, _, boundary = _make_circle()
    coords = np.array([p.coord for p in boundary.points])
    radii = np.hypot(coords[:, 0] - 20, coords[:, 1] - 20)
    assert np.all(np.abs(radii - 8.0) < 0.05)
    assert len(boundary.segments) == len(boundary.points)  # closed contour
    assert boundary.segment_coords().shape == (len(boundary.segments), 4)


def test_reinitialise_restores_distance():
    domain, level_set, _ = _make_circle()
    exact = np.hypot(level_set.coords[:, 0] - 20, level_set.coords[:, 1] - 20) - 8.0
    level_set.signed_distance = 3.0 * exact
    level_set.reinitialise()
    assert np.max(np.abs(level_set.signed_distance - exact)) < 0.05


def test_positive_velocity_grows_hole():
    _, level_set, boundary = _make_circle()
    area_before = boundary.area
    for point in boundary.points:
        point.velocity = 1.0
    level_set.extend_velocities(boundary.points)
    level_set.compute_gradients()
    assert level_set.update(0.5) is False

    boundary.discretise()
    coords = np.array([p.coord for p in boundary.points])
    radii = np.hypot(coords[:, 0] - 20, coords[:, 1] - 20)
    assert boundary.area < area_before
    assert np.all(np.abs(radii - 8.5) < 0.1)


def test_fixed_nodes_do_not_move():
    domain = LevelSetDomain(nelx=20, nely=20, holes=[Hole(10, 10, 4)],
                            fixed=[Region(lower=(13.5, 9.5), upper=(14.5, 10.5))])
    level_set = LevelSet(domain)
    boundary = Boundary(level_set)
    boundary.discretise()
    before = level_set.signed_distance[level_set.is_fixed].copy()

    for point in boundary.points:
        point.velocity = 1.0
    level_set.extend_velocities(boundary.points)
    level_set.compute_gradients()
    level_set.update(0.5)
    level_set.reinitialise()

    assert level_set.is_fixed.sum() == 1
    assert np.all(level_set.signed_distance[level_set.is_fixed] == before)
    assert any(p.is_fixed for p in boundary.points)


def test_lbeam_killed_region_stays_void():
    domain = create_lbeam_domain(n_elements=20)
    level_set = LevelSet(domain)
    boundary = Boundary(level_set)
    boundary.discretise()

    assert np.all(level_set.signed_distance[~level_set.is_active] < 0)
    assert domain.mesh_area == 256.0
    assert np.all(boundary.element_areas[~domain.active_elements] == 0.0)
    assert boundary.area <= domain.mesh_area


def test_extend_velocities_uses_nearest_point():
    domain = LevelSetDomain(nelx=10, nely=10, holes=[Hole(5, 5, 3)])
    level_set = LevelSet(domain)
    points = [BoundaryPoint(coord=np.array([2.0, 5.0]), velocity=1.0),
              BoundaryPoint(coord=np.array([8.0, 5.0]), velocity=-1.0)]
    level_set.extend_velocities(points)
    # node (i, j) has index j * (nelx + 1) + i
    assert level_set.velocity[5 * 11 + 1] == 1.0
    assert level_set.velocity[5 * 11 + 9] == -1.0
