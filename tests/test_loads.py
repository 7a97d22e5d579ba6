import numpy as np
import pytest

from src.lsto.core.errors import ConfigurationError
from src.lsto.core.geometry import LevelSetDomain, create_lbeam_domain
from src.lsto.core.loads import DOFS_PER_NODE, create_lbeam_load_case, nodes_by_coordinates


def test_nodes_by_coordinates_box():
    coords = LevelSetDomain(nelx=4, nely=4).node_coords()
    nodes = nodes_by_coordinates(coords, center=(4.0, 2.0), tol=(0.1, 1.1))
    assert coords[nodes].tolist() == [[4.0, 1.0], [4.0, 2.0], [4.0, 3.0]]


def test_nodes_by_coordinates_empty_query_fails():
    coords = LevelSetDomain(nelx=4, nely=4).node_coords()
    with pytest.raises(ConfigurationError):
        nodes_by_coordinates(coords, center=(10.0, 10.0), tol=(0.1, 0.1))


def test_lbeam_domain():
    domain = create_lbeam_domain()
    assert domain.shape == (100, 100)
    assert domain.mesh_area == 6400.0
    assert len(domain.holes) == 5
    assert all(h.radius == 10.0 for h in domain.holes)
    assert domain.is_fixed_point(np.array([99.0, 39.0]))
    assert not domain.is_fixed_point(np.array([90.0, 39.0]))


def test_lbeam_load_case():
    domain = create_lbeam_domain()
    load_case = create_lbeam_load_case(domain)
    n_dofs = DOFS_PER_NODE * domain.n_nodes

    F = load_case.get_force_vector(n_dofs)
    assert F[1::2].sum() == pytest.approx(-3.0)
    assert F[0::2].sum() == 0.0
    loaded = np.flatnonzero(F[1::2])
    assert np.allclose(domain.node_coords()[loaded][:, 1], 40.0)
    assert np.all(domain.node_coords()[loaded][:, 0] >= 99.0)

    constrained = load_case.get_constrained_dofs()
    clamped_nodes = np.unique(constrained // DOFS_PER_NODE)
    assert len(constrained) == 2 * 101
    assert np.all(domain.node_coords()[clamped_nodes][:, 1] == 100.0)
