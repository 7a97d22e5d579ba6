import numpy as np
import pytest

from src.lsto.core.errors import ConfigurationError, NumericalDivergence
from src.lsto.core.state import IterationStage, ObjectiveHistory, ReinitState
from src.lsto.numerical.level_set import BoundaryPoint
from src.lsto.numerical.sensitivity import SensitivityField
from src.lsto.numerical.topopt import (
    ConvergenceMonitor,
    ReinitializationScheduler,
    StressOptimizer,
    StressParams,
    TerminationReason,
    assign_boundary_sensitivities,
    compute_constraint_state,
    map_area_fractions,
)


ITERATION_CALLS = [
    "discretise",
    "assemble",
    "solve",
    "compute_field_sensitivities",
    "interpolate_boundary",
    "clear_boundary_cache",
    "subsolve",
    "extend_velocities",
    "compute_gradients",
    "update",
]


def _run(engines, **params):
    optimizer = StressOptimizer(params=StressParams(**params), **engines.optimizer_kwargs())
    return optimizer, optimizer.run()


# Area fraction mapping and constraint budget

def test_map_area_fractions_applies_floor_index_aligned():
    areas = np.array([0.0, 0.25, 1.0, 1e-9])
    mapped = map_area_fractions(areas, 4)
    assert mapped.tolist() == [1e-6, 0.25, 1.0, 1e-6]


def test_map_area_fractions_rejects_count_mismatch():
    with pytest.raises(ConfigurationError):
        map_area_fractions(np.ones(5), 4)


def test_constraint_distance_is_remaining_budget():
    constraint = compute_constraint_state(boundary_area=3000.0, mesh_area=6400.0, max_area=0.4)
    assert constraint.constraint_distance == pytest.approx(-440.0)
    assert constraint.area_fraction == pytest.approx(3000.0 / 6400.0)


# Boundary sensitivities

def test_assign_boundary_sensitivities_negates_interpolated_value(make_engines):
    engines = make_engines()
    points = [BoundaryPoint(coord=np.array([x, 1.0])) for x in (0.0, 2.0, 5.0)]
    assign_boundary_sensitivities(points, engines.sensitivity, 2.0, SensitivityField.STRESS, 6.0)

    for point in points:
        assert point.objective_gradient == pytest.approx(-(1.0 + point.coord[0]))
        assert point.constraint_gradient == -1.0
    assert engines.sensitivity.cache == []
    assert engines.sensitivity.clears == 1


# Reinitialization scheduling

def test_second_plain_update_forces_reinitialisation(make_engines):
    level_set = make_engines().level_set
    scheduler = ReinitializationScheduler()
    state = ReinitState()

    assert scheduler.step(state, False, level_set) is False
    assert state.num_reinit == 1
    assert scheduler.step(state, False, level_set) is True
    assert state.num_reinit == 0
    assert level_set.n_reinitialise == 1


def test_self_reinitialisation_resets_counter(make_engines):
    level_set = make_engines().level_set
    scheduler = ReinitializationScheduler()
    state = ReinitState(num_reinit=1)

    assert scheduler.step(state, True, level_set) is False
    assert state.num_reinit == 0
    assert scheduler.step(state, False, level_set) is False
    assert state.num_reinit == 1
    assert level_set.n_reinitialise == 0


# Convergence

def test_relative_difference_frozen_for_first_window():
    monitor = ConvergenceMonitor()
    history = ObjectiveHistory()
    rd = 1.0
    for value in [10.0, 8.0, 7.0, 6.5, 6.4]:
        rd = monitor.update(history, value, rd)
        assert rd == 1.0
    assert len(history) == 5


def test_relative_difference_uses_trailing_window():
    monitor = ConvergenceMonitor()
    history = ObjectiveHistory([12.0, 10.0, 8.0, 7.0, 6.5, 6.4])
    rd = monitor.update(history, 6.0, 0.3)
    # compares with H[2..6]; H[1] = 12 is outside the window
    assert rd == pytest.approx(max(abs(6.0 - h) for h in [10.0, 8.0, 7.0, 6.5, 6.4]) / 6.0)


def test_constant_history_converges_at_sixth_value():
    monitor = ConvergenceMonitor()
    history = ObjectiveHistory([10.0] * 5)
    rd = monitor.update(history, 10.0, 1.0)
    assert rd == 0.0
    assert monitor.is_converged(rd, area_fraction=0.4004, max_area=0.4)
    assert not monitor.is_converged(rd, area_fraction=0.41, max_area=0.4)


def test_zero_objective():
    monitor = ConvergenceMonitor()
    assert monitor.update(ObjectiveHistory([0.0] * 5), 0.0, 1.0) == 0.0
    assert monitor.update(ObjectiveHistory([1.0] + [0.0] * 4), 0.0, 1.0) == float("inf")


# Optimization loop

def test_single_iteration_stage_order(make_engines):
    engines = make_engines()
    _run(engines, max_iterations=1)
    # setup discretises once before the first iteration
    assert engines.calls == ["discretise"] + ITERATION_CALLS + ["write_iteration"]


def test_second_iteration_forces_reinitialisation(make_engines):
    engines = make_engines()
    _run(engines, max_iterations=2)
    second = engines.calls[1 + len(ITERATION_CALLS) + 1:]
    assert second == ITERATION_CALLS + ["reinitialise", "write_iteration"]


def test_constant_objective_terminates_at_sixth_iteration(make_engines):
    engines = make_engines(objectives=[10.0], area=3.0)
    optimizer, result = _run(engines, max_iterations=50)

    assert result.converged
    assert result.termination_reason is TerminationReason.CONVERGED
    assert result.iterations == 6
    assert [r.relative_difference for r in result.records] == [1.0] * 5 + [0.0]
    assert result.objective_history == [10.0] * 6
    assert optimizer.state.stage is IterationStage.TERMINATE


def test_area_above_tolerance_prevents_convergence(make_engines):
    # 4.0 / 8.0 = 0.5 > 1.001 * 0.4
    engines = make_engines(objectives=[10.0], area=4.0)
    _, result = _run(engines, max_iterations=10)
    assert not result.converged
    assert result.iterations == 10


def test_stops_at_max_iterations(make_engines):
    engines = make_engines(objectives=[10.0, 9.0, 8.0, 7.0])
    _, result = _run(engines, max_iterations=3)

    assert result.iterations == 3
    assert not result.converged
    assert result.termination_reason is TerminationReason.MAX_ITERATIONS
    assert [r.iteration for r in result.records] == [1, 2, 3]
    assert result.time == pytest.approx(0.3)
    assert result.lambdas.tolist() == [0.5, 0.0]


def test_area_fractions_and_budget_reach_engines(make_engines):
    areas = np.array([0.0, 0.2, 1.0, 0.0, 0.5, 1.0, 1.0, 0.3])
    engines = make_engines(areas=areas, area=3.0)
    _run(engines, max_iterations=1, max_area=0.4)

    assert engines.solver.assembled[0] == pytest.approx(np.maximum(areas, 1e-6))
    constraint = engines.subsolver.constraints[0]
    assert constraint.mesh_area == 8.0
    assert constraint.constraint_distance == pytest.approx(8.0 * 0.4 - 3.0)
    assert engines.subsolver.move_limits == [0.15]
    for point in engines.boundary.points:
        assert point.sensitivities.tolist() == [-(1.0 + point.coord[0]), -1.0]


def test_divergence_is_fatal_with_iteration(make_engines):
    engines = make_engines(diverge_at=2)
    with pytest.raises(NumericalDivergence) as excinfo:
        _run(engines, max_iterations=10)

    assert excinfo.value.iteration == 2
    assert excinfo.value.stage is IterationStage.ASSEMBLE_AND_SOLVE_FE
    assert engines.level_set.n_updates == 1
    assert engines.recorder.closed


def test_element_count_mismatch_fails_before_loop(make_engines):
    engines = make_engines(n_elements=6, areas=np.zeros(6))
    with pytest.raises(ConfigurationError) as excinfo:
        _run(engines, max_iterations=10)

    assert excinfo.value.iteration == 0
    assert excinfo.value.stage is IterationStage.SETUP
    assert engines.calls == []


def test_recording_failure_does_not_stop_run(make_engines):
    engines = make_engines(fail_on={"write_iteration", "save_area_fractions"})
    _, result = _run(engines, max_iterations=3)

    assert result.iterations == 3
    assert len(result.records) == 3
    assert engines.calls.count("write_iteration") == 3
    assert engines.recorder.closed


def test_recorder_that_cannot_open_disables_recording(make_engines):
    engines = make_engines(fail_on={"enter"})
    _, result = _run(engines, max_iterations=2)

    assert result.iterations == 2
    assert "write_iteration" not in engines.calls
    assert engines.recorder.snapshots == []


def test_snapshots_written_for_setup_and_each_iteration(make_engines):
    engines = make_engines()
    _run(engines, max_iterations=2)

    iterations = sorted({it for _, it in engines.recorder.snapshots})
    assert iterations == [0, 1, 2]
    assert engines.recorder.entered and engines.recorder.closed
