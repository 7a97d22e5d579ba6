"""Deterministic fakes of the numerical engines used by the optimization loop."""

import numpy as np
import pytest

from src.lsto.core.errors import RecordingFailure
from src.lsto.core.geometry import LevelSetDomain
from src.lsto.core.loads import LoadCase
from src.lsto.core.state import OptimizationResult
from src.lsto.numerical.fem import SolveStatus
from src.lsto.numerical.level_set import BoundaryPoint


class FakeBoundary:
    def __init__(self, calls, n_elements=8, areas=None, area=3.0, n_points=3):
        self.calls = calls
        self._n_elements = n_elements
        self.element_areas = np.full(n_elements, 0.5) if areas is None else np.asarray(areas)
        self.area = area
        self.n_points = n_points
        self.points = []
        self.segments = np.zeros((0, 2), dtype=np.int64)

    @property
    def n_elements(self):
        return self._n_elements

    def discretise(self, n_sensitivities=2):
        self.calls.append("discretise")
        self.points = [
            BoundaryPoint(coord=np.array([float(k), 0.5]), sensitivities=np.zeros(n_sensitivities),
                          length=1.0)
            for k in range(self.n_points)
        ]

    def segment_coords(self):
        return np.zeros((0, 4))


class FakeSolver:
    def __init__(self, calls, n_elements=8, diverge_at=None):
        self.calls = calls
        self._n_elements = n_elements
        self.diverge_at = diverge_at
        self.assembled = []
        self.load_case = None

    @property
    def n_elements(self):
        return self._n_elements

    def assemble(self, area_fractions):
        self.calls.append("assemble")
        self.assembled.append(np.array(area_fractions))

    def assemble_loads(self, load_case):
        self.load_case = load_case

    def solve(self):
        self.calls.append("solve")
        if self.diverge_at is not None and len(self.assembled) == self.diverge_at:
            return SolveStatus.DIVERGED
        return SolveStatus.CONVERGED


class FakeSensitivity:
    """Objective values are taken from `objectives`, the last one repeats."""

    def __init__(self, calls, objectives=(10.0,)):
        self.calls = calls
        self.objectives = list(objectives)
        self.n_evaluations = 0
        self.cache = []
        self.clears = 0

    def compute_field_sensitivities(self, p_norm):
        self.calls.append("compute_field_sensitivities")
        k = min(self.n_evaluations, len(self.objectives) - 1)
        self.n_evaluations += 1
        objective = self.objectives[k]
        return objective, 2.0 * objective

    def interpolate_boundary(self, point, radius, field_selector, p_norm):
        if not self.cache:
            self.calls.append("interpolate_boundary")
        value = 1.0 + float(point[0])
        self.cache.append(value)
        return value

    def clear_boundary_cache(self):
        self.calls.append("clear_boundary_cache")
        self.cache.clear()
        self.clears += 1


class FakeSubsolver:
    def __init__(self, calls, time_step=0.1, lam=0.5):
        self.calls = calls
        self.time_step = time_step
        self.lam = lam
        self.constraints = []
        self.move_limits = []

    def solve(self, points, move_limit, domain_extents, constraint):
        self.calls.append("subsolve")
        self.constraints.append(constraint)
        self.move_limits.append(move_limit)
        for point in points:
            point.velocity = 1.0
        return OptimizationResult(time_step=self.time_step, lambdas=np.array([self.lam, 0.0]))


class FakeLevelSet:
    """update() answers from `self_reinit` in turn, False once exhausted."""

    def __init__(self, calls, self_reinit=()):
        self.calls = calls
        self.self_reinit = list(self_reinit)
        self.n_updates = 0
        self.n_reinitialise = 0
        self.signed_distance = np.zeros(15)
        self.grid_shape = (3, 5)

    def extend_velocities(self, points):
        self.calls.append("extend_velocities")

    def compute_gradients(self):
        self.calls.append("compute_gradients")

    def update(self, time_step):
        self.calls.append("update")
        k = self.n_updates
        self.n_updates += 1
        return self.self_reinit[k] if k < len(self.self_reinit) else False

    def reinitialise(self):
        self.calls.append("reinitialise")
        self.n_reinitialise += 1


class FakeRecorder:
    def __init__(self, calls, fail_on=()):
        self.calls = calls
        self.fail_on = set(fail_on)
        self.entered = False
        self.closed = False
        self.records = []
        self.snapshots = []

    def __enter__(self):
        if "enter" in self.fail_on:
            raise RecordingFailure("cannot create results directory")
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def write_iteration(self, record):
        self.calls.append("write_iteration")
        if "write_iteration" in self.fail_on:
            raise RecordingFailure("disk full")
        self.records.append(record)

    def save_level_set(self, iteration, level_set):
        self.snapshots.append(("level_set", iteration))

    def save_area_fractions(self, iteration, areas, shape):
        if "save_area_fractions" in self.fail_on:
            raise RecordingFailure("disk full")
        self.snapshots.append(("area_fractions", iteration))

    def save_boundary_segments(self, iteration, boundary):
        self.snapshots.append(("boundary_segments", iteration))


class FakeEngines:
    """Bundle of fakes sharing one call log."""

    def __init__(self, objectives=(10.0,), self_reinit=(), diverge_at=None,
                 fail_on=(), n_elements=8, areas=None, area=3.0):
        self.calls = []
        self.domain = LevelSetDomain(nelx=4, nely=2)
        self.load_case = LoadCase(name="fake", description="no loads")
        self.boundary = FakeBoundary(self.calls, n_elements=n_elements, areas=areas, area=area)
        self.solver = FakeSolver(self.calls, diverge_at=diverge_at)
        self.sensitivity = FakeSensitivity(self.calls, objectives)
        self.subsolver = FakeSubsolver(self.calls)
        self.level_set = FakeLevelSet(self.calls, self_reinit)
        self.recorder = FakeRecorder(self.calls, fail_on)

    def optimizer_kwargs(self):
        return dict(
            domain=self.domain,
            load_case=self.load_case,
            level_set=self.level_set,
            boundary=self.boundary,
            solver=self.solver,
            sensitivity=self.sensitivity,
            subsolver=self.subsolver,
            recorder=self.recorder,
            verbose=False,
        )


@pytest.fixture
def make_engines():
    return FakeEngines
