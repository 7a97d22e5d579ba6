"""
topopt.py - Level-set stress minimization loop.

This module handles:
- Mapping of level-set area fractions onto the FE elements
- Area budget and boundary sensitivity assignment
- Reinitialization scheduling and multi-sample convergence check
- The iteration loop (StressOptimizer) sequencing all engines
"""

import numpy as np
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence
import logging
import time

from ..core.errors import ConfigurationError, LSTOError, NumericalDivergence, RecordingFailure
from ..core.geometry import LevelSetDomain
from ..core.loads import LoadCase
from ..core.state import (
    ConstraintState,
    IterationRecord,
    IterationStage,
    LoopState,
    ObjectiveHistory,
    ReinitState,
)
from .fem import SolveStatus
from .interfaces import (
    BoundaryDiscretizer,
    FiniteElementSolver,
    LevelSetEvolver,
    MeshState,
    OptimizationSubsolver,
    Recorder,
    SensitivityProvider,
)
from .level_set import BoundaryPoint
from .sensitivity import SensitivityField

logger = logging.getLogger(__name__)


@dataclass
class StressParams:
    """
    Parameters of the level-set stress minimization.

    Attributes:
        max_iterations: Maximum number of iterations
        max_area: Maximum material area fraction
        p_norm: P-norm exponent of the stress aggregation
        move_limit: CFL limit of the level-set update
        inner_move_limit: Move limit passed to the sub-solver
        band_width: Half-width of the narrow band
        least_squares_radius: Neighbourhood radius for boundary interpolation
        sensitivity_field: Gauss point field interpolated to the boundary
        convergence_tol: Tolerance on the relative objective change
        area_tolerance: Slack on the area constraint at convergence
        history_window: Past iterations compared by the convergence check
        area_fraction_floor: Smallest element area fraction passed to FE
        n_sensitivities: Sensitivity slots per boundary point
    """
    max_iterations: int = 500
    max_area: float = 0.4
    p_norm: float = 6.0
    move_limit: float = 0.5
    inner_move_limit: float = 0.15
    band_width: float = 6.0
    least_squares_radius: float = 2.0
    sensitivity_field: SensitivityField = SensitivityField.STRESS
    convergence_tol: float = 0.0005
    area_tolerance: float = 1.001
    history_window: int = 5
    area_fraction_floor: float = 1e-6
    n_sensitivities: int = 2


class TerminationReason(Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class StressResult:
    """
    Result of a stress minimization run.

    Attributes:
        iterations: Number of iterations executed
        converged: Whether the convergence criterion was met
        objective_history: P-norm stress per iteration
        records: Per-iteration statistics
        time: Accumulated pseudo-time of the level-set evolution
        lambdas: Multipliers of the last sub-solve
        elapsed_time: Wall time [s]
        termination_reason: Why the loop stopped
    """
    iterations: int = 0
    converged: bool = False
    objective_history: List[float] = field(default_factory=list)
    records: List[IterationRecord] = field(default_factory=list)
    time: float = 0.0
    lambdas: np.ndarray = field(default_factory=lambda: np.zeros(2))
    elapsed_time: float = 0.0
    termination_reason: TerminationReason = TerminationReason.MAX_ITERATIONS

    @property
    def final_objective(self) -> float:
        return self.objective_history[-1] if self.objective_history else 0.0

    @property
    def final_area_fraction(self) -> float:
        return self.records[-1].area_fraction if self.records else 0.0


def check_element_index_contract(mesh: MeshState, solver: FiniteElementSolver) -> None:
    """Both meshes must number the same elements; raises ConfigurationError otherwise."""
    if mesh.n_elements != solver.n_elements:
        raise ConfigurationError(
            f"Level-set mesh has {mesh.n_elements} elements, "
            f"FE mesh has {solver.n_elements}"
        )


def map_area_fractions(
    lsm_areas: np.ndarray,
    n_fea_elements: int,
    floor: float = 1e-6
) -> np.ndarray:
    """
    Element area fractions for the FE model.

    Args:
        lsm_areas: Area fraction of every level-set element
        n_fea_elements: Number of FE elements (must match)
        floor: Smallest fraction kept to avoid a singular stiffness

    Returns:
        Array of max(area, floor), index-aligned with the input
    """
    lsm_areas = np.asarray(lsm_areas, dtype=np.float64)
    if lsm_areas.shape != (n_fea_elements,):
        raise ConfigurationError(
            f"Cannot map {lsm_areas.size} level-set areas onto {n_fea_elements} FE elements"
        )
    return np.maximum(lsm_areas, floor)


def compute_constraint_state(
    boundary_area: float,
    mesh_area: float,
    max_area: float
) -> ConstraintState:
    """Area budget of the current boundary."""
    return ConstraintState(mesh_area=mesh_area, max_area=max_area, boundary_area=boundary_area)


def assign_boundary_sensitivities(
    points: Sequence[BoundaryPoint],
    engine: SensitivityProvider,
    radius: float,
    field_selector: int,
    p_norm: float
) -> None:
    """
    Set [objective, constraint] gradients of every boundary point.

    The objective gradient is the negated interpolated sensitivity, the
    constraint gradient is -1 (moving into the material removes area).
    The engine's interpolation cache is cleared afterwards.
    """
    for point in points:
        s = engine.interpolate_boundary(point.coord, radius, field_selector, p_norm)
        point.sensitivities[0] = -s
        point.sensitivities[1] = -1.0
    engine.clear_boundary_cache()


class ReinitializationScheduler:
    """Forces a reinitialization every second update that did not reinitialise itself."""

    def step(
        self,
        state: ReinitState,
        did_self_reinitialize: bool,
        level_set: LevelSetEvolver
    ) -> bool:
        """
        Advance the counter after a level-set update.

        Returns:
            True if reinitialise() was forced
        """
        if did_self_reinitialize:
            state.num_reinit = 0
            return False
        if state.num_reinit == 1:
            level_set.reinitialise()
            state.num_reinit = 0
            return True
        state.num_reinit += 1
        return False


class ConvergenceMonitor:
    """
    Relative objective change over a trailing window.

    Attributes:
        window: Number of past values compared with the current one
        tolerance: Largest relative change at convergence
        area_tolerance: Allowed overshoot factor of the area constraint
    """

    def __init__(self, window: int = 5, tolerance: float = 0.0005, area_tolerance: float = 1.001):
        self.window = window
        self.tolerance = tolerance
        self.area_tolerance = area_tolerance

    def update(self, history: ObjectiveHistory, objective: float, previous: float) -> float:
        """
        Append the objective and return the relative difference.

        Until the history holds more than `window` values the previous
        relative difference is returned unchanged.
        """
        history.append(objective)
        if len(history) <= self.window:
            return previous

        current = history.last
        trailing = np.asarray(history[-self.window - 1:-1], dtype=np.float64)
        change = np.abs(current - trailing)
        if current == 0.0:
            return 0.0 if not change.any() else float("inf")
        return float(change.max() / abs(current))

    def is_converged(self, relative_difference: float, area_fraction: float, max_area: float) -> bool:
        return (relative_difference <= self.tolerance
                and area_fraction <= self.area_tolerance * max_area)


class StressOptimizer:
    """
    Level-set topology optimizer minimizing the p-norm von Mises stress
    under a maximum material area.

    Every iteration runs the stages of IterationStage in order; the loop
    state lives in a single LoopState. Fatal errors are stamped with the
    iteration and stage reached and re-raised, recording failures are
    logged and the run continues.
    """

    def __init__(
        self,
        domain: LevelSetDomain,
        load_case: LoadCase,
        level_set: LevelSetEvolver,
        boundary: BoundaryDiscretizer,
        solver: FiniteElementSolver,
        sensitivity: SensitivityProvider,
        subsolver: OptimizationSubsolver,
        recorder: Optional[Recorder] = None,
        params: StressParams = None,
        verbose: bool = True
    ):
        """
        Args:
            domain: Structured grid shared by the level-set and FE meshes
            load_case: Loads and clamped DOFs
            level_set: Level-set function
            boundary: Boundary discretisation of the level set
            solver: Elasticity solver
            sensitivity: Stress and sensitivity engine
            subsolver: Constrained step computation
            recorder: History and snapshot writer (None disables recording)
            params: Optimization parameters (default values of the L-beam case)
            verbose: Print the iteration table
        """
        self.domain = domain
        self.load_case = load_case
        self.level_set = level_set
        self.boundary = boundary
        self.solver = solver
        self.sensitivity = sensitivity
        self.subsolver = subsolver
        self.recorder = recorder
        self.params = params or StressParams()
        self.verbose = verbose

        self.scheduler = ReinitializationScheduler()
        self.monitor = ConvergenceMonitor(
            window=self.params.history_window,
            tolerance=self.params.convergence_tol,
            area_tolerance=self.params.area_tolerance,
        )
        self.state = LoopState()
        self._recording = recorder is not None

    def run(self, callback: Optional[Callable] = None) -> StressResult:
        """
        Run the optimization.

        Args:
            callback: Called after every iteration as callback(state, record)

        Returns:
            StressResult
        """
        start_time = time.time()
        self.state = state = LoopState()
        p = self.params
        converged = False

        with ExitStack() as stack:
            try:
                self._setup(stack)

                if self.verbose:
                    print("=" * 60)
                    print("Level-Set Stress Minimization")
                    print("=" * 60)
                    print(f"Grid size: {self.domain.nelx} x {self.domain.nely}")
                    print(f"Design area: {self.domain.mesh_area:.1f}")
                    print(f"Maximum area fraction: {p.max_area:.2%}")
                    print(f"P-norm: {p.p_norm}")
                    print("-" * 60)
                    print(f"{'Iteration':>9} {'Objective':>12} {'Tvm_max':>12} {'Area':>8}")

                while state.count_iter < p.max_iterations:
                    state.count_iter += 1
                    record = self._iterate(state)

                    if self.verbose:
                        print(f"{record.iteration:9d} {record.objective:12.4f} "
                              f"{record.max_stress:12.4f} {record.area_fraction:8.4f}")
                    if callback:
                        callback(state, record)

                    if self.monitor.is_converged(record.relative_difference,
                                                 record.area_fraction, p.max_area):
                        converged = True
                        break
            except LSTOError as exc:
                exc.iteration = state.count_iter
                exc.stage = state.stage
                logger.error("Run aborted at iteration %d during %s: %s",
                             state.count_iter, state.stage.name, exc)
                raise

        state.stage = IterationStage.TERMINATE
        elapsed_time = time.time() - start_time
        reason = TerminationReason.CONVERGED if converged else TerminationReason.MAX_ITERATIONS
        logger.info("Stopped after %d iterations (%s) in %.1fs",
                    state.count_iter, reason.value, elapsed_time)

        if self.verbose:
            print("-" * 60)
            if converged:
                print(f"Converged at iteration {state.count_iter}")
            print(f"Optimization complete in {elapsed_time:.1f}s")
            if state.records:
                print(f"Final objective: {state.records[-1].objective:.4f}")
                print(f"Final area fraction: {state.records[-1].area_fraction:.4f}")
            print("=" * 60)

        return StressResult(
            iterations=state.count_iter,
            converged=converged,
            objective_history=list(state.history.values),
            records=list(state.records),
            time=state.time,
            lambdas=state.lambdas.copy(),
            elapsed_time=elapsed_time,
            termination_reason=reason,
        )

    def _setup(self, stack: ExitStack) -> None:
        """Iteration 0: contract check, loads, recorder and initial snapshots."""
        self.state.stage = IterationStage.SETUP
        check_element_index_contract(self.boundary, self.solver)
        self.solver.assemble_loads(self.load_case)

        if self.recorder is not None:
            try:
                stack.enter_context(self.recorder)
                self._recording = True
            except RecordingFailure as exc:
                logger.warning("Recording disabled: %s", exc)
                self._recording = False

        self.boundary.discretise(self.params.n_sensitivities)
        self._snapshot(0)

    def _iterate(self, state: LoopState) -> IterationRecord:
        p = self.params

        self._enter(state, IterationStage.DISCRETIZE_BOUNDARY)
        self.boundary.discretise(p.n_sensitivities)

        self._enter(state, IterationStage.MAP_AREA_FRACTIONS)
        area_fractions = map_area_fractions(self.boundary.element_areas,
                                            self.solver.n_elements, p.area_fraction_floor)

        self._enter(state, IterationStage.ASSEMBLE_AND_SOLVE_FE)
        self.solver.assemble(area_fractions)
        if self.solver.solve() is SolveStatus.DIVERGED:
            raise NumericalDivergence("Elasticity solve diverged", iteration=state.count_iter)

        self._enter(state, IterationStage.COMPUTE_FIELD_SENSITIVITIES)
        objective, max_stress = self.sensitivity.compute_field_sensitivities(p.p_norm)

        self._enter(state, IterationStage.INTERPOLATE_AND_ASSIGN_BOUNDARY_SENSITIVITIES)
        points = self.boundary.points
        assign_boundary_sensitivities(points, self.sensitivity, p.least_squares_radius,
                                      p.sensitivity_field, p.p_norm)

        self._enter(state, IterationStage.COMPUTE_CONSTRAINT_BUDGET)
        constraint = compute_constraint_state(self.boundary.area, self.domain.mesh_area,
                                              p.max_area)

        self._enter(state, IterationStage.INVOKE_SUBSOLVER)
        step = self.subsolver.solve(points, p.inner_move_limit,
                                    (self.domain.width, self.domain.height), constraint)
        state.lambdas = step.lambdas

        self._enter(state, IterationStage.EVOLVE_LEVEL_SET)
        self.level_set.extend_velocities(points)
        self.level_set.compute_gradients()
        did_self_reinitialize = self.level_set.update(step.time_step)
        state.time += step.time_step

        self._enter(state, IterationStage.CHECK_REINITIALIZATION)
        if self.scheduler.step(state.reinit, did_self_reinitialize, self.level_set):
            logger.debug("Forced reinitialisation at iteration %d", state.count_iter)

        self._enter(state, IterationStage.UPDATE_HISTORY_AND_CHECK_CONVERGENCE)
        state.relative_difference = self.monitor.update(state.history, objective,
                                                        state.relative_difference)

        self._enter(state, IterationStage.RECORD)
        record = IterationRecord(
            iteration=state.count_iter,
            objective=objective,
            max_stress=max_stress,
            area_fraction=constraint.area_fraction,
            relative_difference=state.relative_difference,
        )
        state.records.append(record)
        self._record(self.recorder.write_iteration if self._recording else None, record)
        self._snapshot(state.count_iter)
        return record

    def _enter(self, state: LoopState, stage: IterationStage) -> None:
        state.stage = stage
        logger.debug("Iteration %d: %s", state.count_iter, stage.name)

    def _snapshot(self, iteration: int) -> None:
        if not self._recording:
            return
        self._record(self.recorder.save_level_set, iteration, self.level_set)
        self._record(self.recorder.save_area_fractions, iteration,
                     self.boundary.element_areas, self.domain.shape)
        self._record(self.recorder.save_boundary_segments, iteration, self.boundary)

    def _record(self, write: Optional[Callable], *args) -> None:
        """Call a recorder method; failures are logged and the run goes on."""
        if write is None:
            return
        try:
            write(*args)
        except RecordingFailure as exc:
            logger.warning("Recording failed at iteration %d: %s", self.state.count_iter, exc)
