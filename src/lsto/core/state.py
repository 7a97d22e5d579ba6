"""
state.py - Records exchanged by the optimization loop.

The loop keeps all of its mutable bookkeeping (iteration counter, objective
history, reinitialization counter, multipliers) in a single LoopState value
owned by the optimizer.
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class IterationStage(Enum):
    """Stages of one optimization iteration, in execution order."""
    SETUP = 0
    DISCRETIZE_BOUNDARY = 1
    MAP_AREA_FRACTIONS = 2
    ASSEMBLE_AND_SOLVE_FE = 3
    COMPUTE_FIELD_SENSITIVITIES = 4
    INTERPOLATE_AND_ASSIGN_BOUNDARY_SENSITIVITIES = 5
    COMPUTE_CONSTRAINT_BUDGET = 6
    INVOKE_SUBSOLVER = 7
    EVOLVE_LEVEL_SET = 8
    CHECK_REINITIALIZATION = 9
    UPDATE_HISTORY_AND_CHECK_CONVERGENCE = 10
    RECORD = 11
    TERMINATE = 12


@dataclass
class ConstraintState:
    """
    Area budget of the current design.

    Attributes:
        mesh_area: Area of the whole design domain
        max_area: Maximum allowed material fraction
        boundary_area: Material area enclosed by the current boundary
    """
    mesh_area: float
    max_area: float
    boundary_area: float

    @property
    def constraint_distance(self) -> float:
        """Remaining area budget; negative when the budget is exceeded."""
        return self.mesh_area * self.max_area - self.boundary_area

    @property
    def area_fraction(self) -> float:
        return self.boundary_area / self.mesh_area


@dataclass
class OptimizationResult:
    """
    Output of the constrained sub-solve.

    Attributes:
        time_step: Pseudo-time advance of the level set
        lambdas: Multipliers; slot 0 is the area constraint, slot 1 is reserved
        is_feasible: False when the area budget was out of reach
    """
    time_step: float
    lambdas: np.ndarray = field(default_factory=lambda: np.zeros(2))
    is_feasible: bool = True

    def __post_init__(self):
        self.lambdas = np.asarray(self.lambdas, dtype=np.float64)
        assert self.lambdas.shape == (2,), "lambdas must have exactly two entries"


@dataclass
class ReinitState:
    """Iterations since the level set was last an exact signed distance."""
    num_reinit: int = 0


@dataclass
class ObjectiveHistory:
    """Append-only sequence of objective values, one per iteration."""
    values: List[float] = field(default_factory=list)

    def append(self, value: float) -> None:
        self.values.append(float(value))

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, index):
        return self.values[index]

    @property
    def last(self) -> float:
        return self.values[-1]


@dataclass(frozen=True)
class IterationRecord:
    """Statistics of one completed iteration."""
    iteration: int
    objective: float
    max_stress: float
    area_fraction: float
    relative_difference: float

    def as_row(self) -> List[float]:
        return [self.iteration, self.objective, self.max_stress,
                self.area_fraction, self.relative_difference]


@dataclass
class LoopState:
    """
    Bookkeeping carried from one iteration to the next.

    Attributes:
        count_iter: Completed-or-running iteration number (0 = setup)
        time: Accumulated pseudo-time
        lambdas: Multipliers of the last sub-solve
        relative_difference: Last convergence measure (1.0 = not converged)
        history: Objective history
        reinit: Reinitialization counter
        records: Iteration records
        stage: Stage currently executing
    """
    count_iter: int = 0
    time: float = 0.0
    lambdas: np.ndarray = field(default_factory=lambda: np.zeros(2))
    relative_difference: float = 1.0
    history: ObjectiveHistory = field(default_factory=ObjectiveHistory)
    reinit: ReinitState = field(default_factory=ReinitState)
    records: List[IterationRecord] = field(default_factory=list)
    stage: IterationStage = IterationStage.SETUP

    @property
    def last_record(self) -> Optional[IterationRecord]:
        return self.records[-1] if self.records else None
