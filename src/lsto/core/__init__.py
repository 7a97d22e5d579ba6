"""
LSTO Core - Problem definitions and loop records

Contains the structured grid, load cases, the error taxonomy and the
records exchanged by the optimization loop.
"""

from .geometry import Hole, Region, LevelSetDomain, create_lbeam_domain
from .loads import (
    DOF,
    BoundaryCondition,
    PointLoad,
    LoadCase,
    nodes_by_coordinates,
    create_lbeam_load_case,
)
from .errors import (
    LSTOError,
    ConfigurationError,
    NumericalDivergence,
    RecordingFailure,
    ConstraintInfeasibleStep,
)
from .state import (
    IterationStage,
    ConstraintState,
    OptimizationResult,
    ReinitState,
    ObjectiveHistory,
    IterationRecord,
    LoopState,
)

__all__ = [
    "Hole",
    "Region",
    "LevelSetDomain",
    "create_lbeam_domain",
    "DOF",
    "BoundaryCondition",
    "PointLoad",
    "LoadCase",
    "nodes_by_coordinates",
    "create_lbeam_load_case",
    "LSTOError",
    "ConfigurationError",
    "NumericalDivergence",
    "RecordingFailure",
    "ConstraintInfeasibleStep",
    "IterationStage",
    "ConstraintState",
    "OptimizationResult",
    "ReinitState",
    "ObjectiveHistory",
    "IterationRecord",
    "LoopState",
]
