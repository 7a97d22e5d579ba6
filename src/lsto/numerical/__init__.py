"""
LSTO Numerical - Level-set stress minimization

The optimization loop (topopt) only depends on the capability protocols in
`interfaces`; fem, sensitivity, level_set and subsolver provide the
reference engines.
"""

from .fem import (
    MaterialProperties,
    SolveStatus,
    ElasticitySolver,
    get_element_stiffness_matrix,
    get_element_dof_indices,
    assemble_global_stiffness,
    solve_fem,
)
from .sensitivity import SensitivityField, SensitivityEngine
from .level_set import BoundaryPoint, LevelSet, Boundary
from .subsolver import NewtonRaphsonSubsolver
from .topopt import (
    StressParams,
    StressResult,
    TerminationReason,
    StressOptimizer,
    ReinitializationScheduler,
    ConvergenceMonitor,
    map_area_fractions,
    compute_constraint_state,
    assign_boundary_sensitivities,
    check_element_index_contract,
)

__all__ = [
    # FEM
    "MaterialProperties",
    "SolveStatus",
    "ElasticitySolver",
    "get_element_stiffness_matrix",
    "get_element_dof_indices",
    "assemble_global_stiffness",
    "solve_fem",
    # Sensitivities
    "SensitivityField",
    "SensitivityEngine",
    # Level set
    "BoundaryPoint",
    "LevelSet",
    "Boundary",
    "NewtonRaphsonSubsolver",
    # Optimization loop
    "StressParams",
    "StressResult",
    "TerminationReason",
    "StressOptimizer",
    "ReinitializationScheduler",
    "ConvergenceMonitor",
    "map_area_fractions",
    "compute_constraint_state",
    "assign_boundary_sensitivities",
    "check_element_index_contract",
]
