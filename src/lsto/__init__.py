"""
LSTO - Level-Set Topology Optimization

Stress minimization of 2D structures with a level-set boundary and an
area-fraction finite element model, structured in two submodules:

- **core**: Problem definitions (grid, loads), loop state records, errors
- **numerical**: FEM, sensitivities, level set, sub-solver and the
  optimization loop
"""

__version__ = "0.1.0"

from .core.geometry import LevelSetDomain, create_lbeam_domain
from .core.loads import LoadCase, create_lbeam_load_case
from .core.errors import LSTOError
from .numerical.fem import MaterialProperties, ElasticitySolver
from .numerical.topopt import StressOptimizer, StressParams, StressResult
from .recorder import ResultsRecorder

__all__ = [
    # Core
    "LevelSetDomain",
    "create_lbeam_domain",
    "LoadCase",
    "create_lbeam_load_case",
    "LSTOError",
    # Numerical
    "MaterialProperties",
    "ElasticitySolver",
    "StressOptimizer",
    "StressParams",
    "StressResult",
    # Output
    "ResultsRecorder",
]
