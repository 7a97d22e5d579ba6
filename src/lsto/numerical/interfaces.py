"""
interfaces.py - Capabilities the optimization loop depends on.

The loop only talks to these protocols, so each numerical engine can be
replaced (e.g. by deterministic fakes in tests). The reference engines are
ElasticitySolver (fem.py), SensitivityEngine (sensitivity.py), LevelSet and
Boundary (level_set.py) and NewtonRaphsonSubsolver (subsolver.py).
"""

from typing import Protocol, Sequence, Tuple, List
import numpy as np

from ..core.loads import LoadCase
from ..core.state import ConstraintState, OptimizationResult, IterationRecord
from .fem import SolveStatus
from .level_set import BoundaryPoint


class MeshState(Protocol):
    """Per-element material area fractions of the level-set mesh."""

    element_areas: np.ndarray

    @property
    def n_elements(self) -> int:
        ...


class BoundaryDiscretizer(MeshState, Protocol):
    """
    Discretised boundary of the current level set.

    discretise() rebuilds `points`, `segments`, `element_areas` and `area`.
    """

    points: List[BoundaryPoint]
    segments: np.ndarray
    area: float

    def discretise(self, n_sensitivities: int = 2) -> None:
        ...


class FiniteElementSolver(Protocol):
    """Linear elasticity on the FE mesh (index aligned with the level set)."""

    @property
    def n_elements(self) -> int:
        ...

    def assemble(self, area_fractions: np.ndarray) -> None:
        ...

    def assemble_loads(self, load_case: LoadCase) -> None:
        ...

    def solve(self) -> SolveStatus:
        ...


class SensitivityProvider(Protocol):
    """Objective evaluation and boundary sensitivity interpolation."""

    def compute_field_sensitivities(self, p_norm: float) -> Tuple[float, float]:
        """Returns (objective, max von Mises stress)."""
        ...

    def interpolate_boundary(
        self,
        point: Sequence[float],
        radius: float,
        field_selector: int,
        p_norm: float
    ) -> float:
        ...

    def clear_boundary_cache(self) -> None:
        ...


class OptimizationSubsolver(Protocol):
    """Constrained step computation; sets the point velocities in place."""

    def solve(
        self,
        points: Sequence[BoundaryPoint],
        move_limit: float,
        domain_extents: Tuple[float, float],
        constraint: ConstraintState
    ) -> OptimizationResult:
        ...


class LevelSetEvolver(Protocol):
    """Advection and reinitialisation of the level-set function."""

    def extend_velocities(self, points: Sequence[BoundaryPoint]) -> None:
        ...

    def compute_gradients(self) -> None:
        ...

    def update(self, time_step: float) -> bool:
        """Returns True when the update reinitialised the function itself."""
        ...

    def reinitialise(self) -> None:
        ...


class Recorder(Protocol):
    """
    Best-effort persistence of iteration history and snapshots.

    Used as a context manager; any I/O failure raises RecordingFailure.
    """

    def __enter__(self) -> "Recorder":
        ...

    def __exit__(self, exc_type, exc, tb) -> None:
        ...

    def write_iteration(self, record: IterationRecord) -> None:
        ...

    def save_level_set(self, iteration: int, level_set) -> None:
        ...

    def save_area_fractions(self, iteration: int, areas: np.ndarray, shape: Tuple[int, int]) -> None:
        ...

    def save_boundary_segments(self, iteration: int, boundary) -> None:
        ...
