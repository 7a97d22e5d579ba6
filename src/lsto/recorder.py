"""
recorder.py - Iteration history and snapshot files of an optimization run.

Layout under the output directory:
    history/history.txt                       tab-delimited iteration log
    level_set/level_set_<it>.txt              nodal signed distance
    area_fractions/area_fractions_<it>.txt    element area fractions
    boundary_segments/boundary_segments_<it>.txt  x1 y1 x2 y2 per segment
"""

import numpy as np
from pathlib import Path
from typing import Optional, TextIO, Tuple, Union
import logging

from .core.errors import RecordingFailure
from .core.state import IterationRecord

logger = logging.getLogger(__name__)

HISTORY_HEADER = ["Iteration", "Stress", "Tvm_max", "Area", "Change"]
PRECISION = 16

SUBDIRECTORIES = ("history", "level_set", "area_fractions", "boundary_segments")


class ResultsRecorder:
    """
    Writes the history log and the per-iteration snapshots.

    Used as a context manager: entering clears earlier *.txt / *.vtk files,
    creates the directory tree and opens the history log; leaving closes it.
    Every I/O error is raised as RecordingFailure.
    """

    def __init__(self, output_dir: Union[str, Path] = "results"):
        self.output_dir = Path(output_dir)
        self._history: Optional[TextIO] = None

    @property
    def history_path(self) -> Path:
        return self.output_dir / "history" / "history.txt"

    def __enter__(self) -> "ResultsRecorder":
        try:
            self._clear_previous()
            for name in SUBDIRECTORIES:
                (self.output_dir / name).mkdir(parents=True, exist_ok=True)
            self._history = open(self.history_path, "w")
            self._history.write("\t".join(HISTORY_HEADER) + "\n")
            self._history.flush()
        except OSError as e:
            self.close()
            raise RecordingFailure(f"Cannot prepare {self.output_dir}: {e}") from e
        logger.info("Recording to %s", self.output_dir)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._history is not None:
            self._history.close()
            self._history = None

    def _clear_previous(self) -> None:
        if not self.output_dir.exists():
            return
        for pattern in ("*.txt", "*.vtk"):
            for path in self.output_dir.rglob(pattern):
                path.unlink()

    def write_iteration(self, record: IterationRecord) -> None:
        """Append one line to the history log."""
        if self._history is None:
            raise RecordingFailure("History log is not open", iteration=record.iteration)
        values = [str(record.iteration)] + [
            f"{v:.{PRECISION}g}" for v in record.as_row()[1:]
        ]
        try:
            self._history.write("\t".join(values) + "\n")
            self._history.flush()
        except (OSError, ValueError) as e:
            raise RecordingFailure(f"Cannot write history: {e}", iteration=record.iteration) from e

    def save_level_set(self, iteration: int, level_set) -> None:
        """Nodal signed distance as a (nely + 1, nelx + 1) grid."""
        phi = np.asarray(level_set.signed_distance).reshape(level_set.grid_shape)
        self._save("level_set", iteration, phi)

    def save_area_fractions(self, iteration: int, areas: np.ndarray, shape: Tuple[int, int]) -> None:
        """Element area fractions as a (nely, nelx) grid; shape is (nelx, nely)."""
        nelx, nely = shape
        self._save("area_fractions", iteration, np.asarray(areas).reshape(nely, nelx))

    def save_boundary_segments(self, iteration: int, boundary) -> None:
        """Boundary segments, one row x1 y1 x2 y2 each."""
        self._save("boundary_segments", iteration, boundary.segment_coords())

    def _save(self, name: str, iteration: int, data: np.ndarray) -> None:
        path = self.output_dir / name / f"{name}_{iteration}.txt"
        try:
            np.savetxt(path, data, fmt=f"%.{PRECISION}g", delimiter="\t")
        except OSError as e:
            raise RecordingFailure(f"Cannot write {path}: {e}", iteration=iteration) from e
