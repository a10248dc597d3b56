"""Labeled time series and the solution record returned by the solver.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Optional

import numpy as np
from jaxtyping import ArrayLike

from muscle_redundancy.errors import ValidationError


logger = logging.getLogger(__name__)


class TimeSeriesTable:
    """A matrix of samples with one row per time and one labeled column per signal.

    Attributes:
        times: Sample times, `[n_rows]`.
        data: Samples, `[n_rows, n_columns]`.
        column_labels: One label per column.
        metadata: Free-form header entries written to and read from `.sto` files.
    """

    def __init__(
        self,
        times: Optional[ArrayLike] = None,
        data: Optional[ArrayLike] = None,
        column_labels: Sequence[str] = (),
        metadata: Optional[dict[str, str]] = None,
    ):
        self.column_labels = list(column_labels)
        n_cols = len(self.column_labels)
        self.times = np.zeros((0,)) if times is None else np.asarray(times, dtype=float).reshape(-1)
        n_rows = self.times.shape[0]
        if data is None:
            data = np.zeros((n_rows, n_cols))
        data = np.asarray(data, dtype=float)
        if data.ndim == 1:
            data = data[:, None]
        if data.shape != (n_rows, n_cols):
            raise ValidationError(
                f"Table data has shape {data.shape}, but there are {n_rows} times "
                f"and {n_cols} column labels"
            )
        self.data = data
        self.metadata = dict(metadata or {})

    def __repr__(self):
        return (
            f"{type(self).__name__}(num_rows={self.num_rows}, "
            f"column_labels={self.column_labels!r})"
        )

    @property
    def num_rows(self) -> int:
        return self.times.shape[0]

    @property
    def num_columns(self) -> int:
        return len(self.column_labels)

    def set_column_labels(self, labels: Sequence[str]) -> None:
        if self.num_rows and len(labels) != self.data.shape[1]:
            raise ValidationError(
                f"Cannot set {len(labels)} labels on a table with {self.data.shape[1]} columns"
            )
        self.column_labels = list(labels)
        if not self.num_rows:
            self.data = np.zeros((0, len(labels)))

    def append_row(self, time: float, row: ArrayLike) -> None:
        row = np.asarray(row, dtype=float).reshape(1, -1)
        if row.shape[1] != self.num_columns:
            raise ValidationError(
                f"Row has {row.shape[1]} entries but the table has {self.num_columns} columns"
            )
        if self.num_rows and time < self.times[-1]:
            raise ValidationError(
                f"Rows must be appended in time order ({time} < {self.times[-1]})"
            )
        self.times = np.append(self.times, float(time))
        self.data = np.vstack([self.data, row])

    def column_index(self, label: str) -> int:
        try:
            return self.column_labels.index(label)
        except ValueError:
            raise ValidationError(f"Table has no column '{label}'") from None

    def get_dependent_column(self, label: str) -> np.ndarray:
        return self.data[:, self.column_index(label)]

    def select_columns(self, labels: Sequence[str]) -> "TimeSeriesTable":
        """Return a new table with only `labels`, in that order."""
        idx = [self.column_index(label) for label in labels]
        return TimeSeriesTable(self.times, self.data[:, idx], labels, self.metadata)

    def trim(self, initial_time: float, final_time: float) -> "TimeSeriesTable":
        """Return a new table with the rows in `[initial_time, final_time]`."""
        keep = (self.times >= initial_time) & (self.times <= final_time)
        return TimeSeriesTable(self.times[keep], self.data[keep], self.column_labels, self.metadata)

    def write_sto(self, path: str | Path) -> Path:
        """Write the table in the tab-delimited OpenSim storage format."""
        path = Path(path)
        header = [
            path.stem,
            "version=1",
            f"nRows={self.num_rows}",
            f"nColumns={self.num_columns + 1}",
            *(f"{k}={v}" for k, v in self.metadata.items()),
            "endheader",
            "\t".join(["time", *self.column_labels]),
        ]
        body = np.column_stack([self.times, self.data])
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(header) + "\n")
            np.savetxt(f, body, delimiter="\t", fmt="%.12g")
        logger.debug("Wrote %d rows to `%s`", self.num_rows, path)
        return path

    @classmethod
    def read_sto(cls, path: str | Path) -> "TimeSeriesTable":
        """Read a table written by `write_sto` (or any `.sto`/`.mot` file)."""
        path = Path(path)
        metadata = {}
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line.lower() == "endheader":
                    break
                if "=" in line:
                    key, value = line.split("=", 1)
                    if key not in ("version", "nRows", "nColumns"):
                        metadata[key] = value
            else:
                raise ValidationError(f"No 'endheader' line in `{path}`")
            labels = f.readline().split()
            body = np.loadtxt(f, ndmin=2)
        if not labels or labels[0] != "time":
            raise ValidationError(f"First column of `{path}` must be 'time'")
        body = body.reshape(-1, len(labels))
        return cls(body[:, 0], body[:, 1:], labels[1:], metadata)


@dataclass
class GlobalStaticOptimizationSolution:
    """Result of a global static optimization solve.

    All tables share the solver's time grid. Tables for actuator kinds that
    are absent from the model have no rows.
    """

    activation: TimeSeriesTable = field(default_factory=TimeSeriesTable)
    other_controls: TimeSeriesTable = field(default_factory=TimeSeriesTable)
    norm_fiber_length: TimeSeriesTable = field(default_factory=TimeSeriesTable)
    norm_fiber_velocity: TimeSeriesTable = field(default_factory=TimeSeriesTable)
    tendon_force: TimeSeriesTable = field(default_factory=TimeSeriesTable)

    def tables(self) -> dict[str, TimeSeriesTable]:
        return {
            "activation": self.activation,
            "other_controls": self.other_controls,
            "norm_fiber_length": self.norm_fiber_length,
            "norm_fiber_velocity": self.norm_fiber_velocity,
            "tendon_force": self.tendon_force,
        }

    def write(self, prefix: str | Path) -> list[Path]:
        """Write each non-empty table to `<prefix>_<name>.sto`."""
        written = []
        for name, table in self.tables().items():
            if table.num_rows:
                written.append(table.write_sto(f"{prefix}_{name}.sto"))
        return written
