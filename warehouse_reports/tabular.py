from __future__ import annotations

import operator
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Sequence, Tuple

from warehouse_reports.errors import InvariantViolation


def to_text(value: Any) -> str:
    """
    Normalize one warehouse cell to text.

    NULL becomes "", temporal values use ISO 8601, binary values are hex.
    Numeric and date typing is discarded on purpose: the only consumer is a
    JSON document of strings.
    """
    if value is None:
        return ""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


@dataclass(frozen=True)
class TabularResult:
    """
    Normalized query output.

    Invariants:
      - column names are unique
      - every row has exactly len(columns) cells, all of them str
    """
    columns: Tuple[str, ...]
    rows: Tuple[Tuple[str, ...], ...]

    def __post_init__(self) -> None:
        columns = tuple(self.columns)
        rows = tuple(tuple(row) for row in self.rows)
        if len(set(columns)) != len(columns):
            raise InvariantViolation(f"duplicate column names in result: {list(columns)}")
        for i, row in enumerate(rows):
            if len(row) != len(columns):
                raise InvariantViolation(
                    f"row {i} has {len(row)} cells, expected {len(columns)}"
                )
        object.__setattr__(self, "columns", columns)
        object.__setattr__(self, "rows", rows)

    @classmethod
    def from_rows(cls, columns: Iterable[str], rows: Iterable[Sequence[Any]]) -> "TabularResult":
        return cls(
            columns=tuple(str(c) for c in columns),
            rows=tuple(tuple(to_text(v) for v in row) for row in rows),
        )

    def column_index(self, name: str) -> int:
        """Position of the column named exactly `name`; InvariantViolation if absent."""
        try:
            return self.columns.index(name)
        except ValueError:
            raise InvariantViolation(f"expected {name} in result, got {list(self.columns)}") from None

    def column_values(self, name: str) -> list[str]:
        idx = self.column_index(name)
        return [row[idx] for row in self.rows]


@dataclass(frozen=True)
class QueryParameter:
    """A string bound by name with an upper bound on its length (NVARCHAR(n))."""
    name: str
    max_length: int
    value: str

    def __post_init__(self) -> None:
        if self.max_length <= 0:
            raise ValueError(f"max_length must be > 0 for parameter {self.name}")
        if len(self.value) > self.max_length:
            raise ValueError(
                f"value for parameter {self.name} is {len(self.value)} characters, "
                f"limit is {self.max_length}"
            )


@dataclass(frozen=True)
class ExportCandidate:
    """
    One package pending export, as listed by the warehouse.

    dirty_count is the snapshot taken at list time and is passed back verbatim
    on confirmation; the warehouse only clears that many pending changes.
    """
    package_id: str
    dirty_count: int

    def __post_init__(self) -> None:
        if isinstance(self.dirty_count, bool):
            raise InvariantViolation(f"dirty count for {self.package_id} is a boolean")
        try:
            count = operator.index(self.dirty_count)
        except TypeError:
            raise InvariantViolation(
                f"dirty count for {self.package_id} is not an integer: {self.dirty_count!r}"
            ) from None
        object.__setattr__(self, "dirty_count", count)
