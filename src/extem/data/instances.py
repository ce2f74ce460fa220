# src/extem/data/instances.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence

import numpy as np

from extem.data.sorting import stable_sort
from extem.data.stats import AttributeStats
from extem.exceptions import IndexOutOfRangeError, InvalidArgumentError


class AttributeKind(str, Enum):
    NUMERIC = "numeric"
    NOMINAL = "nominal"


@dataclass
class Attribute:
    name: str
    kind: AttributeKind = AttributeKind.NUMERIC
    values: Optional[List[str]] = None  # labels for nominal codes 0..n-1
    index: int = -1  # position in the owning dataset

    @classmethod
    def numeric(cls, name: str) -> "Attribute":
        return cls(name, AttributeKind.NUMERIC)

    @classmethod
    def nominal(cls, name: str, values: Sequence[str]) -> "Attribute":
        if len(values) == 0:
            raise InvalidArgumentError(f"Nominal attribute {name!r} needs at least one value")
        return cls(name, AttributeKind.NOMINAL, [str(v) for v in values])

    @property
    def is_numeric(self) -> bool:
        return self.kind == AttributeKind.NUMERIC

    @property
    def is_nominal(self) -> bool:
        return self.kind == AttributeKind.NOMINAL

    def num_values(self) -> int:
        return len(self.values) if self.is_nominal else 0


@dataclass(frozen=True, eq=False)
class Instance:
    """Read-only view of one row. Missing values are NaN in `_row`."""

    _row: np.ndarray
    weight: float
    _attributes: Sequence[Attribute] = field(repr=False)

    def num_attributes(self) -> int:
        return len(self._row)

    def is_missing(self, j: int) -> bool:
        return bool(np.isnan(self._row[_check_index(j, len(self._row), "attribute")]))

    def value(self, j: int) -> float | int:
        """Numeric value as float, nominal value as its integer code (NaN if missing)."""
        v = float(self._row[_check_index(j, len(self._row), "attribute")])
        if self._attributes[j].is_nominal and not math.isnan(v):
            return int(v)
        return v

    @property
    def values(self) -> np.ndarray:
        return self._row.copy()


def _check_index(i: int, n: int, what: str) -> int:
    if not 0 <= i < n:
        raise IndexOutOfRangeError(f"{what} index {i} out of range [0, {n})")
    return i


class Instances:
    """
    Ordered, weighted rows over a fixed list of attributes.

    Rows are appended with `add`; the dense matrix used by the EM engine is
    rebuilt lazily after the last append.
    """

    def __init__(self, name: str, attributes: Sequence[Attribute]):
        self.name = name
        self._attributes: List[Attribute] = list(attributes)
        for i, att in enumerate(self._attributes):
            att.index = i
        self._rows: List[np.ndarray] = []
        self._weights: List[float] = []
        self._matrix: Optional[np.ndarray] = None
        self._weight_vec: Optional[np.ndarray] = None

    # ---------- construction ----------

    def copy_header(self) -> "Instances":
        """Empty dataset with the same attributes."""
        out = Instances.__new__(Instances)
        out.name = self.name
        out._attributes = self._attributes
        out._rows, out._weights = [], []
        out._matrix = out._weight_vec = None
        return out

    def add(self, values: Sequence[float | int | None], weight: float = 1.0) -> Instance:
        m = self.num_attributes()
        if len(values) != m:
            raise InvalidArgumentError(f"Row has {len(values)} values, dataset has {m} attributes")
        weight = float(weight)
        if not math.isfinite(weight) or weight <= 0:
            raise InvalidArgumentError(f"Row weight must be finite and > 0, got {weight}")
        row = np.array([np.nan if v is None else float(v) for v in values], dtype=np.float64)
        for j, att in enumerate(self._attributes):
            v = row[j]
            if np.isnan(v):
                continue
            if np.isinf(v):
                raise InvalidArgumentError(f"Attribute {att.name!r} has infinite value")
            if att.is_nominal and (v != int(v) or not 0 <= v < att.num_values()):
                raise InvalidArgumentError(
                    f"Nominal attribute {att.name!r} expects a code in [0, {att.num_values()}), got {v}"
                )
        self._rows.append(row)
        self._weights.append(weight)
        self._matrix = self._weight_vec = None
        return Instance(row, weight, self._attributes)

    # ---------- accessors ----------

    def num_instances(self) -> int:
        return len(self._rows)

    def num_attributes(self) -> int:
        return len(self._attributes)

    def __len__(self) -> int:
        return self.num_instances()

    def __iter__(self) -> Iterator[Instance]:
        for i in range(self.num_instances()):
            yield self.instance(i)

    def attribute(self, i: int) -> Attribute:
        return self._attributes[_check_index(i, self.num_attributes(), "attribute")]

    def attributes(self) -> List[Attribute]:
        return list(self._attributes)

    def instance(self, i: int) -> Instance:
        i = _check_index(i, self.num_instances(), "instance")
        return Instance(self._rows[i], self._weights[i], self._attributes)

    def values_matrix(self) -> np.ndarray:
        """(n, m) float64 matrix, NaN where missing. Do not mutate."""
        if self._matrix is None:
            if self._rows:
                self._matrix = np.vstack(self._rows)
            else:
                self._matrix = np.empty((0, self.num_attributes()), dtype=np.float64)
            self._matrix.setflags(write=False)
        return self._matrix

    def weights(self) -> np.ndarray:
        if self._weight_vec is None:
            self._weight_vec = np.asarray(self._weights, dtype=np.float64)
            self._weight_vec.setflags(write=False)
        return self._weight_vec

    def attribute_to_array(self, j: int) -> np.ndarray:
        _check_index(j, self.num_attributes(), "attribute")
        return self.values_matrix()[:, j].copy()

    # ---------- statistics ----------

    @staticmethod
    def max_index(values: Sequence[float]) -> int:
        """Index of the largest entry; the first one wins ties."""
        best, best_i = 0.0, 0
        for i, v in enumerate(values):
            if i == 0 or v > best:
                best, best_i = v, i
        return best_i

    def min_max(self) -> tuple[np.ndarray, np.ndarray]:
        """Per-attribute min and max over non-missing values (NaN when none observed)."""
        X = self.values_matrix()
        m = self.num_attributes()
        lo = np.full(m, np.nan)
        hi = np.full(m, np.nan)
        for j in range(m):
            col = X[:, j]
            col = col[~np.isnan(col)]
            if col.size:
                lo[j], hi[j] = col.min(), col.max()
        return lo, hi

    def mean_or_mode(self, j: int) -> float:
        att = self.attribute(j)
        col = self.values_matrix()[:, j]
        present = ~np.isnan(col)
        w = self.weights()[present]
        if att.is_numeric:
            found = float(w.sum())
            if found <= 0:
                return 0.0
            return float((col[present] * w).sum() / found)
        counts = np.zeros(att.num_values(), dtype=np.float64)
        np.add.at(counts, col[present].astype(np.int64), w)
        return float(self.max_index(counts.tolist()))

    def attribute_stats(self, j: int) -> AttributeStats:
        """
        Build AttributeStats for attribute j.

        Rows are visited in stable sorted order (missing last); each run of
        equal values is reported once through add_distinct.
        """
        att = self.attribute(j)
        result = AttributeStats(num_values=att.num_values() if att.is_nominal else None)
        n = self.num_instances()
        result.total_count = n
        col = self.values_matrix()[:, j]
        weights = self.weights()
        order = stable_sort(col)

        count, weight, prev = 0, 0.0, math.nan
        for pos, row in enumerate(order):
            v = col[row]
            if np.isnan(v):
                result.missing_count = n - pos
                break
            if v == prev:
                count += 1
                weight += weights[row]
            else:
                result.add_distinct(prev, count, weight)
                count, weight, prev = 1, float(weights[row]), float(v)
        result.add_distinct(prev, count, weight)
        result.distinct_count -= 1  # the leading empty run is not a value
        return result
