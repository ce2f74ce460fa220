# src/extem/data/stats.py
from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

INT_TOL = 1e-6


@dataclass
class NumericStats:
    """Weighted running sums for one attribute; call calculate_derived() before reading mean/std_dev."""

    count: float = 0.0
    sum: float = 0.0
    sum_sq: float = 0.0
    min: float = math.nan
    max: float = math.nan
    mean: float = math.nan
    std_dev: float = math.nan

    def add(self, value: float, weight: float = 1.0) -> None:
        self.sum += value * weight
        self.sum_sq += value * value * weight
        self.count += weight
        if math.isnan(self.min) or value < self.min:
            self.min = value
        if math.isnan(self.max) or value > self.max:
            self.max = value

    def calculate_derived(self) -> None:
        self.mean = math.nan
        self.std_dev = math.nan
        if self.count > 0:
            self.mean = self.sum / self.count
            self.std_dev = math.inf
            if self.count > 1:
                var = (self.sum_sq - self.sum * self.sum / self.count) / (self.count - 1)
                self.std_dev = math.sqrt(max(0.0, var))


@dataclass
class AttributeStats:
    """
    Summary of one attribute built from runs of equal values.

    `nominal_counts`/`nominal_weights` exist only for nominal attributes and are
    indexed by code. `numeric_stats` is kept for both kinds.
    """

    num_values: int | None = None
    total_count: int = 0
    missing_count: int = 0
    unique_count: int = 0
    int_count: int = 0
    real_count: int = 0
    distinct_count: int = 0
    numeric_stats: NumericStats = field(default_factory=NumericStats)
    nominal_counts: np.ndarray | None = None
    nominal_weights: np.ndarray | None = None

    def __post_init__(self):
        if self.num_values is not None and self.nominal_counts is None:
            self.nominal_counts = np.zeros(self.num_values, dtype=np.int64)
            self.nominal_weights = np.zeros(self.num_values, dtype=np.float64)

    @staticmethod
    def _is_int(value: float) -> bool:
        return abs(value - int(value)) < INT_TOL

    def add_distinct(self, value: float, count: int, weight: float) -> None:
        """Record one run of `count` equal values; an empty run still bumps distinct_count."""
        if count > 0:
            if count == 1:
                self.unique_count += 1
            if self._is_int(value):
                self.int_count += count
            else:
                self.real_count += count
            if self.nominal_counts is not None:
                self.nominal_counts[int(value)] = count
                self.nominal_weights[int(value)] = weight
            self.numeric_stats.add(value, weight)
            self.numeric_stats.calculate_derived()
        self.distinct_count += 1
