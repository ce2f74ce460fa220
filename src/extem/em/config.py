# src/extem/em/config.py
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from extem.core.io import load_yaml
from extem.exceptions import InvalidArgumentError


@dataclass
class EMConfig:
    num_clusters: int = 2
    max_iterations: int = 100
    min_std_dev: float = 1e-6  # global floor for normal densities
    min_std_dev_per_attribute: Optional[List[float]] = None  # overrides min_std_dev per column
    seed: int = 100
    convergence_tol: float = 1e-6  # stop when avg log-likelihood gains less than this

    # restart protocol
    max_restarts: Optional[int] = 100  # None = retry forever
    restarts_per_reduction: int = 5  # consecutive failures before k -= 1
    decorrelation_draws: int = 10  # PRNG draws discarded after every reseed

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.num_clusters == 0:
            raise InvalidArgumentError("Number of clusters must be > 0")
        if self.num_clusters < 0:
            raise InvalidArgumentError(
                "Selecting the number of clusters by cross validation is not supported; pass k > 0"
            )
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not (self.min_std_dev > 0 and math.isfinite(self.min_std_dev)):
            raise InvalidArgumentError(f"min_std_dev must be finite and > 0, got {self.min_std_dev}")
        if self.min_std_dev_per_attribute is not None:
            floors = [float(f) for f in self.min_std_dev_per_attribute]
            if any(not (f > 0 and math.isfinite(f)) for f in floors):
                raise InvalidArgumentError("Per-attribute stddev floors must be finite and > 0")
            self.min_std_dev_per_attribute = floors
        if self.max_restarts is not None and self.max_restarts < 0:
            raise InvalidArgumentError(f"max_restarts must be >= 0 or None, got {self.max_restarts}")
        if self.restarts_per_reduction < 1:
            raise InvalidArgumentError("restarts_per_reduction must be >= 1")
        if self.decorrelation_draws < 0:
            raise InvalidArgumentError("decorrelation_draws must be >= 0")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EMConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise InvalidArgumentError(f"Unknown EM config keys: {sorted(unknown)}")
        return cls(**d)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Path | str, **overrides: Any) -> EMConfig:
    """Read an EMConfig from YAML; non-None keyword overrides win over the file."""
    d = load_yaml(path) or {}
    d = dict(d.get("em", d))
    d.update({k: v for k, v in overrides.items() if v is not None})
    return EMConfig.from_dict(d)
