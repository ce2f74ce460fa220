# src/extem/em/model.py
from __future__ import annotations

import math
import sys
from dataclasses import dataclass

import numpy as np

from extem.exceptions import InvalidArgumentError

LOG_NORM_CONST = math.log(math.sqrt(2.0 * math.pi))
# stddev given to a (cluster, attribute) that received no weight
STD_SENTINEL = sys.float_info.max


# ===========================
#  Density helpers
# ===========================


def log_normal_density(x, mean, std):
    """
    log N(x | mean, std^2) = -(x-mean)^2 / (2 std^2) - log(std) - log(sqrt(2 pi)).
    Works on scalars or broadcastable arrays. std must be > 0.
    """
    z = (np.asarray(x, dtype=np.float64) - mean) / std
    out = -0.5 * z * z - np.log(std) - LOG_NORM_CONST
    return float(out) if np.ndim(out) == 0 else out


def log_density_per_cluster(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    """
    Sum of per-attribute log densities for every (row, cluster).
    X: (n, m) with NaN for missing; means/stds: (k, m)  ->  (n, k).
    Missing values contribute nothing.
    """
    X = np.atleast_2d(np.asarray(X, dtype=np.float64))
    missing = np.isnan(X)
    X0 = np.where(missing, 0.0, X)
    terms = log_normal_density(X0[:, None, :], means[None, :, :], stds[None, :, :])  # (n,k,m)
    terms = np.where(missing[:, None, :], 0.0, terms)
    return terms.sum(axis=2)


def log_priors(priors: np.ndarray) -> np.ndarray:
    """log of each prior; clusters with prior 0 get 0 (no adjustment)."""
    out = np.zeros_like(priors, dtype=np.float64)
    np.log(priors, out=out, where=priors > 0)
    return out


# ===========================
#  Stable helpers
# ===========================


def logsumexp(a: np.ndarray, axis: int = -1) -> np.ndarray:
    """max + log(sum(exp(a - max))) along `axis`."""
    a = np.asarray(a, dtype=np.float64)
    amax = np.max(a, axis=axis, keepdims=True)
    s = np.log(np.sum(np.exp(a - amax), axis=axis, keepdims=True))
    return np.squeeze(amax + s, axis=axis)


def normalize(values: np.ndarray, total: float | None = None) -> np.ndarray:
    """Divide by the sum (or `total`). Raises on a NaN or zero sum."""
    values = np.asarray(values, dtype=np.float64)
    total = float(values.sum()) if total is None else float(total)
    if math.isnan(total):
        raise InvalidArgumentError("Can't normalize array. Sum is NaN.")
    if total == 0:
        raise InvalidArgumentError("Can't normalize array. Sum is zero.")
    return values / total


def logs_to_probs(a: np.ndarray) -> np.ndarray:
    """
    Row-wise posterior from log weights: exp(a - max) / sum.
    a: (k,) or (n, k). Any row whose sum is zero or NaN raises InvalidArgumentError.
    """
    a = np.asarray(a, dtype=np.float64)
    if a.ndim == 1:
        e = np.exp(a - a.max())
        return normalize(e)
    e = np.exp(a - a.max(axis=1, keepdims=True))
    sums = e.sum(axis=1, keepdims=True)
    bad = np.isnan(sums) | (sums == 0)
    if bad.any():
        row = int(np.flatnonzero(bad.ravel())[0])
        raise InvalidArgumentError(f"Can't normalize posterior of row {row}. Sum is {float(sums[row, 0])}.")
    return e / sums


# ===========================
#  Model state
# ===========================


@dataclass
class EMModel:
    """
    Parameters of a diagonal Gaussian mixture plus the current responsibilities.

    means/stddevs/weight_sums: (k, m); priors: (k,); responsibilities: (n, k).
    """

    means: np.ndarray
    stddevs: np.ndarray
    weight_sums: np.ndarray
    priors: np.ndarray
    responsibilities: np.ndarray

    @classmethod
    def allocate(cls, k: int, m: int, n: int) -> "EMModel":
        return cls(
            means=np.zeros((k, m)),
            stddevs=np.zeros((k, m)),
            weight_sums=np.zeros((k, m)),
            priors=np.zeros(k),
            responsibilities=np.zeros((n, k)),
        )

    @property
    def num_clusters(self) -> int:
        return int(self.priors.shape[0])

    @property
    def num_attributes(self) -> int:
        return int(self.means.shape[1])

    def log_joint_densities(self, X: np.ndarray) -> np.ndarray:
        """(n, k) log p(x | c) + log prior(c)."""
        return log_density_per_cluster(X, self.means, self.stddevs) + log_priors(self.priors)[None, :]

    def as_triples(self) -> np.ndarray:
        """(k, m, 3) array of (mean, stddev, weight_sum)."""
        return np.stack([self.means, self.stddevs, self.weight_sums], axis=2)
