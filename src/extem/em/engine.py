# src/extem/em/engine.py
from __future__ import annotations

import logging
import math
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from extem.core.io import save_json
from extem.data.instances import Instance, Instances
from extem.em.config import EMConfig
from extem.em.model import (
    STD_SENTINEL,
    EMModel,
    log_density_per_cluster,
    logs_to_probs,
    logsumexp,
    normalize,
)
from extem.exceptions import InvalidArgumentError, NotFittedError, NumericalFailure

log = logging.getLogger("extem.em")


class EMState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    REINITIALIZING = "reinitializing"
    CONVERGED = "converged"


class ExtendedEM:
    """
    EM clustering with a diagonal Gaussian per (cluster, attribute).

    The caller fixes k and may seed the run with explicit centers (one row per
    cluster, missing = use the dataset mean/mode) and cluster sizes (seed the
    priors). Without centers, k distinct rows are drawn with the engine's PRNG.

    Any numerical breakdown inside an iteration re-initializes the model with
    the next seed and starts over; every `restarts_per_reduction` consecutive
    failures drop one cluster. `max_restarts` caps the total.
    """

    def __init__(self, config: Optional[EMConfig] = None, **kwargs: Any):
        self.config = config if config is not None else EMConfig(**kwargs)
        self.state = EMState.UNINITIALIZED
        self.model: Optional[EMModel] = None
        self.log_likelihoods: List[float] = []
        self.num_iterations = 0
        self.num_restarts = 0

        self._centers: Optional[Instances] = None
        self._cluster_sizes: Optional[np.ndarray] = None
        self._k = self.config.num_clusters
        self._data: Optional[Instances] = None
        self._header: Optional[Instances] = None
        self._min_values: Optional[np.ndarray] = None
        self._max_values: Optional[np.ndarray] = None
        self._floors: Optional[np.ndarray] = None
        self._global_std: Dict[int, float] = {}
        self._rng: Optional[np.random.Generator] = None

    # ---------- setters ----------

    def set_num_clusters(self, n: int) -> None:
        self.config = replace(self.config, num_clusters=int(n))
        self._k = self.config.num_clusters

    def set_centers(self, centers: Instances) -> None:
        self._centers = centers

    def set_cluster_sizes(self, sizes: Sequence[float]) -> None:
        self._cluster_sizes = np.asarray(sizes, dtype=np.float64)

    def set_max_iterations(self, n: int) -> None:
        self.config = replace(self.config, max_iterations=int(n))

    def set_min_std_dev_per_attribute(self, floors: Optional[Sequence[float]]) -> None:
        self.config = replace(
            self.config, min_std_dev_per_attribute=None if floors is None else list(floors)
        )

    def set_seed(self, seed: int) -> None:
        self.config = replace(self.config, seed=int(seed))

    # ---------- PRNG ----------

    def _reseed(self, seed: int) -> None:
        self._rng = np.random.default_rng(seed)
        self._decorrelate()

    def _decorrelate(self) -> None:
        # neighbouring seeds give correlated first draws; throw a few away
        for _ in range(self.config.decorrelation_draws):
            self._rng.random()

    # ---------- training ----------

    def build_clusterer(self, data: Instances) -> "ExtendedEM":
        self.prepare(data)
        self.em_init()
        llk = self.iterate()
        self.state = EMState.CONVERGED
        log.info(
            "EM finished: k=%d iterations=%d restarts=%d loglik=%.6f",
            self._k,
            self.num_iterations,
            self.num_restarts,
            llk,
        )
        # the rows are the caller's; keep only the header
        self._data = None
        return self

    def prepare(self, data: Instances) -> None:
        """Bind the training rows: attribute ranges, stddev floors, PRNG."""
        n, m = data.num_instances(), data.num_attributes()
        if n == 0:
            raise InvalidArgumentError("Cannot cluster an empty dataset")
        floors = self.config.min_std_dev_per_attribute
        if floors is not None and len(floors) != m:
            raise InvalidArgumentError(f"{len(floors)} stddev floors for {m} attributes")

        self._data = data
        self._header = data.copy_header()
        self._min_values, self._max_values = data.min_max()
        self._floors = (
            np.asarray(floors, dtype=np.float64) if floors is not None else np.full(m, self.config.min_std_dev)
        )
        self._global_std = {}
        self._k = self.config.num_clusters
        self.num_restarts = 0
        self._reseed(self.config.seed)
        log.debug("Seed: %d", self.config.seed)

    def _require_data(self) -> Instances:
        if self._data is None:
            raise NotFittedError("No training rows bound; call prepare() or build_clusterer()")
        return self._data

    def _training_rows(self) -> tuple[np.ndarray, np.ndarray]:
        data = self._require_data()
        return data.values_matrix(), data.weights()

    def _global_std_dev(self, j: int) -> float:
        if j not in self._global_std:
            self._global_std[j] = self._data.attribute_stats(j).numeric_stats.std_dev
        return self._global_std[j]

    def _initial_centers(self, k: int, m: int) -> np.ndarray:
        if self._centers is None:
            n = self._data.num_instances()
            rows = self._rng.choice(n, size=k, replace=n < k)
            return self._data.values_matrix()[rows].copy()
        if self._centers.num_attributes() != m:
            raise InvalidArgumentError(
                f"Centers have {self._centers.num_attributes()} attributes, data has {m}"
            )
        if self._centers.num_instances() < k:
            raise InvalidArgumentError(f"Need {k} centers, got {self._centers.num_instances()}")
        return self._centers.values_matrix()[:k].copy()

    def _initial_sizes(self, k: int) -> np.ndarray:
        if self._cluster_sizes is None:
            return np.ones(k)
        if self._cluster_sizes.shape[0] < k:
            raise InvalidArgumentError(f"Need {k} cluster sizes, got {self._cluster_sizes.shape[0]}")
        sizes = self._cluster_sizes[:k]
        if (sizes < 0).any():
            raise InvalidArgumentError("Cluster sizes must be non-negative")
        if k < self.config.num_clusters and not sizes.sum() > 0:
            log.warning("Cluster sizes %s are all zero after reduction; using uniform priors", sizes.tolist())
            return np.ones(k)
        return sizes.copy()

    def em_init(self) -> EMModel:
        """Fresh model from the centers, the attribute ranges and the cluster sizes."""
        data = self._require_data()
        k, n, m = self._k, data.num_instances(), data.num_attributes()
        centers = self._initial_centers(k, m)
        sizes = self._initial_sizes(k)

        model = EMModel.allocate(k, m, n)
        for j in range(m):
            floor = self._floors[j]
            mean_or_mode = None
            for i in range(k):
                if np.isnan(centers[i, j]):
                    if mean_or_mode is None:
                        mean_or_mode = data.mean_or_mode(j)
                    model.means[i, j] = mean_or_mode
                else:
                    model.means[i, j] = centers[i, j]

            std = (self._max_values[j] - self._min_values[j]) / (2 * k)
            if not std >= floor:
                std = self._global_std_dev(j)
                if not math.isfinite(std) or std < floor:
                    std = floor
            model.stddevs[:, j] = std
            model.weight_sums[:, j] = 1.0

        model.priors = normalize(sizes)
        self.model = model
        self.state = EMState.INITIALIZED
        return model

    def e_step(self, change_weights: bool = True) -> float:
        """
        Average log-likelihood (row-weighted) under the current parameters.
        With change_weights, the responsibilities are replaced by the posteriors.
        """
        X, w = self._training_rows()
        logp = self.model.log_joint_densities(X)  # (n,k)
        loglk = float((w * logsumexp(logp, axis=1)).sum() / w.sum())
        if change_weights:
            self.model.responsibilities = logs_to_probs(logp)
        return loglk

    def m_step(self) -> None:
        """Priors, means and stddevs from the current responsibilities."""
        model = self.model
        X, w = self._training_rows()
        present = ~np.isnan(X)
        X0 = np.where(present, X, 0.0)

        wr = w[:, None] * model.responsibilities  # (n,k)
        model.priors = normalize(wr.sum(axis=0))

        s0 = wr.T @ present.astype(np.float64)  # (k,m) effective weight
        s1 = wr.T @ X0
        s2 = wr.T @ (X0 * X0)

        live = s0 > 0
        safe = np.where(live, s0, 1.0)
        mean = s1 / safe
        var = (s2 - s1 * mean) / safe
        var = np.maximum(var, 0.0)
        std = np.sqrt(var)

        floors = np.broadcast_to(self._floors, std.shape)
        low = live & (std <= floors)
        if low.any():
            cols = np.flatnonzero(low.any(axis=0))
            glob = np.zeros(std.shape[1])
            for j in cols:
                g = self._global_std_dev(int(j))
                glob[j] = 0.0 if math.isnan(g) else g
            std = np.where(low, glob[None, :], std)
            std = np.where(std <= floors, floors, std)
        std = np.where(np.isinf(std), floors, std)

        model.means = np.where(live, mean, floors)
        model.stddevs = np.where(live, std, STD_SENTINEL)
        model.weight_sums = s0

    def _run_iterations(self) -> float:
        self.state = EMState.ITERATING
        self.log_likelihoods = []
        self.num_iterations = 0
        llk = 0.0
        for i in range(self.config.max_iterations):
            llk_old = llk
            llk = self.e_step(True)
            self.log_likelihoods.append(llk)
            self.num_iterations = i + 1
            if not math.isfinite(llk):
                raise NumericalFailure(f"Log-likelihood is {llk} at iteration {i}")
            log.debug("Loglikely: %.6f", llk)
            if i > 0 and llk - llk_old < self.config.convergence_tol:
                break
            self.m_step()
        return llk

    def iterate(self) -> float:
        """
        E/M until convergence or max_iterations, restarting on numerical failure.
        Returns the final average log-likelihood.
        """
        seed = self.config.seed
        consecutive = 0
        while True:
            try:
                with np.errstate(divide="raise", over="raise", invalid="raise", under="ignore"):
                    return self._run_iterations()
            except (ArithmeticError, InvalidArgumentError) as ex:
                self.num_restarts += 1
                consecutive += 1
                budget = self.config.max_restarts
                if budget is not None and self.num_restarts > budget:
                    raise NumericalFailure(
                        f"EM failed {self.num_restarts} times (budget {budget}); last error: {ex}"
                    ) from ex
                log.warning("Restarting after training failure (%d, k=%d): %s", self.num_restarts, self._k, ex)
                seed += 1
                self._reseed(seed)
                if consecutive >= self.config.restarts_per_reduction:
                    if self._k <= 1:
                        raise NumericalFailure("EM keeps failing with a single cluster") from ex
                    self._k -= 1
                    consecutive = 0
                    log.warning("Reducing the number of clusters to %d", self._k)
                self.state = EMState.REINITIALIZING
                self.em_init()

    # ---------- inference ----------

    def _check_fitted(self) -> EMModel:
        if self.model is None:
            raise NotFittedError("Call build_clusterer() first")
        return self.model

    def _as_row(self, row: Instance | Sequence[float] | np.ndarray) -> np.ndarray:
        model = self._check_fitted()
        x = row.values if isinstance(row, Instance) else np.asarray(row, dtype=np.float64)
        if x.shape != (model.num_attributes,):
            raise InvalidArgumentError(f"Expected {model.num_attributes} values, got shape {x.shape}")
        return x

    def _as_matrix(self, X: Instances | np.ndarray) -> np.ndarray:
        model = self._check_fitted()
        X = X.values_matrix() if isinstance(X, Instances) else np.atleast_2d(np.asarray(X, dtype=np.float64))
        if X.shape[1] != model.num_attributes:
            raise InvalidArgumentError(f"Expected {model.num_attributes} columns, got {X.shape[1]}")
        return X

    def log_density_per_cluster_for_instance(self, row) -> np.ndarray:
        model = self._check_fitted()
        x = self._as_row(row)
        return log_density_per_cluster(x[None, :], model.means, model.stddevs)[0]

    def log_joint_densities_for_instance(self, row) -> np.ndarray:
        x = self._as_row(row)
        return self.model.log_joint_densities(x[None, :])[0]

    def log_density_for_instance(self, row) -> float:
        return float(logsumexp(self.log_joint_densities_for_instance(row)))

    def distribution_for_instance(self, row) -> np.ndarray:
        return logs_to_probs(self.log_joint_densities_for_instance(row))

    def cluster_instance(self, row) -> int:
        return Instances.max_index(self.distribution_for_instance(row).tolist())

    def predict_proba(self, X: Instances | np.ndarray) -> np.ndarray:
        return logs_to_probs(self.model.log_joint_densities(self._as_matrix(X)))

    def predict(self, X: Instances | np.ndarray) -> np.ndarray:
        return self.predict_proba(X).argmax(axis=1)

    def cluster_priors(self) -> np.ndarray:
        return self._check_fitted().priors.copy()

    def cluster_models_numeric_atts(self) -> np.ndarray:
        return self._check_fitted().as_triples()

    @property
    def responsibilities(self) -> np.ndarray:
        return self._check_fitted().responsibilities.copy()

    @property
    def num_clusters(self) -> int:
        return self._k

    def summary(self) -> Dict[str, Any]:
        model = self._check_fitted()
        names = [a.name for a in self._header.attributes()] if self._header is not None else None
        return {
            "num_clusters": model.num_clusters,
            "attributes": names,
            "priors": model.priors.tolist(),
            "means": model.means.tolist(),
            "stddevs": model.stddevs.tolist(),
            "iterations": self.num_iterations,
            "restarts": self.num_restarts,
            "log_likelihood": self.log_likelihoods[-1] if self.log_likelihoods else None,
            "state": self.state.value,
            "config": self.config.to_dict(),
        }


def save_result(path: Path | str, em: ExtendedEM, assignments: Optional[np.ndarray] = None) -> None:
    payload = em.summary()
    if assignments is not None:
        payload["assignments"] = np.asarray(assignments).tolist()
    save_json(path, payload)
