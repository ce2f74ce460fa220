# tests/test_em_engine.py
import math

import numpy as np
import pytest

from extem.data.instances import Attribute, Instances
from extem.data.loaders import instances_from_array
from extem.em.engine import EMState, ExtendedEM
from extem.em.model import LOG_NORM_CONST, STD_SENTINEL, log_normal_density
from extem.exceptions import InvalidArgumentError, NotFittedError

RAISE_FP = dict(divide="raise", over="raise", invalid="raise", under="ignore")


def one_column(values, weights=None):
    return instances_from_array(np.asarray(values, dtype=np.float64)[:, None], weights=weights, names=["x"])


def make_blobs(n=300, k=3, d=2, sep=5.0, seed=0):
    rng = np.random.default_rng(seed)
    centers = rng.normal(size=(k, d)) * sep
    n_per = n // k
    Xs, ys = [], []
    for j in range(k):
        Xs.append(centers[j] + rng.normal(size=(n_per, d)))
        ys.append(np.full(n_per, j))
    return np.vstack(Xs), np.hstack(ys)


class RecordingEM(ExtendedEM):
    """Checks invariants after every step."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.prior_sums = []
        self.stddevs = []
        self.row_sums = []

    def e_step(self, change_weights=True):
        llk = super().e_step(change_weights)
        self.row_sums.append(self.model.responsibilities.sum(axis=1))
        return llk

    def m_step(self):
        super().m_step()
        self.prior_sums.append(float(self.model.priors.sum()))
        self.stddevs.append(self.model.stddevs.copy())


def test_two_cluster_scenario_converges():
    data = one_column([1, 1, 2, 8, 9, 9])
    em = RecordingEM(num_clusters=2, max_iterations=50, seed=1)
    em.set_centers(one_column([1.5, 8.5]))
    em.set_cluster_sizes([1, 1])
    em.build_clusterer(data)

    assert em.state == EMState.CONVERGED
    assert em.num_restarts == 0
    assert em.num_iterations < 50
    means = em.cluster_models_numeric_atts()[:, 0, 0]
    np.testing.assert_allclose(means, [4.0 / 3.0, 26.0 / 3.0], atol=1e-2)
    np.testing.assert_allclose(em.cluster_priors(), [0.5, 0.5], atol=1e-2)
    assert em.predict(np.array([[1.0], [9.0]])).tolist() == [0, 1]


def test_invariants_hold_after_every_step():
    X, _ = make_blobs(n=240, k=3, seed=4)
    data = instances_from_array(X)
    em = RecordingEM(num_clusters=3, max_iterations=40, seed=7)
    em.build_clusterer(data)

    assert em.prior_sums, "no M-step ran"
    for s in em.prior_sums:
        assert s == pytest.approx(1.0, abs=1e-9)
    for rows in em.row_sums:
        np.testing.assert_allclose(rows, 1.0, atol=1e-9)
    for std in em.stddevs:
        assert np.isfinite(std).all()
        assert (std >= em.config.min_std_dev).all()


def test_log_likelihood_does_not_regress():
    X, _ = make_blobs(n=300, k=3, seed=2)
    data = instances_from_array(X)
    centers = instances_from_array(X[[0, 100, 200]])
    em = ExtendedEM(num_clusters=3, max_iterations=100, seed=3)
    em.set_centers(centers)
    em.build_clusterer(data)
    assert em.num_restarts == 0
    gains = np.diff(em.log_likelihoods)
    assert (gains >= -1e-6).all()


def test_missing_value_excluded_from_that_attribute_only():
    data = instances_from_array(np.array([[1.0, 10.0], [2.0, np.nan], [3.0, 30.0]]))
    em = ExtendedEM(num_clusters=2, seed=1)
    em.set_centers(instances_from_array(np.array([[1.0, 10.0], [3.0, 30.0]])))
    em.prepare(data)
    em.em_init()
    em.model.responsibilities = np.array([[1.0, 0.0], [0.5, 0.5], [0.0, 1.0]])
    em.m_step()
    m = em.model

    # attribute 0 sees all three rows
    assert m.weight_sums[0, 0] == pytest.approx(1.5)
    assert m.means[0, 0] == pytest.approx((1.0 + 0.5 * 2.0) / 1.5)
    # attribute 1 skips the missing row
    assert m.weight_sums[0, 1] == pytest.approx(1.0)
    assert m.weight_sums[1, 1] == pytest.approx(1.0)
    assert m.means[0, 1] == pytest.approx(10.0)
    assert m.means[1, 1] == pytest.approx(30.0)
    # zero variance falls back to the global stddev of the column
    np.testing.assert_allclose(m.stddevs[:, 1], math.sqrt(200.0))

    # the row still gets a proper posterior, driven by attribute 0 alone
    em.e_step()
    np.testing.assert_allclose(em.model.responsibilities.sum(axis=1), 1.0)
    per_cluster = em.log_density_per_cluster_for_instance([2.0, np.nan])
    expected = log_normal_density(2.0, m.means[:, 0], m.stddevs[:, 0])
    np.testing.assert_allclose(per_cluster, expected)


def test_degenerate_cluster_gets_sentinel():
    data = one_column([0.0, 0.1, 0.2])
    em = ExtendedEM(num_clusters=2, seed=1)
    em.set_centers(one_column([0.1, 5.0]))
    em.prepare(data)
    em.em_init()
    em.model.responsibilities = np.array([[1.0, 0.0]] * 3)
    with np.errstate(**RAISE_FP):
        em.m_step()
        m = em.model
        assert m.weight_sums[1, 0] == 0.0
        assert m.means[1, 0] == em.config.min_std_dev
        assert m.stddevs[1, 0] == STD_SENTINEL
        assert np.isfinite(m.stddevs).all() and (m.stddevs > 0).all()
        np.testing.assert_allclose(m.priors, [1.0, 0.0])

        em.e_step()
    resp = em.model.responsibilities
    assert np.isfinite(resp).all()
    np.testing.assert_allclose(resp.sum(axis=1), 1.0)
    assert (resp[:, 0] > 0.99).all()


def test_far_away_center_collapses_without_failing():
    data = one_column([0.0, 0.1, 0.2, 0.3])
    em = RecordingEM(num_clusters=2, max_iterations=20, seed=1)
    em.set_centers(one_column([0.15, 1000.0]))
    em.build_clusterer(data)
    assert em.num_restarts == 0
    assert em.num_clusters == 2
    assert em.cluster_priors()[1] < 1e-6
    for std in em.stddevs:
        assert np.isfinite(std).all() and (std >= em.config.min_std_dev).all()


def test_per_attribute_floor_is_respected():
    data = one_column([1, 1, 2, 8, 9, 9])
    em = ExtendedEM(num_clusters=2, max_iterations=30, min_std_dev_per_attribute=[1.0])
    em.set_centers(one_column([1.5, 8.5]))
    em.build_clusterer(data)
    assert (em.cluster_models_numeric_atts()[:, :, 1] >= 1.0).all()


def test_missing_center_value_uses_mean_or_mode():
    atts = [Attribute.numeric("x"), Attribute.nominal("c", ["a", "b"])]
    data = Instances("d", atts)
    for x, c in [(0.0, 1), (1.0, 1), (10.0, 0), (11.0, 1)]:
        data.add([x, c])
    centers = data.copy_header()
    centers.add([0.5, None])
    centers.add([None, 0])
    em = ExtendedEM(num_clusters=2)
    em.set_centers(centers)
    em.prepare(data)
    model = em.em_init()
    assert model.means[0, 1] == 1.0  # mode of c
    assert model.means[1, 0] == pytest.approx(5.5)  # mean of x
    assert model.means[0, 0] == 0.5 and model.means[1, 1] == 0.0
    # initial spread is range / 2k
    assert model.stddevs[0, 0] == pytest.approx(11.0 / 4)
    np.testing.assert_allclose(model.priors, [0.5, 0.5])


def test_initial_stddev_falls_back_to_global_then_floor():
    # constant column: range is 0, global stddev is 0 -> floor
    data = instances_from_array(np.array([[1.0, 3.0], [2.0, 3.0], [4.0, 3.0]]))
    em = ExtendedEM(num_clusters=1)
    em.prepare(data)
    model = em.em_init()
    assert model.stddevs[0, 1] == em.config.min_std_dev
    assert model.stddevs[0, 0] == pytest.approx(1.5)


def test_single_observed_value_uses_floor_not_infinite_global():
    # one present value: global stddev is infinite
    data = instances_from_array(np.array([[1.0, 5.0], [2.0, np.nan], [4.0, np.nan]]))
    em = ExtendedEM(num_clusters=1)
    em.prepare(data)
    assert math.isinf(em._global_std_dev(1))

    model = em.em_init()
    assert model.stddevs[0, 1] == em.config.min_std_dev

    em.e_step(True)
    em.m_step()
    assert math.isfinite(em.model.stddevs[0, 1])
    assert em.model.stddevs[0, 1] == em.config.min_std_dev
    assert em.model.means[0, 1] == pytest.approx(5.0)


def test_inference_operations():
    data = one_column([1, 1, 2, 8, 9, 9])
    em = ExtendedEM(num_clusters=2, max_iterations=50)
    em.set_centers(one_column([1.5, 8.5]))
    em.build_clusterer(data)

    row = data.instance(2)
    joint = em.log_joint_densities_for_instance(row)
    assert em.log_density_for_instance(row) == pytest.approx(math.log(np.exp(joint).sum()))
    dist = em.distribution_for_instance(row)
    assert dist.sum() == pytest.approx(1.0)
    assert em.cluster_instance(row) == 0

    priors = em.cluster_priors()
    priors[:] = 0.0
    assert em.cluster_priors().sum() == pytest.approx(1.0)

    probs = em.predict_proba(data)
    assert probs.shape == (6, 2)
    np.testing.assert_allclose(probs.sum(axis=1), 1.0)
    assert em.responsibilities.shape == (6, 2)
    summary = em.summary()
    assert summary["num_clusters"] == 2 and summary["attributes"] == ["x"]
    assert summary["config"]["max_iterations"] == 50

    with pytest.raises(InvalidArgumentError):
        em.distribution_for_instance([1.0, 2.0])


def test_log_normal_density_formula():
    expected = -(1.0 / 8.0) - math.log(2.0) - LOG_NORM_CONST
    assert log_normal_density(1.0, 0.0, 2.0) == pytest.approx(expected)
    with np.errstate(**RAISE_FP):
        assert math.isfinite(log_normal_density(3.0, 0.0, STD_SENTINEL))


def test_argument_errors():
    with pytest.raises(InvalidArgumentError):
        ExtendedEM(num_clusters=0)
    em = ExtendedEM(num_clusters=2)
    with pytest.raises(InvalidArgumentError):
        em.set_num_clusters(0)
    with pytest.raises(NotFittedError):
        em.cluster_priors()

    data = one_column([1, 2, 3])
    em.set_cluster_sizes([0, 0])
    with pytest.raises(InvalidArgumentError):
        em.build_clusterer(data)

    em = ExtendedEM(num_clusters=3)
    em.set_centers(one_column([1.0, 2.0]))
    with pytest.raises(InvalidArgumentError):
        em.build_clusterer(data)

    with pytest.raises(InvalidArgumentError):
        ExtendedEM(num_clusters=1).build_clusterer(Instances("empty", [Attribute.numeric("x")]))


def test_random_centers_are_reproducible():
    X, _ = make_blobs(n=150, k=3, seed=5)
    data = instances_from_array(X)
    a = ExtendedEM(num_clusters=3, seed=11).build_clusterer(data)
    b = ExtendedEM(num_clusters=3, seed=11).build_clusterer(data)
    np.testing.assert_array_equal(a.cluster_models_numeric_atts(), b.cluster_models_numeric_atts())
