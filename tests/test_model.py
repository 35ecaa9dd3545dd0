"""
Tests for tabular_ml.model module
----------------------------------
Covers:
- Trainer.fit() contract (schema checks, empty data, degenerate labels)
- Regression, binary, multiclass and clustering trainers
- MatrixFactorizationTrainer / MatrixFactorizationModel
- Model serialization via to_bytes()/from_bytes()
"""

import numpy as np
import pytest

from tabular_ml.config import RunConfig
from tabular_ml.dataset import Dataset
from tabular_ml.errors import FitError, FormatError, SchemaError
from tabular_ml.model import (
    FastForestRegressionTrainer,
    FastTreeBinaryTrainer,
    KMeansTrainer,
    LogisticRegressionTrainer,
    MatrixFactorizationModel,
    MatrixFactorizationTrainer,
    MaximumEntropyTrainer,
    Model,
    OlsTrainer,
)
from tabular_ml.schema import Column, Schema

FEATURE_SCHEMA = Schema([Column("Features", "float", 2), Column("Label", "float")])


def _features_dataset(features, labels, label_kind="float"):
    schema = Schema([Column("Features", "float", len(features[0])), Column("Label", label_kind)])
    rows = [{"Features": f, "Label": y} for f, y in zip(features, labels)]
    return Dataset.from_rows(rows, schema)


@pytest.fixture
def linear_dataset():
    """y = 2 * x1 - 3 * x2 + 1, no noise."""
    rng = np.random.default_rng(0)
    x = rng.normal(size=(30, 2))
    y = 2 * x[:, 0] - 3 * x[:, 1] + 1
    return _features_dataset(x.tolist(), y.tolist())


@pytest.fixture
def three_blobs():
    """Three well-separated clusters of 10 points each, labelled by blob."""
    rng = np.random.default_rng(3)
    centers = np.array([[0.0, 0.0], [10.0, 10.0], [-10.0, 10.0]])
    x = np.vstack([c + rng.normal(scale=0.3, size=(10, 2)) for c in centers])
    labels = np.repeat([1, 2, 3], 10)
    return _features_dataset(x.tolist(), labels.tolist(), label_kind="key")


# -------------------------------------------------------------------
# Trainer contract
# -------------------------------------------------------------------

class TestTrainerContract:
    """Checks every trainer applies before fitting."""

    def test_empty_dataset_is_fit_error(self):
        """Fitting on zero rows fails."""
        empty = Dataset.from_rows([], FEATURE_SCHEMA)
        with pytest.raises(FitError):
            OlsTrainer().fit(empty, "Label")

    def test_missing_feature_column(self, car_dataset):
        """The Features column must exist."""
        with pytest.raises(SchemaError):
            OlsTrainer().fit(car_dataset, "Label")

    def test_wrong_label_kind(self, linear_dataset):
        """A float label cannot train a binary classifier."""
        with pytest.raises(SchemaError):
            LogisticRegressionTrainer().fit(linear_dataset, "Label")

    def test_nan_features_rejected(self):
        """NaN features fail with a hint to add ReplaceMissingValues."""
        data = _features_dataset([[1.0, np.nan], [2.0, 1.0]], [1.0, 2.0])
        with pytest.raises(FitError, match="ReplaceMissingValues"):
            OlsTrainer().fit(data, "Label")

    def test_single_class_is_fit_error(self):
        """A binary label needs both classes."""
        data = _features_dataset([[0.0, 1.0], [1.0, 0.0]], [True, True], label_kind="bool")
        with pytest.raises(FitError, match="single class"):
            LogisticRegressionTrainer().fit(data, "Label")

    def test_every_fit_produces_independent_model(self, linear_dataset):
        """Each fit clones a fresh estimator."""
        trainer = OlsTrainer()
        first = trainer.fit(linear_dataset, "Label")
        second = trainer.fit(linear_dataset.head(10), "Label")
        assert first is not second
        assert first.estimator is not second.estimator


# -------------------------------------------------------------------
# Scikit-learn backed trainers
# -------------------------------------------------------------------

class TestRegressionTrainers:

    def test_ols_recovers_linear_relation(self, linear_dataset):
        """Noise-free linear data is fitted exactly."""
        model = OlsTrainer().fit(linear_dataset, "Label")
        prediction = model.predict({"Features": [1.0, 1.0]})
        assert prediction["Score"] == pytest.approx(0.0, abs=1e-8)
        assert list(prediction) == ["Score"]

    def test_missing_labels_are_skipped(self):
        """Rows with a NaN label are left out of training."""
        data = _features_dataset([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]],
                                 [0.0, 1.0, np.nan, 3.0])
        model = OlsTrainer().fit(data, "Label")
        assert model.predict({"Features": [2.0, 0.0]})["Score"] == pytest.approx(2.0)

    def test_fast_forest_scores_every_row(self, linear_dataset):
        """Forest scores are finite for every row."""
        model = FastForestRegressionTrainer(n_trees=10, min_examples_per_leaf=2).fit(linear_dataset, "Label")
        scored = model.predict_batch(linear_dataset)
        assert np.isfinite(scored.column_values("Score")).all()


class TestClassificationTrainers:

    def test_binary_outputs(self, binary_dataset):
        """Binary models add PredictedLabel, Score and Probability."""
        from tabular_ml.feature_engineering import Concatenate
        data = Concatenate("Features", "X1", "X2").transform(binary_dataset)
        model = LogisticRegressionTrainer().fit(data, "Label")
        scored = model.predict_batch(data)

        assert [c.name for c in model.output_columns()] == ["PredictedLabel", "Score", "Probability"]
        probability = scored.column_values("Probability")
        assert ((probability >= 0) & (probability <= 1)).all()
        accuracy = (scored.column_values("PredictedLabel") == scored.column_values("Label")).mean()
        assert accuracy > 0.9

    def test_fast_tree_binary(self, binary_dataset):
        """Boosted trees predict boolean labels."""
        from tabular_ml.feature_engineering import Concatenate
        data = Concatenate("Features", "X1", "X2").transform(binary_dataset)
        model = FastTreeBinaryTrainer(n_trees=20, min_examples_per_leaf=2).fit(data, "Label")
        assert model.predict_batch(data).column_values("PredictedLabel").dtype == bool

    def test_multiclass_score_vector(self, three_blobs):
        """Score holds one probability per class."""
        model = MaximumEntropyTrainer().fit(three_blobs, "Label")
        scored = model.predict_batch(three_blobs)

        assert model.output_schema(three_blobs.schema).column("Score").size == 3
        assert np.allclose(scored.vector_matrix("Score").sum(axis=1), 1.0)
        assert scored.column_values("PredictedLabel").tolist() == three_blobs.column_values("Label").tolist()


class TestKMeansTrainer:

    def test_cluster_ids_are_one_based(self, three_blobs):
        """Cluster ids run from 1 to k."""
        model = KMeansTrainer(n_clusters=3).fit(three_blobs)
        assigned = model.predict_batch(three_blobs).column_values("PredictedLabel")
        assert set(assigned.tolist()) == {1, 2, 3}
        # each blob lands in a single cluster
        for blob in range(3):
            assert len(set(assigned[blob * 10:(blob + 1) * 10])) == 1

    def test_too_few_rows(self):
        """k-means needs at least k rows."""
        data = _features_dataset([[0.0, 0.0], [1.0, 1.0]], [0.0, 0.0])
        with pytest.raises(FitError):
            KMeansTrainer(n_clusters=3).fit(data)

    def test_seed_makes_fit_reproducible(self, three_blobs):
        """Same seed, same clusters."""
        first = KMeansTrainer(n_clusters=3).fit(three_blobs).predict_batch(three_blobs)
        second = KMeansTrainer(n_clusters=3).fit(three_blobs).predict_batch(three_blobs)
        assert first.column_values("PredictedLabel").tolist() == second.column_values("PredictedLabel").tolist()


# -------------------------------------------------------------------
# Matrix factorization
# -------------------------------------------------------------------

@pytest.fixture
def ratings():
    """4 users x 4 items with 12 observed ratings."""
    schema = Schema([("User", "key"), ("Item", "key"), ("Label", "float")])
    rows = [
        {"User": u, "Item": i, "Label": float((u + i) % 5 + 1)}
        for u in range(1, 5) for i in range(1, 5) if (u + i) % 4 != 0
    ]
    return Dataset.from_rows(rows, schema)


class TestMatrixFactorization:
    """Biased truncated-SVD factorization over key columns."""

    def test_fit_and_score(self, ratings):
        """Factorization scores every observed pair."""
        model = MatrixFactorizationTrainer("User", "Item", n_factors=2).fit(ratings, "Label")
        assert isinstance(model, MatrixFactorizationModel)
        scores = model.predict_batch(ratings).column_values("Score")
        assert np.isfinite(scores).all()

    def test_unknown_keys_score_global_mean(self, ratings):
        """Key 0 and out-of-range keys fall back to the global mean."""
        model = MatrixFactorizationTrainer("User", "Item", n_factors=2).fit(ratings, "Label")
        assert model.predict({"User": 0, "Item": 0})["Score"] == pytest.approx(model.global_mean)
        assert model.predict({"User": 99, "Item": 99})["Score"] == pytest.approx(model.global_mean)

    def test_learned_arrays_are_read_only(self, ratings):
        """Learned biases and factors cannot be modified."""
        model = MatrixFactorizationTrainer("User", "Item", n_factors=2).fit(ratings, "Label")
        with pytest.raises(ValueError):
            model.row_bias[0] = 1.0

    def test_one_class_ignores_label(self, ratings):
        """One-class fits learn no mean or biases."""
        model = MatrixFactorizationTrainer("User", "Item", n_factors=2, one_class=True).fit(ratings)
        assert model.global_mean == 0.0
        assert model.one_class

    def test_requires_key_columns(self, ratings):
        """Row and column indices must be key columns."""
        with pytest.raises(SchemaError):
            MatrixFactorizationTrainer("User", "Label").check_schema(ratings.schema)

    def test_invalid_factor_count(self):
        """At least one factor is needed."""
        with pytest.raises(ValueError):
            MatrixFactorizationTrainer("User", "Item", n_factors=0)

    def test_refit_is_bitwise_reproducible(self, ratings):
        """Two fits with the same seed learn identical factors."""
        trainer = MatrixFactorizationTrainer("User", "Item", n_factors=2, run_config=RunConfig(seed=5))
        first = trainer.fit(ratings, "Label")
        second = trainer.fit(ratings, "Label")
        assert np.array_equal(first.row_factors, second.row_factors)
        assert np.array_equal(first.column_factors, second.column_factors)
        assert np.array_equal(first.predict_batch(ratings).column_values("Score"),
                              second.predict_batch(ratings).column_values("Score"))

    def test_seed_is_taken_from_run_config(self):
        """The SVD seed comes from the RunConfig, defaulting to its seed."""
        assert MatrixFactorizationTrainer("User", "Item", run_config=RunConfig(seed=11)).seed == 11
        assert MatrixFactorizationTrainer("User", "Item").seed == RunConfig().seed


# -------------------------------------------------------------------
# Serialization
# -------------------------------------------------------------------

class TestModelBytes:

    def test_round_trip_preserves_predictions(self, linear_dataset):
        """A restored model scores like the original."""
        model = OlsTrainer().fit(linear_dataset, "Label")
        restored = Model.from_bytes(model.to_bytes())
        row = {"Features": [0.5, -2.0]}
        assert restored.predict(row)["Score"] == pytest.approx(model.predict(row)["Score"])

    def test_corrupt_bytes(self):
        """Bytes that are not a model raise FormatError."""
        with pytest.raises(FormatError):
            Model.from_bytes(b"\x00not a model")
