"""
Trainer / Model Module

A Trainer holds hyperparameters and fits a Model from a Dataset plus a
label column. A Model is the immutable result of one fit: it owns its
learned parameters, scores rows and datasets, and serializes itself.

Trainers:
- OlsTrainer, FastForestRegressionTrainer (regression)
- LogisticRegressionTrainer, FastTreeBinaryTrainer (binary classification)
- MaximumEntropyTrainer (multiclass classification)
- KMeansTrainer (clustering)
- MatrixFactorizationTrainer (pairwise scoring for recommendation)
"""

import pickle
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import svds
from sklearn.base import clone
from sklearn.cluster import KMeans
from sklearn.ensemble import GradientBoostingClassifier, RandomForestRegressor
from sklearn.linear_model import LinearRegression, LogisticRegression

from . import config
from .config import RunConfig
from .dataset import Dataset, Row
from .errors import FitError, FormatError, SchemaError, TabularMLError
from .schema import Column, Schema

TASKS = ("regression", "binary", "multiclass", "clustering")


# ============================================================================
# CONTRACTS
# ============================================================================

class Model(ABC):
    """
    Immutable fitted model.

    Subclasses set ``_input_schema`` (the training schema restricted to the
    columns they read) during construction and never change state afterwards.
    """

    _input_schema: Schema

    @property
    def input_columns(self) -> Tuple[str, ...]:
        return self._input_schema.names

    @property
    def input_schema(self) -> Schema:
        return self._input_schema

    @abstractmethod
    def output_columns(self) -> List[Column]:
        """Prediction columns appended by predict_batch()."""

    @abstractmethod
    def _score(self, dataset: Dataset) -> Dict[str, Any]:
        """Prediction values keyed by output column name."""

    def output_schema(self, schema: Schema) -> Schema:
        schema.require(self.input_columns, context=repr(self))
        return schema.with_columns(self.output_columns())

    def predict_batch(self, dataset: Dataset) -> Dataset:
        """Return ``dataset`` with the prediction columns appended."""
        dataset.schema.require(self.input_columns, context=repr(self))
        return dataset.with_columns(self.output_columns(), self._score(dataset))

    def predict(self, row: Mapping) -> Row:
        """Score one row; returns only the prediction columns."""
        missing = [name for name in self.input_columns if name not in row]
        if missing:
            raise SchemaError(f"Row is missing column(s) {missing} required by {self!r}")
        single = Dataset.from_rows([row], self._input_schema)
        scored = self._score(single)
        return Row({col.name: scored[col.name][0] for col in self.output_columns()})

    def to_bytes(self) -> bytes:
        return pickle.dumps(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Model":
        try:
            model = pickle.loads(data)
        except Exception as e:
            raise FormatError(f"Cannot deserialize model: {e}") from e
        if not isinstance(model, Model):
            raise FormatError(f"Deserialized object is {type(model).__name__}, not a Model")
        return model

    def get_model_info(self) -> dict:
        return {"algorithm": type(self).__name__, "input_columns": list(self.input_columns)}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.input_columns)})"


class Trainer(ABC):
    """
    Fits a Model from a Dataset. Holds only hyperparameters; every fit()
    produces an independent Model.
    """

    @property
    @abstractmethod
    def input_columns(self) -> Tuple[str, ...]:
        """Non-label columns the trainer reads."""

    @abstractmethod
    def check_schema(self, schema: Schema, label_column: Optional[str] = None) -> None:
        """Raise SchemaError if ``schema`` cannot feed this trainer."""

    @abstractmethod
    def _fit(self, dataset: Dataset, label_column: Optional[str]) -> Model:
        """Fit on a non-empty, schema-checked dataset."""

    def fit(self, dataset: Dataset, label_column: Optional[str] = None) -> Model:
        """
        Fit a new Model.

        Raises:
            SchemaError: Dataset schema does not match the trainer
            FitError: Empty or degenerate data, or the learner failed
        """
        self.check_schema(dataset.schema, label_column)
        if len(dataset) == 0:
            raise FitError(f"{self!r}: cannot fit on an empty dataset")
        try:
            return self._fit(dataset, label_column)
        except TabularMLError:
            raise
        except (ValueError, ArithmeticError, RuntimeError, np.linalg.LinAlgError) as e:
            raise FitError(f"{self!r} failed: {e}") from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


# ============================================================================
# SCIKIT-LEARN BACKED TRAINERS
# ============================================================================

class SklearnModel(Model):
    """Model wrapping a fitted scikit-learn estimator over one feature vector column."""

    def __init__(self, estimator, task: str, input_schema: Schema, feature_column: str,
                 label_column_def: Optional[Column] = None, n_features: int = 0):
        self.estimator = estimator
        self.task = task
        self.feature_column = feature_column
        self.label_column_def = label_column_def
        self.n_features = n_features
        self._input_schema = input_schema

    @property
    def classes(self) -> Optional[np.ndarray]:
        """Class labels in Score-vector order (classifiers only)."""
        return getattr(self.estimator, "classes_", None)

    def output_columns(self) -> List[Column]:
        if self.task == "regression":
            return [Column("Score", "float")]
        if self.task == "binary":
            return [Column("PredictedLabel", "bool"), Column("Score", "float"), Column("Probability", "float")]
        if self.task == "multiclass":
            label_kind = self.label_column_def.kind if self.label_column_def else "key"
            return [Column("PredictedLabel", label_kind), Column("Score", "float", len(self.estimator.classes_))]
        n_clusters = self.estimator.n_clusters
        return [Column("PredictedLabel", "key"), Column("Score", "float", n_clusters)]

    def _features(self, dataset: Dataset) -> np.ndarray:
        matrix = dataset.vector_matrix(self.feature_column)
        if len(matrix) and matrix.shape[1] != self.n_features:
            raise SchemaError(f"{self!r} expects {self.n_features} features, got {matrix.shape[1]}")
        # Out-of-domain values still get a best-effort score
        return np.nan_to_num(matrix, nan=0.0, posinf=0.0, neginf=0.0)

    def _score(self, dataset):
        X = self._features(dataset)
        n = len(X)
        if self.task == "regression":
            return {"Score": self.estimator.predict(X) if n else np.empty(0)}
        if self.task == "binary":
            if not n:
                return {"PredictedLabel": np.empty(0, dtype=bool), "Score": np.empty(0), "Probability": np.empty(0)}
            probability = self.estimator.predict_proba(X)[:, 1]
            return {
                "PredictedLabel": probability >= config.EVALUATION_CONFIG["binary_threshold"],
                "Score": self.estimator.decision_function(X),
                "Probability": probability,
            }
        if self.task == "multiclass":
            if not n:
                return {"PredictedLabel": np.empty(0), "Score": np.empty((0, len(self.estimator.classes_)))}
            probabilities = self.estimator.predict_proba(X)
            predicted = self.estimator.classes_[np.argmax(probabilities, axis=1)]
            return {"PredictedLabel": predicted, "Score": probabilities}
        if not n:
            return {"PredictedLabel": np.empty(0, dtype=np.int64), "Score": np.empty((0, self.estimator.n_clusters))}
        distances = self.estimator.transform(X) ** 2
        return {"PredictedLabel": np.argmin(distances, axis=1).astype(np.int64) + 1, "Score": distances}

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({
            "algorithm": type(self.estimator).__name__,
            "task": self.task,
            "n_features": self.n_features,
        })
        return info


class SklearnTrainer(Trainer):
    """
    Generic trainer for a scikit-learn estimator.

    The estimator passed in is used as a template and cloned for every fit.

    Args:
        estimator: Unfitted scikit-learn estimator
        task: One of 'regression', 'binary', 'multiclass', 'clustering'
        feature_column: Float vector column holding the features
    """

    def __init__(self, estimator, task: str, feature_column: str = "Features"):
        if task not in TASKS:
            raise ValueError(f"Invalid task: {task}. Must be one of {TASKS}")
        self.estimator = estimator
        self.task = task
        self.feature_column = feature_column

    @property
    def input_columns(self):
        return (self.feature_column,)

    def check_schema(self, schema, label_column=None):
        schema.require_kind(self.feature_column, ("float",), vector=True, context=repr(self))
        if self.task == "clustering" or label_column is None:
            return
        label_kinds = {
            "regression": ("float", "int"),
            "binary": ("bool",),
            "multiclass": ("key", "int", "str", "bool"),
        }[self.task]
        schema.require_kind(label_column, label_kinds, vector=False, context=f"{self!r} label")

    def _labelled_rows(self, dataset: Dataset, label_column: str) -> np.ndarray:
        labels = dataset.frame[label_column]
        col = dataset.schema.column(label_column)
        if col.kind == "float":
            return labels.notna().to_numpy()
        if col.kind == "key":
            return (labels != 0).to_numpy()
        if col.kind == "str":
            return (labels != "").to_numpy()
        return np.ones(len(labels), dtype=bool)

    def _fit(self, dataset, label_column):
        if self.task != "clustering" and label_column is None:
            raise FitError(f"{self!r} needs a label column")

        X = dataset.vector_matrix(self.feature_column)
        if np.isnan(X).any():
            raise FitError(f"{self!r}: feature column '{self.feature_column}' contains missing values; "
                           "add a ReplaceMissingValues stage")

        estimator = clone(self.estimator)
        label_def = None
        if self.task == "clustering":
            if len(X) < estimator.n_clusters:
                raise FitError(f"{self!r}: {len(X)} rows cannot form {estimator.n_clusters} clusters")
            estimator.fit(X)
        else:
            label_def = dataset.schema.column(label_column)
            keep = self._labelled_rows(dataset, label_column)
            X = X[keep]
            y = dataset.frame[label_column].to_numpy()[keep]
            if len(y) == 0:
                raise FitError(f"{self!r}: no rows with a defined label in '{label_column}'")
            if self.task == "regression":
                y = y.astype(np.float64)
            elif len(np.unique(y)) < 2:
                raise FitError(f"{self!r}: label '{label_column}' has a single class")
            estimator.fit(X, y)

        input_schema = dataset.schema.select([self.feature_column])
        return SklearnModel(estimator, self.task, input_schema, self.feature_column,
                            label_column_def=label_def, n_features=X.shape[1])

    def __repr__(self):
        return f"{type(self).__name__}({type(self.estimator).__name__}, task={self.task})"


class OlsTrainer(SklearnTrainer):
    """Ordinary least squares regression."""

    def __init__(self, feature_column: str = "Features"):
        super().__init__(LinearRegression(), "regression", feature_column)


class FastForestRegressionTrainer(SklearnTrainer):
    """Random forest regression."""

    def __init__(self, feature_column: str = "Features", n_trees: int = 100, n_leaves: int = 20,
                 min_examples_per_leaf: int = 10, run_config: Optional[RunConfig] = None):
        run_config = run_config or RunConfig()
        estimator = RandomForestRegressor(
            n_estimators=n_trees,
            max_leaf_nodes=n_leaves,
            min_samples_leaf=min_examples_per_leaf,
            random_state=run_config.seed,
        )
        super().__init__(estimator, "regression", feature_column)


class LogisticRegressionTrainer(SklearnTrainer):
    """Binary logistic regression (L-BFGS)."""

    def __init__(self, feature_column: str = "Features", l2_regularization: float = 1.0,
                 max_iterations: int = 1000, run_config: Optional[RunConfig] = None):
        run_config = run_config or RunConfig()
        estimator = LogisticRegression(C=1.0 / l2_regularization, max_iter=max_iterations,
                                       random_state=run_config.seed)
        super().__init__(estimator, "binary", feature_column)


class FastTreeBinaryTrainer(SklearnTrainer):
    """Gradient boosted trees for binary classification."""

    def __init__(self, feature_column: str = "Features", n_trees: int = 100, n_leaves: int = 20,
                 min_examples_per_leaf: int = 10, learning_rate: float = 0.2,
                 run_config: Optional[RunConfig] = None):
        run_config = run_config or RunConfig()
        estimator = GradientBoostingClassifier(
            n_estimators=n_trees,
            max_leaf_nodes=n_leaves,
            min_samples_leaf=min_examples_per_leaf,
            learning_rate=learning_rate,
            random_state=run_config.seed,
        )
        super().__init__(estimator, "binary", feature_column)


class MaximumEntropyTrainer(SklearnTrainer):
    """Multinomial logistic regression for multiclass classification."""

    def __init__(self, feature_column: str = "Features", l2_regularization: float = 1.0,
                 max_iterations: int = 1000, run_config: Optional[RunConfig] = None):
        run_config = run_config or RunConfig()
        estimator = LogisticRegression(C=1.0 / l2_regularization, max_iter=max_iterations,
                                       random_state=run_config.seed)
        super().__init__(estimator, "multiclass", feature_column)


class KMeansTrainer(SklearnTrainer):
    """k-means clustering. PredictedLabel is the 1-based cluster id."""

    def __init__(self, feature_column: str = "Features", n_clusters: int = 3,
                 run_config: Optional[RunConfig] = None):
        run_config = run_config or RunConfig()
        estimator = KMeans(n_clusters=n_clusters, n_init=10, random_state=run_config.seed)
        super().__init__(estimator, "clustering", feature_column)


# ============================================================================
# MATRIX FACTORIZATION
# ============================================================================

class MatrixFactorizationModel(Model):
    """
    Biased matrix factorization over two key columns.

    Prediction formula: r_ij = mu + b_i + c_j + p_i^T * q_j

    Where:
    - mu  = global mean (0 in one-class mode)
    - b_i = row bias, c_j = column bias
    - p_i, q_j = latent factors

    Keys outside the training range (including the 0 "unknown" key) get
    zero bias and zero factors, so their score falls back to mu.
    """

    def __init__(self, input_schema: Schema, row_column: str, column_column: str,
                 global_mean: float, row_bias: np.ndarray, column_bias: np.ndarray,
                 row_factors: np.ndarray, column_factors: np.ndarray, one_class: bool):
        self._input_schema = input_schema
        self.row_column = row_column
        self.column_column = column_column
        self.global_mean = float(global_mean)
        self.row_bias = row_bias
        self.column_bias = column_bias
        self.row_factors = row_factors
        self.column_factors = column_factors
        self.one_class = one_class
        for arr in (row_bias, column_bias, row_factors, column_factors):
            arr.setflags(write=False)

    @property
    def n_rows(self) -> int:
        return len(self.row_bias)

    @property
    def n_columns(self) -> int:
        return len(self.column_bias)

    def output_columns(self):
        return [Column("Score", "float")]

    def _lookup(self, keys: np.ndarray, bias: np.ndarray, factors: np.ndarray):
        idx = keys - 1
        known = (idx >= 0) & (idx < len(bias))
        safe = np.where(known, idx, 0)
        return np.where(known, bias[safe], 0.0), np.where(known[:, None], factors[safe], 0.0)

    def _score(self, dataset):
        rows = dataset.frame[self.row_column].to_numpy(dtype=np.int64)
        cols = dataset.frame[self.column_column].to_numpy(dtype=np.int64)
        row_b, row_f = self._lookup(rows, self.row_bias, self.row_factors)
        col_b, col_f = self._lookup(cols, self.column_bias, self.column_factors)
        score = self.global_mean + row_b + col_b + np.sum(row_f * col_f, axis=1)
        return {"Score": score}

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({
            "algorithm": "Biased Matrix Factorization (truncated SVD)",
            "n_factors": self.row_factors.shape[1],
            "matrix_size": f"{self.n_rows}x{self.n_columns}",
            "one_class": self.one_class,
        })
        return info


class MatrixFactorizationTrainer(Trainer):
    """
    Matrix factorization recommender trainer.

    Fits global mean and shrunken row/column biases, then factorizes the
    residual matrix with a truncated SVD.

    Args:
        row_column: Key column indexing matrix rows (e.g. user)
        column_column: Key column indexing matrix columns (e.g. item)
        n_factors: Number of latent factors
        regularization: Bias shrinkage (bias = sum(residual) / (count + regularization))
        one_class: Treat every observed pair as a positive (value 1) and
            ignore label values; no biases are learned
        run_config: Seed for the SVD start vector
    """

    def __init__(self, row_column: str, column_column: str,
                 n_factors: int = config.MF_CONFIG["n_factors"],
                 regularization: float = config.MF_CONFIG["regularization"],
                 one_class: bool = False,
                 run_config: Optional[RunConfig] = None):
        if n_factors < 1:
            raise ValueError("n_factors must be >= 1")
        self.row_column = row_column
        self.column_column = column_column
        self.n_factors = n_factors
        self.regularization = regularization
        self.one_class = one_class
        self.seed = (run_config or RunConfig()).seed

    @property
    def input_columns(self):
        return (self.row_column, self.column_column)

    def check_schema(self, schema, label_column=None):
        schema.require_kind(self.row_column, ("key",), vector=False, context=repr(self))
        schema.require_kind(self.column_column, ("key",), vector=False, context=repr(self))
        if label_column is not None and not self.one_class:
            schema.require_kind(label_column, ("float", "int", "bool", "key"), vector=False,
                                context=f"{self!r} label")

    def _fit(self, dataset, label_column):
        rows = dataset.frame[self.row_column].to_numpy(dtype=np.int64)
        cols = dataset.frame[self.column_column].to_numpy(dtype=np.int64)
        if self.one_class:
            values = np.ones(len(rows))
        else:
            if label_column is None:
                raise FitError(f"{self!r} needs a label column unless one_class=True")
            values = dataset.frame[label_column].to_numpy(dtype=np.float64)

        keep = (rows > 0) & (cols > 0) & ~np.isnan(values)
        rows, cols, values = rows[keep] - 1, cols[keep] - 1, values[keep]
        if len(values) == 0:
            raise FitError(f"{self!r}: no rows with known keys and a defined label")

        n_rows, n_cols = int(rows.max()) + 1, int(cols.max()) + 1

        if self.one_class:
            global_mean = 0.0
            row_bias, col_bias = np.zeros(n_rows), np.zeros(n_cols)
            residual = values
        else:
            global_mean = values.mean()
            centered = values - global_mean
            row_bias = (np.bincount(rows, weights=centered, minlength=n_rows) /
                        (np.bincount(rows, minlength=n_rows) + self.regularization))
            after_rows = centered - row_bias[rows]
            col_bias = (np.bincount(cols, weights=after_rows, minlength=n_cols) /
                        (np.bincount(cols, minlength=n_cols) + self.regularization))
            residual = after_rows - col_bias[cols]

        matrix = csr_matrix((residual, (rows, cols)), shape=(n_rows, n_cols), dtype=np.float64)

        k = min(self.n_factors, min(n_rows, n_cols) - 1)
        if k >= 1 and matrix.nnz > 0:
            # Seeded ARPACK start vector keeps refits bit-for-bit identical
            v0 = np.random.default_rng(self.seed).uniform(-1.0, 1.0, size=min(matrix.shape))
            U, sigma, Vt = svds(matrix, k=k, v0=v0)
            root = np.sqrt(sigma)
            row_factors = U * root
            col_factors = Vt.T * root
        else:
            row_factors = np.zeros((n_rows, 1))
            col_factors = np.zeros((n_cols, 1))

        input_schema = dataset.schema.select([self.row_column, self.column_column])
        return MatrixFactorizationModel(
            input_schema, self.row_column, self.column_column,
            global_mean, row_bias, col_bias, row_factors, col_factors, self.one_class,
        )

    def __repr__(self):
        return f"MatrixFactorizationTrainer({self.row_column}, {self.column_column}, k={self.n_factors})"
