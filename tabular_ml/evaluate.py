"""
Model Evaluation Module

Scores a fitted pipeline (or bare model) on a labelled dataset and reduces
the predictions to a named metric set:
- regression: rmse, mse, mae, r_squared
- binary: accuracy, auc, auprc, f1_score, log_loss, positive/negative precision & recall
- multiclass: micro_accuracy, macro_accuracy, log_loss
- clustering: average_distance, davies_bouldin_index (+ normalized_mutual_information with labels)

Also provides k-fold cross-validation over an unfitted Pipeline.
"""

import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Union

import numpy as np
from sklearn import metrics as skm

from . import config
from .config import RunConfig
from .dataset import Dataset
from .errors import FitError, FoldError
from .train import assign_folds, fold_indices

logger = logging.getLogger(__name__)

__all__ = [
    "Metrics", "FoldResult", "METRIC_SETS", "evaluate", "cross_validate",
    "summarize_folds", "assign_folds",
]


class Metrics(Mapping):
    """Immutable mapping of metric name -> float."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping):
        self._values = {str(k): float(v) for k, v in dict(values).items()}

    def __getitem__(self, name: str) -> float:
        return self._values[name]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._values)

    def __repr__(self) -> str:
        return "Metrics(" + ", ".join(f"{k}={v:.4f}" for k, v in self._values.items()) + ")"


class FoldResult(NamedTuple):
    fold: int
    metrics: Metrics
    fitted: Any


# ============================================================================
# METRIC SETS
# ============================================================================
# Each metric set receives the scored dataset, the label column, the feature
# column and the trained model, and returns a dict of metric values.

def _labelled(scored: Dataset, label_column: str) -> np.ndarray:
    col = scored.schema.column(label_column)
    labels = scored.frame[label_column]
    if col.kind == "float":
        return labels.notna().to_numpy()
    if col.kind == "key":
        return (labels != 0).to_numpy()
    if col.kind == "str":
        return (labels != "").to_numpy()
    return np.ones(len(labels), dtype=bool)


def regression_metrics(scored: Dataset, label_column: str, feature_column: str, model) -> Dict[str, float]:
    """
    Metric: How close the predicted Score is to the label
    Operationalization: RMSE = sqrt(mean((Score - label)^2)); R^2 = 1 - SS_res / SS_tot
    """
    keep = _labelled(scored, label_column)
    y_true = scored.frame[label_column].to_numpy(dtype=np.float64)[keep]
    y_pred = scored.frame["Score"].to_numpy(dtype=np.float64)[keep]
    if len(y_true) == 0:
        raise FitError(f"No labelled rows in '{label_column}' to evaluate")

    mse = skm.mean_squared_error(y_true, y_pred)
    r_squared = skm.r2_score(y_true, y_pred) if len(y_true) > 1 else float("nan")
    return {
        "rmse": float(np.sqrt(mse)),
        "mse": mse,
        "mae": skm.mean_absolute_error(y_true, y_pred),
        "r_squared": r_squared,
    }


def binary_metrics(scored: Dataset, label_column: str, feature_column: str, model) -> Dict[str, float]:
    y_true = scored.frame[label_column].to_numpy(dtype=bool)
    if len(y_true) == 0:
        raise FitError(f"No labelled rows in '{label_column}' to evaluate")
    y_pred = scored.frame["PredictedLabel"].to_numpy(dtype=bool)
    probability = scored.frame["Probability"].to_numpy(dtype=np.float64)

    # AUC is undefined when the labels hold a single class
    both_classes = y_true.any() and not y_true.all()
    return {
        "accuracy": skm.accuracy_score(y_true, y_pred),
        "auc": skm.roc_auc_score(y_true, probability) if both_classes else float("nan"),
        "auprc": skm.average_precision_score(y_true, probability) if y_true.any() else float("nan"),
        "f1_score": skm.f1_score(y_true, y_pred, zero_division=0),
        "log_loss": skm.log_loss(y_true, probability, labels=[False, True]),
        "positive_precision": skm.precision_score(y_true, y_pred, pos_label=True, zero_division=0),
        "positive_recall": skm.recall_score(y_true, y_pred, pos_label=True, zero_division=0),
        "negative_precision": skm.precision_score(y_true, y_pred, pos_label=False, zero_division=0),
        "negative_recall": skm.recall_score(y_true, y_pred, pos_label=False, zero_division=0),
    }


def multiclass_metrics(scored: Dataset, label_column: str, feature_column: str, model) -> Dict[str, float]:
    """
    micro_accuracy: fraction of rows predicted correctly
    macro_accuracy: per-class accuracy averaged over the classes present in the labels
    """
    keep = _labelled(scored, label_column)
    y_true = scored.frame[label_column].to_numpy()[keep]
    if len(y_true) == 0:
        raise FitError(f"No labelled rows in '{label_column}' to evaluate")
    y_pred = scored.frame["PredictedLabel"].to_numpy()[keep]

    result = {
        "micro_accuracy": skm.accuracy_score(y_true, y_pred),
        "macro_accuracy": skm.balanced_accuracy_score(y_true, y_pred),
    }

    classes = getattr(model, "classes", None)
    if classes is not None:
        probabilities = scored.vector_matrix("Score")[keep]
        known = np.isin(y_true, classes)
        if known.any():
            result["log_loss"] = skm.log_loss(y_true[known], probabilities[known], labels=classes)
        else:
            result["log_loss"] = float("nan")
    return result


def clustering_metrics(scored: Dataset, label_column: Optional[str], feature_column: str,
                       model) -> Dict[str, float]:
    """
    average_distance: mean squared distance from each row to its assigned centroid
    davies_bouldin_index: lower is better; NaN when fewer than two clusters are used
    """
    distances = scored.vector_matrix("Score")
    assigned = scored.frame["PredictedLabel"].to_numpy(dtype=np.int64)
    features = np.nan_to_num(scored.vector_matrix(feature_column), nan=0.0)

    n_used = len(np.unique(assigned))
    result = {
        "average_distance": float(np.mean(np.min(distances, axis=1))),
        "davies_bouldin_index": (skm.davies_bouldin_score(features, assigned)
                                 if 1 < n_used < len(assigned) else float("nan")),
    }
    if label_column is not None:
        keep = _labelled(scored, label_column)
        result["normalized_mutual_information"] = skm.normalized_mutual_info_score(
            scored.frame[label_column].to_numpy()[keep], assigned[keep])
    return result


METRIC_SETS: Dict[str, Callable] = {
    "regression": regression_metrics,
    "binary": binary_metrics,
    "multiclass": multiclass_metrics,
    "clustering": clustering_metrics,
}


def _resolve_metric_set(metrics: Union[str, Callable]) -> Callable:
    if callable(metrics):
        return metrics
    try:
        return METRIC_SETS[metrics]
    except KeyError:
        raise ValueError(f"Unknown metric set: {metrics}. Must be one of {sorted(METRIC_SETS)} "
                         "or a callable") from None


# ============================================================================
# EVALUATION
# ============================================================================

def evaluate(model, dataset: Dataset, label_column: Optional[str],
             metrics: Union[str, Callable] = "regression",
             feature_column: str = config.EVALUATION_CONFIG["feature_column"]) -> Metrics:
    """
    Score ``dataset`` with ``model`` and compute a metric set.

    Args:
        model: FittedPipeline or Model
        dataset: Labelled dataset (the label may be produced by a pipeline stage)
        label_column: Label column name (optional for clustering)
        metrics: Metric set name or a callable
            ``fn(scored, label_column, feature_column, model) -> dict``
        feature_column: Feature vector column (clustering only)

    Returns:
        Metrics

    Raises:
        FitError: Empty dataset or no labelled rows
        SchemaError: Label column absent after scoring

    Example:
        >>> evaluate(fitted, test, "Label", metrics="regression")["rmse"]
        4324.85
    """
    metric_fn = _resolve_metric_set(metrics)
    if len(dataset) == 0:
        raise FitError("Cannot evaluate on an empty dataset")

    scored = model.predict_batch(dataset)
    if label_column is not None:
        scored.schema.require([label_column], context="evaluation label")

    trained = getattr(model, "model", model)
    return Metrics(metric_fn(scored, label_column, feature_column, trained))


# ============================================================================
# CROSS-VALIDATION
# ============================================================================

def cross_validate(pipeline, dataset: Dataset, label_column: Optional[str],
                   folds: int = config.CV_CONFIG["n_folds"],
                   seed: Optional[int] = None,
                   metrics: Union[str, Callable] = "regression",
                   n_jobs: Optional[int] = None,
                   feature_column: str = config.EVALUATION_CONFIG["feature_column"],
                   run_config: Optional[RunConfig] = None) -> Iterator[FoldResult]:
    """
    K-fold cross-validation of an unfitted Pipeline.

    Rows are assigned to ``folds`` disjoint folds (sizes differ by at most
    one) by a seeded shuffle. For each fold k a fresh FittedPipeline is
    fitted on the other folds and evaluated on fold k.

    Results are yielded lazily in fold order, also when folds run on worker
    threads (``n_jobs > 1``). Argument errors are raised immediately.

    Raises:
        ValueError: folds < 2 or folds > len(dataset)
        FoldError: A fold failed to fit or evaluate (carries the fold index)

    Example:
        >>> results = list(cross_validate(pipeline, data, "Label", folds=5))
        >>> summarize_folds(results, "r_squared")["mean"]
        0.87
    """
    run_config = run_config or RunConfig()
    seed = run_config.seed if seed is None else seed
    n_jobs = run_config.n_jobs if n_jobs is None else n_jobs
    metric_fn = _resolve_metric_set(metrics)
    splits = fold_indices(len(dataset), folds, seed)

    def run_fold(fold: int) -> FoldResult:
        train_idx, test_idx = splits[fold]
        try:
            fitted = pipeline.fit(dataset.take(train_idx), label_column)
            fold_metrics = evaluate(fitted, dataset.take(test_idx), label_column,
                                    metrics=metric_fn, feature_column=feature_column)
        except Exception as e:
            raise FoldError(fold, e) from e
        logger.debug(f"Fold {fold}: {fold_metrics!r}")
        return FoldResult(fold, fold_metrics, fitted)

    def results() -> Iterator[FoldResult]:
        if n_jobs <= 1:
            for fold in range(folds):
                yield run_fold(fold)
            return
        with ThreadPoolExecutor(max_workers=min(n_jobs, folds)) as executor:
            futures = [executor.submit(run_fold, fold) for fold in range(folds)]
            for future in futures:
                yield future.result()

    logger.info(f"Cross-validating {len(dataset)} rows with {folds} folds (n_jobs={n_jobs})")
    return results()


def summarize_folds(results: List[FoldResult], metric: str) -> Dict[str, float]:
    """
    Mean and standard deviation of ``metric`` over realized fold results.

    Example:
        >>> summarize_folds(results, "rmse")
        {'mean': 4324.8, 'std': 212.5}
    """
    values = np.array([r.metrics[metric] for r in results], dtype=np.float64)
    if len(values) == 0:
        raise ValueError("No fold results to summarize")
    return {"mean": float(np.mean(values)), "std": float(np.std(values))}
