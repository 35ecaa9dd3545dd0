"""
ML Pipeline Orchestrator

- Pipeline: ordered transforms terminated by a trainer, schema-checked at
  construction time
- FittedPipeline: fitted transforms plus the trained model
- run_training_pipeline(): end-to-end run
    1. Data loading
    2. Train/test split
    3. Pipeline fitting
    4. Held-out evaluation
    5. Cross-validation
    6. Model serialization
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from . import config
from .config import RunConfig
from .data_io import load_dataset
from .dataset import Dataset, object_column
from .errors import FitError, NotFittedError, SchemaError
from .feature_engineering import Transform
from .model import Model, Trainer
from .predict import PredictionEngine
from .schema import Schema
from .train import train_pipeline, train_test_split

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Ordered composition of transforms ending in an optional trainer.

    The schema is threaded through every stage on construction, so an
    incompatible stage raises SchemaError before anything is fitted.

    Example:
        >>> pipeline = Pipeline(schema, [
        ...     OneHotEncoding("Make"),
        ...     Concatenate("Features", "Year", "Mileage", "Make"),
        ... ], OlsTrainer())
        >>> fitted = pipeline.fit(train, label_column="Label")
    """

    def __init__(self, input_schema: Schema, transforms: Sequence[Transform] = (),
                 trainer: Optional[Trainer] = None):
        self.input_schema = input_schema
        self.transforms: Tuple[Transform, ...] = tuple(transforms)
        self.trainer = trainer
        self.feature_schema = self._check_chain()

    def _check_chain(self) -> Schema:
        schema = self.input_schema
        for index, stage in enumerate(self.transforms):
            try:
                schema = stage.output_schema(schema)
            except SchemaError as e:
                raise SchemaError(f"Stage {index} {stage!r} is incompatible with its input: {e}") from e
        if self.trainer is not None:
            try:
                self.trainer.check_schema(schema)
            except SchemaError as e:
                raise SchemaError(f"Trainer {self.trainer!r} is incompatible with its input: {e}") from e
        return schema

    def append(self, stage: Union[Transform, Trainer]) -> "Pipeline":
        """Return a new pipeline with ``stage`` appended."""
        if self.trainer is not None:
            raise SchemaError(f"Pipeline already ends in trainer {self.trainer!r}")
        if isinstance(stage, Trainer):
            return Pipeline(self.input_schema, self.transforms, stage)
        return Pipeline(self.input_schema, self.transforms + (stage,))

    def fit(self, dataset: Dataset, label_column: Optional[str] = None) -> "FittedPipeline":
        """
        Fit every stage in order.

        Stage i is fitted on the dataset produced by the already-fitted
        stages 0..i-1; the trainer is fitted on the fully transformed data.

        Raises:
            SchemaError: Dataset does not match the input schema, or the
                label column is missing after the transforms
            FitError: Empty dataset or a stage/trainer failed to fit
        """
        dataset.schema.require_covers(self.input_schema, context="pipeline input")
        if len(dataset) == 0:
            raise FitError("Cannot fit a pipeline on an empty dataset")
        if self.trainer is not None and label_column is not None:
            self.trainer.check_schema(self.feature_schema, label_column)
        elif label_column is not None:
            self.feature_schema.require([label_column], context="label column")

        current = Dataset(dataset.frame, self.input_schema)
        fitted_stages = []
        for index, stage in enumerate(self.transforms):
            fitted_stage = stage.fit(current)
            current = fitted_stage.transform(current)
            fitted_stages.append(fitted_stage)
            logger.debug(f"Fitted stage {index}: {fitted_stage!r}")

        model = self.trainer.fit(current, label_column) if self.trainer is not None else None
        return FittedPipeline(self.input_schema, fitted_stages, model, label_column)

    def __repr__(self) -> str:
        stages = [repr(t) for t in self.transforms] + ([repr(self.trainer)] if self.trainer else [])
        return f"Pipeline({' -> '.join(stages)})"


class FittedPipeline:
    """
    Fitted transforms plus the trained model. Owns all of its stage state.
    """

    def __init__(self, input_schema: Schema, transforms: Sequence[Transform],
                 model: Optional[Model], label_column: Optional[str] = None):
        self.input_schema = input_schema
        self.transforms: Tuple[Transform, ...] = tuple(transforms)
        self.model = model
        self.label_column = label_column
        self.required_columns = self._required_columns()

    def _required_columns(self) -> Tuple[str, ...]:
        """Input columns read by some stage before any stage overwrites them."""
        schema = self.input_schema
        produced = set()
        required: List[str] = []

        def read(names):
            for name in names:
                if name not in produced and name in self.input_schema and name not in required:
                    required.append(name)

        for stage in self.transforms:
            read(stage.input_columns)
            produced.update(col.name for col in stage.output_columns(schema))
            schema = stage.output_schema(schema)
        if self.model is not None:
            read(self.model.input_columns)
        return tuple(required)

    def _schema_before(self, index: int) -> Schema:
        schema = self.input_schema
        for stage in self.transforms[:index]:
            schema = stage.output_schema(schema)
        return schema

    @property
    def feature_schema(self) -> Schema:
        return self._schema_before(len(self.transforms))

    @property
    def output_schema(self) -> Schema:
        schema = self.feature_schema
        return self.model.output_schema(schema) if self.model is not None else schema

    def _conform(self, dataset: Dataset) -> Dataset:
        """Restrict to the input schema; absent non-required columns get missing values."""
        schema = dataset.schema
        schema.require(self.required_columns, context="fitted pipeline input")
        frame = {}
        n_rows = len(dataset)
        for col in self.input_schema:
            if col.name in schema:
                if schema.column(col.name) != col:
                    raise SchemaError(f"Column type mismatch for '{col.name}': "
                                      f"expected {col}, got {schema.column(col.name)}")
                frame[col.name] = dataset.frame[col.name].to_numpy()
            elif col.is_vector:
                frame[col.name] = object_column(col.missing_value() for _ in range(n_rows))
            else:
                frame[col.name] = np.full(n_rows, col.missing_value(), dtype=object if col.kind == "str" else None)
        return Dataset(pd.DataFrame(frame, columns=list(self.input_schema.names)), self.input_schema)

    def transform(self, dataset: Dataset) -> Dataset:
        """Apply only the transform stages (preview / inspection path)."""
        current = self._conform(dataset)
        for stage in self.transforms:
            current = stage.transform(current)
        return current

    def predict_batch(self, dataset: Dataset) -> Dataset:
        """Transform ``dataset`` and append the model's prediction columns."""
        if self.model is None:
            raise NotFittedError("Pipeline has no trained model; it was fitted without a trainer")
        return self.model.predict_batch(self.transform(dataset))

    def create_engine(self) -> PredictionEngine:
        if self.model is None:
            raise NotFittedError("Pipeline has no trained model; it was fitted without a trainer")
        return PredictionEngine(self)

    def get_model_info(self) -> dict:
        info = self.model.get_model_info() if self.model is not None else {"algorithm": None}
        info["stages"] = [repr(t) for t in self.transforms]
        info["required_columns"] = list(self.required_columns)
        return info

    def __repr__(self) -> str:
        return f"FittedPipeline({len(self.transforms)} stage(s), model={self.model!r})"


# ============================================================================
# ORCHESTRATION
# ============================================================================

def run_training_pipeline(data: Union[str, Path, Dataset],
                          pipeline: Pipeline,
                          label_column: Optional[str],
                          metrics: str = "regression",
                          test_size: float = config.TRAINING_CONFIG["test_size"],
                          n_folds: int = config.CV_CONFIG["n_folds"],
                          run_config: Optional[RunConfig] = None,
                          model_output_path: Optional[Union[str, Path]] = None,
                          loader_config: Optional[Dict] = None) -> Dict:
    """
    Run the complete training pipeline from data to trained model.

    Steps:
    1. Load data (skipped when a Dataset is passed)
    2. Split into train/test
    3. Fit the pipeline on the train set
    4. Evaluate on the test set
    5. Cross-validate on the full data (skipped when n_folds < 2)
    6. Save the fitted pipeline (skipped when model_output_path is None)

    The held-out evaluation and the cross-validation are independent runs.

    Args:
        data: Delimited file path or an already loaded Dataset
        pipeline: Unfitted pipeline whose input schema describes the file
        label_column: Label column name (None for clustering)
        metrics: Metric set name or callable (see evaluate.METRIC_SETS)
        test_size: Proportion of rows held out for testing
        n_folds: Number of cross-validation folds
        run_config: Seed and worker thread count
        model_output_path: Where to save the fitted pipeline
        loader_config: Overrides for config.LOADER_CONFIG

    Returns:
        Dict with pipeline results:
        - fitted: FittedPipeline
        - evaluation_metrics: Dict
        - cv_metrics: List[Dict] (one per fold)
        - cv_summary: Dict of metric -> {mean, std}
        - n_train / n_test: int
        - training_time_sec: float
        - model_path / model_size_mb: saved model location and size

    Example:
        >>> results = run_training_pipeline("data/car_listings.csv", pipeline, "Label")
        >>> print(results['evaluation_metrics']['rmse'])
        4324.85
    """
    from .evaluate import cross_validate, evaluate, summarize_folds
    from .serialize import get_model_size, save_model_file

    run_config = run_config or RunConfig()
    start_time = time.time()

    logger.info("=" * 60)
    logger.info("STARTING ML TRAINING PIPELINE")
    logger.info("=" * 60)

    # Step 1: Load data
    if isinstance(data, Dataset):
        logger.info("[1/6] Using provided dataset")
        dataset = data
    else:
        logger.info(f"[1/6] Loading data from {data}...")
        options = dict(config.LOADER_CONFIG, **(loader_config or {}))
        dataset = load_dataset(data, pipeline.input_schema, **options)
    logger.info(f"  Loaded {len(dataset)} rows")

    # Step 2: Split into train/test
    logger.info("[2/6] Splitting into train/test sets...")
    train_set, test_set = train_test_split(dataset, test_fraction=test_size, seed=run_config.seed)
    logger.info(f"  Train: {len(train_set)}, Test: {len(test_set)}")

    # Step 3: Fit
    logger.info(f"[3/6] Fitting {pipeline!r}...")
    fitted = train_pipeline(pipeline, train_set, label_column)
    training_time_sec = time.time() - start_time

    # Step 4: Evaluate
    evaluation_metrics = {}
    if len(test_set):
        logger.info("[4/6] Evaluating model on test set...")
        evaluation_metrics = evaluate(fitted, test_set, label_column, metrics=metrics).as_dict()
        for name, value in evaluation_metrics.items():
            logger.info(f"  {name}: {value:.4f}")
    else:
        logger.info("[4/6] Skipping evaluation - empty test set")

    # Step 5: Cross-validate
    cv_metrics: List[Dict] = []
    cv_summary: Dict = {}
    if n_folds >= 2:
        logger.info(f"[5/6] Cross-validating with {n_folds} folds...")
        results = list(cross_validate(pipeline, dataset, label_column, folds=n_folds,
                                      metrics=metrics, run_config=run_config))
        cv_metrics = [r.metrics.as_dict() for r in results]
        for name in results[0].metrics:
            cv_summary[name] = summarize_folds(results, name)
        for result in results:
            logger.info(f"  Fold {result.fold}: " +
                        ", ".join(f"{k}={v:.4f}" for k, v in result.metrics.items()))
    else:
        logger.info("[5/6] Cross-validation disabled")

    # Step 6: Save
    model_size_mb = None
    if model_output_path is not None:
        logger.info(f"[6/6] Saving model to {model_output_path}...")
        save_model_file(fitted, model_output_path, schema=pipeline.input_schema)
        model_size_mb = get_model_size(model_output_path)
        logger.info(f"  Model size: {model_size_mb:.2f} MB")
    else:
        logger.info("[6/6] Skipping model save")

    total_time = time.time() - start_time
    logger.info("=" * 60)
    logger.info("PIPELINE COMPLETED SUCCESSFULLY")
    logger.info("=" * 60)
    logger.info(f"Total time: {total_time:.2f} seconds")

    return {
        "fitted": fitted,
        "evaluation_metrics": evaluation_metrics,
        "cv_metrics": cv_metrics,
        "cv_summary": cv_summary,
        "n_train": len(train_set),
        "n_test": len(test_set),
        "training_time_sec": training_time_sec,
        "total_time_sec": total_time,
        "model_path": str(model_output_path) if model_output_path is not None else None,
        "model_size_mb": model_size_mb,
    }


if __name__ == "__main__":
    """
    Run a tutorial scenario from the command line.

    Usage:
        python -m tabular_ml.pipeline --scenario car_price --data data/car_listings.csv
        python -m tabular_ml.pipeline --scenario spam --data data/spam.tsv --folds 5
    """
    import argparse

    from .scenarios import LOADER_OPTIONS, SCENARIOS, get_scenario

    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Run a tabular ML training pipeline")
    parser.add_argument("--scenario", required=True, choices=sorted(SCENARIOS),
                        help="Which tutorial pipeline to run")
    parser.add_argument("--data", required=True, help="Path to the delimited data file")
    parser.add_argument("--folds", type=int, default=config.CV_CONFIG["n_folds"],
                        help="Cross-validation folds (0 disables)")
    parser.add_argument("--seed", type=int, default=config.TRAINING_CONFIG["random_state"])
    parser.add_argument("--jobs", type=int, default=config.CV_CONFIG["n_jobs"],
                        help="Worker threads for cross-validation")
    parser.add_argument("--model-output", default=None, help="Where to save the fitted model")
    args = parser.parse_args()

    run_config = RunConfig(seed=args.seed, n_jobs=args.jobs)
    scenario = get_scenario(args.scenario, run_config)
    results = run_training_pipeline(
        args.data,
        scenario.pipeline,
        scenario.label_column,
        metrics=scenario.metrics,
        n_folds=args.folds,
        run_config=run_config,
        model_output_path=args.model_output,
        loader_config=LOADER_OPTIONS[args.scenario],
    )

    logger.info(f"Scenario: {args.scenario}")
    for name, value in results["evaluation_metrics"].items():
        logger.info(f"{name}: {value:.4f}")
