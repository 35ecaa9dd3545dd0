"""
Prediction Engine Module

Single-row inference over a FittedPipeline. The engine keeps one-row
column buffers that are allocated once and overwritten on every call.

An engine belongs to one caller at a time; create one engine per worker
thread (FittedPipeline.create_engine()).
"""

import threading
from typing import Mapping

import numpy as np
import pandas as pd

from .dataset import KIND_DTYPES, Dataset, Row, coerce_value
from .errors import SchemaError


class PredictionEngine:
    """
    Reusable single-row predictor.

    Args:
        fitted: FittedPipeline with a trained model

    Example:
        >>> engine = fitted.create_engine()
        >>> engine.predict({"Year": 2018.0, "Mileage": 12500.0, "Make": "Porsche", "Model": "MacanAWD"})["Score"]
        61234.5
    """

    def __init__(self, fitted):
        self._fitted = fitted
        self._schema = fitted.input_schema
        self._required = fitted.required_columns
        self._in_use = threading.Lock()

        # Scratch buffers, one element per input column
        self._buffers = {
            col.name: np.empty(1, dtype=object if col.is_vector else KIND_DTYPES[col.kind])
            for col in self._schema
        }
        self._defaults = {col.name: col.missing_value() for col in self._schema}

    @property
    def fitted(self):
        return self._fitted

    def _fill(self, row: Mapping) -> None:
        for col in self._schema:
            value = row.get(col.name, self._defaults[col.name])
            if col.is_vector:
                try:
                    value = np.asarray(value, dtype=np.float64)
                except (TypeError, ValueError) as e:
                    raise SchemaError(f"Column '{col.name}' expects a numeric vector, got {value!r}") from e
                if value.ndim != 1 or (col.size and len(value) != col.size):
                    raise SchemaError(f"Column '{col.name}' expects a vector of size {col.size or 'any'}, "
                                      f"got shape {value.shape}")
            else:
                # Same conversion rules as Dataset, so single-row and batch scores agree
                value = coerce_value(value, col)
            try:
                self._buffers[col.name][0] = value
            except (TypeError, ValueError) as e:
                raise SchemaError(f"Value {value!r} does not match column {col}") from e

    def predict(self, row: Mapping) -> Row:
        """
        Score one row.

        Columns the pipeline never reads may be omitted (they are filled
        with their missing value); extra keys are ignored.

        Returns:
            Row with the transformed columns and the model's prediction columns

        Raises:
            SchemaError: A required column is absent or has the wrong type
        """
        missing = [name for name in self._required if name not in row]
        if missing:
            raise SchemaError(f"Row is missing required column(s) {missing}")

        if not self._in_use.acquire(blocking=False):
            raise RuntimeError("PredictionEngine is in use by another caller; create one engine per thread")
        try:
            self._fill(row)
            single = Dataset(pd.DataFrame(self._buffers, copy=False), self._schema)
            return self._fitted.predict_batch(single).row(0)
        finally:
            self._in_use.release()

    def predict_batch(self, dataset: Dataset) -> Dataset:
        return self._fitted.predict_batch(dataset)
