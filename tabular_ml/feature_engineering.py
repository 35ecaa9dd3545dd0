"""
Feature Engineering Module

Column-to-column transforms used as pipeline stages:
- Type conversion and custom row mappings
- Missing value replacement
- Categorical encoding (value -> key, one-hot)
- Feature concatenation, normalization and binning
- Text featurization (TF-IDF)

Every transform starts as an unfit template. ``fit(dataset)`` returns a
fitted copy holding the learned state and leaves the template untouched,
so one template can be fitted independently many times (e.g. once per
cross-validation fold). Stateless transforms are fitted on construction.
"""

import copy
import warnings
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from .dataset import Dataset, Row
from .errors import FitError, NotFittedError, SchemaError
from .schema import Column, Schema

MISSING_CATEGORY = "\x00missing"


class Transform(ABC):
    """
    Base class for pipeline transforms.

    Subclasses declare their inputs, derive output columns from an input
    schema, optionally learn state in ``_learn`` and compute output values
    in ``_compute``.
    """

    requires_fit = True

    def __init__(self):
        self._fitted = not self.requires_fit

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def input_columns(self) -> Tuple[str, ...]:
        """Columns read by this transform."""

    @abstractmethod
    def output_columns(self, schema: Schema) -> List[Column]:
        """Columns produced from ``schema``. Raises SchemaError on incompatible input."""

    @abstractmethod
    def _compute(self, dataset: Dataset) -> Dict[str, Any]:
        """Output values keyed by output column name."""

    def _learn(self, dataset: Dataset) -> None:
        """Learn state from ``dataset``. Stateless transforms keep the default."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_fitted(self) -> bool:
        return self._fitted

    def output_schema(self, schema: Schema) -> Schema:
        schema.require(self.input_columns, context=repr(self))
        return schema.with_columns(self.output_columns(schema))

    def fit(self, dataset: Dataset) -> "Transform":
        """Return a fitted copy of this transform learned from ``dataset``."""
        self.output_schema(dataset.schema)
        if not self.requires_fit:
            return self
        fitted = copy.copy(self)
        fitted._learn(dataset)
        fitted._fitted = True
        return fitted

    def transform(self, dataset: Dataset) -> Dataset:
        if not self._fitted:
            raise NotFittedError(f"{self!r} must be fitted before transform()")
        dataset.schema.require(self.input_columns, context=repr(self))
        columns = self.output_columns(dataset.schema)
        return dataset.with_columns(columns, self._compute(dataset))

    def apply(self, row: Mapping, schema: Schema) -> Row:
        """
        Transform a single row conforming to ``schema``.

        Undefined values map to the transform's sentinel; only an absent
        input column raises (SchemaError).
        """
        missing = [name for name in self.input_columns if name not in row]
        if missing:
            raise SchemaError(f"Row is missing column(s) {missing} required by {self!r}")
        single = Dataset.from_rows([row], schema)
        return self.transform(single).row(0)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.input_columns)})"


# ============================================================================
# HELPERS
# ============================================================================

def _to_float(values: pd.Series) -> np.ndarray:
    """Numeric conversion that maps anything unparsable to NaN."""
    if values.dtype == object:
        values = values.map(lambda v: v.strip() if isinstance(v, str) else v)
    return pd.to_numeric(values, errors="coerce").to_numpy(dtype=np.float64)


def _category_values(values: pd.Series, column: Column) -> np.ndarray:
    """Categories as strings; missing values become None."""
    def as_category(v):
        if column.kind == "str":
            return v if isinstance(v, str) and v != "" else None
        if column.kind == "key":
            return str(int(v)) if v else None
        if isinstance(v, float) and np.isnan(v):
            return None
        return str(v)

    return np.array([as_category(v) for v in values], dtype=object)


# ============================================================================
# STATELESS TRANSFORMS
# ============================================================================

class ConvertType(Transform):
    """
    Convert a scalar column to another kind.

    Unparsable values map to the target kind's missing value (NaN for float,
    0 for int, False for bool).

    Example:
        >>> ConvertType("Age", kind="float", input_column="RawAge")
    """

    requires_fit = False

    def __init__(self, output_column: str, kind: str = "float", input_column: Optional[str] = None):
        super().__init__()
        self.output_column = output_column
        self.kind = kind
        self.input_column = input_column or output_column
        if kind not in ("float", "int", "bool", "str"):
            raise SchemaError(f"ConvertType cannot produce kind '{kind}'")

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        schema.require_kind(self.input_column, ("float", "int", "bool", "str", "key"), vector=False,
                            context=repr(self))
        return [Column(self.output_column, self.kind)]

    def _compute(self, dataset):
        values = dataset.frame[self.input_column]
        if self.kind == "str":
            out = np.array(["" if (isinstance(v, float) and np.isnan(v)) else str(v) for v in values], dtype=object)
        elif self.kind == "bool" and values.dtype == object:
            out = values.map(lambda v: str(v).strip().lower() in ("true", "1", "yes")).to_numpy(dtype=bool)
        else:
            numeric = _to_float(values)
            if self.kind == "float":
                out = numeric
            elif self.kind == "int":
                out = np.nan_to_num(numeric, nan=0.0).astype(np.int64)
            else:
                out = np.nan_to_num(numeric, nan=0.0) != 0
        return {self.output_column: out}


class CustomMapping(Transform):
    """
    Apply a Python function to each row.

    ``mapping`` receives a dict of the input column values and returns a
    dict of output column values. Outputs it leaves out get the column's
    missing value. The function must be deterministic and, for the model to
    be saved, importable at module level.

    Example:
        >>> def is_spam(row):
        ...     return {"Label": row["Verdict"].lower() == "spam"}
        >>> CustomMapping(is_spam, ["Verdict"], [Column("Label", "bool")])
    """

    requires_fit = False

    def __init__(self, mapping: Callable[[Dict[str, Any]], Dict[str, Any]],
                 input_columns: Sequence[str], output_columns: Sequence[Column]):
        super().__init__()
        self.mapping = mapping
        self._inputs = tuple(input_columns)
        self._outputs = list(output_columns)

    @property
    def input_columns(self):
        return self._inputs

    def output_columns(self, schema):
        return list(self._outputs)

    def _compute(self, dataset):
        results = {col.name: [] for col in self._outputs}
        inputs = dataset.frame.loc[:, list(self._inputs)]
        for values in inputs.itertuples(index=False, name=None):
            mapped = self.mapping(dict(zip(self._inputs, values))) or {}
            for col in self._outputs:
                results[col.name].append(mapped.get(col.name, col.missing_value()))
        return results

    def __repr__(self):
        name = getattr(self.mapping, "__name__", "mapping")
        return f"CustomMapping({name}: {', '.join(self._inputs)})"


class Concatenate(Transform):
    """
    Concatenate numeric scalar and vector columns into one float vector.

    Example:
        >>> Concatenate("Features", "Year", "Mileage", "Make", "Model")
    """

    requires_fit = False

    def __init__(self, output_column: str, *input_columns: str):
        super().__init__()
        if not input_columns:
            raise SchemaError("Concatenate needs at least one input column")
        self.output_column = output_column
        self._inputs = tuple(input_columns)

    @property
    def input_columns(self):
        return self._inputs

    def output_columns(self, schema):
        size = 0
        known = True
        for name in self._inputs:
            col = schema.column(name)
            if not col.is_numeric:
                raise SchemaError(f"Concatenate input '{name}' has non-numeric kind '{col.kind}' ({self!r})")
            if col.is_vector:
                known = known and col.size > 0
                size += col.size
            else:
                size += 1
        return [Column(self.output_column, "float", size if known else 0)]

    def _compute(self, dataset):
        parts = [dataset.vector_matrix(name) for name in self._inputs]
        return {self.output_column: np.hstack(parts) if parts else np.empty((len(dataset), 0))}


# ============================================================================
# FITTED TRANSFORMS
# ============================================================================

class ReplaceMissingValues(Transform):
    """
    Replace NaN in a float scalar or vector column.

    Modes: 'mean', 'minimum', 'maximum' (learned per slot) or 'default' (0).
    """

    MODES = ("mean", "minimum", "maximum", "default")

    def __init__(self, output_column: str, input_column: Optional[str] = None, mode: str = "mean"):
        super().__init__()
        if mode not in self.MODES:
            raise ValueError(f"Invalid mode: {mode}. Must be one of {self.MODES}")
        self.output_column = output_column
        self.input_column = input_column or output_column
        self.mode = mode
        self.replacement_ = None

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        col = schema.require_kind(self.input_column, ("float",), context=repr(self))
        return [Column(self.output_column, "float", col.size)]

    def _learn(self, dataset):
        matrix = dataset.vector_matrix(self.input_column)
        width = matrix.shape[1]
        if self.mode == "default" or matrix.shape[0] == 0:
            self.replacement_ = np.zeros(width)
            return
        reducer = {"mean": np.nanmean, "minimum": np.nanmin, "maximum": np.nanmax}[self.mode]
        with warnings.catch_warnings():
            # all-NaN slots reduce to NaN and fall back to 0 below
            warnings.simplefilter("ignore", RuntimeWarning)
            replacement = reducer(matrix, axis=0)
        self.replacement_ = np.nan_to_num(replacement, nan=0.0)

    def _compute(self, dataset):
        col = dataset.schema.column(self.input_column)
        matrix = dataset.vector_matrix(self.input_column)
        if matrix.shape[1] != len(self.replacement_):
            raise SchemaError(f"{self!r} was fitted on width {len(self.replacement_)}, got {matrix.shape[1]}")
        filled = np.where(np.isnan(matrix), self.replacement_, matrix)
        return {self.output_column: filled if col.is_vector else filled[:, 0]}


class MapValueToKey(Transform):
    """
    Map category values to 1-based integer keys learned from the data.

    Missing and unseen values map to key 0.

    Args:
        output_column: Key column to produce
        input_column: Source column (defaults to output_column)
        ordinality: 'occurrence' (first-seen order) or 'value' (sorted)
    """

    def __init__(self, output_column: str, input_column: Optional[str] = None, ordinality: str = "occurrence"):
        super().__init__()
        if ordinality not in ("occurrence", "value"):
            raise ValueError(f"Invalid ordinality: {ordinality}. Must be 'occurrence' or 'value'")
        self.output_column = output_column
        self.input_column = input_column or output_column
        self.ordinality = ordinality
        self.vocabulary_: Dict[str, int] = {}

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        schema.require_kind(self.input_column, ("float", "int", "bool", "str", "key"), vector=False,
                            context=repr(self))
        return [Column(self.output_column, "key")]

    def _ordered_categories(self, dataset) -> List[str]:
        col = dataset.schema.column(self.input_column)
        raw = dataset.frame[self.input_column]
        cats = _category_values(raw, col)
        present = [(c, v) for c, v in zip(cats, raw) if c is not None]
        if self.ordinality == "value":
            unique = {c: v for c, v in present}
            return sorted(unique, key=lambda c: (unique[c], c) if col.kind != "str" else c)
        return list(dict.fromkeys(c for c, _ in present))

    def _learn(self, dataset):
        self.vocabulary_ = {cat: idx + 1 for idx, cat in enumerate(self._ordered_categories(dataset))}

    def _compute(self, dataset):
        col = dataset.schema.column(self.input_column)
        cats = _category_values(dataset.frame[self.input_column], col)
        keys = np.array([self.vocabulary_.get(c, 0) if c is not None else 0 for c in cats], dtype=np.int64)
        return {self.output_column: keys}

    @property
    def key_count(self) -> int:
        return len(self.vocabulary_)


class OneHotEncoding(Transform):
    """
    One-hot encode a categorical scalar column into a float vector.

    Missing and unseen categories encode as all zeros.

    Example:
        >>> OneHotEncoding("Make")
        >>> OneHotEncoding("EncodedLatitude", "BinnedLatitude")
    """

    def __init__(self, output_column: str, input_column: Optional[str] = None):
        super().__init__()
        self.output_column = output_column
        self.input_column = input_column or output_column
        self.encoder_: Optional[OneHotEncoder] = None

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        schema.require_kind(self.input_column, ("float", "int", "bool", "str", "key"), vector=False,
                            context=repr(self))
        size = len(self.encoder_.categories_[0]) if self.encoder_ is not None else 0
        return [Column(self.output_column, "float", size)]

    def _learn(self, dataset):
        col = dataset.schema.column(self.input_column)
        cats = _category_values(dataset.frame[self.input_column], col)
        present = np.array([c for c in cats if c is not None], dtype=object).reshape(-1, 1)
        if len(present) == 0:
            raise FitError(f"{self!r}: no non-missing categories to learn")
        encoder = OneHotEncoder(handle_unknown="ignore", sparse_output=False, dtype=np.float64)
        encoder.fit(present)
        self.encoder_ = encoder

    def _compute(self, dataset):
        col = dataset.schema.column(self.input_column)
        cats = _category_values(dataset.frame[self.input_column], col)
        cats = np.array([c if c is not None else MISSING_CATEGORY for c in cats], dtype=object).reshape(-1, 1)
        if len(cats) == 0:
            return {self.output_column: np.empty((0, len(self.encoder_.categories_[0])))}
        return {self.output_column: self.encoder_.transform(cats)}

    @property
    def categories(self) -> List[str]:
        if self.encoder_ is None:
            raise NotFittedError(f"{self!r} has no categories before fit()")
        return list(self.encoder_.categories_[0])


class NormalizeMeanVariance(Transform):
    """
    Standardize a numeric column to zero mean and unit variance per slot.

    NaN values are ignored while fitting and passed through unchanged.
    """

    def __init__(self, output_column: str, input_column: Optional[str] = None):
        super().__init__()
        self.output_column = output_column
        self.input_column = input_column or output_column
        self.scaler_: Optional[StandardScaler] = None

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        col = schema.require_kind(self.input_column, ("float", "int", "bool", "key"), context=repr(self))
        return [Column(self.output_column, "float", col.size)]

    def _learn(self, dataset):
        self.scaler_ = StandardScaler().fit(dataset.vector_matrix(self.input_column))

    def _compute(self, dataset):
        col = dataset.schema.column(self.input_column)
        matrix = dataset.vector_matrix(self.input_column)
        if len(matrix) == 0:
            scaled = matrix
        else:
            scaled = self.scaler_.transform(matrix)
        return {self.output_column: scaled if col.is_vector else scaled[:, 0]}


class NormalizeBinning(Transform):
    """
    Replace numeric values by their equal-density bin, scaled into [0, 1].

    Bin edges are quantiles of the training values, learned per slot. With
    n edges a value in bin i becomes i / n, so the lowest bin is 0 and the
    highest is 1. Repeated quantiles collapse into one edge, so skewed or
    constant slots get fewer bins. NaN passes through.

    Example:
        >>> NormalizeBinning("BinnedLongitude", "Longitude", n_bins=10)
    """

    def __init__(self, output_column: str, input_column: Optional[str] = None, n_bins: int = 10):
        super().__init__()
        if n_bins < 2:
            raise ValueError("n_bins must be >= 2")
        self.output_column = output_column
        self.input_column = input_column or output_column
        self.n_bins = n_bins
        self.edges_: Optional[List[np.ndarray]] = None

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        col = schema.require_kind(self.input_column, ("float", "int", "bool", "key"), context=repr(self))
        return [Column(self.output_column, "float", col.size)]

    def _learn(self, dataset):
        matrix = dataset.vector_matrix(self.input_column)
        quantiles = np.linspace(0.0, 1.0, self.n_bins + 1)[1:-1]
        edges = []
        for slot in matrix.T:
            present = slot[~np.isnan(slot)]
            if len(present) == 0:
                edges.append(np.empty(0))
                continue
            cuts = np.unique(np.quantile(present, quantiles))
            # a cut at the minimum would leave the lowest bin empty
            edges.append(cuts[cuts > present.min()])
        self.edges_ = edges

    def _compute(self, dataset):
        col = dataset.schema.column(self.input_column)
        matrix = dataset.vector_matrix(self.input_column)
        if matrix.shape[1] != len(self.edges_):
            raise SchemaError(f"{self!r} was fitted on width {len(self.edges_)}, got {matrix.shape[1]}")
        binned = np.zeros(matrix.shape)
        for slot, edges in enumerate(self.edges_):
            if len(edges):
                binned[:, slot] = np.searchsorted(edges, matrix[:, slot], side="right") / len(edges)
        binned[np.isnan(matrix)] = np.nan
        return {self.output_column: binned if col.is_vector else binned[:, 0]}

    @property
    def bin_counts(self) -> List[int]:
        if self.edges_ is None:
            raise NotFittedError(f"{self!r} has no bins before fit()")
        return [len(edges) + 1 for edges in self.edges_]


class FeaturizeText(Transform):
    """
    Turn a text column into a TF-IDF float vector over a learned vocabulary.

    Missing text produces an all-zero vector.
    """

    def __init__(self, output_column: str, input_column: str,
                 max_features: Optional[int] = None, ngram_range: Tuple[int, int] = (1, 2)):
        super().__init__()
        self.output_column = output_column
        self.input_column = input_column
        self.max_features = max_features
        self.ngram_range = ngram_range
        self.vectorizer_: Optional[TfidfVectorizer] = None

    @property
    def input_columns(self):
        return (self.input_column,)

    def output_columns(self, schema):
        schema.require_kind(self.input_column, ("str",), vector=False, context=repr(self))
        size = len(self.vectorizer_.vocabulary_) if self.vectorizer_ is not None else 0
        return [Column(self.output_column, "float", size)]

    def _texts(self, dataset) -> List[str]:
        return [v if isinstance(v, str) else "" for v in dataset.frame[self.input_column]]

    def _learn(self, dataset):
        vectorizer = TfidfVectorizer(lowercase=True, ngram_range=self.ngram_range,
                                     max_features=self.max_features)
        try:
            vectorizer.fit(self._texts(dataset))
        except ValueError as e:
            raise FitError(f"{self!r}: {e}") from e
        self.vectorizer_ = vectorizer

    def _compute(self, dataset):
        texts = self._texts(dataset)
        if not texts:
            return {self.output_column: np.empty((0, len(self.vectorizer_.vocabulary_)))}
        return {self.output_column: self.vectorizer_.transform(texts).toarray()}
