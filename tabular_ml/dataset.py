"""
Dataset Module

In-memory (optionally lazily loaded) view over rows that share one Schema:
- Row: immutable mapping of column name -> value
- Dataset: pandas DataFrame + Schema, never mutated in place
- Row filtering helpers
"""

import math
import threading
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import SchemaError
from .schema import Column, Schema


def _freeze_value(value: Any) -> Any:
    if isinstance(value, (np.ndarray, list, tuple)):
        arr = np.array(value, dtype=np.float64, copy=True)
        arr.setflags(write=False)
        return arr
    if isinstance(value, np.generic):
        return value.item()
    return value


def _values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
        return np.array_equal(np.asarray(a, dtype=float), np.asarray(b, dtype=float), equal_nan=True)
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def object_column(values: Iterable[Any]) -> np.ndarray:
    """Pack per-row vectors into a 1-D object array (one ndarray per cell)."""
    values = list(values)
    packed = np.empty(len(values), dtype=object)
    for idx, value in enumerate(values):
        packed[idx] = value
    return packed


# ============================================================================
# KIND COERCION
# ============================================================================

KIND_DTYPES = {"float": np.float64, "int": np.int64, "key": np.int64, "bool": bool, "str": object}


def _is_missing(value: Any) -> bool:
    return value is None or value is pd.NA or (isinstance(value, (float, np.floating)) and math.isnan(value))


def coerce_value(value: Any, column: Column) -> Any:
    """
    Convert one scalar to the Python value of ``column``'s kind.

    Numbers convert between numeric kinds only when no information is lost
    (3.0 -> key 3, but not 3.7); text never converts to a number.

    Raises:
        SchemaError: The value does not belong to the column's kind
    """
    kind = column.kind
    if kind == "str":
        if _is_missing(value):
            return ""
        if isinstance(value, str):
            return value
    elif _is_missing(value):
        if kind == "float":
            return np.nan
        if kind == "key":
            return 0
    elif isinstance(value, (bool, np.bool_)):
        if kind == "bool":
            return bool(value)
        return float(value) if kind == "float" else int(value)
    elif isinstance(value, (int, float, np.number)):
        if kind == "float":
            return float(value)
        if kind in ("int", "key") and float(value).is_integer():
            return int(value)
        if kind == "bool" and value in (0, 1):
            return bool(value)
    raise SchemaError(f"Value {value!r} does not match column {column}")


def _coerce_column(values: pd.Series, column: Column) -> np.ndarray:
    dtype_kind = values.dtype.kind
    if column.kind == "float" and dtype_kind in "iufb":
        return values.to_numpy(dtype=np.float64)
    if column.kind in ("int", "key") and dtype_kind in "iub":
        return values.to_numpy(dtype=np.int64)
    if column.kind == "bool" and dtype_kind == "b":
        return values.to_numpy(dtype=bool)
    converted = [coerce_value(v, column) for v in values]
    if column.kind == "str":
        return object_column(converted)
    return np.array(converted, dtype=KIND_DTYPES[column.kind])


class Row(Mapping):
    """
    Immutable mapping from column name to value.

    Vector values are stored as read-only float arrays.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping):
        self._values = {name: _freeze_value(v) for name, v in dict(values).items()}

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Mapping) or set(self) != set(other):
            return False
        return all(_values_equal(self[k], other[k]) for k in self)

    def __hash__(self):
        raise TypeError("Row is not hashable")

    def __repr__(self) -> str:
        return f"Row({self._values!r})"


class Dataset:
    """
    Ordered rows conforming to one Schema, backed by a pandas DataFrame.

    Every operation returns a new Dataset; the backing frame is never
    modified after construction. Vector columns are object columns whose
    cells are 1-D float arrays.

    A dataset built with ``loader`` is lazy: the loader is called once, on
    first access to the rows.
    """

    def __init__(self, frame: Optional[pd.DataFrame], schema: Schema,
                 loader: Optional[Callable[[], pd.DataFrame]] = None):
        if frame is None and loader is None:
            raise ValueError("Dataset needs either a frame or a loader")
        self._schema = schema
        self._loader = loader
        self._lock = threading.Lock()
        self._frame = self._conform(frame) if frame is not None else None

    def _conform(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Select the schema columns in order and convert each to its kind's dtype."""
        missing = [n for n in self._schema.names if n not in frame.columns]
        if missing:
            raise SchemaError(f"Frame is missing schema column(s) {missing}")
        data = {}
        for col in self._schema:
            if col.is_vector:
                try:
                    data[col.name] = object_column(np.asarray(v, dtype=np.float64) for v in frame[col.name])
                except (TypeError, ValueError) as e:
                    raise SchemaError(f"Column '{col.name}' holds a non-numeric vector: {e}") from e
            else:
                data[col.name] = _coerce_column(frame[col.name], col)
        return pd.DataFrame(data, columns=list(self._schema.names))

    @classmethod
    def _derived(cls, frame: pd.DataFrame, schema: Schema) -> "Dataset":
        """Wrap a frame whose columns are already converted (row subsets, appended outputs)."""
        dataset = cls.__new__(cls)
        dataset._schema = schema
        dataset._loader = None
        dataset._lock = threading.Lock()
        dataset._frame = frame.reset_index(drop=True)
        return dataset

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, schema: Schema) -> "Dataset":
        return cls(frame.copy(), schema)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping], schema: Schema) -> "Dataset":
        """
        Build a dataset from mappings. Missing keys get the column's missing value.
        """
        rows = list(rows)
        data = {}
        for col in schema:
            values = [row.get(col.name, col.missing_value()) for row in rows]
            if col.is_vector:
                data[col.name] = object_column(np.asarray(v, dtype=np.float64) for v in values)
            else:
                data[col.name] = values
        return cls(pd.DataFrame(data, columns=list(schema.names)), schema)

    @classmethod
    def lazy(cls, loader: Callable[[], pd.DataFrame], schema: Schema) -> "Dataset":
        return cls(None, schema, loader=loader)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def is_loaded(self) -> bool:
        return self._frame is not None

    @property
    def frame(self) -> pd.DataFrame:
        """Backing frame. Treat as read-only; use to_frame() for a mutable copy."""
        if self._frame is None:
            with self._lock:
                if self._frame is None:
                    self._frame = self._conform(self._loader())
        return self._frame

    def to_frame(self) -> pd.DataFrame:
        return self.frame.copy()

    def __len__(self) -> int:
        return len(self.frame)

    def __iter__(self) -> Iterator[Row]:
        names = self._schema.names
        for values in self.frame.itertuples(index=False, name=None):
            yield Row(dict(zip(names, values)))

    def __repr__(self) -> str:
        state = f"{len(self)} rows" if self.is_loaded else "not loaded"
        return f"Dataset({state}, {self._schema!r})"

    def row(self, index: int) -> Row:
        # Column by column, so each value keeps its own dtype
        frame = self.frame
        return Row({name: frame[name].iat[index] for name in self._schema.names})

    def column_values(self, name: str) -> np.ndarray:
        self._schema.require([name])
        return self.frame[name].to_numpy(copy=True)

    def vector_matrix(self, name: str) -> np.ndarray:
        """Stack a vector (or numeric scalar) column into a 2-D float matrix."""
        col = self._schema.column(name)
        if not col.is_vector:
            if not col.is_numeric:
                raise SchemaError(f"Column '{name}' of kind '{col.kind}' cannot be used as a numeric matrix")
            return self.frame[name].to_numpy(dtype=np.float64).reshape(-1, 1)
        cells = self.frame[name].tolist()
        if not cells:
            return np.empty((0, col.size or 0))
        lengths = {len(c) for c in cells}
        if len(lengths) > 1:
            raise SchemaError(f"Vector column '{name}' has rows of differing lengths {sorted(lengths)}")
        return np.vstack([np.asarray(c, dtype=np.float64) for c in cells])

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def take(self, indices: Sequence[int]) -> "Dataset":
        return Dataset._derived(self.frame.iloc[np.asarray(indices, dtype=np.int64)], self._schema)

    def head(self, n: int = 10) -> "Dataset":
        """Preview of the first ``n`` rows."""
        return Dataset._derived(self.frame.head(n), self._schema)

    def with_columns(self, columns: List[Column], values: Dict[str, Any]) -> "Dataset":
        """
        Return a new dataset with ``columns`` added (or replaced) using ``values``.

        Vector values may be a 2-D matrix or a sequence of 1-D arrays.
        """
        schema = self._schema.with_columns(columns)
        frame = self.frame.copy()
        for col in columns:
            data = values[col.name]
            if col.is_vector:
                data = object_column(np.asarray(v, dtype=np.float64) for v in data)
            else:
                data = _coerce_column(pd.Series(data), col)
            frame[col.name] = data
        return Dataset._derived(frame.loc[:, list(schema.names)], schema)


# ============================================================================
# FILTERING
# ============================================================================

def filter_rows(dataset: Dataset, predicate: Callable[[Row], bool]) -> Dataset:
    """
    Keep rows for which ``predicate(row)`` is true.

    Example:
        >>> adults = filter_rows(passengers, lambda r: r["Age"] >= 18)
    """
    keep = [idx for idx, row in enumerate(dataset) if predicate(row)]
    return dataset.take(keep)


def filter_by_column(dataset: Dataset, column: str,
                     lower: float = -np.inf, upper: float = np.inf) -> Dataset:
    """
    Keep rows whose numeric ``column`` lies in ``[lower, upper)``.

    Rows with a missing (NaN) value are dropped.
    """
    dataset.schema.require_kind(column, ("float", "int", "key"), vector=False, context="filter_by_column")
    values = dataset.frame[column].to_numpy(dtype=np.float64)
    with np.errstate(invalid="ignore"):
        mask = (values >= lower) & (values < upper)
    return dataset.take(np.flatnonzero(mask))
