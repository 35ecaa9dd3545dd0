"""
Row Schema Module

Ordered, typed column declarations shared by datasets, transforms and models.

A column is a scalar of one of the kinds below, or a float vector:
- float: 64-bit float, missing value NaN
- int:   integer, no missing value
- bool:  boolean, no missing value
- str:   text, missing value ""
- key:   1-based integer category key, 0 means missing/unknown
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import SchemaError

KINDS = ("float", "int", "bool", "str", "key")
NUMERIC_KINDS = ("float", "int", "bool", "key")


@dataclass(frozen=True)
class Column:
    """
    A single named, typed column.

    Args:
        name: Column name (unique within a schema)
        kind: One of KINDS
        size: None for a scalar, N > 0 for a fixed-length float vector,
            0 for a variable-length float vector
    """

    name: str
    kind: str = "float"
    size: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            raise SchemaError("Column name must be a non-empty string")
        if self.kind not in KINDS:
            raise SchemaError(f"Unknown kind '{self.kind}' for column '{self.name}'. Must be one of {KINDS}")
        if self.size is not None:
            if self.kind != "float":
                raise SchemaError(f"Vector column '{self.name}' must be of kind 'float', got '{self.kind}'")
            if self.size < 0:
                raise SchemaError(f"Vector column '{self.name}' has negative size {self.size}")

    @property
    def is_vector(self) -> bool:
        return self.size is not None

    @property
    def is_numeric(self) -> bool:
        return self.is_vector or self.kind in NUMERIC_KINDS

    def missing_value(self):
        """Sentinel used when a value is undefined."""
        if self.is_vector:
            return np.full(self.size, np.nan) if self.size else np.empty(0)
        return {"float": np.nan, "int": 0, "bool": False, "str": "", "key": 0}[self.kind]

    def __str__(self):
        if self.size is None:
            return f"{self.name}:{self.kind}"
        return f"{self.name}:{self.kind}[{self.size or '*'}]"


ColumnSpec = Union[Column, Tuple[str, str], Tuple[str, str, Optional[int]]]


class Schema:
    """
    Ordered sequence of Columns with unique names.

    The name -> offset accessor is built once at construction, so per-row
    lookups never scan the column list.

    Example:
        >>> schema = Schema([("Price", "float"), ("Make", "str"), ("Pixels", "float", 64)])
        >>> schema.index_of("Make")
        1
    """

    def __init__(self, columns: Iterable[ColumnSpec]):
        cols = tuple(c if isinstance(c, Column) else Column(*c) for c in columns)

        offsets: Dict[str, int] = {}
        for idx, col in enumerate(cols):
            if col.name in offsets:
                raise SchemaError(f"Duplicate column name '{col.name}' in schema")
            offsets[col.name] = idx

        self._columns = cols
        self._offsets = offsets

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def columns(self) -> Tuple[Column, ...]:
        return self._columns

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __iter__(self) -> Iterator[Column]:
        return iter(self._columns)

    def __contains__(self, name: str) -> bool:
        return name in self._offsets

    def __eq__(self, other) -> bool:
        return isinstance(other, Schema) and self._columns == other._columns

    def __hash__(self) -> int:
        return hash(self._columns)

    def __repr__(self) -> str:
        return f"Schema({', '.join(str(c) for c in self._columns)})"

    def index_of(self, name: str) -> int:
        try:
            return self._offsets[name]
        except KeyError:
            raise SchemaError(f"Column '{name}' not found in {self!r}") from None

    def column(self, name: str) -> Column:
        return self._columns[self.index_of(name)]

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def require(self, names: Iterable[str], context: str = "") -> None:
        """Raise SchemaError listing every name absent from this schema."""
        missing = [n for n in names if n not in self._offsets]
        if missing:
            where = f" ({context})" if context else ""
            raise SchemaError(f"Missing required column(s) {missing}{where}; available: {list(self.names)}")

    def require_kind(self, name: str, kinds: Sequence[str], vector: Optional[bool] = None,
                     context: str = "") -> Column:
        """Check a column exists with an accepted kind (and vector-ness, if given)."""
        self.require([name], context)
        col = self.column(name)
        where = f" ({context})" if context else ""
        if col.kind not in kinds:
            raise SchemaError(f"Column '{name}' has kind '{col.kind}', expected one of {list(kinds)}{where}")
        if vector is True and not col.is_vector:
            raise SchemaError(f"Column '{name}' must be a vector column{where}")
        if vector is False and col.is_vector:
            raise SchemaError(f"Column '{name}' must be a scalar column{where}")
        return col

    def covers(self, other: "Schema") -> bool:
        """True when every column of ``other`` is present here with the same type."""
        return all(c.name in self._offsets and self.column(c.name) == c for c in other)

    def require_covers(self, other: "Schema", context: str = "") -> None:
        self.require(other.names, context)
        for col in other:
            mine = self.column(col.name)
            if mine != col:
                where = f" ({context})" if context else ""
                raise SchemaError(f"Column type mismatch for '{col.name}': expected {col}, got {mine}{where}")

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def with_columns(self, columns: Iterable[ColumnSpec]) -> "Schema":
        """Return a new schema with columns replaced in place or appended."""
        new_cols = [c if isinstance(c, Column) else Column(*c) for c in columns]
        result = list(self._columns)
        for col in new_cols:
            if col.name in self._offsets:
                result[self._offsets[col.name]] = col
            else:
                result.append(col)
        return Schema(result)

    def select(self, names: Iterable[str]) -> "Schema":
        names = list(names)
        self.require(names)
        return Schema([self.column(n) for n in names])

    @property
    def source_width(self) -> int:
        """Number of delimited source fields one row of this schema occupies."""
        return sum(c.size if c.size else 1 for c in self._columns)
