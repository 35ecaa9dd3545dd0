"""
Data I/O Module

Loads delimited text files into typed Datasets:
- Header / delimiter / quoting configuration
- Per-record field count validation
- Per-column type parsing against a declared Schema
- Optional lazy loading
"""

import csv
import io
import logging
import os
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, TextIO, Tuple, Union

import numpy as np
import pandas as pd

from .dataset import Dataset, object_column
from .errors import FormatError, SchemaError
from .schema import Column, Schema

logger = logging.getLogger(__name__)

Source = Union[str, Path, TextIO]

FLOAT_MISSING = {"", "nan", "na", "?"}
BOOL_VALUES = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}

# csv rejects fields longer than 128K characters by default
MAX_FIELD_SIZE = 2**31 - 1


def _decoded_lines(handle: BinaryIO) -> Iterator[str]:
    for number, raw in enumerate(handle, start=1):
        try:
            yield raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Line {number}: invalid UTF-8 text ({e.reason})") from e


def _read_records(lines: Iterable[str], delimiter: str, allow_quoting: bool) -> Tuple[List[List[str]], List[int]]:
    quoting = csv.QUOTE_MINIMAL if allow_quoting else csv.QUOTE_NONE
    previous_limit = csv.field_size_limit(MAX_FIELD_SIZE)
    try:
        reader = csv.reader(lines, delimiter=delimiter, quoting=quoting)
        records, line_numbers = [], []
        try:
            for record in reader:
                if not record or (len(record) == 1 and record[0].strip() == ""):
                    continue
                records.append(record)
                line_numbers.append(reader.line_num)
        except csv.Error as e:
            raise FormatError(f"Line {reader.line_num}: {e}") from e
    finally:
        csv.field_size_limit(previous_limit)
    return records, line_numbers


def _parse_float(raw: pd.Series, name: str, lines: np.ndarray) -> np.ndarray:
    stripped = raw.str.strip()
    missing = stripped.str.lower().isin(FLOAT_MISSING)
    values = pd.to_numeric(stripped.where(~missing), errors="coerce")
    bad = values.isna() & ~missing
    if bad.any():
        idx = int(np.flatnonzero(bad.to_numpy())[0])
        raise FormatError(f"Line {lines[idx]}: cannot parse '{raw.iloc[idx]}' as float for column '{name}'")
    return values.to_numpy(dtype=np.float64)


def _parse_integral(raw: pd.Series, col: Column, lines: np.ndarray) -> np.ndarray:
    stripped = raw.str.strip()
    empty = stripped == ""
    if col.kind == "int" and empty.any():
        idx = int(np.flatnonzero(empty.to_numpy())[0])
        raise FormatError(f"Line {lines[idx]}: empty value for int column '{col.name}'")
    values = pd.to_numeric(stripped.where(~empty, "0"), errors="coerce")
    numeric = values.to_numpy(dtype=np.float64)
    bad = np.isnan(numeric) | (numeric != np.round(numeric))
    if col.kind == "key":
        bad |= numeric < 0
    if bad.any():
        idx = int(np.flatnonzero(bad)[0])
        raise FormatError(f"Line {lines[idx]}: cannot parse '{raw.iloc[idx]}' as {col.kind} for column '{col.name}'")
    return numeric.astype(np.int64)


def _parse_bool(raw: pd.Series, name: str, lines: np.ndarray) -> np.ndarray:
    mapped = raw.str.strip().str.lower().map(BOOL_VALUES)
    bad = mapped.isna()
    if bad.any():
        idx = int(np.flatnonzero(bad.to_numpy())[0])
        raise FormatError(f"Line {lines[idx]}: cannot parse '{raw.iloc[idx]}' as bool for column '{name}'")
    return mapped.to_numpy(dtype=bool)


def parse_records(records: List[List[str]], schema: Schema, line_numbers: List[int]) -> pd.DataFrame:
    """
    Convert raw string records into a typed DataFrame following ``schema``.

    Raises:
        FormatError: On field count mismatch or unparsable values
    """
    width = schema.source_width
    for record, line in zip(records, line_numbers):
        if len(record) != width:
            raise FormatError(f"Line {line}: expected {width} fields, found {len(record)}")

    lines = np.asarray(line_numbers)
    raw = pd.DataFrame(records, dtype=str) if records else pd.DataFrame(columns=range(width), dtype=str)

    data = {}
    offset = 0
    for col in schema:
        if col.is_vector:
            parts = [_parse_float(raw[offset + i], f"{col.name}[{i}]", lines) for i in range(col.size)]
            matrix = np.column_stack(parts) if parts and len(raw) else np.empty((len(raw), col.size))
            data[col.name] = object_column(matrix)
            offset += col.size
            continue
        series = raw[offset]
        if col.kind == "float":
            data[col.name] = _parse_float(series, col.name, lines)
        elif col.kind in ("int", "key"):
            data[col.name] = _parse_integral(series, col, lines)
        elif col.kind == "bool":
            data[col.name] = _parse_bool(series, col.name, lines)
        else:
            data[col.name] = series.to_numpy(dtype=object)
        offset += 1

    return pd.DataFrame(data, columns=list(schema.names))


def _read_frame(source: Source, schema: Schema, has_header: bool,
                delimiter: str, allow_quoting: bool) -> pd.DataFrame:
    if isinstance(source, (str, Path)):
        with open(source, "rb") as handle:
            records, lines = _read_records(_decoded_lines(handle), delimiter, allow_quoting)
    else:
        records, lines = _read_records(source, delimiter, allow_quoting)

    if has_header and records:
        records, lines = records[1:], lines[1:]

    frame = parse_records(records, schema, lines)
    logger.info(f"Loaded {len(frame)} rows with {len(schema)} columns")
    return frame


def load_dataset(source: Source, schema: Schema, has_header: bool = True,
                 delimiter: str = ",", allow_quoting: bool = True,
                 lazy: bool = False) -> Dataset:
    """
    Load a delimited text file into a Dataset.

    Each scalar column consumes one field; a fixed-size vector column of
    size N consumes N consecutive fields.

    Args:
        source: File path or open text stream
        schema: Declared column layout
        has_header: Skip the first record
        delimiter: Field separator (e.g. ',' or '\\t')
        allow_quoting: Honour double-quoted fields
        lazy: Defer reading until the rows are first accessed

    Returns:
        Dataset conforming to ``schema``

    Raises:
        FileNotFoundError: If ``source`` is a path that does not exist
        SchemaError: If the schema contains a variable-length vector column
        FormatError: On field count mismatch or unparsable values

    Example:
        >>> schema = Schema([("Label", "float"), ("Year", "float"), ("Make", "str")])
        >>> data = load_dataset("data/car_listings.csv", schema)
        >>> len(data)
        852122
    """
    for col in schema:
        if col.is_vector and not col.size:
            raise SchemaError(f"Variable-length vector column '{col.name}' cannot be loaded from delimited text")

    if isinstance(source, (str, Path)) and not os.path.exists(source):
        raise FileNotFoundError(f"Data file not found: {source}")

    if lazy:
        if not isinstance(source, (str, Path)):
            # Streams cannot be re-read later; buffer them now
            source = io.StringIO(source.read())
        return Dataset.lazy(lambda: _read_frame(source, schema, has_header, delimiter, allow_quoting), schema)

    return Dataset(_read_frame(source, schema, has_header, delimiter, allow_quoting), schema)
