"""
transforms/mesh_csv.py — Decode, type and validate e-Stat mesh statistics CSVs.

Mesh statistics files are Shift_JIS (cp932) CSVs with two header rows:

    KEY_CODE,HTKSYORI,HTKSAKI,GASSAN,T001140001,T001140002,...
    ,,,,人口（総数）,人口（総数）　男,...
    53394611,0,,,1520,731,...

The column name is the second-row label, or the first-row code where the
label is blank. Names are trimmed and ideographic spaces (U+3000) removed.

Cell tokens map as:
    ""  or "*"  → null (the source masks small counts with "*")
    "1;2;3"     → [1, 2, 3] in array columns
    "123"       → 123

The first file of a statistical table fixes its Schema; every later file of
the same table must match it exactly. A token that does not fit its
column's type is rejected with a SchemaViolation, never coerced.

Usage:
    registry = SchemaRegistry(store)
    table = await registry.normalize(unit.table_name, raw_bytes)
    table.frame      # polars DataFrame, typed per table.schema
"""

from __future__ import annotations

import asyncio
import codecs
import io
from dataclasses import dataclass

import polars as pl
import structlog

from estat_shared.config import settings
from estat_shared.models import ColumnSpec, Schema, SemanticType, WorkUnit
from estat_pipeline.errors import EncodingError, SchemaViolation
from estat_pipeline.utils.checkpoint import CheckpointStore

log = structlog.get_logger(__name__)

NULL_TOKENS = ("", "*")
ARRAY_SEPARATOR = ";"

# Columns whose type is known from the published layout, not inferred
KNOWN_COLUMN_TYPES: dict[str, SemanticType] = {
    "KEY_CODE": SemanticType.BIGINT,
    "HTKSAKI": SemanticType.BIGINT,
    "HTKSYORI": SemanticType.SMALLINT,
    "GASSAN": SemanticType.BIGINT_ARRAY,
}
REQUIRED_COLUMNS = frozenset({"KEY_CODE"})

_INT_PATTERN = r"^[+-]?[0-9]+$"
_QUOTED_FIELD = r'"(?:[^"]|"")*"'


@dataclass(frozen=True)
class NormalizedTable:
    """A parsed mesh statistics file, typed according to *schema*."""

    schema: Schema
    frame: pl.DataFrame

    @property
    def row_count(self) -> int:
        return self.frame.height

    def rows(self) -> list[tuple]:
        """Rows as tuples in schema column order, ready for a bulk insert."""
        return self.frame.select(self.schema.names).rows()


@dataclass(frozen=True)
class StagedGrid:
    """A grid unit's normalized statistics, ready for one bulk load."""

    unit: WorkUnit
    table: NormalizedTable


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def normalize(
    raw: bytes,
    expected: Schema | None = None,
    *,
    encoding: str = "cp932",
    sample_rows: int = 1000,
) -> NormalizedTable:
    """
    Parse a raw mesh statistics file into a typed table.

    Args:
        raw:          File contents as downloaded.
        expected:     Frozen schema of the target table. None infers a
                      schema from this file.
        encoding:     Source text encoding.
        sample_rows:  Data rows examined when inferring column types.

    Raises:
        EncodingError:   the bytes are not valid in *encoding*.
        SchemaViolation: malformed header, a row with the wrong number of
                         fields, or a token that does not fit its column.
    """
    text = _decode(raw, encoding)
    names, records = _tokenize(text)

    if expected is not None:
        _check_header(names, expected)
        schema = expected
    else:
        schema = infer_schema(records.head(sample_rows))

    frame = _typed_frame(schema, records)
    log.debug("mesh_csv_normalized", rows=frame.height, columns=len(names))
    return NormalizedTable(schema=schema, frame=frame)


def _decode(raw: bytes, encoding: str) -> str:
    if raw.startswith(codecs.BOM_UTF8):
        raw = raw[len(codecs.BOM_UTF8):]
    try:
        text = raw.decode(encoding)
    except UnicodeDecodeError as exc:
        raise EncodingError(
            f"not valid {encoding} at byte {exc.start}: {raw[exc.start:exc.end]!r}"
        ) from exc
    return text.lstrip("\ufeff")


def _clean_name(value: str) -> str:
    return value.strip().replace("\u3000", "")


def _tokenize(text: str) -> tuple[list[str], pl.DataFrame]:
    lines = pl.Series("line", text.split("\n"), dtype=pl.String).str.strip_suffix("\r")
    lines = lines.filter(lines != "")
    if lines.len() < 2:
        raise SchemaViolation(None, None, None, "expected two header rows")

    counts = lines.str.replace_all(_QUOTED_FIELD, "").str.count_matches(",") + 1
    width = max(counts[0], counts[1])
    data_counts = counts.slice(2)
    ragged = (data_counts != width).arg_true()
    if ragged.len() > 0:
        index = int(ragged[0])
        got = int(data_counts[index])
        raise SchemaViolation(index, None, got, f"expected {width} fields, got {got}")

    # Short header rows are padded so every line has the same width
    header = [lines[i] + "," * (width - counts[i]) for i in (0, 1)]
    body = "\n".join([*header, *lines.slice(2).to_list()])
    try:
        frame = pl.read_csv(io.StringIO(body), has_header=False, infer_schema_length=0)
    except pl.exceptions.PolarsError as exc:
        raise SchemaViolation(None, None, None, f"unparseable CSV: {exc}") from exc
    frame = frame.with_columns(pl.all().str.strip_chars())

    names: list[str] = []
    for position, (code, label) in enumerate(zip(frame.row(0), frame.row(1))):
        name = _clean_name(label or "") or _clean_name(code or "")
        if not name:
            raise SchemaViolation(None, f"#{position}", "", "column has no name")
        if name in names:
            raise SchemaViolation(None, name, name, "duplicate column name")
        names.append(name)

    records = frame.slice(2)
    records.columns = names
    return names, records


def _check_header(names: list[str], expected: Schema) -> None:
    if names == expected.names:
        return
    for position, name in enumerate(names):
        if position >= len(expected.names) or expected.names[position] != name:
            raise SchemaViolation(None, name, name, "header does not match the table's schema")
    missing = expected.names[len(names)]
    raise SchemaViolation(None, missing, None, "column missing from header")


# ---------------------------------------------------------------------------
# Type inference
# ---------------------------------------------------------------------------


def infer_schema(sample: pl.DataFrame) -> Schema:
    """Infer column types from a sample of data rows, one String column per field."""
    columns = []
    for name in sample.columns:
        tokens = sample[name].drop_nulls()
        tokens = tokens.filter(~tokens.is_in(list(NULL_TOKENS)))
        columns.append(
            ColumnSpec(
                name=name,
                semantic_type=_infer_type(name, tokens),
                nullable=name not in REQUIRED_COLUMNS,
            )
        )
    return Schema(columns=tuple(columns))


def _infer_type(name: str, tokens: pl.Series) -> SemanticType:
    if name in KNOWN_COLUMN_TYPES:
        return KNOWN_COLUMN_TYPES[name]

    parts = tokens.str.split(ARRAY_SEPARATOR).explode().str.strip_chars()
    if not parts.str.contains(_INT_PATTERN).all():
        return SemanticType.TEXT
    if tokens.str.contains(ARRAY_SEPARATOR, literal=True).any():
        return SemanticType.BIGINT_ARRAY
    return SemanticType.BIGINT


# ---------------------------------------------------------------------------
# Typed conversion
# ---------------------------------------------------------------------------


def _typed_frame(schema: Schema, records: pl.DataFrame) -> pl.DataFrame:
    tokens = records.with_columns(
        pl.when(pl.col(name).is_in(list(NULL_TOKENS)))
        .then(pl.lit(None, dtype=pl.String))
        .otherwise(pl.col(name))
        .alias(name)
        for name in schema.names
    )
    typed = tokens.select(_convert(col) for col in schema.columns)

    # First offending cell in row-major order
    first_bad: tuple[int, int, str] | None = None
    for position, col in enumerate(schema.columns):
        bad = _bad_cells(tokens[col.name], typed[col.name], col).arg_true()
        if bad.len() == 0:
            continue
        candidate = (int(bad[0]), position, col.name)
        if first_bad is None or candidate < first_bad:
            first_bad = candidate

    if first_bad is not None:
        row, _, name = first_bad
        value = tokens[name][row]
        detail = "required value missing" if value is None else f"not a {schema.column(name).semantic_type.value}"
        raise SchemaViolation(row, name, value, detail)
    return typed


def _convert(col: ColumnSpec) -> pl.Expr:
    expr = pl.col(col.name)
    if col.semantic_type is SemanticType.TEXT:
        return expr
    if col.semantic_type is SemanticType.BIGINT_ARRAY:
        return expr.str.split(ARRAY_SEPARATOR).list.eval(
            pl.element().str.strip_chars().cast(pl.Int64, strict=False)
        )
    return expr.cast(col.semantic_type.polars_dtype, strict=False)


def _bad_cells(tokens: pl.Series, typed: pl.Series, col: ColumnSpec) -> pl.Series:
    present = tokens.is_not_null()
    if col.semantic_type is SemanticType.TEXT:
        bad = pl.Series(col.name, [False] * tokens.len(), dtype=pl.Boolean)
    elif col.semantic_type is SemanticType.BIGINT_ARRAY:
        parts = tokens.str.split(ARRAY_SEPARATOR).list.len()
        parsed = typed.list.drop_nulls().list.len()
        bad = present & (parts != parsed).fill_null(False)
    else:
        bad = present & typed.is_null()
    if not col.nullable:
        bad = bad | ~present
    return bad


# ---------------------------------------------------------------------------
# Frozen schemas
# ---------------------------------------------------------------------------


class SchemaRegistry:
    """
    Per-table frozen schemas, shared by every worker of a run.

    The first file of a table to parse successfully fixes its schema, under
    a per-table lock so two workers cannot infer competing schemas. Frozen
    schemas are persisted in the checkpoint store and reloaded by later runs.
    """

    def __init__(self, store: CheckpointStore | None = None) -> None:
        self._store = store
        self._schemas: dict[str, Schema] = store.load_schemas() if store else {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, table: str) -> asyncio.Lock:
        if table not in self._locks:
            self._locks[table] = asyncio.Lock()
        return self._locks[table]

    async def normalize(
        self,
        table: str,
        raw: bytes,
        *,
        encoding: str | None = None,
        sample_rows: int | None = None,
    ) -> NormalizedTable:
        """Normalize *raw* against *table*'s schema, freezing it if new."""
        encoding = encoding or settings.source_encoding
        sample_rows = sample_rows or settings.mesh_infer_sample_rows

        async with self._lock(table):
            expected = self._schemas.get(table)
            if expected is None:
                result = await asyncio.to_thread(
                    normalize, raw, None, encoding=encoding, sample_rows=sample_rows
                )
                if self._store is not None:
                    await asyncio.to_thread(self._store.save_schema, table, result.schema)
                self._schemas[table] = result.schema
                return result

        return await asyncio.to_thread(
            normalize, raw, expected, encoding=encoding, sample_rows=sample_rows
        )
