"""
models/schema.py — Column schema for normalized mesh statistics tables.

A Schema is established once per statistical table and then frozen:
every later file of the same table is validated against it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import polars as pl
from pydantic import BaseModel, ConfigDict


class SemanticType(str, Enum):
    BIGINT = "big-integer"
    SMALLINT = "small-integer"
    INTEGER = "integer"
    BIGINT_ARRAY = "big-integer-array"
    TEXT = "text"

    @property
    def pg_type(self) -> str:
        return _PG_TYPES[self]

    @property
    def polars_dtype(self) -> Any:
        return _POLARS_DTYPES[self]


_PG_TYPES: dict[SemanticType, str] = {
    SemanticType.BIGINT: "BIGINT",
    SemanticType.SMALLINT: "SMALLINT",
    SemanticType.INTEGER: "INTEGER",
    SemanticType.BIGINT_ARRAY: "BIGINT[]",
    SemanticType.TEXT: "TEXT",
}

_POLARS_DTYPES: dict[SemanticType, Any] = {
    SemanticType.BIGINT: pl.Int64,
    SemanticType.SMALLINT: pl.Int16,
    SemanticType.INTEGER: pl.Int32,
    SemanticType.BIGINT_ARRAY: pl.List(pl.Int64),
    SemanticType.TEXT: pl.String,
}

# information_schema.columns.data_type -> SemanticType, for drift checks
PG_DATA_TYPE_TO_SEMANTIC: dict[str, SemanticType] = {
    "bigint": SemanticType.BIGINT,
    "smallint": SemanticType.SMALLINT,
    "integer": SemanticType.INTEGER,
    "ARRAY": SemanticType.BIGINT_ARRAY,
    "text": SemanticType.TEXT,
}


class ColumnSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    semantic_type: SemanticType
    nullable: bool = True


class Schema(BaseModel):
    model_config = ConfigDict(frozen=True)

    columns: tuple[ColumnSpec, ...]

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> ColumnSpec:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(name)
