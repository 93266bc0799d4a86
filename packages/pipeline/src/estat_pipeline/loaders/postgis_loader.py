"""
loaders/postgis_loader.py — Idempotent per-unit imports into PostGIS.

Every staged unit is written in a single database transaction that first
deletes the rows the unit wrote on any earlier attempt, so re-importing a
unit never duplicates data. The caller records the unit as imported only
after import_artifact() returns, i.e. after the commit.

Transactions on the same target table never overlap: within a process they
queue on a per-table lock, across processes on a transaction-scoped
advisory lock keyed by the table name. A semaphore sized to the connection
pool bounds how many transactions hold a connection at once.

Boundary units:
  ogr2ogr loads the shapefile into a per-unit scratch table (replacing it if
  a previous attempt left one behind). One transaction then creates the
  year table if needed, with its geometry column constrained to the
  survey's SRID, swaps the prefecture's rows for the scratch rows (minus
  water survey areas, hcode 8154, and transformed when the shapefile came
  in another datum), refreshes the metadata registry and drops the scratch
  table.

Grid units:
  One transaction creates the table from the frozen schema if needed,
  checks an existing table for drift, swaps the rows under the unit's
  first-level mesh code for the new ones and refreshes the metadata.

Usage:
    loader = PostgisLoader()
    result = await loader.import_artifact(staged)
    print(result.table, result.records_loaded)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Union

import psycopg2
import structlog
from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from estat_shared.config import settings
from estat_shared.constants import (
    BOUNDARY_SOURCE_URL,
    DATUM_SRIDS,
    MESH_CODE_DIGITS,
    MESH_SOURCE_URL,
    MESH_STATS,
    TERMS_OF_USE_URL,
    WATER_SURVEY_HCODE,
)
from estat_shared.db import pg_transaction
from estat_shared.models import BoundaryKey, GridKey, Schema
from estat_shared.models.schema import PG_DATA_TYPE_TO_SEMANTIC
from estat_pipeline.errors import ImportFailed, SchemaDrift
from estat_pipeline.loaders.ogr import create_vrt, run_ogr2ogr
from estat_pipeline.transforms.archive import StagedArchive
from estat_pipeline.transforms.mesh_csv import StagedGrid

log = structlog.get_logger(__name__)

BATCH_SIZE = 1000                 # rows per INSERT statement
METADATA_TABLE = "estat_table_metadata"
SOURCE_NAME = "総務省統計局"
PG_IDENTIFIER_BYTES = 63          # NAMEDATALEN - 1

BOUNDARY_COLUMN_DESCRIPTIONS: dict[str, str] = {
    "geom": "Geometry",
    "key_code": "小地域コード",
    "pref_name": "都道府県名",
    "city_name": "市区町村名",
    "s_name": "小地域名",
    "jinko": "人口",
    "setai": "世帯数",
    "pref_code": "都道府県コード",
    "datum": "測地系 (2011 = JGD2011, 2000 = JGD2000)",
}

Artifact = Union[StagedArchive, StagedGrid]


@dataclass
class LoadResult:
    """Summary of one unit's import."""

    unit: str
    table: str
    records_loaded: int = 0
    records_replaced: int = 0
    duration_ms: int = 0


def pg_column_name(name: str) -> str:
    """*name* as PostgreSQL stores it: truncated to 63 bytes."""
    return name.encode("utf-8")[:PG_IDENTIFIER_BYTES].decode("utf-8", errors="ignore")


def key_code_range(key: GridKey) -> tuple[int, int]:
    """Half-open KEY_CODE range covered by the key's first-level mesh cell."""
    scale = 10 ** (MESH_CODE_DIGITS[key.mesh_level] - MESH_CODE_DIGITS[1])
    return key.mesh_code * scale, (key.mesh_code + 1) * scale


class PostgisLoader:
    """
    Writes staged units to PostGIS.

    Connections are taken from the shared pool per import and returned as
    soon as the transaction ends; all blocking database work runs in a
    worker thread. At most *max_connections* transactions run at once
    (default: the pool's maximum size), so callers may schedule more
    imports than the pool has connections.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        pg_pool: Any = None,
        ogr2ogr_path: str | None = None,
        batch_size: int = BATCH_SIZE,
        max_connections: int | None = None,
    ) -> None:
        self._database_url = database_url or settings.database_url
        self._pg_pool = pg_pool
        self._ogr2ogr_path = ogr2ogr_path or settings.ogr2ogr_path
        self._batch_size = batch_size
        self._connections = asyncio.Semaphore(max_connections or settings.db_pool_max)
        self._table_locks: dict[str, asyncio.Lock] = {}

    async def import_artifact(self, artifact: Artifact) -> LoadResult:
        """Import one staged unit. Raises ImportFailed on any database error."""
        if isinstance(artifact, StagedArchive):
            return await self.import_boundary(artifact)
        if isinstance(artifact, StagedGrid):
            return await self.import_grid(artifact)
        raise TypeError(f"cannot import {type(artifact).__name__}")

    # ------------------------------------------------------------------
    # Boundaries
    # ------------------------------------------------------------------

    async def import_boundary(self, staged: StagedArchive) -> LoadResult:
        unit = staged.unit
        key = unit.key
        if not isinstance(key, BoundaryKey):
            raise TypeError(f"import_boundary expects a boundary unit, got {unit.identity}")

        t0 = time.monotonic()
        scratch = f"_scratch_{key.table_name}_{key.pref_code}"
        vrt = create_vrt(staged.directory.parent / f"{scratch}.vrt", [staged.shapefile], layer_name=scratch)
        try:
            await run_ogr2ogr(
                vrt, self._database_url, scratch, staged.srid, executable=self._ogr2ogr_path
            )
        except ImportFailed as exc:
            exc.unit = unit.identity
            raise

        result = await self._run_in_transaction(unit.identity, key.table_name, self._merge_boundary, staged, scratch)
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        log.info(
            "boundary_imported",
            unit=unit.identity,
            table=result.table,
            rows=result.records_loaded,
            replaced=result.records_replaced,
            srid=staged.srid,
        )
        return result

    def _merge_boundary(self, cur: Any, staged: StagedArchive, scratch: str) -> LoadResult:
        key = staged.unit.key
        table = key.table_name
        target = sql.Identifier(table)
        source = sql.Identifier(scratch)

        scratch_columns = _table_columns(cur, scratch)
        if not scratch_columns:
            raise ImportFailed(f"ogr2ogr produced no table {scratch}")
        data_columns = [c for c in scratch_columns if c not in ("ogc_fid", "geom")]
        srid = DATUM_SRIDS[key.datum]

        existing = _table_columns(cur, table)
        if not existing:
            cur.execute(sql.SQL("CREATE TABLE {} (LIKE {})").format(target, source))
            cur.execute(
                sql.SQL(
                    "ALTER TABLE {} DROP COLUMN ogc_fid, ALTER COLUMN geom TYPE geometry(Geometry, {})"
                ).format(target, sql.Literal(srid))
            )
            cur.execute(
                sql.SQL(
                    "ALTER TABLE {} ADD COLUMN ogc_fid SERIAL PRIMARY KEY, "
                    "ADD COLUMN pref_code TEXT NOT NULL, "
                    "ADD COLUMN datum TEXT NOT NULL"
                ).format(target)
            )
            log.info("table_created", table=table)
        else:
            missing = [c for c in data_columns if c not in existing]
            if missing:
                raise SchemaDrift(f"{table} lacks columns {missing} present in {staged.shapefile.name}")
            stored = _geometry_srid(cur, table)
            if stored != srid:
                raise SchemaDrift(f"{table} stores geometry in SRID {stored}, expected {srid}")

        cur.execute(sql.SQL("DELETE FROM {} WHERE pref_code = %s").format(target), (key.pref_code,))
        replaced = cur.rowcount

        where = sql.SQL("")
        if "hcode" in scratch_columns:
            where = sql.SQL(" WHERE hcode IS DISTINCT FROM {}").format(sql.Literal(WATER_SURVEY_HCODE))
        columns = sql.SQL(", ").join(sql.Identifier(c) for c in data_columns)
        cur.execute(
            sql.SQL(
                "INSERT INTO {target} ({columns}, geom, pref_code, datum) "
                "SELECT {columns}, ST_Transform(ST_SetSRID(geom, %s), %s), %s, %s FROM {source}{where}"
            ).format(target=target, columns=columns, source=source, where=where),
            (staged.srid, srid, key.pref_code, staged.datum),
        )
        loaded = cur.rowcount
        if staged.srid != srid:
            log.info("geometry_transformed", unit=staged.unit.identity, source_srid=staged.srid, srid=srid)

        cur.execute(
            sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} USING GIST (geom)").format(
                sql.Identifier(f"{table}_geom_idx"), target
            )
        )
        cur.execute(
            sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (pref_code)").format(
                sql.Identifier(f"{table}_pref_code_idx"), target
            )
        )

        _upsert_metadata(
            cur,
            table,
            name=f"国勢調査 {key.year}年 小地域境界データ",
            description="丁目・大字・小字などの境界ポリゴンと、簡易的な人口データが含まれている",
            source_url=BOUNDARY_SOURCE_URL,
            primary_key="ogc_fid",
            columns=[
                {
                    "name": name,
                    "data_type": data_type,
                    "description": BOUNDARY_COLUMN_DESCRIPTIONS.get(name),
                }
                for name, data_type in _table_columns(cur, table).items()
            ],
        )
        cur.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(source))
        return LoadResult(unit=staged.unit.identity, table=table, records_loaded=loaded, records_replaced=replaced)

    # ------------------------------------------------------------------
    # Grids
    # ------------------------------------------------------------------

    async def import_grid(self, staged: StagedGrid) -> LoadResult:
        unit = staged.unit
        key = unit.key
        if not isinstance(key, GridKey):
            raise TypeError(f"import_grid expects a grid unit, got {unit.identity}")

        t0 = time.monotonic()
        result = await self._run_in_transaction(unit.identity, key.table_name, self._load_grid, staged)
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        log.info(
            "grid_imported",
            unit=unit.identity,
            table=result.table,
            rows=result.records_loaded,
            replaced=result.records_replaced,
        )
        return result

    def _load_grid(self, cur: Any, staged: StagedGrid) -> LoadResult:
        key = staged.unit.key
        table = key.table_name
        schema = staged.table.schema
        target = sql.Identifier(table)

        existing = _table_columns(cur, table)
        if not existing:
            cur.execute(_create_table_sql(table, schema))
            log.info("table_created", table=table, columns=len(schema.columns))
        else:
            _check_drift(table, schema, existing)

        low, high = key_code_range(key)
        cur.execute(
            sql.SQL('DELETE FROM {} WHERE "KEY_CODE" >= %s AND "KEY_CODE" < %s').format(target),
            (low, high),
        )
        replaced = cur.rowcount

        rows = staged.table.rows()
        if rows:
            insert = sql.SQL("INSERT INTO {} ({}) VALUES %s").format(
                target, sql.SQL(", ").join(sql.Identifier(n) for n in schema.names)
            )
            execute_values(cur, insert, rows, page_size=self._batch_size)

        cur.execute(
            sql.SQL('CREATE INDEX IF NOT EXISTS {} ON {} ("KEY_CODE")').format(
                sql.Identifier(f"{table}_key_code_idx"), target
            )
        )

        stats = next(s for s in MESH_STATS if s.stats_id == key.stats_id and s.mesh_level == key.mesh_level)
        _upsert_metadata(
            cur,
            table,
            name=f"{stats.name} {stats.year}年 第{stats.mesh_level}次地域メッシュ統計",
            description=f"統計表ID {stats.stats_id}",
            source_url=MESH_SOURCE_URL,
            primary_key="KEY_CODE",
            columns=[
                {"name": c.name, "data_type": c.semantic_type.pg_type, "description": None}
                for c in schema.columns
            ],
        )
        return LoadResult(unit=staged.unit.identity, table=table, records_loaded=len(rows), records_replaced=replaced)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table_lock(self, table: str) -> asyncio.Lock:
        if table not in self._table_locks:
            self._table_locks[table] = asyncio.Lock()
        return self._table_locks[table]

    async def _run_in_transaction(self, identity: str, table: str, fn: Any, *args: Any) -> LoadResult:
        def _work() -> LoadResult:
            with pg_transaction(self._pg_pool) as cur:
                _lock_table(cur, table)
                return fn(cur, *args)

        try:
            async with self._table_lock(table), self._connections:
                return await asyncio.to_thread(_work)
        except ImportFailed as exc:
            exc.unit = identity
            raise
        except psycopg2.Error as exc:
            message = (exc.pgerror or str(exc)).strip()
            raise ImportFailed(f"{table}: {message}", unit=identity) from exc


def _lock_table(cur: Any, table: str) -> None:
    """Hold an advisory lock on *table*'s name until the transaction ends."""
    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (table,))


def _geometry_srid(cur: Any, table: str) -> int | None:
    cur.execute(
        "SELECT srid FROM geometry_columns "
        "WHERE f_table_schema = current_schema() AND f_table_name = %s AND f_geometry_column = 'geom'",
        (table,),
    )
    row = cur.fetchone()
    return row[0] if row else None


def _table_columns(cur: Any, table: str) -> dict[str, str]:
    """Column name → information_schema data_type, in table order."""
    cur.execute(
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = current_schema() AND table_name = %s "
        "ORDER BY ordinal_position",
        (table,),
    )
    return {name: data_type for name, data_type in cur.fetchall()}


def _create_table_sql(table: str, schema: Schema) -> sql.Composed:
    columns = sql.SQL(", ").join(
        sql.SQL("{} {}{}").format(
            sql.Identifier(c.name),
            sql.SQL(c.semantic_type.pg_type),
            sql.SQL("" if c.nullable else " NOT NULL"),
        )
        for c in schema.columns
    )
    return sql.SQL("CREATE TABLE {} ({})").format(sql.Identifier(table), columns)


def _check_drift(table: str, schema: Schema, existing: dict[str, str]) -> None:
    expected = {pg_column_name(c.name): c.semantic_type for c in schema.columns}
    actual = {name: PG_DATA_TYPE_TO_SEMANTIC.get(data_type) for name, data_type in existing.items()}
    if expected == actual:
        return
    missing = sorted(set(expected) - set(actual))
    extra = sorted(set(actual) - set(expected))
    changed = sorted(
        f"{name}: {actual[name].value if actual[name] else existing[name]} → {expected[name].value}"
        for name in set(expected) & set(actual)
        if expected[name] != actual[name]
    )
    raise SchemaDrift(f"{table} differs from its frozen schema: missing={missing} extra={extra} changed={changed}")


def _upsert_metadata(
    cur: Any,
    table: str,
    *,
    name: str,
    description: str,
    source_url: str,
    primary_key: str,
    columns: list[dict[str, Any]],
) -> None:
    # Shared by every target table
    _lock_table(cur, METADATA_TABLE)
    cur.execute(
        sql.SQL(
            "CREATE TABLE IF NOT EXISTS {} ("
            "table_name TEXT PRIMARY KEY, "
            "name TEXT NOT NULL, "
            "description TEXT, "
            "source TEXT, "
            "source_url TEXT, "
            "license_url TEXT, "
            "primary_key TEXT, "
            "columns JSONB NOT NULL, "
            "updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
        ).format(sql.Identifier(METADATA_TABLE))
    )
    cur.execute(
        sql.SQL(
            "INSERT INTO {} (table_name, name, description, source, source_url, license_url, primary_key, columns) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (table_name) DO UPDATE SET "
            "name = EXCLUDED.name, description = EXCLUDED.description, source = EXCLUDED.source, "
            "source_url = EXCLUDED.source_url, license_url = EXCLUDED.license_url, "
            "primary_key = EXCLUDED.primary_key, columns = EXCLUDED.columns, updated_at = now()"
        ).format(sql.Identifier(METADATA_TABLE)),
        (table, name, description, SOURCE_NAME, source_url, TERMS_OF_USE_URL, primary_key, Json(columns)),
    )
