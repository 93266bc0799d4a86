"""
tests/conftest.py — Shared pytest fixtures for the pipeline test suite.

Provides:
  make_zip()         — builds zip archive bytes from {member: bytes}
  mesh_csv_bytes     — a small cp932 mesh statistics CSV as e-Stat serves it
  prj_jgd2011/2000   — .prj WKT bytes for each coordinate epoch
  boundary_unit()    — factory for boundary WorkUnits under tmp_path
  grid_unit()        — factory for grid WorkUnits under tmp_path
  mock_pg_pool       — MagicMock connection pool yielding a mock cursor
  mock_http          — configured respx router for faking HTTP responses
"""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import respx

from estat_shared.models import BoundaryKey, GridKey, WorkUnit

BASE_URL = "https://estat.test"

MESH_CSV_TEXT = (
    "KEY_CODE,HTKSYORI,HTKSAKI,GASSAN,T001140001,T001140002\r\n"
    ",,,,人口（総数）,人口（総数）　男\r\n"
    "53394611,0,,,1520,731\r\n"
    "53394612,2,53394611,53394611;53394613,*,\r\n"
    "53394613,0,,,8,4\r\n"
)

PRJ_JGD2011 = (
    b'GEOGCS["GCS_JGD_2011",DATUM["D_JGD_2011",SPHEROID["GRS_1980",6378137.0,298.257222101]],'
    b'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]]'
)
PRJ_JGD2000 = (
    b'GEOGCS["GCS_JGD_2000",DATUM["D_JGD_2000",SPHEROID["GRS_1980",6378137.0,298.257222101]],'
    b'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]]'
)


# ---------------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------------

def build_zip(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def make_zip() -> Callable[[dict[str, bytes]], bytes]:
    return build_zip


@pytest.fixture
def mesh_csv_bytes() -> bytes:
    return MESH_CSV_TEXT.encode("cp932")


@pytest.fixture
def prj_jgd2011() -> bytes:
    return PRJ_JGD2011


@pytest.fixture
def prj_jgd2000() -> bytes:
    return PRJ_JGD2000


# ---------------------------------------------------------------------------
# Work units
# ---------------------------------------------------------------------------

@pytest.fixture
def boundary_unit(tmp_path: Path) -> Callable[..., WorkUnit]:
    def _make(pref_code: str = "13", year: int = 2020, datum: str = "2011") -> WorkUnit:
        key = BoundaryKey(pref_code=pref_code, year=year, datum=datum)
        return WorkUnit(
            key=key,
            url=f"{BASE_URL}/gis/statmap-search/data?dlserveyId=A00200521{year}&code={pref_code}",
            staging_dir=tmp_path / key.identity,
        )

    return _make


@pytest.fixture
def grid_unit(tmp_path: Path) -> Callable[..., WorkUnit]:
    def _make(mesh_code: int = 5339, level: int = 3, stats_id: str = "T001140") -> WorkUnit:
        key = GridKey(mesh_level=level, year=2020, stats_id=stats_id, mesh_code=mesh_code)
        return WorkUnit(
            key=key,
            url=f"{BASE_URL}/gis/statmap-search/data?statsId={stats_id}&code={mesh_code}",
            staging_dir=tmp_path / key.identity,
            optional=True,
        )

    return _make


# ---------------------------------------------------------------------------
# PostgreSQL pool mock
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_pg_pool() -> MagicMock:
    """
    A MagicMock standing in for psycopg2's ThreadedConnectionPool.

    pool.getconn() returns pool.conn; ``with conn.cursor() as cur`` yields
    pool.cursor. information_schema lookups return no rows by default;
    override with pool.cursor.fetchall.side_effect in individual tests.
    """
    pool = MagicMock()
    conn = MagicMock()
    cursor = MagicMock()
    cursor.fetchall.return_value = []
    cursor.rowcount = 0
    conn.cursor.return_value.__enter__.return_value = cursor
    pool.getconn.return_value = conn
    pool.conn = conn
    pool.cursor = cursor
    return pool


# ---------------------------------------------------------------------------
# respx HTTP mock router
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http():
    """
    Activate the respx mock router for all httpx requests.

    Usage in tests:
        def test_something(mock_http):
            mock_http.get("https://...").mock(return_value=httpx.Response(200, content=b"..."))
    """
    with respx.mock(assert_all_called=False) as router:
        yield router
