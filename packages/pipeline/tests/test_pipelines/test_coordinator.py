"""
tests/test_pipelines/test_coordinator.py — Unit tests for the pipeline coordinator.

The downloader and loader are mocked; the checkpoint store is real and
lives under tmp_path. No network or database access required.
"""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from estat_shared.models import UnitState, UnitStatus
from estat_pipeline.errors import CheckpointError, ImportFailed, SourceNotFound
from estat_pipeline.loaders.postgis_loader import PostgisLoader
from estat_pipeline.pipelines.coordinator import PipelineCoordinator, RunSummary, run_units
from estat_pipeline.utils.checkpoint import CheckpointStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fake_downloader(payloads: dict[str, bytes | Exception]) -> MagicMock:
    """A downloader whose fetch() writes the unit's payload or raises."""

    async def fetch(unit):
        payload = payloads[unit.identity]
        if isinstance(payload, Exception):
            raise payload
        unit.archive_path.parent.mkdir(parents=True, exist_ok=True)
        unit.archive_path.write_bytes(payload)
        return unit.archive_path

    downloader = MagicMock()
    downloader.fetch = AsyncMock(side_effect=fetch)
    return downloader


def _fake_loader(side_effect=None) -> MagicMock:
    loader = MagicMock()
    loader.import_artifact = AsyncMock(return_value=None, side_effect=side_effect)
    return loader


def _coordinator(store, downloader, loader, **kwargs) -> PipelineCoordinator:
    kwargs.setdefault("concurrency", 2)
    return PipelineCoordinator(store, downloader, loader, progress=False, **kwargs)


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "state")


@pytest.fixture
def grid_zip(make_zip, mesh_csv_bytes: bytes) -> bytes:
    return make_zip({"tblT001140H5339.txt": mesh_csv_bytes})


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestRunSummary:
    def test_counts(self):
        summary = RunSummary(total=5, skipped=1, imported=1, absent=1, failures={"a": "boom"})
        assert summary.failed == 1
        assert summary.unfinished == 1
        assert summary.success is False
        assert summary.as_dict()["failed"] == 1

    def test_clean_run_succeeds(self):
        assert RunSummary(total=2, imported=2).success is True


class TestCoordinatorRun:
    @pytest.mark.asyncio
    async def test_imports_then_skips_on_rerun(self, store, grid_unit, grid_zip):
        units = [grid_unit(mesh_code=5339), grid_unit(mesh_code=5340)]
        downloader = _fake_downloader({u.identity: grid_zip for u in units})
        loader = _fake_loader()

        first = await _coordinator(store, downloader, loader).run(units)

        assert (first.imported, first.failed, first.success) == (2, 0, True)
        assert loader.import_artifact.await_count == 2
        statuses = store.load()
        assert {s.state for s in statuses.values()} == {UnitState.IMPORTED}
        assert all(s.attempt_count == 1 for s in statuses.values())

        downloader.fetch.reset_mock()
        second = await _coordinator(CheckpointStore(store.root), downloader, loader).run(units)

        assert second.skipped == 2
        assert second.imported == 0
        downloader.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_grid_schema_frozen_in_store(self, store, grid_unit, grid_zip):
        unit = grid_unit()
        await _coordinator(store, _fake_downloader({unit.identity: grid_zip}), _fake_loader()).run([unit])
        assert unit.table_name in store.load_schemas()

    @pytest.mark.asyncio
    async def test_schema_violation_fails_unit_without_import(self, store, grid_unit, make_zip):
        unit = grid_unit()
        bad_csv = "KEY_CODE,T001140001\r\n,人口（総数）\r\nnot-a-code,5\r\n".encode("cp932")
        downloader = _fake_downloader({unit.identity: make_zip({"tbl.txt": bad_csv})})
        loader = _fake_loader()

        summary = await _coordinator(store, downloader, loader).run([unit])

        assert summary.failed == 1
        assert summary.success is False
        assert summary.failures[unit.identity].startswith("SchemaViolation")
        loader.import_artifact.assert_not_called()
        status = store.load()[unit.identity]
        assert status.state is UnitState.FAILED
        assert not status.is_terminal

    @pytest.mark.asyncio
    async def test_optional_unit_404_is_absent(self, store, grid_unit):
        unit = grid_unit(mesh_code=3036)
        downloader = _fake_downloader({unit.identity: SourceNotFound(unit.identity, unit.url)})
        loader = _fake_loader()

        summary = await _coordinator(store, downloader, loader).run([unit])

        assert summary.absent == 1
        assert summary.success is True
        assert store.load()[unit.identity].state is UnitState.ABSENT
        loader.import_artifact.assert_not_called()

        rerun = await _coordinator(store, downloader, loader).run([unit])
        assert rerun.skipped == 1

    @pytest.mark.asyncio
    async def test_required_unit_404_fails(self, store, boundary_unit):
        unit = boundary_unit()
        downloader = _fake_downloader({unit.identity: SourceNotFound(unit.identity, unit.url)})

        summary = await _coordinator(store, downloader, _fake_loader()).run([unit])

        assert summary.absent == 0
        assert summary.failures[unit.identity].startswith("SourceNotFound")
        assert store.load()[unit.identity].state is UnitState.FAILED

    @pytest.mark.asyncio
    async def test_failed_import_is_retried_next_run(self, store, grid_unit, grid_zip):
        unit = grid_unit()
        downloader = _fake_downloader({unit.identity: grid_zip})

        first = await _coordinator(
            store, downloader, _fake_loader(side_effect=ImportFailed("connection refused"))
        ).run([unit])
        assert first.failures[unit.identity] == "ImportFailed: connection refused"
        assert store.load()[unit.identity].last_error == "ImportFailed: connection refused"

        second = await _coordinator(store, downloader, _fake_loader()).run([unit])
        assert second.imported == 1
        status = store.load()[unit.identity]
        assert status.state is UnitState.IMPORTED
        assert status.attempt_count == 2
        assert status.last_error is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, store, grid_unit, grid_zip):
        unit = grid_unit()
        downloader = _fake_downloader({unit.identity: grid_zip})
        loader = _fake_loader(side_effect=RuntimeError("boom"))

        summary = await _coordinator(store, downloader, loader).run([unit])

        assert summary.failures[unit.identity] == "RuntimeError: boom"
        assert store.load()[unit.identity].state is UnitState.FAILED

    @pytest.mark.asyncio
    async def test_resumes_unit_left_staged(self, store, grid_unit, grid_zip):
        unit = grid_unit()
        store.save(unit.identity, UnitStatus(state=UnitState.STAGED, attempt_count=1))
        downloader = _fake_downloader({unit.identity: grid_zip})
        loader = _fake_loader()

        summary = await _coordinator(store, downloader, loader).run([unit])

        assert summary.imported == 1
        status = store.load()[unit.identity]
        assert status.state is UnitState.IMPORTED
        assert status.attempt_count == 2

    @pytest.mark.asyncio
    async def test_checkpoint_failure_aborts_run(self, store, grid_unit, grid_zip):
        unit = grid_unit()
        downloader = _fake_downloader({unit.identity: grid_zip})
        loader = _fake_loader()

        with patch.object(store, "save", side_effect=CheckpointError("disk full")):
            with pytest.raises(CheckpointError):
                await _coordinator(store, downloader, loader).run([unit])

        downloader.fetch.assert_not_called()
        loader.import_artifact.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_event_defers_import(self, store, grid_unit, grid_zip):
        units = [grid_unit(mesh_code=5339), grid_unit(mesh_code=5340)]
        stop = asyncio.Event()
        downloader = _fake_downloader({u.identity: grid_zip for u in units})
        fetch = downloader.fetch.side_effect

        async def fetch_then_stop(unit):
            path = await fetch(unit)
            stop.set()
            return path

        downloader.fetch.side_effect = fetch_then_stop
        loader = _fake_loader()

        summary = await _coordinator(
            store, downloader, loader, concurrency=1, stop_event=stop
        ).run(units)

        assert summary.interrupted is True
        assert summary.success is False
        assert summary.unfinished == 2
        loader.import_artifact.assert_not_called()
        downloader.fetch.assert_awaited_once()
        statuses = store.load()
        assert statuses[units[0].identity].state is UnitState.STAGED
        assert units[1].identity not in statuses

    @pytest.mark.asyncio
    async def test_no_units(self, store):
        summary = await _coordinator(store, _fake_downloader({}), _fake_loader()).run([])
        assert summary.total == 0
        assert summary.success is True

    @pytest.mark.asyncio
    async def test_same_table_units_import_one_at_a_time(self, store, grid_unit, grid_zip, mock_pg_pool):
        guard = threading.Lock()
        state = {"active": 0, "peak": 0}

        def getconn(*args, **kwargs):
            with guard:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.02)
            return mock_pg_pool.conn

        def putconn(*args, **kwargs):
            with guard:
                state["active"] -= 1

        mock_pg_pool.getconn.side_effect = getconn
        mock_pg_pool.putconn.side_effect = putconn
        units = [grid_unit(mesh_code=code) for code in (5339, 5340, 5439, 5440)]
        downloader = _fake_downloader({u.identity: grid_zip for u in units})
        loader = PostgisLoader("postgresql://localhost/estat", pg_pool=mock_pg_pool, max_connections=4)

        with patch("estat_pipeline.loaders.postgis_loader.execute_values"):
            summary = await _coordinator(store, downloader, loader, concurrency=4).run(units)

        assert summary.imported == 4
        assert state["peak"] == 1
        assert mock_pg_pool.conn.commit.call_count == 4


class TestRunUnits:
    @pytest.mark.asyncio
    async def test_closes_shared_pool_after_run(self, tmp_path: Path):
        with patch("estat_pipeline.pipelines.coordinator.reset_pg_pool") as reset:
            summary = await run_units([], staging_root=tmp_path, concurrency=2, progress=False)

        assert summary.total == 0
        reset.assert_called_once()

    @pytest.mark.asyncio
    async def test_closes_shared_pool_when_run_aborts(self, tmp_path: Path, grid_unit):
        with patch("estat_pipeline.pipelines.coordinator.reset_pg_pool") as reset, patch.object(
            CheckpointStore, "save", side_effect=CheckpointError("disk full")
        ):
            with pytest.raises(CheckpointError):
                await run_units([grid_unit()], staging_root=tmp_path, concurrency=2, progress=False)

        reset.assert_called_once()

    @pytest.mark.asyncio
    async def test_caller_supplied_loader_keeps_pool(self, tmp_path: Path):
        with patch("estat_pipeline.pipelines.coordinator.reset_pg_pool") as reset:
            await run_units([], staging_root=tmp_path, progress=False, loader=_fake_loader())

        reset.assert_not_called()
