"""
pipelines/coordinator.py — Drives work units through download → stage → import.

A bounded pool of asyncio workers takes units from a queue; each worker
carries one unit at a time through every stage and records each step in
the checkpoint store before moving on:

    pending → downloading → downloaded → staged → imported
                    ↘ absent (optional unit answered 404)
    any non-terminal state → failed(reason)

Units already imported (or absent) in an earlier run are skipped without
touching the network. Everything else, including units a crashed run left
half-way, starts again from pending with its attempt count preserved.

A unit-scoped failure is recorded and the run continues. A checkpoint
store failure aborts the run: progress that cannot be recorded must not
be made.

Setting the stop event stops workers from taking new units and from
starting imports; units already importing finish and are recorded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from tqdm import tqdm

from estat_shared.config import settings
from estat_shared.db import reset_pg_pool
from estat_shared.models import BoundaryKey, GridKey, UnitState, UnitStatus, WorkUnit
from estat_pipeline.errors import CheckpointError, SourceNotFound, UnitError
from estat_pipeline.loaders.postgis_loader import Artifact, PostgisLoader
from estat_pipeline.transforms.archive import stage_boundary, stage_grid_csv
from estat_pipeline.transforms.mesh_csv import SchemaRegistry, StagedGrid
from estat_pipeline.utils.checkpoint import CheckpointStore
from estat_pipeline.utils.download import ResumableDownloader

log = structlog.get_logger(__name__)


@dataclass
class RunSummary:
    """Outcome of one coordinator run. Updated only after checkpoint writes."""

    total: int = 0
    skipped: int = 0
    imported: int = 0
    absent: int = 0
    failures: dict[str, str] = field(default_factory=dict)   # identity → reason
    interrupted: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def unfinished(self) -> int:
        return self.total - self.skipped - self.imported - self.absent - self.failed

    @property
    def success(self) -> bool:
        return not self.failures and not self.interrupted

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "skipped": self.skipped,
            "imported": self.imported,
            "absent": self.absent,
            "failed": self.failed,
            "unfinished": self.unfinished,
            "success": self.success,
        }


class PipelineCoordinator:
    """Runs a list of work units to completion with bounded concurrency."""

    def __init__(
        self,
        store: CheckpointStore,
        downloader: ResumableDownloader,
        loader: PostgisLoader,
        registry: SchemaRegistry | None = None,
        *,
        concurrency: int | None = None,
        stop_event: asyncio.Event | None = None,
        progress: bool = True,
    ) -> None:
        self._store = store
        self._downloader = downloader
        self._loader = loader
        self._registry = registry or SchemaRegistry(store)
        self._concurrency = max(1, concurrency or settings.concurrency)
        self._stop = stop_event or asyncio.Event()
        self._progress = progress

    async def run(self, units: list[WorkUnit]) -> RunSummary:
        summary = RunSummary(total=len(units))
        loaded = await asyncio.to_thread(self._store.load)

        queue: asyncio.Queue[tuple[WorkUnit, UnitStatus]] = asyncio.Queue()
        for unit in units:
            status = loaded.get(unit.identity)
            if status is not None and status.is_terminal:
                summary.skipped += 1
                continue
            queue.put_nowait((unit, status or UnitStatus()))

        log.info(
            "run_start",
            units=summary.total,
            skipped=summary.skipped,
            queued=queue.qsize(),
            concurrency=self._concurrency,
        )

        with tqdm(
            total=summary.total,
            initial=summary.skipped,
            unit="unit",
            desc="e-Stat units",
            disable=not self._progress,
        ) as pbar:
            workers = [
                asyncio.create_task(self._worker(queue, summary, pbar))
                for _ in range(min(self._concurrency, queue.qsize()))
            ]
            try:
                await asyncio.gather(*workers)
            except BaseException:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                raise

        if summary.unfinished and self._stop.is_set():
            summary.interrupted = True
        log.info("run_complete", **summary.as_dict())
        return summary

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(
        self,
        queue: asyncio.Queue[tuple[WorkUnit, UnitStatus]],
        summary: RunSummary,
        pbar: tqdm,
    ) -> None:
        while not self._stop.is_set():
            try:
                unit, status = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process(unit, status, summary)
            pbar.update(1)

    async def _process(self, unit: WorkUnit, status: UnitStatus, summary: RunSummary) -> None:
        unit_log = log.bind(unit=unit.identity)
        if status.state is not UnitState.PENDING:
            unit_log.info("unit_resumed", previous_state=status.state.value, attempts=status.attempt_count)
            status = status.transition(UnitState.PENDING)

        status = await self._save(unit, status.start_attempt())
        try:
            try:
                archive = await self._downloader.fetch(unit)
            except SourceNotFound:
                if not unit.optional:
                    raise
                await self._save(unit, status.transition(UnitState.ABSENT, last_error=None))
                summary.absent += 1
                unit_log.info("unit_absent", url=unit.url)
                return
            status = await self._save(unit, status.transition(UnitState.DOWNLOADED))

            artifact = await self._stage(unit, archive)
            status = await self._save(unit, status.transition(UnitState.STAGED))

            if self._stop.is_set():
                unit_log.info("import_deferred_on_stop")
                return
            await self._loader.import_artifact(artifact)
            await self._save(unit, status.transition(UnitState.IMPORTED, last_error=None))
            summary.imported += 1
        except CheckpointError:
            raise
        except UnitError as exc:
            if exc.unit is None:
                exc.unit = unit.identity
            await self._record_failure(unit, status, exc.reason, summary)
        except Exception as exc:
            unit_log.exception("unit_unexpected_error")
            await self._record_failure(unit, status, f"{type(exc).__name__}: {exc}", summary)

    async def _stage(self, unit: WorkUnit, archive: Path) -> Artifact:
        key = unit.key
        if isinstance(key, BoundaryKey):
            return await asyncio.to_thread(stage_boundary, unit, archive)
        if isinstance(key, GridKey):
            member = await asyncio.to_thread(stage_grid_csv, unit, archive)
            raw = await asyncio.to_thread(member.read_bytes)
            table = await self._registry.normalize(unit.table_name, raw)
            return StagedGrid(unit=unit, table=table)
        raise TypeError(f"unknown partition key {type(key).__name__}")

    async def _record_failure(
        self, unit: WorkUnit, status: UnitStatus, reason: str, summary: RunSummary
    ) -> None:
        await self._save(unit, status.fail(reason))
        summary.failures[unit.identity] = reason
        log.warning("unit_failed", unit=unit.identity, state=status.state.value, reason=reason)

    async def _save(self, unit: WorkUnit, status: UnitStatus) -> UnitStatus:
        await asyncio.to_thread(self._store.save, unit.identity, status)
        return status


async def run_units(
    units: list[WorkUnit],
    *,
    staging_root: str | Path | None = None,
    concurrency: int | None = None,
    stop_event: asyncio.Event | None = None,
    progress: bool = True,
    loader: PostgisLoader | None = None,
) -> RunSummary:
    """
    Build the run's components from settings and process *units*.

    A loader built here uses the shared connection pool, which is closed
    when the run ends.
    """
    store = CheckpointStore(staging_root or settings.staging_dir)
    concurrency = concurrency or settings.concurrency
    owns_loader = loader is None
    try:
        async with ResumableDownloader(max_connections=concurrency) as downloader:
            coordinator = PipelineCoordinator(
                store,
                downloader,
                loader or PostgisLoader(),
                SchemaRegistry(store),
                concurrency=concurrency,
                stop_event=stop_event,
                progress=progress,
            )
            return await coordinator.run(units)
    finally:
        if owns_loader:
            reset_pg_pool()
