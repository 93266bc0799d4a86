"""
pipelines/mesh.py — Mesh statistics (地域メッシュ統計) pipeline.

Source: e-Stat statistical GIS, one CSV archive per first-level mesh cell
of a (survey, year, mesh level) release. Cells over open sea have no
published file; they are recorded as absent rather than failed.

All cells of a release land in jp_estat_mesh_{year}_{stats_id}_{level}.
Column types are inferred from the first cell that parses and then frozen
for the table.

Usage:
    from estat_pipeline.pipelines.mesh import run
    summary = await run(level=3, year=2020, survey="国勢調査")
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path

from estat_shared.config import settings
from estat_pipeline.pipelines.coordinator import RunSummary, run_units
from estat_pipeline.sources.catalog import MeshFilters, enumerate_units
from estat_pipeline.utils.logging import get_logger

log = get_logger(__name__, pipeline="mesh")


async def run(
    *,
    level: int,
    year: int,
    survey: str,
    mesh_codes: Iterable[int] | None = None,
    staging_dir: str | Path | None = None,
    concurrency: int | None = None,
    stop_event: asyncio.Event | None = None,
    progress: bool = True,
) -> RunSummary:
    """
    Download and import one mesh statistics release.

    Args:
        level:       Mesh level 3, 4 or 5.
        year:        Survey year.
        survey:      Survey name as published, e.g. "国勢調査".
        mesh_codes:  First-level mesh codes to load (default: all of Japan).

    Raises:
        CatalogError: the survey, year or level is not in the catalog.
    """
    staging_root = Path(staging_dir or settings.staging_dir)
    filters = MeshFilters(
        level=level,
        year=year,
        survey=survey,
        mesh_codes=tuple(mesh_codes) if mesh_codes else None,
    )
    units = enumerate_units("mesh", filters, staging_root=staging_root)
    log.info("mesh_pipeline_start", units=len(units), table=units[0].table_name if units else None)

    summary = await run_units(
        units,
        staging_root=staging_root,
        concurrency=concurrency,
        stop_event=stop_event,
        progress=progress,
    )
    log.info("mesh_pipeline_complete", **summary.as_dict())
    return summary
