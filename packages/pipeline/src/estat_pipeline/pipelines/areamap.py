"""
pipelines/areamap.py — Census small-area boundary (小地域境界) pipeline.

Source: e-Stat statistical GIS, 国勢調査 small-area boundaries
  one shapefile archive per prefecture × survey year
  2020/2015 published in JGD2011, 2010/2005/2000 in JGD2000

Each prefecture archive is loaded into jp_estat_areamap_{year}, tagged with
pref_code and datum. Water survey areas (hcode 8154) are not loaded.

Usage:
    from estat_pipeline.pipelines.areamap import run
    summary = await run(years=[2020], pref_codes=["13"])
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path

from estat_shared.config import settings
from estat_pipeline.pipelines.coordinator import RunSummary, run_units
from estat_pipeline.sources.catalog import AreamapFilters, enumerate_units
from estat_pipeline.utils.logging import get_logger

log = get_logger(__name__, pipeline="areamap")


async def run(
    *,
    years: Iterable[int] | None = None,
    pref_codes: Iterable[str] | None = None,
    staging_dir: str | Path | None = None,
    concurrency: int | None = None,
    stop_event: asyncio.Event | None = None,
    progress: bool = True,
) -> RunSummary:
    """
    Download and import boundary shapefiles.

    Args:
        years:       Survey years to load (default: all published).
        pref_codes:  Prefecture codes "01".."47" (default: all).
        staging_dir: Staging root holding downloads and checkpoints.
        concurrency: Worker pool size.
        stop_event:  Set to stop the run after in-flight imports.

    Raises:
        CatalogError: a year or prefecture is not in the catalog.
    """
    staging_root = Path(staging_dir or settings.staging_dir)
    filters = AreamapFilters(
        years=tuple(years) if years else None,
        pref_codes=tuple(pref_codes) if pref_codes else None,
    )
    units = enumerate_units("areamap", filters, staging_root=staging_root)
    log.info("areamap_pipeline_start", units=len(units), staging_dir=str(staging_root))

    summary = await run_units(
        units,
        staging_root=staging_root,
        concurrency=concurrency,
        stop_event=stop_event,
        progress=progress,
    )
    log.info("areamap_pipeline_complete", **summary.as_dict())
    return summary
