"""
estat_pipeline — e-Stat boundary and mesh statistics loader for PostGIS.

Architecture:
  sources/     — static catalog of published releases → work units
  transforms/  — archive staging, mesh CSV decoding and typing
  loaders/     — ogr2ogr wrapper and idempotent per-unit PostGIS imports
  pipelines/   — coordinator and per-dataset run() entry points
  utils/       — structlog configuration, retry policy, downloads, checkpoints

Quick start:
    import asyncio
    from estat_pipeline.pipelines.areamap import run
    summary = asyncio.run(run(years=[2020], pref_codes=["13"]))

CLI:
    estat-pipeline areamap --year 2020 --pref 13
    estat-pipeline mesh --level 3 --year 2020 --survey 国勢調査
    estat-pipeline status

Shared code from estat_shared:
    from estat_shared.config import settings
    from estat_shared.db import pg_transaction
    from estat_shared.models import WorkUnit, UnitStatus, Schema
    from estat_shared.constants import BOUNDARY_SURVEYS, MESH_STATS
"""

__version__ = "0.1.0"
