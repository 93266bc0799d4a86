"""
loaders/ogr.py — Thin wrapper around the GDAL ogr2ogr command line tool.

Boundary shapefiles are published in CP932 attribute encoding. They are
read through a VRT union layer that sets the ENCODING open option, so
ogr2ogr transcodes attribute text to UTF-8 on the way into PostgreSQL.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from xml.sax.saxutils import escape, quoteattr

import structlog

from estat_shared.config import settings
from estat_pipeline.errors import ImportFailed

log = structlog.get_logger(__name__)

SHAPEFILE_ENCODING = "CP932"


def create_vrt(out: Path, shapefiles: list[Path], *, layer_name: str | None = None) -> Path:
    """Write a VRT at *out* that unions *shapefiles* into one layer."""
    if not shapefiles:
        raise ImportFailed(f"no shapefiles to union into {out.name}")

    layers = "".join(
        f"    <OGRVRTLayer name={quoteattr(shp.stem)}>\n"
        f"      <SrcDataSource>{escape(str(shp.resolve()))}</SrcDataSource>\n"
        f'      <OpenOptions><OOI key="ENCODING">{SHAPEFILE_ENCODING}</OOI></OpenOptions>\n'
        f"    </OGRVRTLayer>\n"
        for shp in shapefiles
    )
    vrt = (
        "<OGRVRTDataSource>\n"
        f"  <OGRVRTUnionLayer name={quoteattr(layer_name or out.stem)}>\n"
        f"{layers}"
        "  </OGRVRTUnionLayer>\n"
        "</OGRVRTDataSource>\n"
    )
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(vrt, encoding="utf-8")
    return out


def ogr2ogr_args(
    source: Path,
    database_url: str,
    table: str,
    srid: int,
    *,
    executable: str | None = None,
) -> list[str]:
    return [
        executable or settings.ogr2ogr_path,
        "-f", "PostgreSQL",
        f"PG:{database_url}",
        str(source),
        "-nln", table,
        "-a_srs", f"EPSG:{srid}",
        "-lco", "GEOM_TYPE=geometry",
        "-lco", "OVERWRITE=YES",
        "-lco", "GEOMETRY_NAME=geom",
        "--config", "PG_USE_COPY", "YES",
    ]


async def run_ogr2ogr(
    source: Path,
    database_url: str,
    table: str,
    srid: int,
    *,
    executable: str | None = None,
) -> None:
    """
    Load *source* into *table*, replacing it if it exists.

    Raises:
        ImportFailed: ogr2ogr is missing or exited non-zero.
    """
    args = ogr2ogr_args(source, database_url, table, srid, executable=executable)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ImportFailed(f"cannot start {args[0]}: {exc}") from exc

    try:
        _, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        # GDAL may echo CP932 attribute bytes in its messages
        message = stderr.decode("utf-8", errors="replace").strip()
        raise ImportFailed(f"ogr2ogr exited with {proc.returncode}: {message}")
    log.debug("ogr2ogr_complete", source=str(source), table=table)
