"""
sources/catalog.py — Static catalog of e-Stat work units.

Turns a dataset kind plus filters into the deterministic list of WorkUnits
to fetch. The catalog is a pure function of the tables in
estat_shared.constants: it performs no I/O and raises a CatalogError
before any work starts when the filters name something unpublished.

Dataset kinds:
  areamap — census small-area boundary shapefiles, one zip per
            prefecture × survey year
  mesh    — mesh statistics CSVs, one zip per first-level mesh code of a
            (survey, year, mesh level) release

Usage:
    units = enumerate_units("areamap", AreamapFilters(years=(2020,), pref_codes=("13",)))
    units = enumerate_units("mesh", MeshFilters(level=3, year=2020, survey="国勢調査"))
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlencode

from estat_shared.config import settings
from estat_shared.constants import (
    BOUNDARY_SURVEYS,
    JAPAN_LV1_MESH_CODES,
    MESH_LEVELS,
    MESH_STATS,
    PREF_CODES,
    BoundarySurvey,
    MeshStats,
)
from estat_shared.models import BoundaryKey, GridKey, WorkUnit
from estat_pipeline.errors import CatalogError, UnknownSurvey, UnsupportedYear


@dataclass(frozen=True)
class AreamapFilters:
    years: tuple[int, ...] | None = None        # default: every published year
    pref_codes: tuple[str, ...] | None = None   # default: all 47 prefectures


@dataclass(frozen=True)
class MeshFilters:
    level: int
    year: int
    survey: str
    mesh_codes: tuple[int, ...] | None = None   # default: every first-level mesh


# ---------------------------------------------------------------------------
# URL templates
# ---------------------------------------------------------------------------


def boundary_url(base_url: str, survey: BoundarySurvey, pref_code: str) -> str:
    query = urlencode(
        {
            "dlserveyId": survey.survey_id,
            "code": pref_code,
            "coordSys": 1,
            "format": "shape",
            "downloadType": 5,
            "datum": survey.datum,
        }
    )
    return f"{base_url}/gis/statmap-search/data?{query}"


def mesh_url(base_url: str, stats: MeshStats, mesh_code: int) -> str:
    query = urlencode({"statsId": stats.stats_id, "code": mesh_code, "downloadType": 2})
    return f"{base_url}/gis/statmap-search/data?{query}"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def list_mesh_stats() -> list[MeshStats]:
    return sorted(MESH_STATS, key=lambda m: (m.name, m.year, m.mesh_level))


def find_mesh_stats(level: int, year: int, survey: str) -> MeshStats:
    """
    Return the mesh statistics release for (survey, year, level).

    Raises:
        UnknownSurvey:   no release carries this survey name.
        UnsupportedYear: the survey was not published for this year.
        CatalogError:    the level is invalid or unpublished for that year.
    """
    if level not in MESH_LEVELS:
        raise CatalogError(f"mesh level must be one of {MESH_LEVELS}, got {level}")
    by_survey = [m for m in MESH_STATS if m.name == survey]
    if not by_survey:
        raise UnknownSurvey(survey)
    by_year = [m for m in by_survey if m.year == year]
    if not by_year:
        raise UnsupportedYear(year, f"mesh survey {survey!r}")
    for stats in by_year:
        if stats.mesh_level == level:
            return stats
    raise CatalogError(f"mesh survey {survey!r} {year} has no level-{level} release")


def _normalize_pref_code(code: str | int) -> str:
    text = str(code).strip()
    if text.isdigit():
        text = f"{int(text):02d}"
    if text not in PREF_CODES:
        raise CatalogError(f"unknown prefecture code: {code!r}")
    return text


# ---------------------------------------------------------------------------
# Enumeration
# ---------------------------------------------------------------------------


def enumerate_units(
    dataset_kind: str,
    filters: AreamapFilters | MeshFilters,
    *,
    staging_root: str | Path | None = None,
    base_url: str | None = None,
) -> list[WorkUnit]:
    """
    Return every WorkUnit selected by *filters*, in a stable order.

    Args:
        dataset_kind:  "areamap" or "mesh".
        filters:       AreamapFilters for areamap, MeshFilters for mesh.
        staging_root:  Root of the staging area (default: settings.staging_dir).
        base_url:      e-Stat base URL (default: settings.estat_base_url).

    Raises:
        CatalogError (or a subclass) for unknown or unpublished combinations.
    """
    root = Path(staging_root or settings.staging_dir)
    base = (base_url or settings.estat_base_url).rstrip("/")

    if dataset_kind == "areamap":
        if not isinstance(filters, AreamapFilters):
            raise CatalogError("areamap requires AreamapFilters")
        return _areamap_units(filters, root, base)
    if dataset_kind == "mesh":
        if not isinstance(filters, MeshFilters):
            raise CatalogError("mesh requires MeshFilters")
        return _mesh_units(filters, root, base)
    raise CatalogError(f"unknown dataset kind: {dataset_kind!r}")


def _areamap_units(filters: AreamapFilters, root: Path, base: str) -> list[WorkUnit]:
    years = sorted(set(filters.years)) if filters.years else sorted(BOUNDARY_SURVEYS)
    for year in years:
        if year not in BOUNDARY_SURVEYS:
            raise UnsupportedYear(year, "areamap")
    pref_codes = (
        sorted({_normalize_pref_code(c) for c in filters.pref_codes})
        if filters.pref_codes
        else list(PREF_CODES)
    )

    units: list[WorkUnit] = []
    for year in years:
        survey = BOUNDARY_SURVEYS[year]
        for pref_code in pref_codes:
            key = BoundaryKey(pref_code=pref_code, year=year, datum=survey.datum)
            units.append(
                WorkUnit(
                    key=key,
                    url=boundary_url(base, survey, pref_code),
                    staging_dir=root / key.identity,
                )
            )
    return units


def _mesh_units(filters: MeshFilters, root: Path, base: str) -> list[WorkUnit]:
    stats = find_mesh_stats(filters.level, filters.year, filters.survey)
    if filters.mesh_codes:
        unknown = sorted(set(filters.mesh_codes) - set(JAPAN_LV1_MESH_CODES))
        if unknown:
            raise CatalogError(f"not first-level mesh codes of Japan: {unknown}")
        codes = sorted(set(filters.mesh_codes))
    else:
        codes = list(JAPAN_LV1_MESH_CODES)

    units: list[WorkUnit] = []
    for code in codes:
        key = GridKey(
            mesh_level=stats.mesh_level,
            year=stats.year,
            stats_id=stats.stats_id,
            mesh_code=code,
        )
        units.append(
            WorkUnit(
                key=key,
                url=mesh_url(base, stats, code),
                staging_dir=root / key.identity,
                optional=True,
            )
        )
    return units
