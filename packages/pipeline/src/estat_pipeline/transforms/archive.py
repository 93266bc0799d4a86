"""
transforms/archive.py — Unpack downloaded e-Stat zips into staging layouts.

Boundary archives hold one shapefile set (.shp + .shx + .dbf, usually a
.prj) per coordinate epoch. The epoch of each set is read from its .prj;
JGD2011 is preferred over JGD2000, and JGD2000 is used only when no JGD2011
set is present. This preference is fixed.

Mesh statistics archives hold a single CSV (published with a .txt
extension).

Every unit extracts into its own staging subtree, through a temporary
sibling directory that replaces any previous extraction in one rename.
"""

from __future__ import annotations

import os
import shutil
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path

import structlog

from estat_shared.constants import DATUM_PREFERENCE, DATUM_SRIDS, Datum
from estat_shared.models import BoundaryKey, WorkUnit
from estat_pipeline.errors import ArchiveCorrupt, MissingExpectedMember

log = structlog.get_logger(__name__)

_SHAPEFILE_COMPANIONS = (".shx", ".dbf")
_CSV_SUFFIXES = (".txt", ".csv")


@dataclass(frozen=True)
class StagedArchive:
    """A boundary unit's extracted shapefile, ready for one bulk load."""

    unit: WorkUnit
    directory: Path
    shapefile: Path
    datum: Datum

    @property
    def srid(self) -> int:
        return DATUM_SRIDS[self.datum]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_archive(archive: Path, dest: Path) -> Path:
    """
    Unpack *archive* into *dest*, replacing any earlier extraction.

    Raises:
        ArchiveCorrupt: not a zip, failed CRC check, or a member path that
                        escapes the destination directory.
    """
    tmp = dest.with_name(dest.name + ".tmp")
    if tmp.exists():
        shutil.rmtree(tmp)
    tmp.mkdir(parents=True)

    try:
        with zipfile.ZipFile(archive, metadata_encoding="cp932") as zf:
            bad_member = zf.testzip()
            if bad_member is not None:
                raise ArchiveCorrupt(f"{archive.name}: CRC mismatch in {bad_member!r}")
            root = tmp.resolve()
            for name in zf.namelist():
                target = (tmp / name).resolve()
                if root != target and root not in target.parents:
                    raise ArchiveCorrupt(f"{archive.name}: member {name!r} escapes archive root")
            zf.extractall(tmp)
    except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
        shutil.rmtree(tmp, ignore_errors=True)
        raise ArchiveCorrupt(f"{archive.name}: {exc}") from exc
    except ArchiveCorrupt:
        shutil.rmtree(tmp, ignore_errors=True)
        raise

    if dest.exists():
        shutil.rmtree(dest)
    os.replace(tmp, dest)
    log.debug("archive_extracted", archive=str(archive), dest=str(dest))
    return dest


# ---------------------------------------------------------------------------
# Boundary shapefiles
# ---------------------------------------------------------------------------


def detect_datum(shapefile: Path) -> Datum | None:
    """Read the coordinate epoch from the shapefile's .prj, if any."""
    prj = _sibling(shapefile, ".prj")
    if prj is None:
        return None
    wkt = prj.read_bytes().decode("ascii", errors="ignore").upper().replace("_", "")
    if "JGD2011" in wkt:
        return "2011"
    if "JGD2000" in wkt:
        return "2000"
    return None


def _sibling(shapefile: Path, suffix: str) -> Path | None:
    for candidate in shapefile.parent.iterdir():
        if candidate.stem == shapefile.stem and candidate.suffix.lower() == suffix:
            return candidate
    return None


def stage_boundary(unit: WorkUnit, archive: Path) -> StagedArchive:
    """
    Extract a boundary archive and pick the shapefile set to load.

    Raises:
        ArchiveCorrupt:        unreadable zip, or several sets for one epoch.
        MissingExpectedMember: no shapefile, or one missing .shx/.dbf.
    """
    key = unit.key
    if not isinstance(key, BoundaryKey):
        raise TypeError(f"stage_boundary expects a boundary unit, got {unit.identity}")

    directory = extract_archive(archive, unit.extract_dir)
    shapefiles = sorted(p for p in directory.rglob("*") if p.suffix.lower() == ".shp")
    if not shapefiles:
        raise MissingExpectedMember(f"{archive.name}: no .shp member", unit=unit.identity)

    by_datum: dict[Datum, list[Path]] = {}
    for shp in shapefiles:
        missing = [s for s in _SHAPEFILE_COMPANIONS if _sibling(shp, s) is None]
        if missing:
            raise MissingExpectedMember(
                f"{archive.name}: {shp.name} lacks {', '.join(missing)}", unit=unit.identity
            )
        datum = detect_datum(shp) or key.datum
        by_datum.setdefault(datum, []).append(shp)

    for datum in DATUM_PREFERENCE:
        candidates = by_datum.get(datum)
        if not candidates:
            continue
        if len(candidates) > 1:
            raise ArchiveCorrupt(
                f"{archive.name}: {len(candidates)} JGD{datum} shapefile sets "
                f"({', '.join(p.name for p in candidates)})",
                unit=unit.identity,
            )
        if datum != key.datum:
            log.info("datum_differs_from_request", unit=unit.identity, requested=key.datum, found=datum)
        return StagedArchive(unit=unit, directory=directory, shapefile=candidates[0], datum=datum)

    raise MissingExpectedMember(f"{archive.name}: no shapefile in a supported datum", unit=unit.identity)


# ---------------------------------------------------------------------------
# Mesh statistics CSV
# ---------------------------------------------------------------------------


def stage_grid_csv(unit: WorkUnit, archive: Path) -> Path:
    """
    Extract a mesh statistics archive and return its single CSV member.

    Raises:
        ArchiveCorrupt:        unreadable zip, or more than one CSV.
        MissingExpectedMember: no CSV member.
    """
    directory = extract_archive(archive, unit.extract_dir)
    members = sorted(
        p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in _CSV_SUFFIXES
    )
    if not members:
        raise MissingExpectedMember(f"{archive.name}: no .txt/.csv member", unit=unit.identity)
    if len(members) > 1:
        raise ArchiveCorrupt(
            f"{archive.name}: {len(members)} CSV members ({', '.join(p.name for p in members)})",
            unit=unit.identity,
        )
    return members[0]
