"""
tests/test_loaders/test_ogr.py — Tests for the ogr2ogr wrapper.

The subprocess is mocked; GDAL is not required.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from estat_pipeline.errors import ImportFailed
from estat_pipeline.loaders.ogr import create_vrt, ogr2ogr_args, run_ogr2ogr


def _proc(returncode: int, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(b"", stderr))
    return proc


class TestCreateVrt:
    def test_union_layer_with_cp932_encoding(self, tmp_path: Path):
        shp = tmp_path / "r2ka13.shp"
        shp.write_bytes(b"")
        vrt = create_vrt(tmp_path / "layer.vrt", [shp], layer_name="scratch")

        root = ET.parse(vrt).getroot()
        union = root.find("OGRVRTUnionLayer")
        assert union is not None and union.get("name") == "scratch"
        layer = union.find("OGRVRTLayer")
        assert layer.get("name") == "r2ka13"
        assert layer.findtext("SrcDataSource") == str(shp.resolve())
        assert layer.find("OpenOptions/OOI").get("key") == "ENCODING"
        assert layer.findtext("OpenOptions/OOI") == "CP932"

    def test_no_shapefiles(self, tmp_path: Path):
        with pytest.raises(ImportFailed):
            create_vrt(tmp_path / "layer.vrt", [])


class TestRunOgr2ogr:
    def test_arguments(self, tmp_path: Path):
        args = ogr2ogr_args(tmp_path / "a.vrt", "postgresql://u@h/db", "scratch", 6668, executable="ogr2ogr")
        assert args[:4] == ["ogr2ogr", "-f", "PostgreSQL", "PG:postgresql://u@h/db"]
        assert ["-nln", "scratch"] == args[args.index("-nln"):args.index("-nln") + 2]
        assert "EPSG:6668" in args
        for option in ("GEOM_TYPE=geometry", "OVERWRITE=YES", "GEOMETRY_NAME=geom"):
            assert option in args
        assert args[-3:] == ["--config", "PG_USE_COPY", "YES"]

    @pytest.mark.asyncio
    async def test_success(self, tmp_path: Path):
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(0))) as spawn:
            await run_ogr2ogr(tmp_path / "a.vrt", "postgresql://u@h/db", "scratch", 6668)
        assert spawn.call_args.args[0] == "ogr2ogr"

    @pytest.mark.asyncio
    async def test_non_zero_exit_reports_stderr(self, tmp_path: Path):
        stderr = b"ERROR 1: relation does not exist \x82\xa0"
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(1, stderr))):
            with pytest.raises(ImportFailed, match="relation does not exist"):
                await run_ogr2ogr(tmp_path / "a.vrt", "postgresql://u@h/db", "scratch", 6668)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ogr2ogr"))):
            with pytest.raises(ImportFailed, match="cannot start"):
                await run_ogr2ogr(tmp_path / "a.vrt", "postgresql://u@h/db", "scratch", 6668)
