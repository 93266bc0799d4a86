"""
cli.py — Click CLI entrypoint for the e-Stat loader.

Usage:
    estat-pipeline areamap --year 2020 --pref 13 --pref 14
    estat-pipeline mesh --level 3 --year 2020 --survey 国勢調査
    estat-pipeline surveys
    estat-pipeline status

The first SIGINT/SIGTERM stops workers from starting new units; in-flight
imports finish and are checkpointed. Re-running the same command resumes.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
import structlog

from estat_shared.config import settings
from estat_shared.constants import BOUNDARY_SURVEYS
from estat_pipeline.errors import CatalogError, CheckpointError
from estat_pipeline.pipelines.coordinator import RunSummary
from estat_pipeline.utils.logging import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Log level",
)
@click.option(
    "--staging-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Staging root for downloads and checkpoints (default: $STAGING_DIR or ./tmp)",
)
@click.option("--database-url", default=None, help="PostgreSQL URL (default: $DATABASE_URL)")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Worker pool size")
def main(
    log_level: str,
    staging_dir: Path | None,
    database_url: str | None,
    concurrency: int | None,
) -> None:
    """Load e-Stat boundary and mesh statistics into PostGIS."""
    if staging_dir is not None:
        settings.staging_dir = staging_dir
    if database_url is not None:
        settings.database_url = database_url
    if concurrency is not None:
        settings.concurrency = concurrency
    configure_logging(log_level=log_level)


@main.command()
@click.option(
    "--year",
    "years",
    type=click.Choice([str(y) for y in sorted(BOUNDARY_SURVEYS)]),
    multiple=True,
    help="Survey year (repeatable; default: all)",
)
@click.option("--pref", "pref_codes", multiple=True, help="Prefecture code 01-47 (repeatable; default: all)")
@click.option("--no-progress", is_flag=True, help="Hide the progress bar")
def areamap(years: tuple[str, ...], pref_codes: tuple[str, ...], no_progress: bool) -> None:
    """Import census small-area boundaries."""
    from estat_pipeline.pipelines import areamap as areamap_pipeline

    _run_pipeline(
        lambda stop: areamap_pipeline.run(
            years=[int(y) for y in years],
            pref_codes=list(pref_codes),
            stop_event=stop,
            progress=not no_progress,
        )
    )


@main.command()
@click.option("--level", type=click.IntRange(3, 5), required=True, help="Mesh level (3, 4 or 5)")
@click.option("--year", type=int, required=True, help="Survey year")
@click.option("--survey", required=True, help="Survey name, e.g. 国勢調査")
@click.option("--mesh-code", "mesh_codes", type=int, multiple=True, help="First-level mesh code (repeatable)")
@click.option("--no-progress", is_flag=True, help="Hide the progress bar")
def mesh(level: int, year: int, survey: str, mesh_codes: tuple[int, ...], no_progress: bool) -> None:
    """Import one mesh statistics release."""
    from estat_pipeline.pipelines import mesh as mesh_pipeline

    _run_pipeline(
        lambda stop: mesh_pipeline.run(
            level=level,
            year=year,
            survey=survey,
            mesh_codes=list(mesh_codes),
            stop_event=stop,
            progress=not no_progress,
        )
    )


@main.command()
def surveys() -> None:
    """List the releases the catalog knows about."""
    from estat_pipeline.sources.catalog import list_mesh_stats

    click.echo("Boundary surveys (areamap):")
    for year, survey in sorted(BOUNDARY_SURVEYS.items(), reverse=True):
        click.echo(f"  {year}  {survey.survey_id}  JGD{survey.datum}")
    click.echo("Mesh statistics (mesh):")
    for stats in list_mesh_stats():
        click.echo(
            f"  {stats.name}  {stats.year}  level {stats.mesh_level}  "
            f"{stats.stats_id}  EPSG:{stats.datum_epsg}"
        )


@main.command()
def status() -> None:
    """Show checkpoint state counts and failed units."""
    from estat_shared.models import UnitState
    from estat_pipeline.utils.checkpoint import CheckpointStore

    store = CheckpointStore(settings.staging_dir)
    try:
        counts = store.summary()
        statuses = store.load()
    except CheckpointError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Checkpoints in {settings.staging_dir}:")
    if not statuses:
        click.echo("  No units recorded.")
        return
    for state in UnitState:
        if state.value in counts:
            click.echo(f"  {state.value:12s} {counts[state.value]}")

    failed = {k: v for k, v in sorted(statuses.items()) if v.state is UnitState.FAILED}
    if failed:
        click.echo("Failed units:")
        for identity, s in failed.items():
            click.echo(f"  ✗ {identity}  (attempts: {s.attempt_count})  {s.last_error}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_pipeline(make_run: Callable[[asyncio.Event], Awaitable[RunSummary]]) -> None:
    try:
        summary = asyncio.run(_with_signals(make_run))
    except (CatalogError, CheckpointError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_summary(summary)
    if not summary.success:
        sys.exit(1)


async def _with_signals(make_run: Callable[[asyncio.Event], Awaitable[RunSummary]]) -> RunSummary:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        if not stop.is_set():
            log.warning("stop_requested", signal=signame)
            stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops
            pass
    return await make_run(stop)


def _echo_summary(summary: RunSummary) -> None:
    click.echo(
        f"Units: {summary.total} total, {summary.imported} imported, "
        f"{summary.skipped} already done, {summary.absent} absent, {summary.failed} failed"
    )
    if summary.interrupted:
        click.echo(f"Interrupted: {summary.unfinished} unit(s) not finished; re-run to resume.")
    for identity, reason in sorted(summary.failures.items()):
        click.echo(f"  ✗ {identity}: {reason}")


if __name__ == "__main__":
    main()
