"""
utils/download.py — Resumable, concurrency-bounded downloads of work units.

ResumableDownloader.fetch(unit) returns the local path of the unit's raw
payload, touching the network only when no verified copy exists:

  - A complete download is a payload file plus a ``.complete`` marker whose
    recorded size matches the file. Such a unit is returned immediately.
  - Bytes are streamed to ``<payload>.part``. A leftover part file is
    resumed with an HTTP ``Range`` request (206 → append, 200 → restart).
  - The part file is renamed into place with os.replace() only after the
    whole body arrived, then the marker is written. An interrupted or
    cancelled download leaves at most a part file behind.
  - Transport errors, timeouts, 5xx and truncated bodies are retried with
    exponential backoff; 4xx and malformed responses fail at once.
  - A semaphore bounds the number of requests in flight across all units.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

import httpx
import structlog

from estat_shared.config import settings
from estat_shared.models import WorkUnit
from estat_pipeline.errors import DownloadFailed, SourceNotFound
from estat_pipeline.utils.retry import retry_policy

log = structlog.get_logger(__name__)

CHUNK_SIZE = 256 * 1024


def marker_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".complete")


def part_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".part")


def is_complete(dest: Path) -> bool:
    """True if *dest* holds a verified, fully downloaded payload."""
    marker = marker_path(dest)
    if not dest.is_file() or not marker.is_file():
        return False
    try:
        recorded = json.loads(marker.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    return recorded.get("size") == dest.stat().st_size


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, DownloadFailed) and exc.retryable


class ResumableDownloader:
    """
    Fetches work-unit payloads into their staging directories.

    One instance is shared by every worker of a run so that the semaphore
    and the HTTP connection pool bound the total load on the source.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        max_connections: int | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self._max_connections = max_connections or settings.concurrency
        self._max_attempts = max_attempts or settings.download_max_attempts
        self._base_delay = settings.download_base_delay if base_delay is None else base_delay
        self._max_delay = settings.download_max_delay if max_delay is None else max_delay
        self._timeout = httpx.Timeout(timeout or settings.request_timeout)
        self._semaphore = asyncio.Semaphore(self._max_connections)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=self._max_connections),
        )

    async def __aenter__(self) -> "ResumableDownloader":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(self, unit: WorkUnit) -> Path:
        """
        Return the local payload path for *unit*, downloading it if needed.

        Raises:
            SourceNotFound: the source answered 404.
            DownloadFailed: a non-retryable failure, or the last transient
                            failure after max_attempts attempts.
        """
        dest = unit.archive_path
        unit_log = log.bind(unit=unit.identity)
        if is_complete(dest):
            unit_log.debug("download_cached", path=str(dest))
            return dest

        dest.parent.mkdir(parents=True, exist_ok=True)
        attempts = 0
        try:
            async for attempt in retry_policy(
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                retry_if=_is_transient,
                name=f"download:{unit.identity}",
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    async with self._semaphore:
                        size = await self._fetch_once(unit, dest)
        except DownloadFailed as exc:
            exc.attempts = attempts
            unit_log.warning(
                "download_failed",
                attempts=attempts,
                retryable=exc.retryable,
                error=exc.cause,
            )
            raise

        unit_log.info("download_complete", bytes=size, attempts=attempts)
        return dest

    # ------------------------------------------------------------------
    # One HTTP attempt
    # ------------------------------------------------------------------

    async def _fetch_once(self, unit: WorkUnit, dest: Path) -> int:
        part = part_path(dest)
        existing = part.stat().st_size if part.exists() else 0
        headers = {"Range": f"bytes={existing}-"} if existing else {}

        try:
            async with self._client.stream(
                "GET", unit.url, headers=headers, timeout=self._timeout
            ) as resp:
                self._check_status(unit, resp, part)

                if resp.status_code == 206:
                    mode = "ab"
                    log.debug("download_resuming", unit=unit.identity, offset=existing)
                else:
                    # Server ignored the Range header: restart from zero
                    mode = "wb"
                    existing = 0

                expected = self._expected_size(resp, existing)
                written = existing
                with open(part, mode) as f:
                    async for chunk in resp.aiter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
        except httpx.TimeoutException as exc:
            raise DownloadFailed(unit.identity, f"timeout: {exc!r}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise DownloadFailed(unit.identity, f"transport error: {exc!r}", retryable=True) from exc

        if expected is not None and written != expected:
            raise DownloadFailed(
                unit.identity,
                f"truncated body: {written} of {expected} bytes",
                retryable=True,
            )
        if written == 0:
            part.unlink(missing_ok=True)
            raise DownloadFailed(unit.identity, "empty response body", retryable=True)

        marker_path(dest).unlink(missing_ok=True)
        os.replace(part, dest)
        self._write_marker(dest, written, unit.url)
        return written

    @staticmethod
    def _check_status(unit: WorkUnit, resp: httpx.Response, part: Path) -> None:
        status = resp.status_code
        if status == 404:
            raise SourceNotFound(unit.identity, unit.url)
        if status == 416:
            # Stale part file longer than the current payload
            part.unlink(missing_ok=True)
            raise DownloadFailed(unit.identity, "range not satisfiable", retryable=True, status_code=status)
        if 400 <= status < 500:
            raise DownloadFailed(unit.identity, f"HTTP {status}", retryable=False, status_code=status)
        if status >= 500:
            raise DownloadFailed(unit.identity, f"HTTP {status}", retryable=True, status_code=status)
        if status not in (200, 206):
            raise DownloadFailed(
                unit.identity, f"unexpected HTTP {status}", retryable=False, status_code=status
            )
        # e-Stat answers unknown codes with an HTML page and status 200
        if "text/html" in resp.headers.get("content-type", ""):
            raise DownloadFailed(
                unit.identity, "malformed response: HTML page instead of archive", retryable=False
            )

    @staticmethod
    def _expected_size(resp: httpx.Response, existing: int) -> int | None:
        if resp.headers.get("content-encoding", "identity") != "identity":
            return None
        length = resp.headers.get("content-length")
        if length is None or not length.isdigit():
            return None
        return int(length) + existing

    @staticmethod
    def _write_marker(dest: Path, size: int, url: str) -> None:
        marker = marker_path(dest)
        tmp = marker.with_name(marker.name + ".tmp")
        tmp.write_text(
            json.dumps(
                {
                    "size": size,
                    "url": url,
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                }
            ),
            encoding="utf-8",
        )
        os.replace(tmp, marker)
