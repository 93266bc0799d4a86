"""
utils/checkpoint.py — Per-unit checkpoint store for crash recovery.

Persists the status of every work unit so that an interrupted run can be
resumed by pointing a new invocation at the same staging root. Units that
reached ``imported`` are never fetched again; anything else is retried.

Files under the staging root:
  checkpoints.json       — {unit identity: UnitStatus}
  schemas.json           — {table name: Schema}, frozen mesh table schemas
  checkpoints.json.lock  — cross-process lock guarding both files

A file that cannot be parsed is renamed to <name>.corrupt and treated as
empty, so its contents survive for inspection.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
from filelock import FileLock, Timeout
from pydantic import ValidationError

from estat_shared.models import Schema, UnitStatus
from estat_pipeline.errors import CheckpointError

log = structlog.get_logger(__name__)

CHECKPOINT_FILENAME = "checkpoints.json"
SCHEMA_FILENAME = "schemas.json"
LOCK_FILENAME = "checkpoints.json.lock"


class CheckpointStore:
    """
    Durable, single-writer mapping of unit identity → UnitStatus.

    save() may be called concurrently from worker threads and coroutines:
    writes are serialized in-process by a thread lock and across processes
    by a file lock, and each write replaces the file atomically.
    """

    def __init__(self, root: str | Path, *, lock_timeout: float = 30.0) -> None:
        self.root = Path(root)
        self._checkpoint_file = self.root / CHECKPOINT_FILENAME
        self._schema_file = self.root / SCHEMA_FILENAME
        self._file_lock = FileLock(str(self.root / LOCK_FILENAME), timeout=lock_timeout)
        self._thread_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Unit status
    # ------------------------------------------------------------------

    def load(self) -> dict[str, UnitStatus]:
        """Return every persisted status; an absent store is a fresh run."""
        with self._locked():
            raw = self._read_json(self._checkpoint_file)
        statuses: dict[str, UnitStatus] = {}
        for identity, payload in raw.items():
            try:
                statuses[identity] = UnitStatus.model_validate(payload)
            except ValidationError as exc:
                log.warning("checkpoint_entry_invalid", unit=identity, error=str(exc))
        if statuses:
            log.info("checkpoints_loaded", units=len(statuses))
        return statuses

    def save(self, identity: str, status: UnitStatus) -> None:
        """Persist *status* for *identity*."""
        with self._locked():
            data = self._read_json(self._checkpoint_file)
            data[identity] = status.model_dump(mode="json")
            self._write_json(self._checkpoint_file, data)
        log.debug("checkpoint_saved", unit=identity, state=status.state.value)

    def summary(self) -> dict[str, int]:
        """Count of units per state, for status reporting."""
        return dict(Counter(s.state.value for s in self.load().values()))

    # ------------------------------------------------------------------
    # Frozen schemas
    # ------------------------------------------------------------------

    def load_schemas(self) -> dict[str, Schema]:
        with self._locked():
            raw = self._read_json(self._schema_file)
        return {table: Schema.model_validate(payload) for table, payload in raw.items()}

    def save_schema(self, table: str, schema: Schema) -> None:
        with self._locked():
            data = self._read_json(self._schema_file)
            data[table] = schema.model_dump(mode="json")
            self._write_json(self._schema_file, data)
        log.info("schema_frozen", table=table, columns=len(schema.columns))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process lock, then the cross-process file lock."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CheckpointError(f"cannot create {self.root}: {exc}") from exc
        with self._thread_lock:
            try:
                self._file_lock.acquire()
            except Timeout as exc:
                raise CheckpointError(
                    f"checkpoint store {self.root} is locked by another process"
                ) from exc
            try:
                yield
            finally:
                self._file_lock.release()

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self._set_aside(path, str(exc))
            return {}
        except OSError as exc:
            raise CheckpointError(f"cannot read {path}: {exc}") from exc
        if not isinstance(data, dict):
            self._set_aside(path, f"expected a JSON object, got {type(data).__name__}")
            return {}
        return data

    @staticmethod
    def _set_aside(path: Path, error: str) -> None:
        """Rename an unreadable *path* to <name>.corrupt."""
        corrupt = path.with_name(path.name + ".corrupt")
        try:
            os.replace(path, corrupt)
        except OSError as exc:
            raise CheckpointError(f"cannot move unreadable {path} aside: {exc}") from exc
        log.warning("checkpoint_file_unreadable", path=str(path), moved_to=str(corrupt), error=error)

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        tmp_path: Path | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{path.name}.", suffix=".tmp")
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise CheckpointError(f"cannot write {path}: {exc}") from exc
