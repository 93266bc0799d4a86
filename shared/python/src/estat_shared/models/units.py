"""
models/units.py — Work units, partition keys and per-unit checkpoint status.

A work unit is one independently fetchable file from e-Stat. Its identity
is derived from its partition key only, so it is stable across runs of
the same catalog.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from estat_shared.constants import Datum

DatasetKind = Literal["areamap", "mesh"]


class BoundaryKey(BaseModel):
    """Census small-area boundaries for one prefecture in one survey year."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["areamap"] = "areamap"
    pref_code: str
    year: int
    datum: Datum                     # requested coordinate epoch

    @property
    def identity(self) -> str:
        return f"areamap-{self.year}-{self.pref_code}"

    @property
    def table_name(self) -> str:
        return f"jp_estat_areamap_{self.year}"


class GridKey(BaseModel):
    """One first-level mesh cell of a mesh statistics release."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["mesh"] = "mesh"
    mesh_level: int
    year: int
    stats_id: str
    mesh_code: int                   # first-level (4-digit) mesh code

    @property
    def identity(self) -> str:
        return f"mesh-{self.year}-{self.stats_id}-{self.mesh_level}-{self.mesh_code}"

    @property
    def table_name(self) -> str:
        return f"jp_estat_mesh_{self.year}_{self.stats_id.lower()}_{self.mesh_level}"


PartitionKey = Annotated[Union[BoundaryKey, GridKey], Field(discriminator="kind")]


class WorkUnit(BaseModel):
    """Immutable descriptor of one fetchable file."""

    model_config = ConfigDict(frozen=True)

    key: PartitionKey
    url: str
    staging_dir: Path
    # Grid cells over open sea have no published file; a 404 is not an error.
    optional: bool = False

    @property
    def identity(self) -> str:
        return self.key.identity

    @property
    def dataset_kind(self) -> DatasetKind:
        return self.key.kind

    @property
    def table_name(self) -> str:
        return self.key.table_name

    @property
    def archive_path(self) -> Path:
        return self.staging_dir / "payload.zip"

    @property
    def extract_dir(self) -> Path:
        return self.staging_dir / "extracted"


# ---------------------------------------------------------------------------
# Checkpoint status
# ---------------------------------------------------------------------------


class UnitState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    STAGED = "staged"
    IMPORTED = "imported"
    FAILED = "failed"
    ABSENT = "absent"


TERMINAL_STATES: frozenset[UnitState] = frozenset({UnitState.IMPORTED, UnitState.ABSENT})

_FORWARD_ORDER: dict[UnitState, int] = {
    UnitState.PENDING: 0,
    UnitState.DOWNLOADING: 1,
    UnitState.DOWNLOADED: 2,
    UnitState.STAGED: 3,
    UnitState.IMPORTED: 4,
}


class InvalidTransition(ValueError):
    """Raised when a status change would break the unit state machine."""


class UnitStatus(BaseModel):
    """Mutable-by-replacement checkpoint record for one work unit."""

    model_config = ConfigDict(frozen=True)

    state: UnitState = UnitState.PENDING
    attempt_count: int = 0
    last_error: str | None = None
    last_attempt_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: UnitState, **changes: Any) -> "UnitStatus":
        """
        Return a copy in *new_state*, validating the move.

        Allowed:
          - forward along pending → downloading → downloaded → staged → imported
          - failed from any non-terminal state
          - absent from any non-terminal state
          - back to pending from any non-terminal state (retry)
          - imported → imported (idempotent no-op)

        Raises:
            InvalidTransition: for anything else.
        """
        current = self.state
        if current is UnitState.IMPORTED and new_state is UnitState.IMPORTED:
            return self
        if self.is_terminal:
            raise InvalidTransition(f"{current.value} is terminal; cannot move to {new_state.value}")

        if new_state in (UnitState.FAILED, UnitState.ABSENT, UnitState.PENDING):
            pass
        elif current is UnitState.FAILED:
            raise InvalidTransition("a failed unit must be reset to pending before advancing")
        elif _FORWARD_ORDER[new_state] <= _FORWARD_ORDER[current]:
            raise InvalidTransition(f"{current.value} → {new_state.value} is not forward")

        return self.model_copy(update={"state": new_state, **changes})

    def start_attempt(self) -> "UnitStatus":
        """Move to downloading and stamp a new attempt."""
        return self.transition(
            UnitState.DOWNLOADING,
            attempt_count=self.attempt_count + 1,
            last_attempt_time=datetime.now(timezone.utc),
        )

    def fail(self, reason: str) -> "UnitStatus":
        return self.transition(UnitState.FAILED, last_error=reason)
