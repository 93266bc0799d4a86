"""
errors.py — Exception taxonomy for the e-Stat pipeline.

Run-fatal:
  CatalogError (UnknownSurvey, UnsupportedYear) — raised before any work starts
  CheckpointError                               — the checkpoint store is unusable

Unit-scoped (UnitError) — recorded against the unit's checkpoint, the run
continues with the remaining units:
  DownloadFailed (SourceNotFound)
  ArchiveCorrupt, MissingExpectedMember
  EncodingError, SchemaViolation
  ImportFailed (SchemaDrift)
"""

from __future__ import annotations

from typing import Any


class EstatPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# ---------------------------------------------------------------------------
# Run-fatal
# ---------------------------------------------------------------------------


class CatalogError(EstatPipelineError):
    """Filters reference a combination that is not in the static catalog."""


class UnknownSurvey(CatalogError):
    def __init__(self, survey: str) -> None:
        super().__init__(f"unknown survey: {survey!r}")
        self.survey = survey


class UnsupportedYear(CatalogError):
    def __init__(self, year: int, dataset: str) -> None:
        super().__init__(f"{dataset} has no data for year {year}")
        self.year = year
        self.dataset = dataset


class CheckpointError(EstatPipelineError):
    """The checkpoint store cannot be read or written."""


# ---------------------------------------------------------------------------
# Unit-scoped
# ---------------------------------------------------------------------------


class UnitError(EstatPipelineError):
    """A failure confined to one work unit."""

    retryable: bool = False

    def __init__(self, message: str, *, unit: str | None = None) -> None:
        super().__init__(message)
        self.unit = unit

    @property
    def reason(self) -> str:
        return f"{type(self).__name__}: {self}"


class DownloadFailed(UnitError):
    def __init__(
        self,
        unit: str,
        cause: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(f"download of {unit} failed: {cause}", unit=unit)
        self.cause = cause
        self.retryable = retryable
        self.status_code = status_code
        self.attempts = attempts


class SourceNotFound(DownloadFailed):
    def __init__(self, unit: str, url: str) -> None:
        super().__init__(unit, f"404 Not Found ({url})", retryable=False, status_code=404)
        self.url = url


class ArchiveCorrupt(UnitError):
    pass


class MissingExpectedMember(UnitError):
    pass


class EncodingError(UnitError):
    pass


class SchemaViolation(UnitError):
    def __init__(self, row: int | None, column: str | None, value: Any, detail: str = "") -> None:
        where = "header" if row is None else f"row {row}"
        message = f"{where}, column {column!r}, value {value!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.row = row
        self.column = column
        self.value = value


class ImportFailed(UnitError):
    pass


class SchemaDrift(ImportFailed):
    """An existing table's columns differ from the frozen schema."""
