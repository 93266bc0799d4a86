"""
estat_shared.models — Pydantic models shared by the pipeline.

  units   — partition keys, work units and checkpoint status
  schema  — column schema of normalized mesh statistics tables
"""

from estat_shared.models.schema import ColumnSpec, Schema, SemanticType
from estat_shared.models.units import (
    BoundaryKey,
    GridKey,
    InvalidTransition,
    UnitState,
    UnitStatus,
    WorkUnit,
)

__all__ = [
    "BoundaryKey",
    "GridKey",
    "WorkUnit",
    "UnitState",
    "UnitStatus",
    "InvalidTransition",
    "ColumnSpec",
    "Schema",
    "SemanticType",
]
