"""
estat_pipeline.sources — what to fetch from e-Stat.

  catalog — static tables of published releases → WorkUnits
"""

from estat_pipeline.sources.catalog import (
    AreamapFilters,
    MeshFilters,
    enumerate_units,
    find_mesh_stats,
    list_mesh_stats,
)

__all__ = [
    "AreamapFilters",
    "MeshFilters",
    "enumerate_units",
    "find_mesh_stats",
    "list_mesh_stats",
]
