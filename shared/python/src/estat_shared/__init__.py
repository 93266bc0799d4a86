"""
estat_shared — configuration, database pool, catalog constants and models.

Usage:
    from estat_shared.config import settings
    from estat_shared.db import pg_transaction
    from estat_shared.models import WorkUnit, UnitStatus, Schema
    from estat_shared.constants import PREF_CODES, MESH_STATS
"""

__version__ = "0.1.0"
