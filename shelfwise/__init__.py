"""
Shelfwise — multi-tenant inventory core.

Folder trees with materialized paths, explicit access grants, and an
activity trail for every state change.
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "security", "hierarchy", "activity"]
