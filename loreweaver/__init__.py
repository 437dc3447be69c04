"""
Loreweaver - offline-first sync for worldbuilding data.

Reconciles locally edited worlds, characters and lore with a remote
document store, merging divergent edits where it safely can.
"""

from .bootstrap import Services, create_services
from .sync import ConflictResolver, SyncManager

try:
    from importlib.metadata import version

    __version__ = version("loreweaver")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncManager", "ConflictResolver", "Services", "create_services"]
