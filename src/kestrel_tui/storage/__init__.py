# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database initialization
#   - Folder, cursor and message persistence for warm starts
#   - Async operations via aiosqlite
#
# The database is stored in the XDG data directory
# (~/.local/share/kestrel-tui/).
# =============================================================================

from kestrel_tui.storage.database import Database
from kestrel_tui.storage.repository import Repository

__all__ = ["Database", "Repository"]
