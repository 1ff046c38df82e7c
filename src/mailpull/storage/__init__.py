# =============================================================================
# Storage Module
# =============================================================================
# SQLite persistence for domains, sync bookkeeping, and pulled messages.
# =============================================================================

from mailpull.storage.database import Database
from mailpull.storage.repository import Repository

__all__ = ["Database", "Repository"]
