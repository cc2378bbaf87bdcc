# =============================================================================
# Storage Module
# =============================================================================
# Default collaborators for the sync engine:
#   - Database: aiosqlite connection and schema
#   - SqliteMessageStore: processed-message index (duplicate checks, watermark)
#   - KeyringAccountRegistry: accounts from config, tokens from the keyring
# =============================================================================

from hawk_sync.storage.accounts import KeyringAccountRegistry
from hawk_sync.storage.database import Database
from hawk_sync.storage.repository import SqliteMessageStore

__all__ = ["Database", "KeyringAccountRegistry", "SqliteMessageStore"]
