# =============================================================================
# Sync Module
# =============================================================================
# Keeps the MailCache reconciled with the server:
#   - engine: per-folder delta sync, polling loop, refresh requests
#   - retry:  the backoff policy shared by every network call
#   - idle:   IMAP IDLE watcher that triggers INBOX refreshes
# =============================================================================

from kestrel_tui.sync.retry import RetryPolicy, retry_async
from kestrel_tui.sync.engine import FolderSyncState, SyncEngine, SyncResult

__all__ = [
    "RetryPolicy",
    "retry_async",
    "FolderSyncState",
    "SyncEngine",
    "SyncResult",
]
