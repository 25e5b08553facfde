# =============================================================================
# Cache Module
# =============================================================================
# In-memory mail cache with optimistic updates. Durable warm-start copies
# live in kestrel_tui.storage.
# =============================================================================

from kestrel_tui.cache.mail_cache import MailCache, PendingEntry

__all__ = ["MailCache", "PendingEntry"]
