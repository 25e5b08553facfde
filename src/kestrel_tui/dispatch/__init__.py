# =============================================================================
# Dispatch Package
# =============================================================================
# Applies Actions optimistically to the cache and reconciles them with the
# server in background tasks. Results come back as SessionEvents.
# =============================================================================

from kestrel_tui.dispatch.events import EventKind, SessionEvent
from kestrel_tui.dispatch.dispatcher import ActionDispatcher, BrowseState, DispatchResult

__all__ = [
    "ActionDispatcher",
    "BrowseState",
    "DispatchResult",
    "EventKind",
    "SessionEvent",
]
