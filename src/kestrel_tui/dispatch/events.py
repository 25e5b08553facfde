# =============================================================================
# Session Events
# =============================================================================
# Background work (mutations, body fetches, sync) reports back to the
# foreground through an asyncio.Queue of SessionEvents. The UI drains the
# queue and turns events into banners and redraws.
# =============================================================================

from dataclasses import dataclass
from enum import Enum, auto


class EventKind(Enum):
    """What happened in the background."""
    NOTICE = auto()        # Informational banner ("Message sent")
    ERROR = auto()         # Failure banner; `error` holds the exception
    BODY_LOADED = auto()   # A body fetch finished (successfully or not)
    SYNC_STATE = auto()    # A folder changed sync state
    REAUTH = auto()        # Credentials revoked; sign-in required


@dataclass
class SessionEvent:
    """
    One background result for the foreground.

    Attributes:
        kind: Event type.
        text: Banner text.
        error: The exception behind an ERROR or REAUTH event.
        message_id: Message concerned (BODY_LOADED).
        folder_id: Folder concerned (SYNC_STATE).
    """
    kind: EventKind
    text: str = ""
    error: Exception | None = None
    message_id: str | None = None
    folder_id: str | None = None

    @property
    def is_error(self) -> bool:
        return self.kind in (EventKind.ERROR, EventKind.REAUTH)
