# =============================================================================
# Remote Mail Client Interface
# =============================================================================
# The boundary between the session core and the mail service. The core only
# speaks in these terms:
#
#   - list_folders():           mailboxes and their roles
#   - sync_delta(folder, cur):  what changed since an opaque cursor
#   - fetch_body(message_id):   lazily fetch one body
#   - mutate(op):               apply one idempotent mutation
#
# Adapters raise RemoteError with a kind the engines can act on:
#   - TRANSIENT: retry with backoff (timeouts, dropped connections)
#   - PERMANENT: do not retry (missing mailbox, rejected command)
#   - CONFLICT:  the server state moved (message vanished); resync
# =============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto

from kestrel_tui.core import ComposeDraft, Folder, Message, MessageFlags


class MutationKind(Enum):
    """Remote operations a user action can trigger."""
    ARCHIVE = auto()
    DELETE = auto()
    STAR = auto()
    MARK_READ = auto()
    SEND = auto()
    SAVE_DRAFT = auto()


@dataclass(frozen=True)
class Mutation:
    """
    One remote state change.

    Attributes:
        kind: What to do.
        message_id: Target message (empty for SEND / SAVE_DRAFT).
        folder_id: Folder the message was acted on from.
        value: Flag value for STAR / MARK_READ.
        draft: Payload for SEND / SAVE_DRAFT.
    """
    kind: MutationKind
    message_id: str = ""
    folder_id: str = ""
    value: bool = True
    draft: ComposeDraft | None = field(default=None, compare=False)


@dataclass
class SyncDelta:
    """
    Changes to a folder since a cursor.

    Attributes:
        changed: New or updated messages (full envelope and flags).
        removed_ids: Messages that left the folder.
        flag_updates: Current flags of messages already known to the cache.
        new_cursor: Cursor to store once the delta has been applied.
        reset: True if the old cursor was invalid; `changed` is then the
               complete folder listing and anything not in it is gone.
        fetched_at: When the server produced the delta. Stored as the
                    folder's last_sync, so re-applying a delta changes nothing.
    """
    changed: list[Message] = field(default_factory=list)
    removed_ids: set[str] = field(default_factory=set)
    flag_updates: dict[str, MessageFlags] = field(default_factory=dict)
    new_cursor: str = ""
    reset: bool = False
    fetched_at: datetime = field(default_factory=datetime.now)

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.removed_ids or self.flag_updates or self.reset)


class RemoteMailClient(ABC):
    """Abstract mail service used by the SyncEngine and ActionDispatcher."""

    @abstractmethod
    async def list_folders(self) -> list[Folder]:
        """Return the account's mailboxes with their roles detected."""

    @abstractmethod
    async def sync_delta(self, folder: Folder, cursor: str | None) -> SyncDelta:
        """
        Return what changed in `folder` since `cursor`.

        Args:
            folder: The folder to reconcile.
            cursor: Cursor from the last successful sync, or None for a
                    first sync (which returns a reset delta).
        """

    @abstractmethod
    async def fetch_body(self, message_id: str) -> str:
        """Return the plain-text body of a message."""

    @abstractmethod
    async def mutate(self, op: Mutation) -> None:
        """
        Apply a mutation. Must be idempotent: applying an already applied
        mutation succeeds without further effect.
        """

    async def close(self) -> None:
        """Release connections. Default is a no-op."""


# =============================================================================
# Exceptions
# =============================================================================

class RemoteErrorKind(Enum):
    TRANSIENT = auto()
    PERMANENT = auto()
    CONFLICT = auto()


class RemoteError(Exception):
    """Raised by adapters for any failed remote call."""

    def __init__(self, kind: RemoteErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.name.lower())

    @property
    def retryable(self) -> bool:
        return self.kind == RemoteErrorKind.TRANSIENT
