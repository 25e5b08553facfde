# =============================================================================
# Actions
# =============================================================================
# An Action is the unit of user intent. The ModalInputEngine builds them from
# key sequences; the ActionDispatcher consumes each one exactly once.
#
# Actions form a closed union of frozen dataclasses, so the dispatcher can
# match on the concrete type and a type checker can prove it is exhaustive.
# =============================================================================

from dataclasses import dataclass
from enum import Enum, auto

from kestrel_tui.core.draft import ComposeDraft, ComposeKind
from kestrel_tui.core.folder import FolderType


class NavTarget(Enum):
    """Where a Navigate action moves the selection."""
    NEXT = auto()
    PREVIOUS = auto()
    FIRST = auto()
    LAST = auto()


@dataclass(frozen=True)
class Navigate:
    target: NavTarget


@dataclass(frozen=True)
class OpenFolder:
    folder_type: FolderType


@dataclass(frozen=True)
class OpenMessage:
    message_id: str


@dataclass(frozen=True)
class Compose:
    kind: ComposeKind
    source_id: str | None = None


@dataclass(frozen=True)
class Archive:
    message_id: str


@dataclass(frozen=True)
class Delete:
    message_id: str


@dataclass(frozen=True)
class Star:
    message_id: str
    starred: bool


@dataclass(frozen=True)
class MarkRead:
    message_id: str


@dataclass(frozen=True)
class Batch:
    """One archive or delete per thread picked in the list."""
    actions: tuple[Archive | Delete, ...]


@dataclass(frozen=True)
class Search:
    query: str


@dataclass(frozen=True)
class RunCommand:
    text: str


@dataclass(frozen=True)
class Send:
    draft: ComposeDraft


@dataclass(frozen=True)
class SaveDraft:
    draft: ComposeDraft


@dataclass(frozen=True)
class Refresh:
    pass


@dataclass(frozen=True)
class ShowHelp:
    pass


@dataclass(frozen=True)
class Quit:
    pass


Action = (
    Navigate | OpenFolder | OpenMessage | Compose | Archive | Delete | Star
    | MarkRead | Batch | Search | RunCommand | Send | SaveDraft | Refresh | ShowHelp | Quit
)

# Actions that change mailbox state and therefore go through the optimistic
# apply/confirm/rollback cycle.
MUTATING_ACTIONS = (Archive, Delete, Star, MarkRead, Send, SaveDraft)
