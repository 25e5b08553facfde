# =============================================================================
# Folder Model
# =============================================================================
# Represents a remote mailbox. Gmail exposes its labels as IMAP mailboxes:
#   - INBOX:              Primary incoming mail
#   - [Gmail]/Sent Mail:  Copies of sent messages
#   - [Gmail]/Drafts:     Unsent message drafts
#   - [Gmail]/Trash:      Deleted messages
#   - [Gmail]/All Mail:   Archive (every message lives here)
#
# The sync cursor is an opaque token produced by the remote client. The cache
# stores it, only the SyncEngine advances it.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto


class FolderType(Enum):
    """
    Folder roles the modal engine can jump to directly (gi, gt, gd, ge, ga).

    These map to IMAP SPECIAL-USE attributes (RFC 6154) when available,
    or are inferred from common naming conventions.
    """
    INBOX = auto()      # Primary incoming mail
    SENT = auto()       # Sent messages
    DRAFTS = auto()     # Unsent drafts
    TRASH = auto()      # Deleted messages (before permanent deletion)
    ARCHIVE = auto()    # Archived messages
    JUNK = auto()       # Spam/junk mail
    OTHER = auto()      # User labels or unrecognized folders

    @property
    def display_name(self) -> str:
        """Title-cased name for the status line."""
        return self.name.title()


# Mailbox names the Gmail IMAP server uses for each role. Used when the server
# does not report SPECIAL-USE attributes.
GMAIL_MAILBOXES: dict[FolderType, str] = {
    FolderType.INBOX: "INBOX",
    FolderType.SENT: "[Gmail]/Sent Mail",
    FolderType.DRAFTS: "[Gmail]/Drafts",
    FolderType.TRASH: "[Gmail]/Trash",
    FolderType.ARCHIVE: "[Gmail]/All Mail",
    FolderType.JUNK: "[Gmail]/Spam",
}


@dataclass
class Folder:
    """
    A mailbox in the cached account.

    Attributes:
        id: Stable identifier; the remote mailbox name.
        name: Display name (last path component of the mailbox).
        folder_type: Semantic role of this folder.
        unread_count: Messages without the SEEN flag (derived by the cache).
        total_messages: Messages cached in this folder (derived by the cache).
        cursor: Opaque sync cursor marking the last reconciled remote state.
                None until the first successful sync.
        stale: Set after a permanent sync failure. A stale folder keeps its
               cached contents but will not sync again until a full resync
               is requested by the user.
        last_sync: Timestamp of the last successful sync.

    Example:
        >>> inbox = Folder(id="INBOX", name="Inbox", folder_type=FolderType.INBOX)
    """

    id: str
    name: str = ""
    folder_type: FolderType = FolderType.OTHER

    unread_count: int = 0
    total_messages: int = 0

    # Sync state (written by SyncEngine only)
    cursor: str | None = None
    stale: bool = False
    last_sync: datetime | None = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id.rsplit("/", 1)[-1]

    @property
    def is_special(self) -> bool:
        """Returns True if this is a standard special folder (not OTHER)."""
        return self.folder_type != FolderType.OTHER

    @classmethod
    def detect_type(cls, mailbox: str, attributes: list[str] | None = None) -> FolderType:
        """
        Detect the folder role from SPECIAL-USE attributes or its name.

        Args:
            mailbox: The IMAP mailbox name.
            attributes: Flags from the LIST response (e.g. "\\Sent").

        Returns:
            The detected FolderType, or OTHER if unrecognized.
        """
        special_use = {
            "\\sent": FolderType.SENT,
            "\\drafts": FolderType.DRAFTS,
            "\\trash": FolderType.TRASH,
            "\\all": FolderType.ARCHIVE,
            "\\archive": FolderType.ARCHIVE,
            "\\junk": FolderType.JUNK,
        }
        for attr in attributes or []:
            folder_type = special_use.get(attr.lower())
            if folder_type:
                return folder_type

        name_lower = mailbox.lower()
        if name_lower == "inbox":
            return FolderType.INBOX
        elif name_lower in ("sent", "sent mail", "sent items", "[gmail]/sent mail"):
            return FolderType.SENT
        elif name_lower in ("drafts", "draft", "[gmail]/drafts"):
            return FolderType.DRAFTS
        elif name_lower in ("trash", "deleted items", "[gmail]/trash", "[gmail]/bin"):
            return FolderType.TRASH
        elif name_lower in ("archive", "all mail", "[gmail]/all mail"):
            return FolderType.ARCHIVE
        elif name_lower in ("junk", "spam", "[gmail]/spam"):
            return FolderType.JUNK

        return FolderType.OTHER

    def __str__(self) -> str:
        unread_indicator = f" ({self.unread_count})" if self.unread_count > 0 else ""
        return f"{self.name}{unread_indicator}"
