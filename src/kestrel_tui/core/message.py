# =============================================================================
# Message Model
# =============================================================================
# Represents an email message as the cache sees it:
#   - Headers (From, To, Subject, Date, Message-ID, threading headers)
#   - Body, fetched lazily the first time the message is opened
#   - Flags, the only part the user mutates
#
# Messages are identified by Gmail's X-GM-MSGID, which is stable across
# mailboxes, so an archived message keeps its id when it moves.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntFlag, auto


class MessageFlags(IntFlag):
    """
    Email message flags, stored as a bitmask.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (shown as a star)
        - DELETED: Marked for deletion
        - DRAFT: Message is a draft (not yet sent)

    Usage:
        msg.flags |= MessageFlags.SEEN
        if msg.flags & MessageFlags.FLAGGED:
            print("starred")
    """
    NONE = 0
    SEEN = 1 << 0       # \\Seen
    ANSWERED = 1 << 1   # \\Answered
    FLAGGED = 1 << 2    # \\Flagged
    DELETED = 1 << 3    # \\Deleted
    DRAFT = 1 << 4      # \\Draft


class BodyState(Enum):
    """Lazy-loading state of a message body."""
    NOT_FETCHED = auto()
    LOADING = auto()
    FETCHED = auto()


@dataclass
class Message:
    """
    An email message in the cache.

    Attributes:
        id: Stable message identifier (Gmail X-GM-MSGID).
        thread_id: Thread identifier (Gmail X-GM-THRID). Messages sharing a
                   thread_id are shown as one conversation.
        folder_id: Folder the message currently lives in.
        uid: IMAP UID inside folder_id (adapter bookkeeping, 0 if unknown).

        message_id: RFC 5322 Message-ID header, used for reply threading.
        in_reply_to: Message-ID this message replies to.
        references: Message-IDs of the conversation so far.

        subject: Subject line.
        sender: From address.
        sender_name: From display name.
        recipients: To addresses.
        cc: Cc addresses.
        date_sent: Date header.

        flags: IMAP flags.
        body: Plain-text body, None until fetched.
        body_state: Whether the body is missing, in flight, or present.
    """

    id: str
    thread_id: str = ""
    folder_id: str = ""
    uid: int = 0

    # Threading headers
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    # Envelope
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    date_sent: datetime | None = None

    flags: MessageFlags = MessageFlags.NONE

    body: str | None = None
    body_state: BodyState = BodyState.NOT_FETCHED

    def __post_init__(self) -> None:
        if not self.thread_id:
            self.thread_id = self.id
        if self.body is not None:
            self.body_state = BodyState.FETCHED

    # -------------------------------------------------------------------------
    # Flag helpers
    # -------------------------------------------------------------------------

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_flagged(self) -> bool:
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def is_draft(self) -> bool:
        return bool(self.flags & MessageFlags.DRAFT)

    @property
    def has_body(self) -> bool:
        return self.body_state == BodyState.FETCHED

    def set_flag(self, flag: MessageFlags, on: bool) -> None:
        """Set or clear a single flag."""
        if on:
            self.flags |= flag
        else:
            self.flags &= ~flag

    # -------------------------------------------------------------------------
    # Display helpers
    # -------------------------------------------------------------------------

    @property
    def display_sender(self) -> str:
        """Sender name if known, otherwise the address."""
        return self.sender_name or self.sender or "(Unknown)"

    @property
    def preview(self) -> str:
        """
        First few non-blank body lines squashed into one short line.
        Empty while the body has not been fetched.
        """
        if not self.body:
            return ""
        lines = [line.strip() for line in self.body.splitlines() if line.strip()]
        text = " ".join(lines[:3])
        text = "".join(ch for ch in text if ch.isprintable())
        if len(text) > 100:
            return text[:99] + "…"
        return text

    def matches(self, needle: str) -> bool:
        """
        Case-insensitive substring match over subject, sender and fetched body.

        Args:
            needle: Already lower-cased query.
        """
        haystacks = [self.subject, self.sender, self.sender_name]
        if self.body is not None:
            haystacks.append(self.body)
        return any(needle in h.lower() for h in haystacks if h)

    def __str__(self) -> str:
        read_marker = " " if self.is_read else "*"
        flag_marker = "!" if self.is_flagged else " "
        return f"{read_marker}{flag_marker} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id!r}, folder={self.folder_id!r}, "
            f"subject={self.subject!r}, flags={self.flags!r})"
        )
