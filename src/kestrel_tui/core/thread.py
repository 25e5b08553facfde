# =============================================================================
# Thread Model
# =============================================================================
# A thread (conversation) groups messages sharing a Gmail X-GM-THRID. The
# cache builds threads on demand from its message graph; a Thread is a
# read-only view and is never mutated in place.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime

from kestrel_tui.core.message import Message


_EPOCH = datetime.min


@dataclass(frozen=True)
class Thread:
    """
    A conversation as shown in the message list.

    Attributes:
        id: Thread identifier.
        message_ids: Member message ids in chronological order.
        folder_ids: Folders holding at least one member message.
        subject: Subject of the first message.
        participants: Display names of senders, in order of first appearance.
        unread: True if any member is unread.
        starred: True if any member is starred.
        latest_date: Date of the newest member (None if no member is dated).
    """
    id: str
    message_ids: tuple[str, ...]
    folder_ids: frozenset[str] = field(default_factory=frozenset)
    subject: str = ""
    participants: tuple[str, ...] = ()
    unread: bool = False
    starred: bool = False
    latest_date: datetime | None = None

    @property
    def latest_message_id(self) -> str:
        """Id of the newest message, the one list actions apply to."""
        return self.message_ids[-1]

    def __len__(self) -> int:
        return len(self.message_ids)

    @classmethod
    def from_messages(cls, thread_id: str, messages: list[Message]) -> "Thread":
        """
        Build a thread from its member messages.

        Args:
            thread_id: Shared thread identifier.
            messages: Members in any order. Must not be empty.

        Returns:
            Thread with members sorted by date, then id, so ordering is
            deterministic for undated messages.
        """
        ordered = sorted(messages, key=lambda m: (m.date_sent or _EPOCH, m.id))

        participants: list[str] = []
        for msg in ordered:
            if msg.display_sender not in participants:
                participants.append(msg.display_sender)

        dates = [m.date_sent for m in ordered if m.date_sent]

        return cls(
            id=thread_id,
            message_ids=tuple(m.id for m in ordered),
            folder_ids=frozenset(m.folder_id for m in ordered),
            subject=ordered[0].subject,
            participants=tuple(participants),
            unread=any(not m.is_read for m in ordered),
            starred=any(m.is_flagged for m in ordered),
            latest_date=max(dates) if dates else None,
        )
