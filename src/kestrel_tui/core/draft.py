# =============================================================================
# Compose Draft
# =============================================================================
# The working state of an email being written. A draft belongs to the
# session, never to the MailCache: it is created by a Compose action and
# destroyed on Send success or explicit discard. It is only persisted when
# the user explicitly saves it as a Draft message.
#
# Reply and forward seeding follow the usual client conventions:
#   - Reply:     To = original sender, "Re:" subject, quoted body
#   - Reply-all: also the other To/Cc recipients, minus ourselves
#   - Forward:   empty To, "Fwd:" subject, forwarded-message block
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum, auto

from kestrel_tui.core.message import Message
from kestrel_tui.errors import ValidationError, ValidationErrorKind


class ComposeKind(Enum):
    """What started the compose session."""
    NEW = auto()
    REPLY = auto()
    REPLY_ALL = auto()
    FORWARD = auto()


class ComposeField(Enum):
    """Editable fields, in Tab order."""
    TO = auto()
    CC = auto()
    SUBJECT = auto()
    BODY = auto()

    @property
    def next(self) -> "ComposeField":
        order = list(ComposeField)
        return order[(order.index(self) + 1) % len(order)]

    @property
    def previous(self) -> "ComposeField":
        order = list(ComposeField)
        return order[(order.index(self) - 1) % len(order)]


def split_addresses(text: str) -> list[str]:
    """Split a comma/semicolon separated address field into addresses."""
    parts = text.replace(";", ",").split(",")
    return [p.strip() for p in parts if p.strip()]


@dataclass
class ComposeDraft:
    """
    An email being composed.

    Header fields are kept as the raw text the user typed; use `to_list` /
    `cc_list` for parsed addresses. The body is a list of lines so the
    editor can address it by (row, column).

    Attributes:
        kind: New, reply, reply-all or forward.
        to: Raw To field.
        cc: Raw Cc field.
        subject: Subject line.
        body: Body lines (never empty; an empty body is [""]).
        in_reply_to: Message-ID of the original, for threading.
        references: References header of the reply.
        source_id: Cache id of the message being replied to or forwarded.
    """
    kind: ComposeKind = ComposeKind.NEW
    to: str = ""
    cc: str = ""
    subject: str = ""
    body: list[str] = field(default_factory=lambda: [""])
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    source_id: str | None = None

    def __post_init__(self) -> None:
        if not self.body:
            self.body = [""]

    @property
    def to_list(self) -> list[str]:
        return split_addresses(self.to)

    @property
    def cc_list(self) -> list[str]:
        return split_addresses(self.cc)

    @property
    def body_text(self) -> str:
        return "\n".join(self.body)

    @property
    def has_content(self) -> bool:
        """True if any field holds something worth saving."""
        return bool(self.to.strip() or self.cc.strip() or self.subject.strip() or self.body_text.strip())

    def get_field(self, which: ComposeField) -> str:
        """Text of a single-line header field."""
        if which == ComposeField.TO:
            return self.to
        if which == ComposeField.CC:
            return self.cc
        if which == ComposeField.SUBJECT:
            return self.subject
        return self.body_text

    def set_field(self, which: ComposeField, value: str) -> None:
        if which == ComposeField.TO:
            self.to = value
        elif which == ComposeField.CC:
            self.cc = value
        elif which == ComposeField.SUBJECT:
            self.subject = value
        else:
            self.body = value.split("\n")

    def validate(self) -> None:
        """
        Check the draft can be sent.

        Raises:
            ValidationError: EMPTY_RECIPIENT if there is no To address,
                             EMPTY_CONTENT if both subject and body are blank.
        """
        if not self.to_list:
            raise ValidationError(ValidationErrorKind.EMPTY_RECIPIENT, "'To' field is empty")
        if not self.subject.strip() and not self.body_text.strip():
            raise ValidationError(ValidationErrorKind.EMPTY_CONTENT, "Subject and body are both empty")


# =============================================================================
# Seeding
# =============================================================================

def _quote_date(original: Message) -> str:
    if original.date_sent:
        return original.date_sent.strftime("%Y-%m-%d %H:%M")
    return "unknown date"


def create_reply(original: Message, *, own_address: str, reply_all: bool = False) -> ComposeDraft:
    """
    Create a reply draft from an original message.

    Args:
        original: The message being replied to.
        own_address: Our address, excluded from reply-all recipients.
        reply_all: If True, include all recipients in reply.

    Returns:
        ComposeDraft pre-populated for reply, body starting with an empty
        line above the quote.
    """
    to = [original.sender] if original.sender else []
    cc: list[str] = []

    if reply_all:
        ours = own_address.lower()
        sender = original.sender.lower()
        for recipient in original.recipients:
            if recipient.lower() not in (ours, sender) and recipient not in to:
                to.append(recipient)
        for recipient in original.cc:
            if recipient.lower() != ours:
                cc.append(recipient)

    subject = original.subject
    if not subject.lower().startswith("re:"):
        subject = f"Re: {subject}"

    references = list(original.references)
    if original.message_id and original.message_id not in references:
        references.append(original.message_id)

    body = ["", "", f"On {_quote_date(original)}, {original.display_sender} wrote:"]
    for line in (original.body or "").split("\n"):
        body.append(f"> {line}")

    return ComposeDraft(
        kind=ComposeKind.REPLY_ALL if reply_all else ComposeKind.REPLY,
        to=", ".join(to),
        cc=", ".join(cc),
        subject=subject,
        body=body,
        in_reply_to=original.message_id,
        references=references,
        source_id=original.id,
    )


def create_forward(original: Message) -> ComposeDraft:
    """
    Create a forward draft from an original message.

    Args:
        original: The message being forwarded.

    Returns:
        ComposeDraft with empty To, for the user to fill in.
    """
    subject = original.subject
    if not subject.lower().startswith("fwd:"):
        subject = f"Fwd: {subject}"

    body = [
        "",
        "",
        "---------- Forwarded message ----------",
        f"From: {original.display_sender} <{original.sender}>",
        f"Date: {_quote_date(original)}",
        f"Subject: {original.subject}",
        f"To: {', '.join(original.recipients)}",
    ]
    if original.cc:
        body.append(f"Cc: {', '.join(original.cc)}")
    body.append("")
    body.extend((original.body or "").split("\n"))

    return ComposeDraft(
        kind=ComposeKind.FORWARD,
        subject=subject,
        body=body,
        source_id=original.id,
    )
