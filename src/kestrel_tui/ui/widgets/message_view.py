# =============================================================================
# Message View Widget
# =============================================================================
# Shows the open message's whole conversation, oldest first. The open
# message is the only one expanded; the others show a header line.
#
# Bodies are plain text (HTML parts are converted by the remote adapter).
# A body still being fetched shows a placeholder; the view is redrawn when
# the BODY_LOADED event arrives.
#
# The scroll offset belongs to the modal engine (ctrl+d / ctrl+u / space);
# the view only applies it and reports how far it can go.
# =============================================================================

from textual.containers import VerticalScroll
from textual.widgets import Static

from kestrel_tui.core import BodyState, Message


def escape(text: str) -> str:
    """Escape Rich markup in user content."""
    if not text:
        return ""
    return text.replace("[", "\\[")


def render_header(message: Message) -> str:
    """Full header block for the expanded message."""
    lines = [
        f"[bold]From:[/] {escape(message.display_sender)} <{escape(message.sender)}>",
        f"[bold]To:[/] {escape(', '.join(message.recipients))}",
    ]
    if message.cc:
        lines.append(f"[bold]CC:[/] {escape(', '.join(message.cc))}")
    lines.append(f"[bold]Subject:[/] {escape(message.subject)}")
    if message.date_sent:
        lines.append(f"[bold]Date:[/] {message.date_sent:%Y-%m-%d %H:%M}")
    return "\n".join(lines)


def render_body(message: Message) -> str:
    if message.body_state == BodyState.FETCHED:
        return escape(message.body or "") or "[dim]No content[/]"
    if message.body_state == BodyState.LOADING:
        return "[dim]Loading…[/]"
    return "[dim]Body not loaded[/]"


def render_collapsed(message: Message) -> str:
    """One line for a thread member that is not open."""
    date = f"{message.date_sent:%b %d}" if message.date_sent else ""
    marker = "●" if not message.is_read else " "
    return f"{marker} [bold]{escape(message.display_sender)}[/]  [dim]{date}  {escape(message.preview)}[/]"


class MessageView(VerticalScroll):
    """
    A scrolling view of one conversation.

    Usage:
        >>> view = MessageView(id="message-view")
        >>> view.show_thread(open_message, thread_messages)
    """

    can_focus = False

    DEFAULT_CSS = """
    MessageView {
        padding: 0 1;
    }

    MessageView > #message-text {
        height: auto;
    }
    """

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._shown: tuple | None = None

    def compose(self):
        """Compose the widget."""
        yield Static("", id="message-text")

    def show_thread(self, message: Message | None, thread: list[Message]) -> None:
        """
        Display `message` expanded inside its thread.

        Args:
            message: The open message, or None if it disappeared.
            thread: Members of its thread, oldest first.
        """
        if message is None:
            self.query_one("#message-text", Static).update("[dim]Message no longer available[/]")
            self._shown = None
            return

        members = thread or [message]
        key = (message.id, tuple((m.id, m.flags, m.body_state) for m in members))
        if key == self._shown:
            return
        self._shown = key

        blocks = []
        for member in members:
            if member.id == message.id:
                blocks.append(render_header(member) + "\n" + "─" * 50 + "\n" + render_body(member))
            else:
                blocks.append(render_collapsed(member))
        self.query_one("#message-text", Static).update("\n\n".join(blocks))

    def show_offset(self, line: int) -> None:
        """Scroll so that `line` is the first one visible."""
        if line != round(self.scroll_y):
            self.scroll_to(y=line, animate=False)

    def clear(self) -> None:
        self._shown = None
        self.query_one("#message-text", Static).update("")
