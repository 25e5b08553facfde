# =============================================================================
# Thread List Widget
# =============================================================================
# A table of the open folder's conversations.
#
# Features:
#   - Columns: Selected, Unread, Star, From, Subject, Count, Date
#   - Cursor row mirrors the modal engine's cursor; rows marked for a
#     bulk action carry a check mark
#   - Rows are only rebuilt when the thread list actually changed, so
#     moving the cursor does not redraw the table
#
# The table never takes focus: keys go to the screen and from there to the
# Session, which owns the cursor.
# =============================================================================

from datetime import datetime

from textual.widgets import DataTable

from kestrel_tui.core import Thread


def format_date(dt: datetime | None, date_format: str = "%b %d", now: datetime | None = None) -> str:
    """
    Format a date for display in local time.

    Shows:
        - Time if today
        - Day name if this week
        - `date_format` otherwise
    """
    if not dt:
        return ""

    now = now or datetime.now()

    # Convert to local time if timezone-aware (dates are stored in UTC)
    if dt.tzinfo is not None:
        dt_local = dt.astimezone().replace(tzinfo=None)
    else:
        dt_local = dt

    if dt_local.date() == now.date():
        return dt_local.strftime("%H:%M")
    elif 0 <= (now.date() - dt_local.date()).days < 7:
        return dt_local.strftime("%a")
    else:
        return dt_local.strftime(date_format)


def format_participants(thread: Thread, width: int = 25) -> str:
    """Senders of a thread, truncated to fit the From column."""
    text = ", ".join(thread.participants) or "(Unknown)"
    if len(text) > width:
        text = text[:width - 3] + "..."
    return text


class ThreadList(DataTable):
    """
    A table widget displaying conversations.

    Usage:
        >>> table = ThreadList(id="thread-list")
        >>> table.show_threads(threads, selected_index=0, marked={"m2"})
    """

    can_focus = False

    # Column configuration
    COLUMNS = [
        ("", 2),        # Marked for a bulk action
        ("", 2),        # Read/unread indicator
        ("★", 2),       # Star indicator
        ("From", 25),   # Participants
        ("Subject", 0), # Subject (flexible width)
        ("#", 4),       # Messages in thread
        ("Date", 12),   # Date of newest message
    ]

    def __init__(self, date_format: str = "%b %d", **kwargs) -> None:
        """
        Args:
            date_format: strftime format for dates older than a week.
            **kwargs: Additional arguments passed to DataTable.
        """
        super().__init__(**kwargs)
        self.date_format = date_format
        self._threads: list[Thread] = []
        self._marked: frozenset[str] = frozenset()

        # Configure table
        self.cursor_type = "row"
        self.zebra_stripes = True

    def on_mount(self) -> None:
        """Set up columns when widget is mounted."""
        for label, width in self.COLUMNS:
            if width > 0:
                self.add_column(label, width=width)
            else:
                self.add_column(label)  # Flexible width

    def show_threads(self, threads: list[Thread], selected_index: int, marked: set[str] | frozenset[str] = frozenset()) -> None:
        """
        Show `threads` with the cursor on `selected_index`.

        Args:
            threads: Visible threads, newest first.
            selected_index: Cursor row from the engine.
            marked: Latest message ids of the rows picked for a bulk action.
        """
        marked = frozenset(marked)
        if threads != self._threads or marked != self._marked:
            self.clear()
            for thread in threads:
                self.add_row(*self._row(thread, thread.latest_message_id in marked), key=thread.id)
            self._threads = list(threads)
            self._marked = marked

        if threads:
            self.move_cursor(row=min(selected_index, len(threads) - 1))

    def _row(self, thread: Thread, marked: bool = False) -> tuple[str, ...]:
        mark = "✓" if marked else " "
        read_indicator = "●" if thread.unread else " "
        star_indicator = "★" if thread.starred else " "

        sender = format_participants(thread).replace("[", "\\[")
        subject = (thread.subject or "(no subject)").replace("[", "\\[")
        count = str(len(thread)) if len(thread) > 1 else ""

        # Bold for unread
        if thread.unread:
            sender = f"[bold]{sender}[/]"
            subject = f"[bold]{subject}[/]"

        return (
            mark,
            read_indicator,
            star_indicator,
            sender,
            subject,
            count,
            format_date(thread.latest_date, self.date_format),
        )
