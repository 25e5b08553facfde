# =============================================================================
# Compose View Widget
# =============================================================================
# Draws a ComposeEditor: the three header fields, a rule, then the body.
# The widget only renders; every key goes through the modal engine to the
# editor, and the screen redraws after each one.
# =============================================================================

from textual.containers import VerticalScroll
from textual.widgets import Static

from kestrel_tui.core import ComposeField
from kestrel_tui.modal import ComposeEditor, Mode


HEADER_LABELS = {
    ComposeField.TO: "To",
    ComposeField.CC: "Cc",
    ComposeField.SUBJECT: "Subject",
}


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


def with_cursor(line: str, col: int, mode: Mode) -> str:
    """
    Render `line` with the cursor cell highlighted.

    Insert mode shows a bar-like underline, normal mode a block.
    """
    col = max(0, min(col, len(line)))
    under = line[col] if col < len(line) else " "
    style = "underline" if mode == Mode.COMPOSE_INSERT else "reverse"
    return f"{_escape(line[:col])}[{style}]{_escape(under)}[/]{_escape(line[col + 1:])}"


def render_editor(editor: ComposeEditor) -> str:
    """Markup for the whole draft with the cursor in the focused field."""
    draft = editor.draft
    lines = []
    for field, label in HEADER_LABELS.items():
        value = draft.get_field(field)
        if field == editor.field:
            text = with_cursor(value, editor.col, editor.mode)
            lines.append(f"[bold underline]{label}:[/] {text}")
        else:
            lines.append(f"[bold]{label}:[/] {_escape(value)}")
    lines.append("─" * 50)

    for row, line in enumerate(draft.body):
        if editor.field == ComposeField.BODY and row == editor.row:
            lines.append(with_cursor(line, editor.col, editor.mode))
        else:
            lines.append(_escape(line))
    return "\n".join(lines)


class ComposeView(VerticalScroll):
    """
    The compose pane.

    Usage:
        >>> view = ComposeView(id="compose-view")
        >>> view.show_editor(editor)
    """

    can_focus = False

    DEFAULT_CSS = """
    ComposeView {
        padding: 0 1;
    }

    ComposeView > #compose-text {
        height: auto;
    }

    ComposeView > #compose-hint {
        height: auto;
        margin-top: 1;
        color: $text-muted;
    }
    """

    HINT = "Ctrl+S send · Ctrl+D save draft · Tab next field · Esc normal mode · q discard (normal mode)"

    def compose(self):
        """Compose the widget."""
        yield Static("", id="compose-text")
        yield Static(self.HINT, id="compose-hint")

    def show_editor(self, editor: ComposeEditor | None) -> None:
        text = render_editor(editor) if editor is not None else "[dim]Preparing draft…[/]"
        self.query_one("#compose-text", Static).update(text)
