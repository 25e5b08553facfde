# =============================================================================
# Status Line Widget
# =============================================================================
# The bottom line, vim style:
#
#   NORMAL  Inbox  /invoice  g        2 pending   Archive failed: ...
#
# While typing a command or search the line becomes the input prompt.
# =============================================================================

from textual.widgets import Static

from kestrel_tui.modal import Mode


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


def status_text(frame) -> str:
    """
    Build the status line for one RenderSnapshot.

    Args:
        frame: The session's RenderSnapshot.
    """
    state = frame.state

    if frame.mode == Mode.COMMAND:
        return f":{_escape(state.command_text)}[reverse] [/]"
    if frame.mode == Mode.SEARCH:
        return f"/{_escape(state.search_text)}[reverse] [/]"

    parts = [f"[bold reverse] {frame.mode.label} [/]"]
    if frame.folder is not None:
        parts.append(_escape(frame.folder.name))
    if frame.search_query:
        parts.append(f"[italic]/{_escape(frame.search_query)}[/]")

    pending_keys = state.pending.key if state.pending is not None else ""
    if frame.editor is not None and frame.editor.pending_keys:
        pending_keys = frame.editor.pending_keys
    if pending_keys:
        parts.append(f"[bold]{_escape(pending_keys)}[/]")

    if frame.pending_actions:
        parts.append(f"[dim]{frame.pending_actions} pending[/]")

    if frame.banner is not None:
        text = _escape(frame.banner.text.splitlines()[0] if frame.banner.text else "")
        parts.append(f"[red]{text}[/]" if frame.banner.is_error else text)

    return "  ".join(parts)


class StatusLine(Static):
    """One-line mode, prompt and banner display."""

    can_focus = False

    def show(self, frame) -> None:
        self.update(status_text(frame))
