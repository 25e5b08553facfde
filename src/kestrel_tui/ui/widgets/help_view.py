# =============================================================================
# Help View Widget
# =============================================================================
# Key reference shown by `?`. Closed with ?, q or Escape.
# =============================================================================

from textual.containers import VerticalScroll
from textual.widgets import Static


HELP_TEXT = """\
[bold]Message list[/]
  j / k        next / previous thread
  gg / G       first / last thread
  x            mark / unmark thread
  J / K        mark and move down / up
  Enter / l    open thread
  e            archive (every marked thread, if any)
  d            move to Trash (every marked thread, if any)
  s            toggle star
  c            compose
  r / a / f    reply / reply all / forward
  R            refresh
  /            search (empty search clears)
  :            command (inbox, sent, drafts, trash, archive, refresh, quit)
  gi gt gd ge ga   go to Inbox, Sent, Drafts, Trash, All Mail
  Esc          clear marks, then quit
  q            quit

[bold]Message view[/]
  j / k        next / previous thread
  Ctrl+D Space half page down
  Ctrl+U       half page up
  e / d        archive / delete, then back to the list
  r / a / f    reply / reply all / forward
  h / q / Esc  back

[bold]Compose[/]
  Esc          normal mode; again to save as draft
  i a I A o O  insert mode
  h l w b e 0 $   motions (with counts)
  d{motion} c{motion} dd cc x
  j / k        next / previous line
  Tab          next field
  Ctrl+S       send
  Ctrl+D       save draft
  q            discard (normal mode)
"""


class HelpView(VerticalScroll):
    """Scrollable key reference."""

    can_focus = False

    DEFAULT_CSS = """
    HelpView {
        padding: 0 1;
    }
    """

    def compose(self):
        """Compose the widget."""
        yield Static(HELP_TEXT, id="help-text")
