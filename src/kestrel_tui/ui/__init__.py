# =============================================================================
# UI Module
# =============================================================================
# Textual-based user interface for Kestrel-TUI.
#
# Structure:
#   - screens/: The MailScreen
#   - widgets/: Folder list, thread list, message/compose/help panes,
#               status line
#   - styles/: Textual CSS files for styling
#
# The UI only renders Session.snapshot() and forwards keys; it never
# changes mail state itself.
# =============================================================================

from kestrel_tui.ui.screens.mail import MailScreen

__all__ = ["MailScreen"]
