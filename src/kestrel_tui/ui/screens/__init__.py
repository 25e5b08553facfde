# =============================================================================
# UI Screens
# =============================================================================
# Kestrel-TUI has a single screen; the message, compose and help views are
# panes inside it selected by the modal engine's view stack.
# =============================================================================

from kestrel_tui.ui.screens.mail import MailScreen

__all__ = ["MailScreen"]
