# =============================================================================
# UI Widgets
# =============================================================================
# Render-only building blocks used by the MailScreen:
#   - FolderList: Folders with unread counts and sync markers
#   - ThreadList: Conversation table
#   - MessageView: The open conversation
#   - ComposeView: The compose editor's buffer and cursor
#   - HelpView: Key reference
#   - StatusLine: Mode, prompt, pending keys and banner
# =============================================================================

from kestrel_tui.ui.widgets.compose_view import ComposeView
from kestrel_tui.ui.widgets.folder_list import FolderList
from kestrel_tui.ui.widgets.help_view import HelpView
from kestrel_tui.ui.widgets.message_view import MessageView
from kestrel_tui.ui.widgets.status_line import StatusLine
from kestrel_tui.ui.widgets.thread_list import ThreadList

__all__ = ["ComposeView", "FolderList", "HelpView", "MessageView", "StatusLine", "ThreadList"]
