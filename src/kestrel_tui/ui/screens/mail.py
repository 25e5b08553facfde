# =============================================================================
# Mail Screen
# =============================================================================
# The one screen of Kestrel-TUI:
#   - Left panel: Folder list
#   - Center panel: Thread list, with the message / compose / help pane
#     below it when one is open
#   - Bottom: Status line (mode, prompt, pending keys, banner)
#
# The screen holds no mail state of its own. Every key is handed to the
# Session; after each key, each background event, and each timer tick the
# screen redraws from Session.snapshot().
# =============================================================================

import logging

from textual import events, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import Screen
from textual.widgets import Static

from kestrel_tui.modal import View
from kestrel_tui.session import Session
from kestrel_tui.ui.widgets.compose_view import ComposeView
from kestrel_tui.ui.widgets.folder_list import FolderList
from kestrel_tui.ui.widgets.help_view import HelpView
from kestrel_tui.ui.widgets.message_view import MessageView
from kestrel_tui.ui.widgets.status_line import StatusLine
from kestrel_tui.ui.widgets.thread_list import ThreadList

logger = logging.getLogger(__name__)


class MailScreen(Screen):
    """
    The main mail screen.

    Keys are not bound with Textual bindings: the modal engine decides what
    every key means, so the screen forwards raw key events to the Session.

    Attributes:
        session: The running Session.
    """

    AUTO_FOCUS = None

    # How often pending prefixes and banners are expired
    TICK_SECONDS = 0.1

    CSS = """
    #main-container {
        height: 1fr;
    }

    #sidebar {
        width: 28;
        min-width: 20;
        max-width: 40;
        background: $surface-darken-1;
        border-right: solid $primary;
    }

    #sidebar-header {
        background: $primary;
        color: $text;
        text-align: center;
        height: 3;
        padding: 1;
    }

    #folder-list {
        height: 1fr;
        padding: 1 1;
    }

    #content {
        width: 1fr;
    }

    #thread-list {
        height: 1fr;
    }

    #content.-split #thread-list {
        height: 40%;
        border-bottom: solid $primary;
    }

    #message-view, #compose-view, #help-view {
        height: 1fr;
        display: none;
    }

    #status-line {
        height: 1;
        background: $surface-darken-2;
        color: $text-muted;
        padding: 0 1;
    }
    """

    def __init__(self, session: Session) -> None:
        """
        Args:
            session: Session to drive. The screen starts and closes it.
        """
        super().__init__()
        self.session = session
        self._reauth_running = False

    def compose(self) -> ComposeResult:
        """Create the screen layout."""
        with Horizontal(id="main-container"):
            with Vertical(id="sidebar"):
                yield Static(self.session.account.email, id="sidebar-header")
                yield FolderList(id="folder-list")
            with Vertical(id="content"):
                yield ThreadList(self.session.config.ui.date_format, id="thread-list")
                yield MessageView(id="message-view")
                yield ComposeView(id="compose-view")
                yield HelpView(id="help-view")
        yield StatusLine(id="status-line")

    async def on_mount(self) -> None:
        """Start the session and the loops that keep the screen current."""
        self.render_frame()
        self.set_interval(self.TICK_SECONDS, self._on_tick)
        self._pump_events()
        self._start_session()

    async def on_unmount(self) -> None:
        """Clean up when screen is removed."""
        await self.session.close()

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def on_key(self, event: events.Key) -> None:
        """Forward every key to the modal engine."""
        event.stop()
        event.prevent_default()

        self.session.handle_key(event.key, event.character)
        if self.session.should_quit:
            self.app.exit()
            return
        self.render_frame()

    # -------------------------------------------------------------------------
    # Background
    # -------------------------------------------------------------------------

    @work(exclusive=True, group="session-start")
    async def _start_session(self) -> None:
        await self.session.start()
        self.render_frame()

    @work(exclusive=True, group="session-events")
    async def _pump_events(self) -> None:
        """Apply background results (bodies, sync state, errors) as they arrive."""
        while True:
            event = await self.session.events.get()
            logger.debug(f"Session event: {event.kind.name} {event.text}")
            self.session.handle_event(event)
            if self.session.needs_reauth and not self._reauth_running:
                self._reauthenticate()
            self.render_frame()

    @work(exclusive=True, group="reauth")
    async def _reauthenticate(self) -> None:
        self._reauth_running = True
        try:
            await self.session.reauthenticate()
        finally:
            self._reauth_running = False
        self.render_frame()

    def _on_tick(self) -> None:
        self.session.tick()
        self.render_frame()

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render_frame(self) -> None:
        """Redraw every widget from one snapshot."""
        frame = self.session.snapshot()

        current_id = frame.folder.id if frame.folder is not None else None
        self.query_one("#folder-list", FolderList).show_folders(frame.folders, current_id, frame.sync_states)
        self.query_one("#thread-list", ThreadList).show_threads(frame.threads, frame.selected_index, frame.state.selected)

        message_view = self.query_one("#message-view", MessageView)
        compose_view = self.query_one("#compose-view", ComposeView)
        help_view = self.query_one("#help-view", HelpView)

        self.query_one("#content").set_class(frame.overlay is not None, "-split")
        message_view.display = frame.overlay == View.MESSAGE
        compose_view.display = frame.overlay == View.COMPOSE
        help_view.display = frame.overlay == View.HELP

        if frame.overlay == View.MESSAGE:
            message_view.show_thread(frame.open_message, frame.thread_messages)
            engine = self.session.engine
            engine.set_viewport(message_view.size.height, message_view.max_scroll_y)
            message_view.show_offset(engine.state.scroll)
        elif frame.overlay == View.COMPOSE:
            compose_view.show_editor(frame.editor)

        self.query_one("#status-line", StatusLine).show(frame)
