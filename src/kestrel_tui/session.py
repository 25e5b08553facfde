# =============================================================================
# Session
# =============================================================================
# Wires the core together for one signed-in account:
#
#   key --> ModalInputEngine --> Action --> ActionDispatcher
#                                             |-- MailCache (optimistic)
#                                             '-- RemoteMailClient (task)
#   SyncEngine (poll / IDLE / R) --> MailCache
#   UI <-- Session.snapshot()  and  Session.events
#
# The session is the engine's SelectionSource: the visible list is the
# open folder's threads, filtered by the active search.
#
# Everything on the input path is synchronous; start() and close() and the
# background tasks they own are the only awaited parts.
# =============================================================================

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from kestrel_tui.auth import CredentialStore, GoogleTokenEndpoint, LoopbackHandshake
from kestrel_tui.cache import MailCache
from kestrel_tui.config import Config
from kestrel_tui.core import Account, Folder, FolderType, Message, Thread
from kestrel_tui.dispatch import ActionDispatcher, BrowseState, DispatchResult, EventKind, SessionEvent
from kestrel_tui.errors import AuthError, KestrelError, SyncError, describe
from kestrel_tui.modal import ComposeEditor, ModalInputEngine, Mode, ModeState, View
from kestrel_tui.modal import keys
from kestrel_tui.remote.base import RemoteMailClient
from kestrel_tui.sync import FolderSyncState, RetryPolicy, SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class Banner:
    """A transient status line message. Never blocks input."""
    text: str
    is_error: bool = False
    expires_at: float = 0.0


@dataclass(frozen=True)
class RenderSnapshot:
    """
    Everything the renderer needs for one frame.

    Attributes:
        mode: Current input mode.
        state: The engine's ModeState (read only for the renderer).
        folder: The open folder.
        folders: All folders, for the sidebar.
        threads: Visible threads, newest first.
        selected_index: Cursor row in `threads`.
        overlay: Top view when it is not the list (MESSAGE, COMPOSE, HELP).
        open_message: Message shown in the message view.
        thread_messages: The open message's thread, oldest first.
        editor: The compose editor, while composing.
        banner: Current banner, if any.
        search_query: Active search filter.
        pending_actions: Optimistic changes waiting for the server.
        sync_states: Per-folder sync state.
    """
    mode: Mode
    state: ModeState
    folder: Folder | None
    folders: list[Folder]
    threads: list[Thread]
    selected_index: int
    overlay: View | None = None
    open_message: Message | None = None
    thread_messages: list[Message] = field(default_factory=list)
    editor: ComposeEditor | None = None
    banner: Banner | None = None
    search_query: str | None = None
    pending_actions: int = 0
    sync_states: dict[str, FolderSyncState] = field(default_factory=dict)

    @property
    def selected_thread(self) -> Thread | None:
        if 0 <= self.selected_index < len(self.threads):
            return self.threads[self.selected_index]
        return None


class Session:
    """
    One running client session.

    Usage:
        >>> session = Session.from_config(config)
        >>> await session.start()
        >>> session.handle_key("j")
        >>> frame = session.snapshot()
        >>> await session.close()

    Attributes:
        account: The signed-in account.
        cache: The MailCache.
        engine: The ModalInputEngine.
        dispatcher: The ActionDispatcher.
        sync: The SyncEngine, or None when running without sync.
        events: Queue of background results (the dispatcher's queue).
    """

    def __init__(
        self,
        config: Config,
        remote: RemoteMailClient,
        *,
        credentials: CredentialStore | None = None,
        cache: MailCache | None = None,
        repository=None,
        database=None,
        idle=None,
        enable_sync: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            config: Loaded configuration.
            remote: Remote mail client.
            credentials: Credential store (None when tokens are not managed
                         here, e.g. in tests).
            cache: Cache to use; a fresh one by default.
            repository: Durable storage for warm starts.
            database: Database behind `repository`, closed on close().
            idle: IdleWatcher to run alongside polling.
            enable_sync: False runs from the warm-start cache only.
            clock: Monotonic time source for prefix and banner timeouts.
        """
        self.config = config
        self.account: Account = config.account.to_account()
        self.remote = remote
        self.credentials = credentials
        self.cache = cache or MailCache()
        self.repository = repository
        self.database = database
        self.idle = idle
        self._clock = clock

        policy = RetryPolicy.from_config(config.sync)
        self.browse = BrowseState(folder_id="INBOX")
        self.engine = ModalInputEngine(
            self,
            prefix_timeout=config.input.prefix_timeout_ms / 1000,
            clock=clock,
        )
        self.sync: SyncEngine | None = None
        if enable_sync:
            self.sync = SyncEngine(
                remote,
                self.cache,
                policy=policy,
                repository=repository,
                check_interval=config.sync.check_interval_seconds,
                on_state_change=self._on_sync_state,
                on_auth_error=self._on_auth_error,
            )
        self.dispatcher = ActionDispatcher(
            self.cache,
            remote,
            self.engine,
            self.account,
            self.browse,
            sync=self.sync,
            repository=repository,
            policy=policy,
        )
        self.events = self.dispatcher.events
        self.banner: Banner | None = None
        self.needs_reauth = False

    @classmethod
    def from_config(cls, config: Config, *, enable_sync: bool = True) -> "Session":
        """
        Build a session with the real Gmail adapters.

        Imports the network adapters lazily so tests that construct a
        Session with a fake remote never load them.
        """
        from kestrel_tui.remote.imap import GmailImapClient, ImapConnection
        from kestrel_tui.remote.smtp import GmailSmtpSender
        from kestrel_tui.storage import Database, Repository
        from kestrel_tui.sync.idle import IdleWatcher

        account = config.account.to_account()
        endpoint = GoogleTokenEndpoint(account.client_id, account.client_secret)
        credentials = CredentialStore(
            account,
            endpoint,
            handshake=LoopbackHandshake(endpoint),
            policy=RetryPolicy.from_config(config.sync),
            refresh_margin=config.sync.refresh_margin_seconds,
        )
        remote = GmailImapClient(account, credentials, sender=GmailSmtpSender(account, credentials))

        database = repository = None
        if config.sync.persist_cache:
            database = Database()
            repository = Repository(database)

        session = cls(
            config,
            remote,
            credentials=credentials,
            repository=repository,
            database=database,
            enable_sync=enable_sync,
        )
        if enable_sync and config.sync.use_idle:
            session.idle = IdleWatcher(
                ImapConnection(account, credentials),
                "INBOX",
                session.sync.request_refresh,
            )
        return session

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Warm-start from storage, sign in, and begin syncing.

        Failures are surfaced as banners; the session stays usable on
        whatever the cache holds.
        """
        if self.database is not None:
            await self.database.connect()
            folders, messages = await self.repository.load()
            self.cache.load(folders, messages)

        if self.sync is None:
            logger.info("Sync disabled, running from cache")
            return

        try:
            if self.credentials is not None:
                await self.credentials.get_valid_token()
            await self.sync.refresh_folders()
        except AuthError as e:
            self._on_auth_error(e)
            return
        except SyncError as e:
            self.set_banner(describe(e), is_error=True)
            return

        inbox = self.cache.folder_by_type(FolderType.INBOX)
        if inbox is not None:
            self.browse.folder_id = inbox.id

        self.sync.request_refresh()
        self.sync.start()
        if self.idle is not None:
            self.idle.start()

    async def reauthenticate(self) -> None:
        """Run the consent flow again after the grant was revoked."""
        if self.credentials is None:
            return
        self.set_banner("Opening browser for sign-in...")
        try:
            await self.credentials.authenticate()
        except AuthError as e:
            self.set_banner(describe(e), is_error=True)
            return
        self.needs_reauth = False
        self.set_banner("Signed in")
        if self.sync is not None:
            self.sync.request_refresh()

    async def close(self) -> None:
        """Stop background work and release connections."""
        if self.idle is not None:
            await self.idle.stop()
        if self.sync is not None:
            await self.sync.stop()
        await self.dispatcher.close()
        await self.remote.close()
        if self.database is not None:
            await self.database.close()
        logger.info("Session closed")

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def handle_key(self, key: str, character: str | None = None) -> DispatchResult | None:
        """
        Feed one key press through the engine and dispatch its Action.

        Args:
            key: Textual key name.
            character: Printable character of the key, if any.

        Returns:
            The dispatch result, or None if the key produced no Action.
        """
        action = self.engine.handle_key(keys.normalize(key, character))
        if action is None:
            return None
        result = self.dispatcher.dispatch(action)
        self._show_result(result)
        return result

    def _show_result(self, result: DispatchResult) -> None:
        for follow_up in result.follow_up:
            self._show_result(follow_up)
        if result.banner:
            self.set_banner(result.banner, is_error=result.error is not None)

    @property
    def should_quit(self) -> bool:
        return self.engine.mode == Mode.QUIT

    def tick(self) -> None:
        """Periodic housekeeping from the UI timer."""
        self.engine.expire_pending()
        if self.banner is not None and self.banner.expires_at <= self._clock():
            self.banner = None

    # -------------------------------------------------------------------------
    # Background results
    # -------------------------------------------------------------------------

    def handle_event(self, event: SessionEvent) -> None:
        """Apply a background result to the session (banners, reauth)."""
        if event.kind == EventKind.REAUTH:
            self.needs_reauth = True
            self.set_banner(event.text, is_error=True)
        elif event.kind in (EventKind.NOTICE, EventKind.ERROR, EventKind.SYNC_STATE):
            if event.text:
                self.set_banner(event.text, is_error=event.is_error)

    def set_banner(self, text: str, *, is_error: bool = False) -> None:
        self.banner = Banner(text, is_error, self._clock() + self.config.ui.banner_seconds)

    def dismiss_banner(self) -> None:
        self.banner = None

    def _on_sync_state(self, folder_id: str, state: FolderSyncState, error: KestrelError | None) -> None:
        text = describe(error) if error is not None and state != FolderSyncState.SYNCING else ""
        self.events.put_nowait(SessionEvent(EventKind.SYNC_STATE, text, error=error, folder_id=folder_id))

    def _on_auth_error(self, error: AuthError) -> None:
        if error.fatal:
            self.dispatcher.abandon(error)
        else:
            self.events.put_nowait(SessionEvent(EventKind.ERROR, describe(error), error=error))

    # -------------------------------------------------------------------------
    # SelectionSource and rendering
    # -------------------------------------------------------------------------

    def threads(self) -> list[Thread]:
        """Threads of the open folder, filtered by the active search."""
        if self.browse.search_query:
            return self.cache.search(self.browse.folder_id, self.browse.search_query)
        return self.cache.snapshot(self.browse.folder_id)

    def visible_message_ids(self) -> list[str]:
        return [t.latest_message_id for t in self.threads()]

    def is_starred(self, message_id: str) -> bool:
        members = self.cache.thread_messages(self.browse.folder_id, message_id)
        return any(m.is_flagged for m in members)

    def snapshot(self) -> RenderSnapshot:
        """A consistent picture of the session for one frame."""
        threads = self.threads()
        self.engine.selected_message_id  # clamps the cursor to the list
        state = self.engine.state

        overlay = None if state.view == View.LIST else state.view
        open_message = None
        thread_messages: list[Message] = []
        if View.MESSAGE in state.view_stack and self.browse.open_message_id:
            open_message = self.cache.find(self.browse.open_message_id, self.browse.folder_id)
            if open_message is None:
                # Archived or removed by a sync while open
                open_message = self.cache.find(self.browse.open_message_id)
            if open_message is not None:
                thread_messages = self.cache.thread_messages(self.browse.folder_id, open_message.id)

        return RenderSnapshot(
            mode=state.mode,
            state=state,
            folder=self.cache.folder(self.browse.folder_id),
            folders=self.cache.folders(),
            threads=threads,
            selected_index=state.cursor,
            overlay=overlay,
            open_message=open_message,
            thread_messages=thread_messages,
            editor=self.engine.editor,
            banner=self.banner,
            search_query=self.browse.search_query,
            pending_actions=self.cache.pending_count,
            sync_states=self.sync.states() if self.sync is not None else {},
        )
