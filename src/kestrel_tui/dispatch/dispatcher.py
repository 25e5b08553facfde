# =============================================================================
# Action Dispatcher
# =============================================================================
# The single entry point for Actions coming out of the modal engine.
#
# For every mutating action:
#   1. Validate against cached state (synchronous)
#   2. Apply it to the cache optimistically (synchronous, always local)
#   3. Schedule the remote call as a task and return immediately
#   4. When the task ends, finalize or roll back:
#        - TRANSIENT errors are retried with backoff first
#        - CONFLICT rolls back and forces a full resync of the folder
#        - PERMANENT (or retries exhausted) rolls back and raises a banner;
#          if some of a thread's calls already went through, the folder
#          is resynced as well
#        - AuthError REVOKED abandons every pending action and asks the
#          user to sign in again
#
# Read-only actions (Navigate, Search, ShowHelp, OpenMessage with a cached
# body) never touch the network.
# =============================================================================

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from kestrel_tui.cache.mail_cache import MailCache
from kestrel_tui.core import (
    Account,
    ComposeDraft,
    ComposeKind,
    FolderType,
    Message,
    create_forward,
    create_reply,
)
from kestrel_tui.core.action import (
    Action,
    Archive,
    Batch,
    Compose,
    Delete,
    MarkRead,
    Navigate,
    OpenFolder,
    OpenMessage,
    Quit,
    Refresh,
    RunCommand,
    SaveDraft,
    Search,
    Send,
    ShowHelp,
    Star,
)
from kestrel_tui.core.message import BodyState
from kestrel_tui.dispatch.events import EventKind, SessionEvent
from kestrel_tui.errors import (
    AuthError,
    CommandError,
    KestrelError,
    MutationError,
    MutationErrorKind,
    ValidationError,
    describe,
)
from kestrel_tui.modal.commands import resolve_command
from kestrel_tui.modal.compose import ComposeEditor
from kestrel_tui.modal.engine import ModalInputEngine
from kestrel_tui.remote.base import Mutation, MutationKind, RemoteError, RemoteErrorKind, RemoteMailClient
from kestrel_tui.sync.engine import SyncEngine
from kestrel_tui.sync.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass
class BrowseState:
    """
    What the user is looking at, as far as actions are concerned.

    Attributes:
        folder_id: The open folder.
        search_query: Active search filter (None = whole folder).
        open_message_id: Message shown in the message view, if any.
    """
    folder_id: str = "INBOX"
    search_query: str | None = None
    open_message_id: str | None = None


@dataclass
class DispatchResult:
    """
    Immediate outcome of dispatching one action.

    Attributes:
        ok: False if the action was rejected locally.
        correlation_id: Pending cache entry for mutating actions.
        error: Why the action was rejected.
        notice: Informational text for the banner.
        follow_up: Results of actions dispatched as a consequence
                   (e.g. MarkRead after opening an unread message).
    """
    ok: bool = True
    correlation_id: str | None = None
    error: KestrelError | None = None
    notice: str = ""
    follow_up: list["DispatchResult"] = field(default_factory=list)

    @classmethod
    def failed(cls, error: KestrelError) -> "DispatchResult":
        return cls(ok=False, error=error)

    @property
    def banner(self) -> str:
        if self.error is not None:
            return describe(self.error)
        return self.notice


def _is_transient(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


def _timeout_error() -> RemoteError:
    return RemoteError(RemoteErrorKind.TRANSIENT, "timed out")


_MUTATION_ERROR_KINDS = {
    RemoteErrorKind.TRANSIENT: MutationErrorKind.TRANSIENT,
    RemoteErrorKind.CONFLICT: MutationErrorKind.CONFLICT,
    RemoteErrorKind.PERMANENT: MutationErrorKind.PERMANENT,
}

_BATCH_VERBS = {Archive: "Archived", Delete: "Deleted"}


class ActionDispatcher:
    """
    Applies Actions to the cache and reconciles them with the server.

    Usage:
        >>> dispatcher = ActionDispatcher(cache, remote, engine, account, browse)
        >>> result = dispatcher.dispatch(Archive(message_id))
        >>> event = await dispatcher.events.get()

    Attributes:
        events: Queue of SessionEvents for the foreground.
    """

    def __init__(
        self,
        cache: MailCache,
        remote: RemoteMailClient,
        engine: ModalInputEngine,
        account: Account,
        browse: BrowseState,
        *,
        sync: SyncEngine | None = None,
        repository=None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            cache: The session's MailCache.
            remote: Remote mail client.
            engine: Modal engine (compose view and cursor are driven from here).
            account: Our account (reply-all excludes our address).
            browse: Shared view state, updated by navigation actions.
            sync: Sync engine for refreshes and conflict resyncs.
            repository: Optional durable storage for fetched bodies.
            policy: Retry policy for remote calls.
            sleep: Backoff sleep, replaceable in tests.
        """
        self.cache = cache
        self.remote = remote
        self.engine = engine
        self.account = account
        self.browse = browse
        self.sync = sync
        self.repository = repository
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()

        # In-flight mutations by correlation id, body fetches by message id
        self._mutations: dict[str, asyncio.Task] = {}
        self._fetches: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        # Send or save in flight for the open editor: (editor, cid, notice)
        self._compose_busy: tuple[ComposeEditor, str, str] | None = None

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def dispatch(self, action: Action) -> DispatchResult:
        """
        Handle one action. Never blocks; network work runs in tasks.

        Args:
            action: Action produced by the modal engine (or a command).

        Returns:
            The local outcome. Remote outcomes arrive later as events.
        """
        logger.debug(f"Dispatching {action!r}")
        if isinstance(action, (Navigate, ShowHelp)):
            return DispatchResult()
        if isinstance(action, Search):
            return self._search(action)
        if isinstance(action, OpenFolder):
            return self._open_folder(action)
        if isinstance(action, OpenMessage):
            return self._open_message(action)
        if isinstance(action, Compose):
            return self._compose(action)
        if isinstance(action, Archive):
            return self._archive(action)
        if isinstance(action, Delete):
            return self._delete(action)
        if isinstance(action, Star):
            return self._mutate(action, MutationKind.STAR, value=action.starred)
        if isinstance(action, MarkRead):
            return self._mark_read(action)
        if isinstance(action, Batch):
            return self._batch(action)
        if isinstance(action, Send):
            return self._send(action)
        if isinstance(action, SaveDraft):
            return self._save_draft(action)
        if isinstance(action, RunCommand):
            return self._run_command(action)
        if isinstance(action, Refresh):
            return self._refresh()
        if isinstance(action, Quit):
            self.engine.request_quit()
            return DispatchResult()
        raise TypeError(f"Unhandled action: {action!r}")

    @property
    def in_flight(self) -> int:
        """Number of mutations waiting for the server."""
        return len(self._mutations)

    async def drain(self) -> None:
        """Wait for every scheduled task (tests and shutdown)."""
        while True:
            tasks = [*self._mutations.values(), *self._fetches.values(), *self._background]
            pending = [t for t in tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding work. Optimistic entries are left as they are."""
        tasks = [*self._mutations.values(), *self._fetches.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def abandon(self, error: AuthError) -> None:
        """
        Give up on all pending work after the grant was revoked.

        Every in-flight task is cancelled and every optimistic entry is
        rolled back, then a REAUTH event is emitted.
        """
        current = asyncio.current_task()
        for task in [*self._mutations.values(), *self._fetches.values(), *self._background]:
            if task is not current and not task.done():
                task.cancel()
        rolled_back = self.cache.rollback_all()
        logger.error(f"Credentials revoked, rolled back {len(rolled_back)} pending actions")
        self._emit(EventKind.REAUTH, describe(error), error=error)

    # -------------------------------------------------------------------------
    # Read-only actions
    # -------------------------------------------------------------------------

    def _search(self, action: Search) -> DispatchResult:
        query = action.query.strip()
        self.browse.search_query = query or None
        self.engine.reset_cursor()
        if not query:
            return DispatchResult()
        hits = len(self.cache.search(self.browse.folder_id, query))
        return DispatchResult(notice=f"{hits} threads match '{query}'")

    def _open_folder(self, action: OpenFolder) -> DispatchResult:
        folder = self.cache.folder_by_type(action.folder_type)
        if folder is None:
            return DispatchResult(notice=f"No {action.folder_type.name.lower()} folder on this account")
        self.browse.folder_id = folder.id
        self.browse.search_query = None
        self.browse.open_message_id = None
        self.engine.reset_cursor()
        if folder.last_sync is None and self.sync is not None:
            self.sync.request_refresh(folder.id)
        return DispatchResult()

    def _open_message(self, action: OpenMessage) -> DispatchResult:
        message = self.cache.find(action.message_id, self.browse.folder_id)
        if message is None:
            return DispatchResult(notice="Message is no longer in this folder")
        self.browse.open_message_id = message.id
        self.engine.select(message.id)

        result = DispatchResult()
        if message.body_state == BodyState.NOT_FETCHED:
            self._fetch_body(message.id)
        if not message.is_read:
            result.follow_up.append(self.dispatch(MarkRead(message.id)))
        return result

    # -------------------------------------------------------------------------
    # Compose
    # -------------------------------------------------------------------------

    def _compose(self, action: Compose) -> DispatchResult:
        if action.kind == ComposeKind.NEW or action.source_id is None:
            self._start_editor(ComposeDraft())
            return DispatchResult()

        source = self.cache.find(action.source_id, self.browse.folder_id)
        if source is None:
            self.engine.close_compose()
            return DispatchResult(notice="Message is no longer in this folder")

        if source.body_state == BodyState.FETCHED:
            self._start_editor(self._seed(action.kind, source))
        else:
            # The quote needs the body; the editor opens once it is here
            self._spawn(self._seed_after_fetch(action.kind, source.id), f"seed-{source.id}")
        return DispatchResult()

    def _seed(self, kind: ComposeKind, source: Message) -> ComposeDraft:
        if kind == ComposeKind.FORWARD:
            return create_forward(source)
        return create_reply(
            source,
            own_address=self.account.email,
            reply_all=kind == ComposeKind.REPLY_ALL,
        )

    async def _seed_after_fetch(self, kind: ComposeKind, message_id: str) -> None:
        task = self._fetch_body(message_id)
        await asyncio.gather(task, return_exceptions=True)
        source = self.cache.find(message_id)
        if source is None:
            self.engine.close_compose()
            self._emit(EventKind.NOTICE, "Message is no longer available")
            return
        if source.body is None:
            self._emit(EventKind.NOTICE, "Original message could not be loaded; quoting nothing")
        self._start_editor(self._seed(kind, source))

    def _start_editor(self, draft: ComposeDraft) -> None:
        editor = ComposeEditor(draft)
        for action in self.engine.enter_compose(editor):
            self.dispatch(action)

    def _send(self, action: Send) -> DispatchResult:
        busy = self._editor_busy()
        if busy:
            return DispatchResult(notice=busy)
        try:
            action.draft.validate()
        except ValidationError as e:
            return DispatchResult.failed(e)

        editor = self.engine.editor
        cid = self.cache.apply_optimistic(action, self.browse.folder_id)
        op = Mutation(MutationKind.SEND, draft=action.draft)

        def sent() -> None:
            self.engine.close_compose(editor)
            self._emit(EventKind.NOTICE, "Message sent")
            self._refresh_type(FolderType.SENT)

        self._schedule(cid, [op], on_success=sent)
        self._track_editor(editor, cid, "Already sending")
        return DispatchResult(correlation_id=cid, notice="Sending...")

    def _save_draft(self, action: SaveDraft) -> DispatchResult:
        if not action.draft.has_content:
            return DispatchResult(notice="Nothing to save")
        busy = self._editor_busy()
        if busy:
            return DispatchResult(notice=busy)

        editor = self.engine.editor
        cid = self.cache.apply_optimistic(action, self.browse.folder_id)
        op = Mutation(MutationKind.SAVE_DRAFT, draft=action.draft)

        def saved() -> None:
            self.engine.close_compose(editor)
            self._emit(EventKind.NOTICE, "Draft saved")
            self._refresh_type(FolderType.DRAFTS)

        self._schedule(cid, [op], on_success=saved)
        self._track_editor(editor, cid, "Already saving draft")
        return DispatchResult(correlation_id=cid, notice="Saving draft...")

    def _editor_busy(self) -> str | None:
        """Notice if the open editor already has a send or save in flight."""
        if self._compose_busy is None:
            return None
        editor, cid, notice = self._compose_busy
        if cid not in self._mutations:
            self._compose_busy = None
            return None
        return notice if editor is self.engine.editor else None

    def _track_editor(self, editor: ComposeEditor | None, cid: str, notice: str) -> None:
        if editor is not None:
            self._compose_busy = (editor, cid, notice)

    # -------------------------------------------------------------------------
    # Mailbox mutations
    # -------------------------------------------------------------------------

    def _archive(self, action: Archive) -> DispatchResult:
        folder = self.cache.folder(self.browse.folder_id)
        if folder is not None and folder.folder_type == FolderType.ARCHIVE:
            return DispatchResult(notice="Already archived")
        return self._mutate(action, MutationKind.ARCHIVE)

    def _delete(self, action: Delete) -> DispatchResult:
        folder = self.cache.folder(self.browse.folder_id)
        if folder is not None and folder.folder_type == FolderType.TRASH:
            return DispatchResult(notice="Already in Trash")
        return self._mutate(action, MutationKind.DELETE)

    def _mark_read(self, action: MarkRead) -> DispatchResult:
        message = self.cache.find(action.message_id, self.browse.folder_id)
        if message is not None and message.is_read:
            return DispatchResult()
        return self._mutate(action, MutationKind.MARK_READ)

    def _mutate(self, action: Archive | Delete | Star | MarkRead, kind: MutationKind, value: bool = True) -> DispatchResult:
        folder_id = self.browse.folder_id
        try:
            cid = self.cache.apply_optimistic(action, folder_id)
        except KeyError:
            return DispatchResult(notice="Message is no longer in this folder")

        entry = self.cache.pending_entry(cid)
        message_ids = entry.message_ids if entry else [action.message_id]
        ops = [Mutation(kind, mid, folder_id=folder_id, value=value) for mid in message_ids]
        self._schedule(cid, ops)
        return DispatchResult(correlation_id=cid)

    def _schedule(self, cid: str, ops: list[Mutation], on_success: Callable[[], None] | None = None) -> None:
        task = asyncio.get_running_loop().create_task(
            self._reconcile(cid, ops, on_success), name=f"mutate-{cid}",
        )
        self._mutations[cid] = task

    async def _reconcile(self, cid: str, ops: list[Mutation], on_success: Callable[[], None] | None) -> None:
        """Run a pending entry's remote calls, then finalize or roll back."""
        confirmed = 0
        try:
            for op in ops:
                await retry_async(
                    lambda op=op: self.remote.mutate(op),
                    self.policy,
                    is_retryable=_is_transient,
                    timeout_error=_timeout_error,
                    sleep=self._sleep,
                    description=f"{op.kind.name.lower()} {op.message_id}".strip(),
                )
                confirmed += 1
        except AuthError as e:
            if e.fatal:
                self._mutations.pop(cid, None)
                self.abandon(e)
                return
            self.cache.rollback(cid)
            self._emit(EventKind.ERROR, describe(e), error=e)
            if confirmed:
                self._resync(ops)
        except RemoteError as e:
            self._failed(cid, ops, e, confirmed)
        else:
            self.cache.finalize(cid)
            logger.info(f"Confirmed {cid} ({len(ops)} remote calls)")
            if on_success:
                on_success()
        finally:
            self._mutations.pop(cid, None)

    def _failed(self, cid: str, ops: list[Mutation], error: RemoteError, confirmed: int = 0) -> None:
        self.cache.rollback(cid)
        failure = MutationError(_MUTATION_ERROR_KINDS[error.kind], str(error))
        logger.warning(f"Rolled back {cid} after {confirmed} of {len(ops)} remote calls: {failure!r}")
        self._emit(EventKind.ERROR, describe(failure), error=failure)

        # The rolled-back view is wrong for whatever the server already did
        if failure.kind == MutationErrorKind.CONFLICT or confirmed:
            self._resync(ops)

    def _resync(self, ops: list[Mutation]) -> None:
        """Re-list the folders a mutation touched."""
        if self.sync is None:
            return
        for folder_id in sorted({op.folder_id for op in ops if op.folder_id}):
            self._spawn(self.sync.full_resync(folder_id), f"resync-{folder_id}")

    def _batch(self, action: Batch) -> DispatchResult:
        """Dispatch each member; one banner for the lot."""
        results = [self.dispatch(member) for member in action.actions]
        done = sum(1 for r in results if r.correlation_id is not None)
        verb = _BATCH_VERBS.get(type(action.actions[0]), "Updated") if action.actions else "Updated"
        notice = f"{verb} {done} threads"
        skipped = len(results) - done
        if skipped:
            notice += f" ({skipped} skipped)"
        return DispatchResult(notice=notice, follow_up=[r for r in results if r.error is not None])

    # -------------------------------------------------------------------------
    # Commands and refresh
    # -------------------------------------------------------------------------

    def _run_command(self, action: RunCommand) -> DispatchResult:
        try:
            resolved = resolve_command(action.text)
        except CommandError as e:
            logger.info(f"Rejected command {action.text!r}")
            return DispatchResult.failed(e)
        return self.dispatch(resolved)

    def _refresh(self) -> DispatchResult:
        if self.sync is None:
            return DispatchResult(notice="Sync is disabled")
        folder = self.cache.folder(self.browse.folder_id)
        if folder is not None and folder.stale:
            # The only way out of a permanent sync failure
            self._spawn(self.sync.full_resync(folder.id), f"resync-{folder.id}")
            return DispatchResult(notice=f"Resyncing {folder.name}...")
        self.sync.request_refresh()
        if folder is not None:
            self.sync.request_refresh(folder.id)
        return DispatchResult(notice="Refreshing...")

    def _refresh_type(self, folder_type: FolderType) -> None:
        folder = self.cache.folder_by_type(folder_type)
        if folder is not None and self.sync is not None:
            self.sync.request_refresh(folder.id)

    # -------------------------------------------------------------------------
    # Bodies
    # -------------------------------------------------------------------------

    def _fetch_body(self, message_id: str) -> asyncio.Task:
        """Start (or join) the background fetch of a message body."""
        task = self._fetches.get(message_id)
        if task is not None and not task.done():
            return task
        self.cache.mark_body_loading(message_id)
        task = asyncio.get_running_loop().create_task(
            self._load_body(message_id), name=f"body-{message_id}",
        )
        self._fetches[message_id] = task
        return task

    async def _load_body(self, message_id: str) -> None:
        try:
            body = await retry_async(
                lambda: self.remote.fetch_body(message_id),
                self.policy,
                is_retryable=_is_transient,
                timeout_error=_timeout_error,
                sleep=self._sleep,
                description=f"fetch body {message_id}",
            )
        except AuthError as e:
            self.cache.set_body(message_id, None)
            if e.fatal:
                self._fetches.pop(message_id, None)
                self.abandon(e)
                return
            self._emit(EventKind.ERROR, describe(e), error=e)
        except RemoteError as e:
            self.cache.set_body(message_id, None)
            self._emit(EventKind.ERROR, f"Could not load message: {e}", error=e, message_id=message_id)
        else:
            # Lands in the cache even if the message view was dismissed
            self.cache.set_body(message_id, body)
            self._emit(EventKind.BODY_LOADED, message_id=message_id)
            if self.repository is not None:
                await self._save_body(message_id, body)
        finally:
            self._fetches.pop(message_id, None)

    async def _save_body(self, message_id: str, body: str) -> None:
        try:
            await self.repository.save_body(message_id, body)
        except Exception as e:
            # The cache already has it; the next fetch rewrites the row
            logger.error(f"Could not persist body of {message_id}: {e}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guard(coro), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except AuthError as e:
            if e.fatal:
                self.abandon(e)
            else:
                self._emit(EventKind.ERROR, describe(e), error=e)

    def _emit(self, kind: EventKind, text: str = "", **details: Any) -> None:
        self.events.put_nowait(SessionEvent(kind, text, **details))
