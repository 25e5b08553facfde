# =============================================================================
# Sync Engine
# =============================================================================
# Reconciles the MailCache with the remote mail service.
#
# Sync strategy:
#   1. Ask the remote client for the delta since the folder's cursor
#      (no cursor = first sync, the remote answers with a full listing)
#   2. Fold the delta into the cache, which advances the cursor
#   3. Persist the delta for warm starts (optional)
#
# Per-folder state machine:
#
#   IDLE --sync--> SYNCING --ok--> IDLE
#                     |---transient, retries exhausted--> ERROR (degraded)
#                     |---permanent--> STALE
#   ERROR --next sync--> SYNCING
#   STALE --full_resync() only--> SYNCING
#
# A folder is synced by at most one task at a time (per-folder lock);
# different folders sync concurrently. Polling, IMAP IDLE and the user's
# refresh all go through request_refresh(), so they share one code path.
# =============================================================================

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

from kestrel_tui.cache.mail_cache import MailCache
from kestrel_tui.core import Folder, FolderType
from kestrel_tui.errors import AuthError, SyncError, SyncErrorKind
from kestrel_tui.remote.base import RemoteError, RemoteErrorKind, RemoteMailClient
from kestrel_tui.sync.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

# Folders included in sync_all(). Junk and user labels sync only on demand.
SYNCED_TYPES = (
    FolderType.INBOX,
    FolderType.SENT,
    FolderType.DRAFTS,
    FolderType.TRASH,
    FolderType.ARCHIVE,
)

# request_refresh() key meaning "every synced folder"
ALL_FOLDERS = "*"


class FolderSyncState(Enum):
    """Sync state of one folder."""
    IDLE = auto()       # Up to date as of the last sync
    SYNCING = auto()    # A sync is in flight
    ERROR = auto()      # Last sync failed transiently; cache still usable
    STALE = auto()      # Permanent failure; needs full_resync()


@dataclass
class SyncResult:
    """
    Result of syncing one folder.

    Attributes:
        folder_id: The folder.
        success: True if a delta was applied.
        changed: Messages added or updated.
        removed: Messages removed.
        reset: True if the delta was a full listing.
        skipped: True if the folder is stale and was not contacted.
        error: The failure, if any.
        duration_seconds: Time taken.
    """
    folder_id: str
    success: bool = True
    changed: int = 0
    removed: int = 0
    reset: bool = False
    skipped: bool = False
    error: SyncError | None = None
    duration_seconds: float = 0.0


# Called as on_state_change(folder_id, state, error)
StateCallback = Callable[[str, FolderSyncState, SyncError | None], None]
AuthCallback = Callable[[AuthError], None]


def _is_transient(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


class SyncEngine:
    """
    Delta sync between the remote mail service and the cache.

    Usage:
        >>> engine = SyncEngine(remote, cache, policy=RetryPolicy())
        >>> await engine.refresh_folders()
        >>> await engine.sync_all()
        >>> engine.start()             # periodic polling
        >>> engine.request_refresh()   # e.g. from IDLE or the R key

    Attributes:
        remote: Remote mail client.
        cache: The session's MailCache.
        policy: Backoff for transient failures.
        repository: Optional durable storage for warm starts.
        check_interval: Seconds between polls (0 disables polling).
    """

    def __init__(
        self,
        remote: RemoteMailClient,
        cache: MailCache,
        *,
        policy: RetryPolicy | None = None,
        repository=None,
        check_interval: float = 300.0,
        on_state_change: StateCallback | None = None,
        on_auth_error: AuthCallback | None = None,
    ) -> None:
        self.remote = remote
        self.cache = cache
        self.policy = policy or RetryPolicy()
        self.repository = repository
        self.check_interval = check_interval
        self.on_state_change = on_state_change
        self.on_auth_error = on_auth_error

        self._states: dict[str, FolderSyncState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._requested: set[str] = set()
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._adhoc_task: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def state(self, folder_id: str) -> FolderSyncState:
        return self._states.get(folder_id, FolderSyncState.IDLE)

    def states(self) -> dict[str, FolderSyncState]:
        return dict(self._states)

    def _set_state(self, folder_id: str, state: FolderSyncState, error: SyncError | None = None) -> None:
        self._states[folder_id] = state
        if self.on_state_change:
            self.on_state_change(folder_id, state, error)

    def _lock_for(self, folder_id: str) -> asyncio.Lock:
        lock = self._locks.get(folder_id)
        if lock is None:
            lock = self._locks[folder_id] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Sync operations
    # -------------------------------------------------------------------------

    async def refresh_folders(self) -> list[Folder]:
        """
        Fetch the folder list and merge it into the cache.

        Raises:
            SyncError: If the list could not be fetched.
            AuthError: If no valid token could be obtained.
        """
        try:
            folders = await retry_async(
                self.remote.list_folders,
                self.policy,
                is_retryable=_is_transient,
                timeout_error=lambda: RemoteError(RemoteErrorKind.TRANSIENT, "Folder list timed out"),
                description="List folders",
            )
        except RemoteError as e:
            raise self._to_sync_error(e) from e

        self.cache.upsert_folders(folders)
        if self.repository is not None:
            await self._persist(self.repository.save_folders, self.cache.folders())
        logger.info(f"Found {len(folders)} folders")
        return folders

    async def sync_folder(self, folder_id: str, *, full: bool = False) -> SyncResult:
        """
        Sync one folder.

        Transient failures are retried under the policy; once exhausted the
        folder goes to ERROR and the cache is left as it was. A permanent
        failure marks the folder STALE. Anything else the adapter raises
        (e.g. a response it could not parse) is logged and treated as
        transient, so the next trigger tries again.

        Args:
            folder_id: Folder to sync.
            full: Drop the cursor and the STALE mark first, once the
                  folder lock is held, and re-list the whole folder.

        Returns:
            SyncResult describing what happened.

        Raises:
            AuthError: If the grant was revoked (fatal for the session).
        """
        folder = self.cache.folder(folder_id)
        if folder is None:
            error = SyncError(SyncErrorKind.PERMANENT, f"Unknown folder: {folder_id}")
            return SyncResult(folder_id=folder_id, success=False, error=error)

        if not full and (folder.stale or self.state(folder_id) == FolderSyncState.STALE):
            logger.debug(f"Skipping stale folder {folder_id}")
            return SyncResult(folder_id=folder_id, success=False, skipped=True)

        async with self._lock_for(folder_id):
            start = time.monotonic()
            if full:
                # Under the lock, so a sync that was in flight cannot put
                # its cursor back before the listing starts
                self.cache.reset_cursor(folder_id)
                self.cache.mark_stale(folder_id, False)
            self._set_state(folder_id, FolderSyncState.SYNCING)
            cursor = folder.cursor

            try:
                delta = await retry_async(
                    lambda: self.remote.sync_delta(folder, cursor),
                    self.policy,
                    is_retryable=_is_transient,
                    timeout_error=lambda: RemoteError(RemoteErrorKind.TRANSIENT, f"Sync of {folder_id} timed out"),
                    description=f"Sync {folder_id}",
                )
            except AuthError as e:
                if e.fatal:
                    self._set_state(folder_id, FolderSyncState.ERROR)
                    raise
                return self._failed(folder_id, SyncError(SyncErrorKind.TRANSIENT, str(e)), start)
            except RemoteError as e:
                return self._failed(folder_id, self._to_sync_error(e), start)
            except Exception as e:
                logger.exception(f"Unexpected error syncing {folder_id}")
                return self._failed(folder_id, SyncError(SyncErrorKind.TRANSIENT, f"Unexpected error: {e}"), start)

            self.cache.apply_delta(folder_id, delta)
            if self.repository is not None:
                await self._persist(self.repository.apply_delta, self.cache.folder(folder_id), delta)

            self._set_state(folder_id, FolderSyncState.IDLE)
            result = SyncResult(
                folder_id=folder_id,
                changed=len(delta.changed),
                removed=len(delta.removed_ids),
                reset=delta.reset,
                duration_seconds=time.monotonic() - start,
            )
            logger.info(
                f"Synced {folder_id}: {result.changed} changed, {result.removed} removed"
                f"{' (full listing)' if result.reset else ''} in {result.duration_seconds:.2f}s"
            )
            return result

    async def sync_all(self) -> list[SyncResult]:
        """
        Sync every synced folder concurrently.

        Raises:
            AuthError: If the grant was revoked.
        """
        folder_ids = [
            f.id for f in self.cache.folders()
            if f.folder_type in SYNCED_TYPES and not f.stale
        ]
        return await self._sync_many(folder_ids)

    async def full_resync(self, folder_id: str) -> SyncResult:
        """
        Forget the folder's cursor and re-list it from scratch.

        This is the only way out of STALE.
        """
        logger.info(f"Full resync of {folder_id}")
        return await self.sync_folder(folder_id, full=True)

    async def _sync_many(self, folder_ids: list[str]) -> list[SyncResult]:
        outcomes = await asyncio.gather(
            *(self.sync_folder(fid) for fid in folder_ids),
            return_exceptions=True,
        )
        results: list[SyncResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results

    def _failed(self, folder_id: str, error: SyncError, start: float) -> SyncResult:
        if error.kind == SyncErrorKind.PERMANENT:
            logger.error(f"Sync of {folder_id} failed permanently, marking stale: {error}")
            self.cache.mark_stale(folder_id, True)
            self._set_state(folder_id, FolderSyncState.STALE, error)
        else:
            logger.warning(f"Sync of {folder_id} degraded: {error}")
            self._set_state(folder_id, FolderSyncState.ERROR, error)
        return SyncResult(
            folder_id=folder_id,
            success=False,
            error=error,
            duration_seconds=time.monotonic() - start,
        )

    @staticmethod
    def _to_sync_error(error: RemoteError) -> SyncError:
        if error.kind == RemoteErrorKind.TRANSIENT:
            return SyncError(SyncErrorKind.TRANSIENT, str(error))
        # A conflict during a sync means the cursor is unusable; the folder
        # has to be re-listed, which is what STALE + full_resync does.
        return SyncError(SyncErrorKind.PERMANENT, str(error))

    async def _persist(self, method, *args) -> None:
        try:
            await method(*args)
        except Exception as e:
            # The cache stays authoritative; a later sync rewrites the rows
            logger.error(f"Could not persist sync state: {e}")

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def request_refresh(self, folder_id: str | None = None) -> None:
        """
        Ask for a sync soon. Requests made before the sync starts coalesce.

        Args:
            folder_id: Folder to sync, or None for every synced folder.
        """
        self._requested.add(folder_id or ALL_FOLDERS)
        if self._loop_task is not None and not self._loop_task.done():
            self._wakeup.set()
        elif self._adhoc_task is None or self._adhoc_task.done():
            self._adhoc_task = asyncio.get_running_loop().create_task(self._drain_requests())

    async def _drain_requests(self) -> None:
        while self._requested:
            requested, self._requested = self._requested, set()
            try:
                if ALL_FOLDERS in requested:
                    await self.sync_all()
                else:
                    await self._sync_many(sorted(requested))
            except AuthError as e:
                logger.error(f"Sync stopped: {e}")
                if self.on_auth_error:
                    self.on_auth_error(e)
                return
            except Exception:
                logger.exception(f"Sync request failed: {sorted(requested)}")

    def start(self) -> None:
        """Start the background polling loop."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"Sync loop started (interval {self.check_interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop and any ad-hoc sync."""
        for task in (self._loop_task, self._adhoc_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._adhoc_task = None

    async def _run(self) -> None:
        timeout = self.check_interval if self.check_interval > 0 else None
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                self._requested.add(ALL_FOLDERS)
            self._wakeup.clear()
            await self._drain_requests()
