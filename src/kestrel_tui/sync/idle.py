# =============================================================================
# IDLE Watcher
# =============================================================================
# Background task that keeps an IMAP IDLE connection on INBOX and asks the
# SyncEngine for a refresh whenever the server reports a change.
#
# Design notes:
#   - IDLE ties up its connection, so it gets its own (separate from sync)
#   - It only triggers; the sync itself runs through request_refresh(), the
#     same path as polling and the R key
#   - RFC 2177 recommends re-issuing IDLE before 30 minutes
# =============================================================================

import asyncio
import logging
import re
from collections.abc import Callable

from kestrel_tui.errors import AuthError
from kestrel_tui.remote.base import RemoteError
from kestrel_tui.remote.imap import ImapConnection

logger = logging.getLogger(__name__)

# Untagged responses that mean the mailbox changed
_CHANGE_PATTERN = re.compile(r"^\*?\s*\d+\s+(EXISTS|EXPUNGE|FETCH)\b", re.IGNORECASE)


def is_change_notification(line: str) -> bool:
    """True for EXISTS / EXPUNGE / FETCH pushes (aioimaplib may strip the *)."""
    return bool(_CHANGE_PATTERN.match(line.strip()))


class IdleWatcher:
    """
    Watches one mailbox via IMAP IDLE.

    Usage:
        >>> watcher = IdleWatcher(connection, "INBOX", engine.request_refresh)
        >>> watcher.start()
        >>> # ... later ...
        >>> await watcher.stop()
    """

    # How long to wait before reconnecting after an error
    RECONNECT_DELAY = 30  # seconds

    # How long to keep IDLE before re-issuing it
    IDLE_TIMEOUT = 29 * 60  # 29 minutes

    def __init__(
        self,
        connection: ImapConnection,
        folder_id: str,
        on_change: Callable[[str], None],
    ) -> None:
        """
        Args:
            connection: Dedicated IMAP connection for IDLE.
            folder_id: Mailbox to watch.
            on_change: Called with folder_id when the mailbox changes.
        """
        self.connection = connection
        self.folder_id = folder_id
        self.on_change = on_change
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("IdleWatcher already running")
            return
        self._task = asyncio.create_task(self._watch(), name=f"idle-{self.folder_id}")

    async def stop(self) -> None:
        """Stop watching and disconnect."""
        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(asyncio.gather(self._task, return_exceptions=True), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("IDLE task did not stop cleanly, forcing disconnect")
            self._task = None
        try:
            await asyncio.wait_for(self.connection.disconnect(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning("Timeout disconnecting IDLE connection")

    async def _watch(self) -> None:
        logger.info(f"Starting IDLE watcher on {self.folder_id}")
        while True:
            try:
                await self.connection.ensure_connected()
                if not self.connection.supports_idle():
                    logger.warning("Server does not support IDLE")
                    return
                await self.connection.select(self.folder_id)
                await self._idle_loop()
            except AuthError as e:
                # Needs user intervention; the sync path reports it
                logger.error(f"IDLE auth failed: {e}")
                return
            except RemoteError as e:
                logger.warning(f"IDLE connection lost: {e}")
                logger.info(f"Reconnecting IDLE in {self.RECONNECT_DELAY}s")
                await asyncio.sleep(self.RECONNECT_DELAY)

    async def _idle_loop(self) -> None:
        while True:
            await self.connection.idle_start()
            notifications = await self.connection.idle_wait(self.IDLE_TIMEOUT)
            await self.connection.idle_done()

            if any(is_change_notification(line) for line in notifications):
                logger.info(f"IDLE: {self.folder_id} changed")
                self.on_change(self.folder_id)
            elif not notifications:
                logger.debug(f"IDLE refresh for {self.folder_id}")
