# =============================================================================
# Mail Cache
# =============================================================================
# The session's in-memory picture of the mailbox, and the single point where
# remote truth and optimistic user intent meet.
#
# Contents:
#   - Folders, keyed by mailbox name, with their sync cursors
#   - Message copies, keyed by (folder_id, message_id). Gmail shows the same
#     message in several mailboxes (INBOX and All Mail), so each mailbox
#     holds its own copy.
#   - Pending optimistic entries, keyed by correlation id
#
# Every mutation runs under one re-entrant lock and bumps `version`, so delta
# application, optimistic apply, finalize and rollback are totally ordered.
#
# Optimistic protocol:
#   1. apply_optimistic(action) records a deep copy of every copy it touches
#      (the pre-image; None if the copy did not exist) and then changes the
#      view. The touched copies are "pinned".
#   2. A delta that touches a pinned copy updates the pre-image, not the
#      view, so the user never sees the change flicker back.
#   3. finalize(cid) drops the pre-image; the view stays.
#      rollback(cid) puts the pre-image back exactly.
#
# If two pending entries touch the same copy, the later entry's pre-image is
# the earlier entry's optimistic state. Rolling back the earlier entry then
# hands its pre-image on to the later one instead of touching the view.
# =============================================================================

import copy
import itertools
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from kestrel_tui.core import Folder, FolderType, Message, MessageFlags, Thread
from kestrel_tui.core.action import Action, Archive, Delete, MarkRead, SaveDraft, Send, Star
from kestrel_tui.core.message import BodyState
from kestrel_tui.remote.base import SyncDelta

logger = logging.getLogger(__name__)

# (folder_id, message_id)
CopyKey = tuple[str, str]

_OLDEST = datetime.min


@dataclass
class PendingEntry:
    """
    One optimistic change waiting for remote confirmation.

    Attributes:
        correlation_id: Identifier handed back to the dispatcher.
        action: The action that was applied.
        folder_id: Folder the action was issued from.
        sequence: Creation order among pending entries.
        message_ids: Messages the remote call has to change.
        pre_images: Copy state before the action (None = absent).
    """
    correlation_id: str
    action: Action
    folder_id: str
    sequence: int = 0
    message_ids: list[str] = field(default_factory=list)
    pre_images: dict[CopyKey, Message | None] = field(default_factory=dict)


class MailCache:
    """
    Thread-safe cache of folders and messages with optimistic updates.

    Usage:
        cache = MailCache()
        cache.upsert_folders(folders)
        cache.apply_delta("INBOX", delta)
        cid = cache.apply_optimistic(Archive(message_id), folder_id="INBOX")
        cache.finalize(cid)   # or cache.rollback(cid)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._folders: dict[str, Folder] = {}
        self._copies: dict[str, dict[str, Message]] = {}
        self._pending: dict[str, PendingEntry] = {}
        self._ids = itertools.count(1)
        self._listeners: list[Callable[[int], None]] = []
        self.version = 0

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @contextmanager
    def _serialized(self) -> Iterator[None]:
        """Run a mutation under the cache lock and publish the new version."""
        with self._lock:
            yield
            self.version += 1
            version = self.version
        for listener in list(self._listeners):
            listener(version)

    def add_listener(self, callback: Callable[[int], None]) -> None:
        """Call `callback(version)` after every mutation."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[int], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------

    def upsert_folders(self, folders: list[Folder]) -> None:
        """
        Add new folders and refresh name/role of known ones.

        Cursors, stale markers and cached messages of known folders are kept.
        """
        with self._serialized():
            for folder in folders:
                known = self._folders.get(folder.id)
                if known is None:
                    self._folders[folder.id] = copy.copy(folder)
                    self._copies.setdefault(folder.id, {})
                else:
                    known.name = folder.name
                    known.folder_type = folder.folder_type
                self._recount(folder.id)

    def folder(self, folder_id: str) -> Folder | None:
        with self._lock:
            return self._folders.get(folder_id)

    def folders(self) -> list[Folder]:
        with self._lock:
            return list(self._folders.values())

    def folder_by_type(self, folder_type: FolderType) -> Folder | None:
        with self._lock:
            for folder in self._folders.values():
                if folder.folder_type == folder_type:
                    return folder
            return None

    def mark_stale(self, folder_id: str, stale: bool = True) -> None:
        with self._serialized():
            folder = self._folders.get(folder_id)
            if folder:
                folder.stale = stale

    def reset_cursor(self, folder_id: str) -> None:
        """Forget a folder's cursor so the next sync is a full listing."""
        with self._serialized():
            folder = self._folders.get(folder_id)
            if folder:
                folder.cursor = None

    def load(self, folders: list[Folder], messages: list[Message]) -> None:
        """Seed the cache from durable storage (warm start)."""
        with self._serialized():
            for folder in folders:
                self._folders[folder.id] = copy.copy(folder)
                self._copies.setdefault(folder.id, {})
            for message in messages:
                self._copies.setdefault(message.folder_id, {})[message.id] = copy.deepcopy(message)
            for folder_id in self._folders:
                self._recount(folder_id)
        logger.info(f"Cache loaded: {len(folders)} folders, {len(messages)} messages")

    # -------------------------------------------------------------------------
    # Remote deltas
    # -------------------------------------------------------------------------

    def apply_delta(self, folder_id: str, delta: SyncDelta) -> None:
        """
        Fold a remote delta into the cache and advance the folder cursor.

        Applying the same delta twice leaves the same state.

        Args:
            folder_id: Folder the delta belongs to.
            delta: Changes reported by the remote client.
        """
        with self._serialized():
            folder = self._folders.get(folder_id)
            if folder is None:
                folder = Folder(id=folder_id, folder_type=Folder.detect_type(folder_id))
                self._folders[folder_id] = folder
            copies = self._copies.setdefault(folder_id, {})

            removed = set(delta.removed_ids)
            if delta.reset:
                listed = {m.id for m in delta.changed}
                removed |= set(copies) - listed
                # Pinned copies the server no longer lists are gone as well
                removed |= {
                    mid for (fid, mid) in self._pinned_keys()
                    if fid == folder_id and mid not in listed
                }

            for message in delta.changed:
                incoming = copy.deepcopy(message)
                incoming.folder_id = folder_id
                self._write_truth((folder_id, incoming.id), incoming)

            for message_id, flags in delta.flag_updates.items():
                self._update_truth_flags((folder_id, message_id), flags)

            for message_id in removed:
                self._write_truth((folder_id, message_id), None)

            if delta.new_cursor:
                folder.cursor = delta.new_cursor
            folder.last_sync = delta.fetched_at
            self._recount(folder_id)

    def _write_truth(self, key: CopyKey, incoming: Message | None) -> None:
        """Record server state for a copy, in the pre-image if it is pinned."""
        entry = self._first_pending_for(key)
        if entry is not None:
            previous = entry.pre_images[key]
            entry.pre_images[key] = self._merge_local(previous, incoming)
            return

        folder_id, message_id = key
        copies = self._copies.setdefault(folder_id, {})
        merged = self._merge_local(copies.get(message_id), incoming)
        if merged is None:
            copies.pop(message_id, None)
        else:
            copies[message_id] = merged

    def _update_truth_flags(self, key: CopyKey, flags: MessageFlags) -> None:
        entry = self._first_pending_for(key)
        if entry is not None:
            target = entry.pre_images[key]
        else:
            target = self._copies.get(key[0], {}).get(key[1])
        if target is not None:
            target.flags = flags

    @staticmethod
    def _merge_local(previous: Message | None, incoming: Message | None) -> Message | None:
        """Keep a fetched body across envelope updates; the server sends none."""
        if incoming is None or previous is None:
            return incoming
        if incoming.body is None and previous.body is not None:
            incoming.body = previous.body
            incoming.body_state = BodyState.FETCHED
        return incoming

    # -------------------------------------------------------------------------
    # Optimistic mutations
    # -------------------------------------------------------------------------

    def apply_optimistic(self, action: Action, folder_id: str) -> str:
        """
        Apply a mutating action to the view and remember how to undo it.

        Archive, Delete and Star act on the whole thread of the message within
        `folder_id`; MarkRead marks the thread read. Send and SaveDraft leave
        the view alone but are still tracked as pending.

        Args:
            action: A mutating action.
            folder_id: Folder the action was issued from.

        Returns:
            Correlation id for finalize() / rollback().

        Raises:
            KeyError: If the target message is not cached in the folder.
            TypeError: If the action does not mutate mail.
        """
        with self._serialized():
            sequence = next(self._ids)
            cid = f"op-{sequence}"
            entry = PendingEntry(correlation_id=cid, action=action, folder_id=folder_id, sequence=sequence)

            if isinstance(action, (Send, SaveDraft)):
                self._pending[cid] = entry
                return cid
            if not isinstance(action, (Archive, Delete, Star, MarkRead)):
                raise TypeError(f"Not a mutating action: {action!r}")

            members = self._thread_members(folder_id, action.message_id)
            entry.message_ids = [m.id for m in members]

            if isinstance(action, Archive):
                archive = self.folder_by_type(FolderType.ARCHIVE)
                for message in members:
                    self._move(entry, message, folder_id, archive.id if archive else None)
            elif isinstance(action, Delete):
                trash = self.folder_by_type(FolderType.TRASH)
                archive = self.folder_by_type(FolderType.ARCHIVE)
                for message in members:
                    if archive and archive.id != folder_id:
                        self._remove_copy(entry, (archive.id, message.id))
                    target = trash.id if trash and trash.id != folder_id else None
                    self._move(entry, message, folder_id, target)
            elif isinstance(action, Star):
                for message in members:
                    self._set_flag_everywhere(entry, message.id, MessageFlags.FLAGGED, action.starred)
            else:
                for message in members:
                    self._set_flag_everywhere(entry, message.id, MessageFlags.SEEN, True)

            self._pending[cid] = entry
            for fid in {key[0] for key in entry.pre_images}:
                self._recount(fid)
            logger.debug(f"Optimistic {type(action).__name__} {cid}: {len(entry.pre_images)} copies")
            return cid

    def finalize(self, correlation_id: str) -> None:
        """Accept an optimistic change as confirmed by the server."""
        with self._serialized():
            entry = self._pending.pop(correlation_id, None)
            if entry is not None:
                logger.debug(f"Finalized {correlation_id}")

    def rollback(self, correlation_id: str) -> None:
        """Restore every copy an optimistic change touched to its pre-image."""
        with self._serialized():
            entry = self._pending.pop(correlation_id, None)
            if entry is None:
                return
            for key, pre in entry.pre_images.items():
                later = self._next_pending_after(entry, key)
                if later is not None:
                    later.pre_images[key] = pre
                    continue
                folder_id, message_id = key
                copies = self._copies.setdefault(folder_id, {})
                if pre is None:
                    copies.pop(message_id, None)
                else:
                    copies[message_id] = pre
            for fid in {key[0] for key in entry.pre_images}:
                self._recount(fid)
            logger.debug(f"Rolled back {correlation_id}")

    def rollback_all(self) -> list[str]:
        """Roll back every pending entry, newest first. Returns their ids."""
        with self._serialized():
            ids = list(self._pending)
            for cid in reversed(ids):
                self.rollback(cid)
            return ids

    def pending_entry(self, correlation_id: str) -> PendingEntry | None:
        with self._lock:
            return self._pending.get(correlation_id)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _thread_members(self, folder_id: str, message_id: str) -> list[Message]:
        copies = self._copies.get(folder_id, {})
        anchor = copies.get(message_id)
        if anchor is None:
            raise KeyError(f"Message {message_id} is not cached in {folder_id}")
        return [m for m in copies.values() if m.thread_id == anchor.thread_id]

    def _capture(self, entry: PendingEntry, key: CopyKey) -> None:
        if key in entry.pre_images:
            return
        current = self._copies.get(key[0], {}).get(key[1])
        entry.pre_images[key] = copy.deepcopy(current)

    def _move(self, entry: PendingEntry, message: Message, source: str, target: str | None) -> None:
        self._remove_copy(entry, (source, message.id))
        if target is None or target == source:
            return
        key = (target, message.id)
        self._capture(entry, key)
        copies = self._copies.setdefault(target, {})
        if message.id not in copies:
            moved = copy.deepcopy(message)
            moved.folder_id = target
            copies[message.id] = moved

    def _remove_copy(self, entry: PendingEntry, key: CopyKey) -> None:
        copies = self._copies.get(key[0], {})
        if key[1] not in copies:
            return
        self._capture(entry, key)
        del copies[key[1]]

    def _set_flag_everywhere(self, entry: PendingEntry, message_id: str, flag: MessageFlags, on: bool) -> None:
        for folder_id, copies in self._copies.items():
            message = copies.get(message_id)
            if message is not None:
                self._capture(entry, (folder_id, message_id))
                message.set_flag(flag, on)

    def _pinned_keys(self) -> set[CopyKey]:
        keys: set[CopyKey] = set()
        for entry in self._pending.values():
            keys.update(entry.pre_images)
        return keys

    def _first_pending_for(self, key: CopyKey) -> PendingEntry | None:
        for entry in self._pending.values():
            if key in entry.pre_images:
                return entry
        return None

    def _next_pending_after(self, entry: PendingEntry, key: CopyKey) -> PendingEntry | None:
        # `entry` is already popped, so compare creation order explicitly
        for candidate in self._pending.values():
            if candidate.sequence > entry.sequence and key in candidate.pre_images:
                return candidate
        return None

    # -------------------------------------------------------------------------
    # Bodies
    # -------------------------------------------------------------------------

    def mark_body_loading(self, message_id: str) -> None:
        with self._serialized():
            for message in self._all_copies(message_id):
                if message.body_state == BodyState.NOT_FETCHED:
                    message.body_state = BodyState.LOADING

    def set_body(self, message_id: str, body: str | None) -> None:
        """
        Store a fetched body on every copy of the message, pinned or not.
        None resets the copies to NOT_FETCHED (failed fetch).
        """
        with self._serialized():
            for message in self._all_copies(message_id):
                message.body = body
                message.body_state = BodyState.FETCHED if body is not None else BodyState.NOT_FETCHED

    def _all_copies(self, message_id: str) -> Iterator[Message]:
        for copies in self._copies.values():
            if message_id in copies:
                yield copies[message_id]
        for entry in self._pending.values():
            for (_, mid), pre in entry.pre_images.items():
                if mid == message_id and pre is not None:
                    yield pre

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find(self, message_id: str, folder_id: str | None = None) -> Message | None:
        """
        Look up a cached message.

        Args:
            message_id: Message to find.
            folder_id: Folder to look in; any folder if None.
        """
        with self._lock:
            if folder_id is not None:
                return self._copies.get(folder_id, {}).get(message_id)
            for copies in self._copies.values():
                if message_id in copies:
                    return copies[message_id]
            return None

    def messages(self, folder_id: str) -> list[Message]:
        with self._lock:
            return list(self._copies.get(folder_id, {}).values())

    def thread_messages(self, folder_id: str, message_id: str) -> list[Message]:
        """Members of a message's thread within a folder, oldest first."""
        with self._lock:
            try:
                members = self._thread_members(folder_id, message_id)
            except KeyError:
                return []
            return sorted(members, key=lambda m: (m.date_sent or _OLDEST, m.id))

    def snapshot(self, folder_id: str) -> list[Thread]:
        """Threads of a folder, newest first."""
        with self._lock:
            return self._threads(self._copies.get(folder_id, {}).values())

    def search(self, folder_id: str, query: str) -> list[Thread]:
        """
        Threads in a folder with a message matching `query`.

        Matching is a case-insensitive substring test over subject, sender
        and fetched body.
        """
        needle = query.strip().lower()
        with self._lock:
            copies = self._copies.get(folder_id, {})
            if not needle:
                return self._threads(copies.values())
            hits = {m.thread_id for m in copies.values() if m.matches(needle)}
            return self._threads(m for m in copies.values() if m.thread_id in hits)

    def visible_message_ids(self, folder_id: str) -> list[str]:
        """Latest message id of each thread, in list order."""
        return [t.latest_message_id for t in self.snapshot(folder_id)]

    @staticmethod
    def _threads(messages) -> list[Thread]:
        grouped: dict[str, list[Message]] = {}
        for message in messages:
            grouped.setdefault(message.thread_id, []).append(message)
        threads = [Thread.from_messages(tid, members) for tid, members in grouped.items()]
        threads.sort(key=lambda t: (t.latest_date or _OLDEST, t.id), reverse=True)
        return threads

    def _recount(self, folder_id: str) -> None:
        folder = self._folders.get(folder_id)
        if folder is None:
            return
        copies = self._copies.get(folder_id, {})
        folder.total_messages = len(copies)
        folder.unread_count = sum(1 for m in copies.values() if not m.is_read)
