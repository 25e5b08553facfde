# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Kestrel-TUI test suite.
#
# Nothing here touches the network: FakeRemote stands in for Gmail and
# MemoryKeyring for the system keyring.
# =============================================================================

import asyncio
import copy
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from kestrel_tui.cache import MailCache
from kestrel_tui.config import AccountConfig, Config, SyncConfig
from kestrel_tui.core import Account, Folder, FolderType, GMAIL_MAILBOXES, Message, MessageFlags
from kestrel_tui.remote.base import Mutation, RemoteMailClient, SyncDelta
from kestrel_tui.sync import RetryPolicy


# =============================================================================
# Fakes
# =============================================================================

class FakeRemote(RemoteMailClient):
    """
    Scriptable in-memory mail service.

    Every sync returns a full listing. Failures are consumed in order from
    the `*_failures` lists before a call succeeds.
    """

    def __init__(self, folders: list[Folder], mailboxes: dict[str, list[Message]]) -> None:
        self.folders = folders
        self.mailboxes = {fid: {m.id: m for m in msgs} for fid, msgs in mailboxes.items()}
        self.bodies: dict[str, str] = {}

        self.sync_failures: list[BaseException] = []
        self.mutate_failures: list[BaseException] = []
        self.body_failures: list[BaseException] = []
        # Per-message failures, raised on every call for that message
        self.failing_ids: dict[str, BaseException] = {}

        self.mutations: list[Mutation] = []
        self.mutate_attempts = 0
        self.delta_calls = 0
        self.cursors: list[str | None] = []
        self.active_syncs = 0
        self.max_active_syncs = 0

    async def list_folders(self) -> list[Folder]:
        return [copy.copy(f) for f in self.folders]

    async def sync_delta(self, folder: Folder, cursor: str | None) -> SyncDelta:
        self.delta_calls += 1
        self.cursors.append(cursor)
        self.active_syncs += 1
        self.max_active_syncs = max(self.max_active_syncs, self.active_syncs)
        try:
            await asyncio.sleep(0)
            if self.sync_failures:
                raise self.sync_failures.pop(0)
            listed = [copy.deepcopy(m) for m in self.mailboxes.get(folder.id, {}).values()]
            return SyncDelta(changed=listed, new_cursor=f"7:1-{len(listed)}", reset=True)
        finally:
            self.active_syncs -= 1

    async def fetch_body(self, message_id: str) -> str:
        await asyncio.sleep(0)
        if self.body_failures:
            raise self.body_failures.pop(0)
        return self.bodies.get(message_id, f"Body of {message_id}")

    async def mutate(self, op: Mutation) -> None:
        self.mutate_attempts += 1
        await asyncio.sleep(0)
        if self.mutate_failures:
            raise self.mutate_failures.pop(0)
        if op.message_id in self.failing_ids:
            raise self.failing_ids[op.message_id]
        self.mutations.append(op)


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, username)]


class ListSelection:
    """SelectionSource over the threads of one cache folder."""

    def __init__(self, cache: MailCache, browse) -> None:
        self.cache = cache
        self.browse = browse

    def visible_message_ids(self) -> list[str]:
        return self.cache.visible_message_ids(self.browse.folder_id)

    def is_starred(self, message_id: str) -> bool:
        members = self.cache.thread_messages(self.browse.folder_id, message_id)
        return any(m.is_flagged for m in members)


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def account():
    """The signed-in test account."""
    return Account(
        email="me@gmail.com",
        display_name="Me",
        client_id="client.apps.googleusercontent.com",
        client_secret="secret",
    )


@pytest.fixture
def config():
    """A valid configuration with fast retries."""
    return Config(
        account=AccountConfig(
            email="me@gmail.com",
            display_name="Me",
            client_id="client.apps.googleusercontent.com",
            client_secret="secret",
        ),
        sync=SyncConfig(
            check_interval_seconds=0,
            use_idle=False,
            initial_backoff_seconds=0.001,
            max_backoff_seconds=0.001,
            max_attempts=3,
            attempt_timeout_seconds=5.0,
            persist_cache=False,
        ),
    )


@pytest.fixture
def fast_policy():
    """Retry policy whose waits are negligible."""
    return RetryPolicy(initial_delay=0.001, max_delay=0.001, max_attempts=3, attempt_timeout=5.0)


@pytest.fixture
def gmail_folders():
    """The standard Gmail mailboxes."""
    return [
        Folder(id=GMAIL_MAILBOXES[FolderType.INBOX], name="Inbox", folder_type=FolderType.INBOX),
        Folder(id=GMAIL_MAILBOXES[FolderType.SENT], folder_type=FolderType.SENT),
        Folder(id=GMAIL_MAILBOXES[FolderType.DRAFTS], folder_type=FolderType.DRAFTS),
        Folder(id=GMAIL_MAILBOXES[FolderType.TRASH], folder_type=FolderType.TRASH),
        Folder(id=GMAIL_MAILBOXES[FolderType.ARCHIVE], folder_type=FolderType.ARCHIVE),
    ]


@pytest.fixture
def inbox_messages():
    """
    Three inbox messages in two threads:
        t1: m1 (read) <- m2 (unread reply, newest overall)
        t3: m3 (unread, starred)
    """
    return [
        Message(
            id="m1",
            thread_id="t1",
            folder_id="INBOX",
            uid=1,
            message_id="<m1@example.com>",
            subject="Lunch on Friday",
            sender="alice@example.com",
            sender_name="Alice",
            recipients=["me@gmail.com", "bob@example.com"],
            date_sent=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
            flags=MessageFlags.SEEN,
        ),
        Message(
            id="m2",
            thread_id="t1",
            folder_id="INBOX",
            uid=2,
            message_id="<m2@example.com>",
            in_reply_to="<m1@example.com>",
            references=["<m1@example.com>"],
            subject="Re: Lunch on Friday",
            sender="bob@example.com",
            sender_name="Bob",
            recipients=["alice@example.com"],
            cc=["me@gmail.com", "carol@example.com"],
            date_sent=datetime(2024, 1, 17, 9, 0, tzinfo=timezone.utc),
        ),
        Message(
            id="m3",
            thread_id="t3",
            folder_id="INBOX",
            uid=3,
            message_id="<m3@example.com>",
            subject="Invoice 42",
            sender="billing@example.com",
            recipients=["me@gmail.com"],
            date_sent=datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc),
            flags=MessageFlags.FLAGGED,
        ),
    ]


@pytest.fixture
def remote(gmail_folders, inbox_messages):
    """FakeRemote holding the sample inbox."""
    return FakeRemote(gmail_folders, {"INBOX": inbox_messages})


@pytest.fixture
def cache(gmail_folders, inbox_messages):
    """A MailCache after one full sync of the sample inbox."""
    cache = MailCache()
    cache.upsert_folders(gmail_folders)
    cache.apply_delta("INBOX", SyncDelta(changed=inbox_messages, new_cursor="7:1-3", reset=True))
    return cache


@pytest.fixture
def memory_keyring():
    """Route keyring calls to an in-memory backend for the test."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)
