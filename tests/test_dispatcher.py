# =============================================================================
# Action Dispatcher Tests
# =============================================================================

import pytest

from conftest import ListSelection
from kestrel_tui.core import ComposeDraft, ComposeKind, FolderType
from kestrel_tui.core.action import (
    Archive,
    Batch,
    Compose,
    Delete,
    Navigate,
    NavTarget,
    OpenFolder,
    OpenMessage,
    Refresh,
    RunCommand,
    SaveDraft,
    Search,
    Send,
    Star,
)
from kestrel_tui.dispatch import ActionDispatcher, BrowseState, EventKind
from kestrel_tui.errors import (
    AuthError,
    AuthErrorKind,
    CommandError,
    MutationError,
    MutationErrorKind,
    ValidationErrorKind,
)
from kestrel_tui.modal import ModalInputEngine, Mode
from kestrel_tui.modal import keys
from kestrel_tui.remote.base import MutationKind, RemoteError, RemoteErrorKind
from kestrel_tui.sync import RetryPolicy, SyncEngine

ALL_MAIL = "[Gmail]/All Mail"
TRASH = "[Gmail]/Trash"


class SleepRecorder:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def drain_events(dispatcher):
    events = []
    while not dispatcher.events.empty():
        events.append(dispatcher.events.get_nowait())
    return events


@pytest.fixture
def browse():
    return BrowseState()


@pytest.fixture
def engine(cache, browse):
    return ModalInputEngine(ListSelection(cache, browse))


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def dispatcher(cache, remote, engine, account, browse, sleeps):
    return ActionDispatcher(
        cache, remote, engine, account, browse,
        policy=RetryPolicy(initial_delay=1, max_attempts=5),
        sleep=sleeps,
    )


class TestMutations:
    @pytest.mark.asyncio
    async def test_archive_survives_transient_failures_without_flicker(self, dispatcher, cache, remote, sleeps):
        remote.mutate_failures = [RemoteError(RemoteErrorKind.TRANSIENT, "try again")] * 3
        reappeared = []
        cache.add_listener(lambda version: reappeared.append(cache.find("m2", "INBOX") is not None))

        result = dispatcher.dispatch(Archive("m2"))
        assert result.ok
        assert cache.find("m2", "INBOX") is None
        assert dispatcher.in_flight == 1

        await dispatcher.drain()

        assert sleeps.delays == [1, 2, 4]
        assert not any(reappeared)
        assert cache.pending_count == 0
        assert dispatcher.in_flight == 0
        # One remote call per thread member
        assert [(m.kind, m.message_id) for m in remote.mutations] == [
            (MutationKind.ARCHIVE, "m1"),
            (MutationKind.ARCHIVE, "m2"),
        ]
        assert drain_events(dispatcher) == []

    @pytest.mark.asyncio
    async def test_permanent_failure_rolls_back_and_reports(self, dispatcher, cache, remote, sleeps):
        remote.mutate_failures = [RemoteError(RemoteErrorKind.PERMANENT, "no such message")]

        dispatcher.dispatch(Star("m3", starred=False))
        assert not cache.find("m3", "INBOX").is_flagged
        await dispatcher.drain()

        assert cache.find("m3", "INBOX").is_flagged
        assert cache.pending_count == 0
        assert sleeps.delays == []
        [event] = drain_events(dispatcher)
        assert event.kind == EventKind.ERROR
        assert isinstance(event.error, MutationError)
        assert event.error.kind == MutationErrorKind.PERMANENT

    @pytest.mark.asyncio
    async def test_exhausted_retries_roll_back(self, dispatcher, cache, remote, sleeps):
        remote.mutate_failures = [RemoteError(RemoteErrorKind.TRANSIENT, "down")] * 5

        dispatcher.dispatch(Delete("m3"))
        await dispatcher.drain()

        assert remote.mutate_attempts == 5
        assert sleeps.delays == [1, 2, 4, 8]
        assert cache.find("m3", "INBOX") is not None
        assert cache.messages(TRASH) == []
        [event] = drain_events(dispatcher)
        assert event.error.kind == MutationErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_conflict_forces_full_resync(self, cache, remote, engine, account, browse, fast_policy):
        sync = SyncEngine(remote, cache, policy=fast_policy, check_interval=0)
        dispatcher = ActionDispatcher(cache, remote, engine, account, browse, sync=sync, policy=fast_policy)
        remote.mutate_failures = [RemoteError(RemoteErrorKind.CONFLICT, "uidvalidity changed")]

        dispatcher.dispatch(Archive("m3"))
        await dispatcher.drain()

        assert remote.delta_calls == 1
        assert cache.find("m3", "INBOX") is not None
        assert cache.folder("INBOX").cursor == "7:1-3"
        [event] = drain_events(dispatcher)
        assert event.error.kind == MutationErrorKind.CONFLICT

    @pytest.mark.asyncio
    async def test_failure_after_partial_thread_success_resyncs(self, cache, remote, engine, account, browse, fast_policy):
        sync = SyncEngine(remote, cache, policy=fast_policy, check_interval=0)
        dispatcher = ActionDispatcher(cache, remote, engine, account, browse, sync=sync, policy=fast_policy)
        remote.failing_ids = {"m2": RemoteError(RemoteErrorKind.PERMANENT, "no such message")}

        dispatcher.dispatch(Archive("m2"))
        await dispatcher.drain()

        # m1 really was archived, so the rolled-back view is re-listed
        assert [(m.kind, m.message_id) for m in remote.mutations] == [(MutationKind.ARCHIVE, "m1")]
        assert remote.cursors == [None]
        assert cache.pending_count == 0
        [event] = drain_events(dispatcher)
        assert event.error.kind == MutationErrorKind.PERMANENT

    @pytest.mark.asyncio
    async def test_failure_before_any_success_does_not_resync(self, cache, remote, engine, account, browse, fast_policy):
        sync = SyncEngine(remote, cache, policy=fast_policy, check_interval=0)
        dispatcher = ActionDispatcher(cache, remote, engine, account, browse, sync=sync, policy=fast_policy)
        remote.failing_ids = {"m1": RemoteError(RemoteErrorKind.PERMANENT, "no such message")}

        dispatcher.dispatch(Archive("m2"))
        await dispatcher.drain()

        assert remote.mutations == []
        assert remote.delta_calls == 0
        assert cache.find("m1", "INBOX") is not None

    @pytest.mark.asyncio
    async def test_revoked_grant_abandons_everything(self, dispatcher, cache, remote):
        # A pending entry the dispatcher did not schedule is rolled back too
        cache.apply_optimistic(Star("m3", starred=False), "INBOX")
        remote.mutate_failures = [AuthError(AuthErrorKind.REVOKED, "invalid_grant")]

        dispatcher.dispatch(Archive("m2"))
        await dispatcher.drain()

        assert cache.pending_count == 0
        assert cache.find("m2", "INBOX") is not None
        assert cache.find("m3", "INBOX").is_flagged
        [event] = drain_events(dispatcher)
        assert event.kind == EventKind.REAUTH
        assert event.is_error

    @pytest.mark.asyncio
    async def test_batch_archives_each_thread(self, dispatcher, cache, remote):
        result = dispatcher.dispatch(Batch((Archive("m2"), Archive("m3"))))

        assert result.notice == "Archived 2 threads"
        assert cache.messages("INBOX") == []
        assert dispatcher.in_flight == 2
        await dispatcher.drain()
        assert sorted(m.message_id for m in remote.mutations) == ["m1", "m2", "m3"]
        assert cache.pending_count == 0

    @pytest.mark.asyncio
    async def test_batch_counts_skipped_threads(self, dispatcher, cache):
        result = dispatcher.dispatch(Batch((Delete("m3"), Delete("gone"))))
        assert result.notice == "Deleted 1 threads (1 skipped)"
        assert cache.find("m3", TRASH) is not None

    @pytest.mark.asyncio
    async def test_archive_from_all_mail_is_a_notice(self, dispatcher, browse, remote):
        browse.folder_id = ALL_MAIL
        result = dispatcher.dispatch(Archive("m1"))
        assert result.ok
        assert result.notice == "Already archived"
        assert result.correlation_id is None
        await dispatcher.drain()
        assert remote.mutate_attempts == 0

    @pytest.mark.asyncio
    async def test_delete_from_trash_is_a_notice(self, dispatcher, browse):
        browse.folder_id = TRASH
        assert dispatcher.dispatch(Delete("m1")).notice == "Already in Trash"

    @pytest.mark.asyncio
    async def test_missing_message_is_a_notice(self, dispatcher):
        result = dispatcher.dispatch(Archive("gone"))
        assert result.correlation_id is None
        assert "no longer" in result.notice


class TestReading:
    @pytest.mark.asyncio
    async def test_open_unread_message_fetches_body_and_marks_read(self, dispatcher, cache, remote, browse, engine):
        result = dispatcher.dispatch(OpenMessage("m2"))

        assert browse.open_message_id == "m2"
        assert engine.selected_message_id == "m2"
        assert len(result.follow_up) == 1
        assert result.follow_up[0].correlation_id is not None
        assert cache.find("m2", "INBOX").is_read

        await dispatcher.drain()

        assert cache.find("m2", "INBOX").body == "Body of m2"
        assert {m.kind for m in remote.mutations} == {MutationKind.MARK_READ}
        [event] = drain_events(dispatcher)
        assert event.kind == EventKind.BODY_LOADED
        assert event.message_id == "m2"

    @pytest.mark.asyncio
    async def test_open_read_message_with_body_stays_local(self, dispatcher, cache, remote):
        cache.set_body("m1", "cached")
        result = dispatcher.dispatch(OpenMessage("m1"))
        await dispatcher.drain()
        assert result.follow_up == []
        assert remote.mutate_attempts == 0
        assert drain_events(dispatcher) == []

    @pytest.mark.asyncio
    async def test_failed_body_fetch_reports_error(self, dispatcher, cache, remote):
        remote.body_failures = [RemoteError(RemoteErrorKind.PERMANENT, "gone")]
        cache.set_body("m1", None)
        dispatcher.dispatch(OpenMessage("m1"))
        await dispatcher.drain()

        assert cache.find("m1", "INBOX").body is None
        [event] = drain_events(dispatcher)
        assert event.kind == EventKind.ERROR
        assert event.message_id == "m1"

    @pytest.mark.asyncio
    async def test_search_sets_and_clears_filter(self, dispatcher, browse):
        result = dispatcher.dispatch(Search("invoice"))
        assert browse.search_query == "invoice"
        assert result.notice == "1 threads match 'invoice'"

        dispatcher.dispatch(Search("  "))
        assert browse.search_query is None

    @pytest.mark.asyncio
    async def test_navigation_is_local(self, dispatcher, remote):
        assert dispatcher.dispatch(Navigate(NavTarget.NEXT)).ok
        assert remote.mutate_attempts == 0


class TestCommands:
    @pytest.mark.asyncio
    async def test_unknown_command(self, dispatcher):
        result = dispatcher.dispatch(RunCommand("bogus"))
        assert not result.ok
        assert isinstance(result.error, CommandError)
        assert result.banner == "Unknown command: bogus"

    @pytest.mark.asyncio
    async def test_folder_command_switches_folder(self, dispatcher, browse, engine):
        browse.search_query = "lunch"
        engine.handle_key("j")
        dispatcher.dispatch(RunCommand("sent"))
        assert browse.folder_id == "[Gmail]/Sent Mail"
        assert browse.search_query is None
        assert engine.state.cursor == 0

    @pytest.mark.asyncio
    async def test_quit_command(self, dispatcher, engine):
        dispatcher.dispatch(RunCommand("quit"))
        assert engine.mode == Mode.QUIT

    @pytest.mark.asyncio
    async def test_refresh_without_sync(self, dispatcher):
        assert dispatcher.dispatch(Refresh()).notice == "Sync is disabled"

    @pytest.mark.asyncio
    async def test_refresh_of_stale_folder_resyncs(self, cache, remote, engine, account, browse, fast_policy):
        sync = SyncEngine(remote, cache, policy=fast_policy, check_interval=0)
        dispatcher = ActionDispatcher(cache, remote, engine, account, browse, sync=sync, policy=fast_policy)
        cache.mark_stale("INBOX")

        assert dispatcher.dispatch(Refresh()).notice.startswith("Resyncing")
        await dispatcher.drain()

        assert not cache.folder("INBOX").stale
        assert remote.delta_calls == 1


class TestCompose:
    @pytest.mark.asyncio
    async def test_send_validation_failure_stays_local(self, dispatcher, remote, cache):
        result = dispatcher.dispatch(Send(ComposeDraft(subject="Hi")))
        assert not result.ok
        assert result.error.kind == ValidationErrorKind.EMPTY_RECIPIENT
        assert cache.pending_count == 0
        await dispatcher.drain()
        assert remote.mutate_attempts == 0

    @pytest.mark.asyncio
    async def test_send_closes_compose_after_success(self, dispatcher, engine, remote):
        dispatcher.dispatch(engine.handle_key("c"))
        editor = engine.editor
        assert editor is not None
        editor.draft.to = "bob@example.com"
        editor.draft.subject = "Hi"

        result = dispatcher.dispatch(Send(editor.draft))
        assert result.notice == "Sending..."
        # Still open until the server accepts it
        assert engine.editor is editor

        await dispatcher.drain()
        assert engine.editor is None
        assert remote.mutations[0].kind == MutationKind.SEND
        assert [e.text for e in drain_events(dispatcher)] == ["Message sent"]

    @pytest.mark.asyncio
    async def test_failed_send_keeps_compose_open(self, dispatcher, engine, remote, cache):
        dispatcher.dispatch(engine.handle_key("c"))
        editor = engine.editor
        editor.draft.to = "bob@example.com"
        editor.draft.body = ["hello"]
        remote.mutate_failures = [RemoteError(RemoteErrorKind.PERMANENT, "550 rejected")]

        dispatcher.dispatch(Send(editor.draft))
        await dispatcher.drain()

        assert engine.editor is editor
        assert cache.pending_count == 0
        [event] = drain_events(dispatcher)
        assert event.kind == EventKind.ERROR

    @pytest.mark.asyncio
    async def test_second_send_while_sending_is_refused(self, dispatcher, engine, remote):
        dispatcher.dispatch(engine.handle_key("c"))
        for key in [*"bob@example.com", keys.TAB, keys.TAB, *"Hi"]:
            engine.handle_key(key)

        first = dispatcher.dispatch(engine.handle_key(keys.ctrl("s")))
        second = dispatcher.dispatch(engine.handle_key(keys.ctrl("s")))
        engine.handle_key(keys.ESCAPE)
        saving = dispatcher.dispatch(engine.handle_key(keys.ctrl("d")))

        assert first.correlation_id is not None
        assert second.correlation_id is None
        assert second.notice == "Already sending"
        assert saving.notice == "Already sending"
        await dispatcher.drain()
        assert [m.kind for m in remote.mutations] == [MutationKind.SEND]
        assert engine.editor is None

    @pytest.mark.asyncio
    async def test_send_can_be_retried_after_failure(self, dispatcher, engine, remote):
        dispatcher.dispatch(engine.handle_key("c"))
        editor = engine.editor
        editor.draft.to = "bob@example.com"
        editor.draft.subject = "Hi"
        remote.mutate_failures = [RemoteError(RemoteErrorKind.PERMANENT, "550 rejected")]

        dispatcher.dispatch(engine.handle_key(keys.ctrl("s")))
        await dispatcher.drain()
        assert engine.editor is editor

        retry = dispatcher.dispatch(engine.handle_key(keys.ctrl("s")))
        assert retry.correlation_id is not None
        await dispatcher.drain()
        assert [m.kind for m in remote.mutations] == [MutationKind.SEND]

    @pytest.mark.asyncio
    async def test_escape_saves_draft_then_closes(self, dispatcher, engine, remote):
        dispatcher.dispatch(engine.handle_key("c"))
        for key in [*"bob@example.com", keys.ESCAPE]:
            engine.handle_key(key)

        result = dispatcher.dispatch(engine.handle_key(keys.ESCAPE))
        assert result.notice == "Saving draft..."
        await dispatcher.drain()
        assert [m.kind for m in remote.mutations] == [MutationKind.SAVE_DRAFT]
        assert remote.mutations[0].draft.to == "bob@example.com"
        assert engine.editor is None

    @pytest.mark.asyncio
    async def test_save_empty_draft_is_a_notice(self, dispatcher):
        assert dispatcher.dispatch(SaveDraft(ComposeDraft())).notice == "Nothing to save"

    @pytest.mark.asyncio
    async def test_reply_waits_for_body_then_seeds(self, dispatcher, engine, remote):
        remote.bodies["m3"] = "Please pay by Friday"
        engine.handle_key("j")
        action = engine.handle_key("r")
        assert action == Compose(ComposeKind.REPLY, "m3")
        assert engine.mode == Mode.INSERT

        dispatcher.dispatch(action)
        # Keys typed while the body loads are held for the editor
        engine.handle_key("O")
        engine.handle_key("K")
        assert engine.editor is None

        await dispatcher.drain()

        editor = engine.editor
        assert editor is not None
        assert editor.draft.to == "billing@example.com"
        assert editor.draft.subject == "Re: Invoice 42"
        assert editor.draft.body[0] == "OK"
        assert "> Please pay by Friday" in editor.draft.body

    @pytest.mark.asyncio
    async def test_reply_with_unloadable_body_still_opens(self, dispatcher, engine, remote):
        remote.body_failures = [RemoteError(RemoteErrorKind.PERMANENT, "gone")]
        engine.handle_key("j")
        dispatcher.dispatch(engine.handle_key("r"))
        await dispatcher.drain()

        assert engine.editor is not None
        texts = [e.text for e in drain_events(dispatcher)]
        assert "Original message could not be loaded; quoting nothing" in texts

    @pytest.mark.asyncio
    async def test_open_folder_by_type(self, dispatcher, browse):
        dispatcher.dispatch(OpenFolder(FolderType.TRASH))
        assert browse.folder_id == TRASH
