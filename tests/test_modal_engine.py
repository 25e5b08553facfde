# =============================================================================
# Modal Input Engine Tests
# =============================================================================

import pytest

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
    Quit,
    Refresh,
    RunCommand,
    Search,
    Send,
    ShowHelp,
    Star,
)
from kestrel_tui.errors import CommandError, CommandErrorKind
from kestrel_tui.modal import ComposeEditor, ModalInputEngine, Mode, TransitionTable, View, resolve_command
from kestrel_tui.modal import keys
from kestrel_tui.modal.commands import COMMANDS, complete


class StaticSelection:
    def __init__(self, ids, starred=()):
        self.ids = list(ids)
        self.starred = set(starred)

    def visible_message_ids(self):
        return self.ids

    def is_starred(self, message_id):
        return message_id in self.starred


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return ModalInputEngine(StaticSelection(["a", "b", "c"], starred={"b"}), clock=clock)


def press(engine, *sequence):
    """Feed keys, returning the last non-None action."""
    result = None
    for key in sequence:
        action = engine.handle_key(key)
        if action is not None:
            result = action
    return result


class TestTransitionTable:
    def test_every_state_has_a_default(self, engine):
        # Construction runs the totality check; QUIT swallows everything
        engine.request_quit()
        assert engine.handle_key("j") is None
        assert engine.mode == Mode.QUIT

    def test_missing_default_fails_totality_check(self):
        table = TransitionTable("partial")
        table.set_default(Mode.NORMAL, lambda k: None)
        with pytest.raises(ValueError):
            table.check_total([Mode.NORMAL, Mode.COMMAND])

    def test_duplicate_binding_is_rejected(self):
        table = TransitionTable("dupes")
        table.bind(Mode.NORMAL, "j", lambda k: None)
        with pytest.raises(ValueError):
            table.bind(Mode.NORMAL, ["k", "j"], lambda k: None)

    def test_exact_binding_beats_predicate(self):
        table = TransitionTable("order")
        table.bind(Mode.COMMAND, "x", lambda k: "exact")
        table.bind_when(Mode.COMMAND, keys.is_printable, lambda k: "printable")
        table.set_default(Mode.COMMAND, lambda k: "default")
        assert table.lookup(Mode.COMMAND, "x")("x") == "exact"
        assert table.lookup(Mode.COMMAND, "y")("y") == "printable"
        assert table.lookup(Mode.COMMAND, "ctrl+x")("ctrl+x") == "default"


class TestNavigation:
    def test_j_and_k_move_and_clamp(self, engine):
        assert engine.handle_key("j") == Navigate(NavTarget.NEXT)
        press(engine, "j", "j", "j")
        assert engine.state.cursor == 2
        press(engine, "k")
        assert engine.selected_message_id == "b"

    def test_capital_g_goes_to_last(self, engine):
        assert engine.handle_key("G") == Navigate(NavTarget.LAST)
        assert engine.state.cursor == 2

    def test_unbound_key_is_a_no_op(self, engine):
        assert engine.handle_key("z") is None
        assert engine.mode == Mode.NORMAL

    def test_enter_opens_message_and_pushes_view(self, engine):
        engine.handle_key("j")
        assert engine.handle_key(keys.ENTER) == OpenMessage("b")
        assert engine.view == View.MESSAGE

    def test_message_view_steps_between_threads(self, engine):
        press(engine, "l")
        assert engine.handle_key("j") == OpenMessage("b")
        assert engine.handle_key("k") == OpenMessage("a")
        # Already at the top
        assert engine.handle_key("k") is None

    def test_archive_from_message_view_returns_to_list(self, engine):
        press(engine, "j", "l")
        assert engine.handle_key("e") == Archive("b")
        assert engine.view == View.LIST

    def test_q_pops_then_quits(self, engine):
        press(engine, "l")
        assert engine.handle_key("q") is None
        assert engine.view == View.LIST
        assert engine.handle_key("q") == Quit()
        assert engine.mode == Mode.QUIT

    def test_star_toggles_current_state(self, engine):
        assert engine.handle_key("s") == Star("a", starred=True)
        engine.handle_key("j")
        assert engine.handle_key("s") == Star("b", starred=False)

    def test_help_overlay(self, engine):
        assert engine.handle_key("?") == ShowHelp()
        assert engine.view == View.HELP
        # List keys do nothing under the overlay
        assert engine.handle_key("e") is None
        engine.handle_key(keys.ESCAPE)
        assert engine.view == View.LIST

    def test_refresh(self, engine):
        assert engine.handle_key("R") == Refresh()

    def test_actions_on_empty_list_are_ignored(self, clock):
        engine = ModalInputEngine(StaticSelection([]), clock=clock)
        assert engine.handle_key("e") is None
        assert engine.handle_key(keys.ENTER) is None
        assert engine.selected_message_id is None


class TestSelection:
    def test_x_toggles_row(self, engine):
        press(engine, "x", "j", "x")
        assert engine.state.selected == {"a", "b"}
        press(engine, "x")
        assert engine.state.selected == {"a"}

    def test_shift_j_and_k_extend_while_moving(self, engine):
        assert engine.handle_key("J") == Navigate(NavTarget.NEXT)
        assert engine.state.selected == {"a", "b"}
        assert engine.state.cursor == 1
        press(engine, "J", "K")
        assert engine.state.selected == {"a", "b", "c"}
        assert engine.state.cursor == 1

    def test_bulk_archive_in_display_order(self, engine):
        press(engine, "G", "x", "k", "k", "x")
        assert engine.handle_key("e") == Batch((Archive("a"), Archive("c")))
        assert engine.state.selected == set()
        # Nothing marked: back to the row under the cursor
        assert engine.handle_key("d") == Delete("a")

    def test_marked_rows_that_left_the_list_are_dropped(self, engine):
        press(engine, "x", "j", "x")
        engine.selection.ids = ["b", "c"]
        assert engine.handle_key("d") == Batch((Delete("b"),))

    def test_escape_clears_before_quitting(self, engine):
        press(engine, "x")
        assert engine.handle_key(keys.ESCAPE) is None
        assert engine.state.selected == set()
        assert engine.mode == Mode.NORMAL
        assert engine.handle_key(keys.ESCAPE) == Quit()

    def test_q_quits_even_with_a_selection(self, engine):
        press(engine, "x")
        assert engine.handle_key("q") == Quit()

    def test_changing_folder_clears_selection(self, engine):
        press(engine, "x", "j", "x")
        press(engine, "g", "t")
        assert engine.state.selected == set()


class TestScrolling:
    def test_half_page_steps(self, engine):
        engine.set_viewport(30)
        press(engine, "l")
        engine.handle_key(keys.ctrl("d"))
        assert engine.state.scroll == 15
        engine.handle_key(" ")
        assert engine.state.scroll == 30
        engine.handle_key(keys.ctrl("u"))
        assert engine.state.scroll == 15
        press(engine, keys.ctrl("u"), keys.ctrl("u"))
        assert engine.state.scroll == 0

    def test_scroll_is_clamped_to_content(self, engine):
        press(engine, "l")
        engine.set_viewport(20, max_scroll=12)
        press(engine, " ", " ")
        assert engine.state.scroll == 12
        engine.set_viewport(20, max_scroll=4)
        assert engine.state.scroll == 4

    def test_moving_to_another_thread_starts_at_top(self, engine):
        press(engine, "l", " ")
        assert engine.state.scroll > 0
        assert engine.handle_key("j") == OpenMessage("b")
        assert engine.state.scroll == 0

    def test_scrolling_produces_no_action(self, engine):
        press(engine, "l")
        assert engine.handle_key(keys.ctrl("d")) is None
        assert engine.view == View.MESSAGE


class TestPrefix:
    def test_gg_goes_to_first(self, engine, clock):
        press(engine, "G")
        assert engine.handle_key("g") is None
        assert engine.state.pending is not None
        clock.now += 0.1
        assert engine.handle_key("g") == Navigate(NavTarget.FIRST)
        assert engine.state.cursor == 0
        assert engine.state.pending is None

    @pytest.mark.parametrize("second, folder_type", [
        ("i", FolderType.INBOX),
        ("t", FolderType.SENT),
        ("d", FolderType.DRAFTS),
        ("e", FolderType.TRASH),
        ("a", FolderType.ARCHIVE),
    ])
    def test_folder_sequences(self, engine, second, folder_type):
        assert press(engine, "g", second) == OpenFolder(folder_type)

    def test_unknown_second_key_is_processed_on_its_own(self, engine):
        engine.handle_key("g")
        # "x" is not a sequence; it toggles the selection like a lone "x"
        assert engine.handle_key("x") is None
        assert engine.state.pending is None
        assert engine.state.selected == {"a"}

    def test_unknown_second_key_acts(self, engine):
        engine.handle_key("g")
        assert engine.handle_key("j") == Navigate(NavTarget.NEXT)
        assert engine.state.cursor == 1
        engine.handle_key("g")
        assert engine.handle_key("c") == Compose(ComposeKind.NEW)
        assert engine.mode == Mode.INSERT

    def test_escape_cancels_prefix_only(self, engine):
        engine.handle_key("g")
        assert engine.handle_key(keys.ESCAPE) is None
        assert engine.state.pending is None
        assert engine.mode == Mode.NORMAL

    def test_key_after_timeout_is_fresh_input(self, engine, clock):
        engine.handle_key("g")
        clock.now += 0.6
        assert engine.handle_key("j") == Navigate(NavTarget.NEXT)
        assert engine.state.cursor == 1

    def test_expire_pending(self, engine, clock):
        engine.handle_key("g")
        assert not engine.expire_pending()
        clock.now += 1
        assert engine.expire_pending()
        assert engine.state.pending is None

    def test_explicit_timestamps(self, engine):
        engine.handle_key("g", now=10.0)
        assert engine.handle_key("i", now=10.4) == OpenFolder(FolderType.INBOX)


class TestCommandAndSearch:
    def test_command_line(self, engine):
        press(engine, ":")
        assert engine.mode == Mode.COMMAND
        press(engine, *"inbx", keys.BACKSPACE, "o", "x")
        assert engine.state.command_text == "inbox"
        assert engine.handle_key(keys.ENTER) == RunCommand("inbox")
        assert engine.mode == Mode.NORMAL

    def test_escape_cancels_command(self, engine):
        press(engine, ":", "q", keys.ESCAPE)
        assert engine.mode == Mode.NORMAL
        assert engine.state.command_text == ""

    def test_backspace_on_empty_line_leaves_mode(self, engine):
        press(engine, "/", keys.BACKSPACE)
        assert engine.mode == Mode.NORMAL

    def test_search_submits_query_and_resets_cursor(self, engine):
        press(engine, "j", "/", *"lunch")
        assert engine.handle_key(keys.ENTER) == Search("lunch")
        assert engine.state.cursor == 0

    def test_keys_typed_in_search_do_not_navigate(self, engine):
        press(engine, "/", "j", "q")
        assert engine.mode == Mode.SEARCH
        assert engine.state.search_text == "jq"

    def test_resolve_known_command(self):
        assert resolve_command("  Inbox ") == OpenFolder(FolderType.INBOX)
        assert resolve_command("refresh") == Refresh()
        assert resolve_command("quit") == Quit()

    def test_resolve_unknown_command(self):
        with pytest.raises(CommandError) as excinfo:
            resolve_command("bogus")
        assert excinfo.value.kind == CommandErrorKind.UNKNOWN
        assert str(excinfo.value) == "Unknown command: bogus"

    def test_complete(self):
        assert complete("dr") == ["drafts"]
        assert complete("") == list(COMMANDS)


class TestCompose:
    def test_compose_enters_insert_and_holds_keys(self, engine):
        assert engine.handle_key("c") == Compose(ComposeKind.NEW, None)
        assert engine.mode == Mode.INSERT
        assert engine.view == View.COMPOSE
        press(engine, *"bob@example.com")
        assert "".join(engine.state.typeahead) == "bob@example.com"

    def test_held_keys_are_replayed_into_editor(self, engine):
        press(engine, "c", *"bob@example.com", keys.TAB, keys.TAB, *"Hi")
        editor = ComposeEditor(ComposeDraft())
        assert engine.enter_compose(editor) == []
        assert engine.editor is editor
        assert editor.draft.to == "bob@example.com"
        assert editor.draft.subject == "Hi"
        assert engine.mode == Mode.COMPOSE_INSERT

    def test_replayed_send_is_returned(self, engine):
        press(engine, "c", *"x@y.z", keys.ctrl("s"))
        actions = engine.enter_compose(ComposeEditor(ComposeDraft()))
        assert len(actions) == 1
        assert isinstance(actions[0], Send)

    def test_escape_while_waiting_cancels_compose(self, engine):
        press(engine, "j", "r")
        assert engine.mode == Mode.INSERT
        engine.handle_key(keys.ESCAPE)
        assert engine.mode == Mode.NORMAL
        assert engine.view == View.LIST
        # The editor arriving late is ignored
        assert engine.enter_compose(ComposeEditor(ComposeDraft())) == []
        assert engine.editor is None

    def test_reply_targets_selected_message(self, engine):
        press(engine, "j")
        assert engine.handle_key("a") == Compose(ComposeKind.REPLY_ALL, "b")

    def test_keys_go_to_editor_and_q_discards(self, engine):
        press(engine, "c")
        engine.enter_compose(ComposeEditor(ComposeDraft()))
        press(engine, *"me@x.org", keys.ESCAPE)
        assert engine.mode == Mode.COMPOSE_NORMAL
        # "e" and "d" are editor motions/operators here, not archive/delete
        assert press(engine, "d", "d") is None
        assert engine.editor.draft.to == ""
        engine.handle_key("q")
        assert engine.editor is None
        assert engine.mode == Mode.NORMAL
        assert engine.view == View.LIST

    def test_close_compose_ignores_stale_editor(self, engine):
        press(engine, "c")
        editor = ComposeEditor(ComposeDraft())
        engine.enter_compose(editor)
        engine.close_compose(ComposeEditor(ComposeDraft()))
        assert engine.editor is editor
        engine.close_compose(editor)
        assert engine.view == View.LIST


class TestKeys:
    @pytest.mark.parametrize("key, character, expected", [
        ("j", "j", "j"),
        ("G", "G", "G"),
        ("slash", "/", "/"),
        ("question_mark", "?", "?"),
        ("space", " ", " "),
        ("enter", "\r", "enter"),
        ("escape", "\x1b", "escape"),
        ("backtab", None, "shift+tab"),
        ("ctrl+s", "\x13", "ctrl+s"),
        ("up", None, "up"),
    ])
    def test_normalize(self, key, character, expected):
        assert keys.normalize(key, character) == expected
