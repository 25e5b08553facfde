# =============================================================================
# Compose Editor Tests
# =============================================================================

from datetime import datetime, timezone

import pytest

from kestrel_tui.core import ComposeDraft, ComposeField, ComposeKind, Message, create_forward, create_reply
from kestrel_tui.core.action import SaveDraft, Send
from kestrel_tui.errors import ValidationError, ValidationErrorKind
from kestrel_tui.modal import ComposeEditor, Mode
from kestrel_tui.modal import keys
from kestrel_tui.modal.compose import word_backward, word_end, word_forward


def body_editor(*lines: str) -> ComposeEditor:
    """Editor in Compose-Normal on the first body line."""
    editor = ComposeEditor(ComposeDraft(to="bob@example.com", body=list(lines)), field=ComposeField.BODY)
    editor.handle_key(keys.ESCAPE)
    assert editor.mode == Mode.COMPOSE_NORMAL
    return editor


def feed(editor: ComposeEditor, text: str):
    result = None
    for key in text:
        action = editor.handle_key(key)
        if action is not None:
            result = action
    return result


class TestWordMotions:
    def test_word_forward(self):
        line = "hello, world  foo"
        assert word_forward(line, 0) == 5
        assert word_forward(line, 5) == 7
        assert word_forward(line, 7) == 14
        assert word_forward(line, 14) == len(line)

    def test_word_backward(self):
        line = "hello world"
        assert word_backward(line, 8) == 6
        assert word_backward(line, 6) == 0
        assert word_backward(line, 0) == 0

    def test_word_end(self):
        line = "hello world"
        assert word_end(line, 0) == 4
        assert word_end(line, 4) == 10


class TestOperators:
    def test_dw_deletes_word_and_following_space(self):
        editor = body_editor("hello world foo")
        feed(editor, "dw")
        assert editor.draft.body == ["world foo"]
        assert editor.mode == Mode.COMPOSE_NORMAL

    def test_cw_changes_to_end_of_word(self):
        editor = body_editor("hello world foo")
        feed(editor, "cw")
        assert editor.draft.body == [" world foo"]
        assert editor.mode == Mode.COMPOSE_INSERT
        feed(editor, "bye")
        assert editor.draft.body == ["bye world foo"]

    def test_de_is_inclusive(self):
        editor = body_editor("hello world foo")
        feed(editor, "de")
        assert editor.draft.body == [" world foo"]

    def test_count_before_operator(self):
        editor = body_editor("hello world foo")
        feed(editor, "2dw")
        assert editor.draft.body == ["foo"]

    def test_d_dollar_deletes_to_end_of_line(self):
        editor = body_editor("hello world")
        feed(editor, "w")
        feed(editor, "d$")
        assert editor.draft.body == ["hello "]

    def test_dd_and_counted_dd(self):
        editor = body_editor("one", "two", "three", "four")
        feed(editor, "dd")
        assert editor.draft.body == ["two", "three", "four"]
        feed(editor, "2dd")
        assert editor.draft.body == ["four"]

    def test_dd_on_last_line_leaves_empty_body(self):
        editor = body_editor("only")
        feed(editor, "dd")
        assert editor.draft.body == [""]

    def test_cc_replaces_line(self):
        editor = body_editor("one", "two")
        feed(editor, "cc")
        assert editor.mode == Mode.COMPOSE_INSERT
        feed(editor, "uno")
        assert editor.draft.body == ["uno", "two"]

    def test_dd_on_header_clears_field(self):
        editor = ComposeEditor(ComposeDraft(to="bob@example.com"))
        editor.handle_key(keys.ESCAPE)
        feed(editor, "dd")
        assert editor.draft.to == ""

    def test_mismatched_operators_cancel(self):
        editor = body_editor("hello")
        feed(editor, "dc")
        assert editor.pending_keys == ""
        assert editor.draft.body == ["hello"]

    def test_pending_keys(self):
        editor = body_editor("hello")
        feed(editor, "3d")
        assert editor.pending_keys == "3d"
        editor.handle_key(keys.ESCAPE)
        assert editor.pending_keys == ""
        assert not editor.closed


class TestNormalMode:
    def test_x_with_count(self):
        editor = body_editor("abcdef")
        feed(editor, "3x")
        assert editor.draft.body == ["def"]

    def test_dollar_then_x(self):
        editor = body_editor("abcdef")
        feed(editor, "$x")
        assert editor.draft.body == ["abcde"]
        assert editor.col == 4

    def test_zero_goes_home_unless_counting(self):
        editor = body_editor("a b c d e f g h i j k l")
        feed(editor, "$0")
        assert editor.col == 0
        feed(editor, "10l")
        assert editor.col == 10

    def test_escape_steps_back_onto_last_character(self):
        editor = ComposeEditor(ComposeDraft(body=[""]), field=ComposeField.BODY)
        feed(editor, "abc")
        editor.handle_key(keys.ESCAPE)
        assert editor.col == 2

    def test_o_opens_line_below(self):
        editor = body_editor("first")
        feed(editor, "osecond")
        assert editor.draft.body == ["first", "second"]
        assert editor.row == 1

    def test_vertical_motion_leaves_body_at_top(self):
        editor = body_editor("one", "two")
        feed(editor, "j")
        assert editor.row == 1
        feed(editor, "kk")
        assert editor.field == ComposeField.SUBJECT
        feed(editor, "kkk")
        assert editor.field == ComposeField.TO

    def test_ctrl_d_saves_draft(self):
        editor = body_editor("note")
        action = editor.handle_key(keys.ctrl("d"))
        assert isinstance(action, SaveDraft)
        assert action.draft == editor.draft
        assert action.draft is not editor.draft

    def test_q_discards(self):
        editor = body_editor("text")
        editor.handle_key("q")
        assert editor.closed
        assert editor.handle_key("x") is None
        assert editor.draft.body == ["text"]

    def test_escape_saves_a_draft_with_content(self):
        editor = body_editor("text")
        action = editor.handle_key(keys.ESCAPE)
        assert action == SaveDraft(editor.draft)
        # Stays open until the save is confirmed
        assert not editor.closed

    def test_escape_cancels_pending_before_saving(self):
        editor = body_editor("text")
        feed(editor, "2d")
        assert editor.handle_key(keys.ESCAPE) is None
        assert isinstance(editor.handle_key(keys.ESCAPE), SaveDraft)

    def test_escape_closes_an_empty_draft(self):
        editor = ComposeEditor(ComposeDraft())
        editor.handle_key(keys.ESCAPE)
        assert editor.mode == Mode.COMPOSE_NORMAL
        assert editor.handle_key(keys.ESCAPE) is None
        assert editor.closed


class TestInsertMode:
    def test_new_draft_starts_in_to_field(self):
        editor = ComposeEditor(ComposeDraft())
        assert editor.field == ComposeField.TO
        assert editor.mode == Mode.COMPOSE_INSERT

    def test_enter_moves_through_headers_and_splits_body(self):
        editor = ComposeEditor(ComposeDraft())
        for key in ["a", "@", "b", keys.ENTER, keys.ENTER, "H", "i", keys.ENTER, "x", "y"]:
            editor.handle_key(key)
        editor.handle_key(keys.LEFT)
        editor.handle_key(keys.ENTER)
        assert editor.draft.to == "a@b"
        assert editor.draft.subject == "Hi"
        assert editor.draft.body == ["x", "y"]

    def test_backspace_joins_lines(self):
        editor = ComposeEditor(ComposeDraft(body=["ab", "cd"]), field=ComposeField.BODY)
        editor.row = 1
        editor.handle_key(keys.BACKSPACE)
        assert editor.draft.body == ["abcd"]
        assert (editor.row, editor.col) == (0, 2)

    def test_tab_cycles_fields(self):
        editor = ComposeEditor(ComposeDraft(to="x@y.z"))
        editor.handle_key(keys.TAB)
        assert editor.field == ComposeField.CC
        editor.handle_key(keys.SHIFT_TAB)
        editor.handle_key(keys.SHIFT_TAB)
        assert editor.field == ComposeField.BODY

    def test_ctrl_s_sends_from_insert(self):
        editor = ComposeEditor(ComposeDraft(to="x@y.z", subject="Hi"))
        action = editor.handle_key(keys.ctrl("s"))
        assert action == Send(editor.draft)

    def test_sent_draft_is_a_snapshot(self):
        editor = ComposeEditor(ComposeDraft(to="x@y.z", subject="Hi", body=[""]), field=ComposeField.BODY)
        action = editor.handle_key(keys.ctrl("s"))
        editor.handle_key("X")
        editor.handle_key(keys.ESCAPE)
        feed(editor, "iY")

        assert editor.draft.body == ["YX"]
        assert action.draft.body == [""]
        assert action.draft.subject == "Hi"


@pytest.fixture
def original():
    return Message(
        id="m2",
        thread_id="t1",
        folder_id="INBOX",
        message_id="<m2@example.com>",
        references=["<m1@example.com>"],
        subject="Lunch",
        sender="bob@example.com",
        sender_name="Bob",
        recipients=["me@gmail.com", "alice@example.com"],
        cc=["carol@example.com", "ME@gmail.com"],
        date_sent=datetime(2024, 1, 17, 9, 0, tzinfo=timezone.utc),
        body="See you there\nBob",
    )


class TestSeeding:
    def test_reply_starts_in_body_above_quote(self, original):
        editor = ComposeEditor(create_reply(original, own_address="me@gmail.com"))
        assert editor.field == ComposeField.BODY
        assert (editor.row, editor.col) == (0, 0)
        assert editor.draft.to == "bob@example.com"
        assert editor.draft.subject == "Re: Lunch"
        assert editor.draft.body[-2:] == ["> See you there", "> Bob"]
        assert editor.draft.references == ["<m1@example.com>", "<m2@example.com>"]
        assert editor.draft.in_reply_to == "<m2@example.com>"

    def test_reply_all_excludes_own_address(self, original):
        draft = create_reply(original, own_address="me@gmail.com", reply_all=True)
        assert draft.to_list == ["bob@example.com", "alice@example.com"]
        assert draft.cc_list == ["carol@example.com"]
        assert draft.kind == ComposeKind.REPLY_ALL

    def test_forward_leaves_to_empty(self, original):
        draft = create_forward(original)
        assert draft.to == ""
        assert draft.subject == "Fwd: Lunch"
        assert "See you there" in draft.body
        editor = ComposeEditor(draft)
        assert editor.field == ComposeField.TO


class TestValidation:
    def test_empty_recipient(self):
        with pytest.raises(ValidationError) as excinfo:
            ComposeDraft(subject="Hi").validate()
        assert excinfo.value.kind == ValidationErrorKind.EMPTY_RECIPIENT

    def test_empty_content(self):
        with pytest.raises(ValidationError) as excinfo:
            ComposeDraft(to="x@y.z", body=["  "]).validate()
        assert excinfo.value.kind == ValidationErrorKind.EMPTY_CONTENT

    def test_valid_draft(self):
        ComposeDraft(to="x@y.z; w@y.z", body=["hello"]).validate()
        assert not ComposeDraft().has_content
