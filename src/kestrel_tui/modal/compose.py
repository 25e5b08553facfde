# =============================================================================
# Compose Editor
# =============================================================================
# A small vim-style editor over a ComposeDraft. The header fields (To, Cc,
# Subject) are single lines; the body is a list of lines addressed by
# (row, col).
#
# Compose-Normal:
#   h/l, j/k        cursor (j/k move lines in the body, fields elsewhere)
#   w/b/e, 0/$      word and line motions
#   3w, 2dd         counts
#   dd cc dw cw de  operators (d/c combine with any motion)
#   x               delete under cursor
#   i a I A o O     enter Compose-Insert
#   tab, shift+tab  cycle fields
#   ctrl+s, ctrl+d  send, save as draft
#   q               discard
#   escape          cancel a pending operator or count; otherwise save
#                   the draft if it has content, close it if it has none
#
# Compose-Insert:
#   text, backspace, enter (newline in the body, next field elsewhere),
#   left/right, tab, ctrl+s, escape back to Compose-Normal
#
# Word motions stay on the current line.
# =============================================================================

import copy
from enum import Enum, auto

from kestrel_tui.core import ComposeDraft, ComposeField, ComposeKind
from kestrel_tui.core.action import Action, SaveDraft, Send
from kestrel_tui.modal import keys
from kestrel_tui.modal.modes import Mode
from kestrel_tui.modal.table import TransitionTable


class Operator(Enum):
    NONE = auto()
    DELETE = auto()
    CHANGE = auto()


# -----------------------------------------------------------------------------
# Word motions
# -----------------------------------------------------------------------------

def _char_class(char: str) -> int:
    if char.isspace():
        return 0
    if char.isalnum() or char == "_":
        return 1
    return 2


def word_forward(line: str, col: int) -> int:
    """Start of the next word, or len(line) if there is none."""
    n = len(line)
    if col >= n:
        return n
    i = col
    cls = _char_class(line[i])
    if cls != 0:
        while i < n and _char_class(line[i]) == cls:
            i += 1
    while i < n and _char_class(line[i]) == 0:
        i += 1
    return i


def word_backward(line: str, col: int) -> int:
    """Start of the current or previous word."""
    i = min(col, len(line))
    while i > 0 and _char_class(line[i - 1]) == 0:
        i -= 1
    if i == 0:
        return 0
    cls = _char_class(line[i - 1])
    while i > 0 and _char_class(line[i - 1]) == cls:
        i -= 1
    return i


def word_end(line: str, col: int) -> int:
    """Last character of the current or next word."""
    n = len(line)
    i = col + 1
    while i < n and _char_class(line[i]) == 0:
        i += 1
    if i >= n:
        return max(n - 1, 0)
    cls = _char_class(line[i])
    while i + 1 < n and _char_class(line[i + 1]) == cls:
        i += 1
    return i


class ComposeEditor:
    """
    Modal editor for one draft.

    Usage:
        >>> editor = ComposeEditor(create_reply(message, own_address=me))
        >>> for key in ["H", "i", "escape", "ctrl+s"]:
        ...     action = editor.handle_key(key)
        >>> action
        Send(draft=...)

    Attributes:
        draft: The draft being edited (mutated in place).
        field: Field holding the cursor.
        row, col: Cursor position within the field.
        mode: COMPOSE_INSERT or COMPOSE_NORMAL.
        closed: Set once the user discards the draft.
    """

    def __init__(self, draft: ComposeDraft, field: ComposeField | None = None) -> None:
        self.draft = draft
        self.mode = Mode.COMPOSE_INSERT
        self.closed = False
        self.count: int | None = None
        self.operator = Operator.NONE

        if field is None:
            # Replies have their recipients; start above the quote
            replying = draft.kind in (ComposeKind.REPLY, ComposeKind.REPLY_ALL)
            field = ComposeField.BODY if replying else ComposeField.TO
        self.field = field
        self.row = 0
        self.col = 0
        self._enter_field(field)

        self._table = TransitionTable("compose")
        self._build_normal()
        self._build_insert()
        self._table.check_total([Mode.COMPOSE_NORMAL, Mode.COMPOSE_INSERT])

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def handle_key(self, key: str) -> Action | None:
        """
        Process one key.

        Returns:
            Send or SaveDraft when requested, otherwise None.
        """
        if self.closed:
            return None
        return self._table.lookup(self.mode, key)(key)

    @property
    def pending_keys(self) -> str:
        """Count and operator typed so far, e.g. "3d"."""
        text = str(self.count) if self.count is not None else ""
        if self.operator == Operator.DELETE:
            text += "d"
        elif self.operator == Operator.CHANGE:
            text += "c"
        return text

    @property
    def lines(self) -> list[str]:
        """Lines of the focused field (one line for headers)."""
        if self.field == ComposeField.BODY:
            return self.draft.body
        return [self.draft.get_field(self.field)]

    @property
    def current_line(self) -> str:
        return self.lines[self.row]

    # -------------------------------------------------------------------------
    # Buffer helpers
    # -------------------------------------------------------------------------

    def _set_line(self, text: str) -> None:
        if self.field == ComposeField.BODY:
            self.draft.body[self.row] = text
        else:
            self.draft.set_field(self.field, text)

    def _enter_field(self, field: ComposeField) -> None:
        self.field = field
        self.row = 0
        self.col = 0 if field == ComposeField.BODY else len(self.current_line)
        self._clamp()

    def _clamp(self) -> None:
        lines = self.lines
        self.row = max(0, min(self.row, len(lines) - 1))
        length = len(lines[self.row])
        # Normal mode rests on a character, insert mode may sit after the last one
        limit = length if self.mode == Mode.COMPOSE_INSERT else max(length - 1, 0)
        self.col = max(0, min(self.col, limit))

    def _take_count(self) -> int:
        count = self.count or 1
        self.count = None
        return count

    def _reset_pending(self) -> None:
        self.count = None
        self.operator = Operator.NONE

    def _to_insert(self) -> None:
        self.mode = Mode.COMPOSE_INSERT
        self._clamp()

    def _to_normal(self) -> None:
        self.mode = Mode.COMPOSE_NORMAL
        self._reset_pending()
        self._clamp()

    # -------------------------------------------------------------------------
    # Compose-Normal
    # -------------------------------------------------------------------------

    def _build_normal(self) -> None:
        table, m = self._table, Mode.COMPOSE_NORMAL

        table.bind(m, list("123456789"), self._digit)
        table.bind(m, "0", self._zero)
        table.bind(m, "$", lambda k: self._motion(lambda line, col: len(line), inclusive=True))
        table.bind(m, ["h", keys.LEFT], lambda k: self._motion(lambda line, col: col - 1))
        table.bind(m, ["l", keys.RIGHT], lambda k: self._motion(lambda line, col: col + 1))
        table.bind(m, "w", self._word_motion)
        table.bind(m, "b", lambda k: self._motion(word_backward))
        table.bind(m, "e", lambda k: self._motion(word_end, inclusive=True))
        table.bind(m, ["j", keys.DOWN], lambda k: self._vertical(1))
        table.bind(m, ["k", keys.UP], lambda k: self._vertical(-1))

        table.bind(m, "d", lambda k: self._operator(Operator.DELETE))
        table.bind(m, "c", lambda k: self._operator(Operator.CHANGE))
        table.bind(m, "x", self._delete_chars)

        table.bind(m, "i", lambda k: self._insert_at(self.col))
        table.bind(m, "a", lambda k: self._insert_at(self.col + 1 if self.current_line else 0))
        table.bind(m, "I", lambda k: self._insert_at(0))
        table.bind(m, "A", lambda k: self._insert_at(len(self.current_line)))
        table.bind(m, "o", lambda k: self._open_line(below=True))
        table.bind(m, "O", lambda k: self._open_line(below=False))

        table.bind(m, keys.TAB, lambda k: self._cycle(self.field.next))
        table.bind(m, keys.SHIFT_TAB, lambda k: self._cycle(self.field.previous))
        table.bind(m, keys.ctrl("s"), self._send)
        table.bind(m, keys.ctrl("d"), self._save)
        table.bind(m, "q", self._discard)
        table.bind(m, keys.ESCAPE, self._save_or_close)

        table.set_default(m, lambda k: self._reset_pending())

    def _digit(self, key: str) -> None:
        self.count = (self.count or 0) * 10 + int(key)

    def _zero(self, key: str) -> None:
        if self.count is not None:
            self.count *= 10
            return
        self._motion(lambda line, col: 0)

    def _motion(self, target, *, inclusive: bool = False) -> None:
        """
        Move the cursor, or apply the pending operator up to the target.

        Args:
            target: (line, col) -> new col, applied count times.
            inclusive: The character at the target is part of an
                       operator's range (e, $).
        """
        line = self.current_line
        start = self.col
        col = start
        for _ in range(self._take_count()):
            col = max(0, min(target(line, col), len(line)))

        operator = self.operator
        self.operator = Operator.NONE
        if operator == Operator.NONE:
            self.col = col
            self._clamp()
            return

        low, high = sorted((start, col))
        if inclusive and col >= start:
            high = min(high + 1, len(line))
        self._set_line(line[:low] + line[high:])
        self.col = low
        if operator == Operator.CHANGE:
            self._to_insert()
        else:
            self._clamp()

    def _word_motion(self, key: str) -> None:
        # cw on a word changes to its end, like ce
        line = self.current_line
        on_word = self.col < len(line) and not line[self.col].isspace()
        if self.operator == Operator.CHANGE and on_word:
            self._motion(word_end, inclusive=True)
        else:
            self._motion(word_forward)

    def _vertical(self, step: int) -> None:
        count = self._take_count()
        if self.operator != Operator.NONE:
            self._reset_pending()
            return
        if self.field != ComposeField.BODY:
            # Fields are a column: no wrapping from To back to Body
            order = list(ComposeField)
            index = max(0, min(order.index(self.field) + step * count, len(order) - 1))
            self._enter_field(order[index])
            return
        row = self.row + step * count
        if row < 0:
            self._enter_field(ComposeField.SUBJECT)
            return
        self.row = min(row, len(self.draft.body) - 1)
        self._clamp()

    def _operator(self, operator: Operator) -> None:
        if self.operator == Operator.NONE:
            self.operator = operator
            return
        if self.operator != operator:
            self._reset_pending()
            return
        self.operator = Operator.NONE
        self._delete_lines(self._take_count(), change=operator == Operator.CHANGE)

    def _delete_lines(self, count: int, *, change: bool) -> None:
        """dd / cc on `count` lines (the whole field for headers)."""
        if self.field != ComposeField.BODY:
            self.draft.set_field(self.field, "")
        else:
            body = self.draft.body
            replacement = [""] if change else []
            body[self.row:self.row + count] = replacement
            if not body:
                body.append("")
        self.col = 0
        if change:
            self._to_insert()
        else:
            self._clamp()

    def _delete_chars(self, key: str) -> None:
        count = self._take_count()
        self.operator = Operator.NONE
        line = self.current_line
        self._set_line(line[:self.col] + line[self.col + count:])
        self._clamp()

    def _insert_at(self, col: int) -> None:
        self._reset_pending()
        self.col = col
        self._to_insert()

    def _open_line(self, *, below: bool) -> None:
        self._reset_pending()
        if self.field != ComposeField.BODY:
            self._insert_at(len(self.current_line))
            return
        self.row = self.row + 1 if below else self.row
        self.draft.body.insert(self.row, "")
        self.col = 0
        self._to_insert()

    def _cycle(self, field: ComposeField) -> None:
        self._reset_pending()
        self._enter_field(field)

    def _send(self, key: str) -> Action:
        self._reset_pending()
        # A snapshot: edits made while the send is in flight are not sent
        return Send(copy.deepcopy(self.draft))

    def _save(self, key: str) -> Action:
        self._reset_pending()
        return SaveDraft(copy.deepcopy(self.draft))

    def _discard(self, key: str) -> None:
        self._reset_pending()
        self.closed = True

    def _save_or_close(self, key: str) -> Action | None:
        if self.operator != Operator.NONE or self.count is not None:
            self._reset_pending()
            return None
        if self.draft.has_content:
            return self._save(key)
        self.closed = True
        return None

    # -------------------------------------------------------------------------
    # Compose-Insert
    # -------------------------------------------------------------------------

    def _build_insert(self) -> None:
        table, m = self._table, Mode.COMPOSE_INSERT

        table.bind(m, keys.ESCAPE, self._leave_insert)
        table.bind(m, keys.BACKSPACE, self._backspace)
        table.bind(m, keys.ENTER, self._enter)
        table.bind(m, keys.LEFT, lambda k: self._nudge(-1))
        table.bind(m, keys.RIGHT, lambda k: self._nudge(1))
        table.bind(m, keys.TAB, lambda k: self._enter_field(self.field.next))
        table.bind(m, keys.SHIFT_TAB, lambda k: self._enter_field(self.field.previous))
        table.bind(m, keys.ctrl("s"), self._send)
        table.bind_when(m, keys.is_printable, self._insert_char)

        table.set_default(m, lambda k: None)

    def _leave_insert(self, key: str) -> None:
        # Like vim, the cursor steps back onto the last inserted character
        self.col -= 1
        self._to_normal()

    def _insert_char(self, key: str) -> None:
        line = self.current_line
        self._set_line(line[:self.col] + key + line[self.col:])
        self.col += 1

    def _backspace(self, key: str) -> None:
        line = self.current_line
        if self.col > 0:
            self._set_line(line[:self.col - 1] + line[self.col:])
            self.col -= 1
        elif self.field == ComposeField.BODY and self.row > 0:
            # Join with the previous line
            body = self.draft.body
            previous = body[self.row - 1]
            body[self.row - 1] = previous + line
            del body[self.row]
            self.row -= 1
            self.col = len(previous)

    def _enter(self, key: str) -> None:
        if self.field != ComposeField.BODY:
            self._enter_field(self.field.next)
            return
        body = self.draft.body
        line = body[self.row]
        body[self.row] = line[:self.col]
        body.insert(self.row + 1, line[self.col:])
        self.row += 1
        self.col = 0

    def _nudge(self, step: int) -> None:
        self.col += step
        self._clamp()
