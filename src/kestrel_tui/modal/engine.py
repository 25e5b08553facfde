# =============================================================================
# Modal Input Engine
# =============================================================================
# Turns key presses into Actions. The engine owns the ModeState (mode,
# pending prefix, list cursor, view stack, command and search text) and is
# the only thing that mutates it.
#
# Modes:
#   NORMAL          single keys and the "g" prefix; bindings depend on the
#                   view on top of the stack (list, message, help). The list
#                   keeps a multi-selection for bulk archive and delete
#   COMMAND         ":" line, Enter emits RunCommand
#   SEARCH          "/" line, Enter emits Search
#   INSERT          compose view open, editor not ready; keys are held
#   COMPOSE_NORMAL  \
#   COMPOSE_INSERT  / delegated to the ComposeEditor
#   QUIT            terminal
#
# Everything here is synchronous. The engine never touches the cache or the
# network; it reads the visible list through a SelectionSource.
# =============================================================================

import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Protocol

from kestrel_tui.core import ComposeKind, FolderType
from kestrel_tui.core.action import (
    Action,
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
    ShowHelp,
    Star,
)
from kestrel_tui.modal import keys
from kestrel_tui.modal.compose import ComposeEditor
from kestrel_tui.modal.modes import Mode, View
from kestrel_tui.modal.table import TransitionTable

logger = logging.getLogger(__name__)

# Default time allowed between the keys of a prefix sequence
DEFAULT_PREFIX_TIMEOUT = 0.5  # seconds

# Message view height assumed until the screen reports its size
DEFAULT_PAGE_HEIGHT = 20  # lines

# Second keys after "g"
G_SEQUENCES: dict[str, Action] = {
    "g": Navigate(NavTarget.FIRST),
    "i": OpenFolder(FolderType.INBOX),
    "t": OpenFolder(FolderType.SENT),
    "d": OpenFolder(FolderType.DRAFTS),
    "e": OpenFolder(FolderType.TRASH),
    "a": OpenFolder(FolderType.ARCHIVE),
}


class SelectionSource(Protocol):
    """What the engine needs to know about the visible message list."""

    def visible_message_ids(self) -> list[str]:
        """Message ids in display order (one per thread row)."""
        ...

    def is_starred(self, message_id: str) -> bool:
        ...


class _EmptySelection:
    def visible_message_ids(self) -> list[str]:
        return []

    def is_starred(self, message_id: str) -> bool:
        return False


@dataclass
class PendingKey:
    """A prefix key waiting for its second key."""
    key: str
    at: float


@dataclass
class ModeState:
    """
    The engine's state, read by the renderer.

    Attributes:
        mode: Current input mode.
        pending: Buffered prefix key, if any.
        cursor: Selected row in the visible list.
        view_stack: Navigation levels, LIST at the bottom.
        command_text: Text typed in COMMAND mode.
        search_text: Text typed in SEARCH mode.
        typeahead: Keys held in INSERT mode until the editor is ready.
        selected: Message ids picked in the list for a bulk action.
        scroll: First visible line of the message view.
    """
    mode: Mode = Mode.NORMAL
    pending: PendingKey | None = None
    cursor: int = 0
    view_stack: list[View] = field(default_factory=lambda: [View.LIST])
    command_text: str = ""
    search_text: str = ""
    typeahead: list[str] = field(default_factory=list)
    selected: set[str] = field(default_factory=set)
    scroll: int = 0

    @property
    def view(self) -> View:
        return self.view_stack[-1]

    @property
    def is_top_level(self) -> bool:
        return len(self.view_stack) == 1


class ModalInputEngine:
    """
    Finite-state machine from keys to Actions.

    Usage:
        >>> engine = ModalInputEngine(session)
        >>> engine.handle_key("g")
        >>> engine.handle_key("i")
        OpenFolder(folder_type=<FolderType.INBOX: ...>)
    """

    def __init__(
        self,
        selection: SelectionSource | None = None,
        *,
        prefix_timeout: float = DEFAULT_PREFIX_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            selection: Source of the visible list (the session).
            prefix_timeout: Seconds a prefix key waits for its second key.
            clock: Monotonic time source, injectable for tests.
        """
        self.selection = selection or _EmptySelection()
        self.prefix_timeout = prefix_timeout
        self._clock = clock
        self.state = ModeState()
        self.editor: ComposeEditor | None = None
        self.page_height = DEFAULT_PAGE_HEIGHT
        self.max_scroll: int | None = None
        self._now = 0.0

        self._table = TransitionTable("modal")
        self._build_list()
        self._build_message()
        self._build_help()
        self._build_line_modes()
        self._build_compose()
        self._table.set_default(Mode.QUIT, lambda k: None)
        self._table.check_total(self.table_keys())

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def view(self) -> View:
        return self.state.view

    @staticmethod
    def table_keys() -> list[Hashable]:
        """Every state the transition table distinguishes."""
        normal_views = [(Mode.NORMAL, View.MESSAGE), (Mode.NORMAL, View.HELP)]
        return [*Mode, *normal_views]

    def handle_key(self, key: str, now: float | None = None) -> Action | None:
        """
        Process one key press.

        Args:
            key: Normalized key name (see modal.keys).
            now: Time of the key press; defaults to the engine clock.

        Returns:
            The Action the key completes, or None.
        """
        now = self._clock() if now is None else now
        self._now = now
        pending = self.state.pending
        if pending is not None:
            self.state.pending = None
            if now - pending.at <= self.prefix_timeout:
                return self._complete_prefix(pending, key)
            logger.debug(f"Prefix {pending.key!r} expired, reprocessing {key!r}")

        handler = self._table.lookup(self._table_key(), key)
        return handler(key)

    def expire_pending(self, now: float | None = None) -> bool:
        """
        Drop a prefix key whose window has passed. Called from a UI timer.

        Returns:
            True if a pending key was discarded.
        """
        now = self._clock() if now is None else now
        pending = self.state.pending
        if pending is not None and now - pending.at > self.prefix_timeout:
            self.state.pending = None
            return True
        return False

    @property
    def selected_message_id(self) -> str | None:
        """Id under the cursor, clamping the cursor to the list."""
        ids = self.selection.visible_message_ids()
        if not ids:
            self.state.cursor = 0
            return None
        self.state.cursor = max(0, min(self.state.cursor, len(ids) - 1))
        return ids[self.state.cursor]

    def reset_cursor(self) -> None:
        """Back to the first row with nothing selected (after changing folder or search)."""
        self.state.cursor = 0
        self.state.selected.clear()

    def set_viewport(self, page_height: int, max_scroll: int | None = None) -> None:
        """
        Record the message view's size, as laid out by the screen.

        Args:
            page_height: Visible lines; scrolling moves half of this.
            max_scroll: Largest useful scroll offset, if known.
        """
        self.page_height = max(2, page_height)
        self.max_scroll = max_scroll
        if max_scroll is not None:
            self.state.scroll = min(self.state.scroll, max(0, max_scroll))

    def select(self, message_id: str) -> bool:
        """Move the cursor onto a message, if it is visible."""
        ids = self.selection.visible_message_ids()
        if message_id not in ids:
            return False
        self.state.cursor = ids.index(message_id)
        return True

    def request_quit(self) -> None:
        """Enter the terminal QUIT mode (e.g. from ":quit")."""
        self.state.mode = Mode.QUIT
        self.state.pending = None

    def enter_compose(self, editor: ComposeEditor) -> list[Action]:
        """
        Hand the keyboard to a seeded editor, replaying held keys.

        Does nothing if the user cancelled while the editor was being
        prepared; callers can check `engine.editor is editor`.

        Returns:
            Actions the replayed keys produced (e.g. a typed-ahead ctrl+s).
        """
        if self.state.mode != Mode.INSERT or self.view != View.COMPOSE:
            logger.debug("Compose was cancelled before the editor was ready")
            return []
        self.editor = editor
        self.state.mode = editor.mode
        held, self.state.typeahead = self.state.typeahead, []
        actions = []
        for key in held:
            action = self._to_editor(key)
            if action is not None:
                actions.append(action)
        return actions

    def close_compose(self, editor: ComposeEditor | None = None) -> None:
        """
        Close the compose view (sent, discarded or failed to seed).

        Args:
            editor: Only close if this editor is still the open one.
        """
        if editor is not None and self.editor is not editor:
            return
        self.editor = None
        self.state.typeahead = []
        if View.COMPOSE in self.state.view_stack:
            index = len(self.state.view_stack) - 1 - self.state.view_stack[::-1].index(View.COMPOSE)
            del self.state.view_stack[index:]
        self.state.mode = Mode.NORMAL

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _table_key(self) -> Hashable:
        mode = self.state.mode
        if mode == Mode.NORMAL and self.view in (View.MESSAGE, View.HELP):
            return (mode, self.view)
        return mode

    def _complete_prefix(self, pending: PendingKey, key: str) -> Action | None:
        if key == keys.ESCAPE:
            return None
        action = G_SEQUENCES.get(key) if pending.key == "g" else None
        if action is None:
            # Not a sequence: drop the prefix and treat the key on its own
            logger.debug(f"No sequence {pending.key}{key}, reprocessing {key!r}")
            return self._table.lookup(self._table_key(), key)(key)
        if isinstance(action, Navigate):
            self._move_cursor(action.target)
        elif isinstance(action, OpenFolder):
            self.reset_cursor()
        return action

    def _push(self, view: View) -> None:
        self.state.view_stack.append(view)

    def _pop_or_quit(self, key: str) -> Action | None:
        if self.state.is_top_level:
            self.state.mode = Mode.QUIT
            return Quit()
        self.state.view_stack.pop()
        self.state.mode = Mode.NORMAL
        return None

    def _move_cursor(self, target: NavTarget) -> bool:
        """Move the list cursor. Returns True if it moved."""
        ids = self.selection.visible_message_ids()
        if not ids:
            self.state.cursor = 0
            return False
        old = max(0, min(self.state.cursor, len(ids) - 1))
        if target == NavTarget.NEXT:
            new = min(old + 1, len(ids) - 1)
        elif target == NavTarget.PREVIOUS:
            new = max(old - 1, 0)
        elif target == NavTarget.FIRST:
            new = 0
        else:
            new = len(ids) - 1
        self.state.cursor = new
        return new != old

    def _on_selected(self, build: Callable[[str], Action]) -> Callable[[str], Action | None]:
        """Handler that builds an Action for the selected message, if any."""
        def handler(key: str) -> Action | None:
            message_id = self.selected_message_id
            if message_id is None:
                return None
            return build(message_id)
        return handler

    # -------------------------------------------------------------------------
    # NORMAL: list view
    # -------------------------------------------------------------------------

    def _build_list(self) -> None:
        table, m = self._table, Mode.NORMAL

        table.bind(m, ["j", keys.DOWN], lambda k: self._navigate(NavTarget.NEXT))
        table.bind(m, ["k", keys.UP], lambda k: self._navigate(NavTarget.PREVIOUS))
        table.bind(m, "G", lambda k: self._navigate(NavTarget.LAST))
        table.bind(m, "g", self._start_prefix)
        table.bind(m, [keys.ENTER, "l"], self._on_selected(self._open))
        table.bind(m, "x", self._on_selected(self._toggle_selected))
        table.bind(m, "J", lambda k: self._extend_selection(NavTarget.NEXT))
        table.bind(m, "K", lambda k: self._extend_selection(NavTarget.PREVIOUS))
        self._bind_common(m)
        table.bind(m, keys.ESCAPE, self._clear_or_pop)
        table.bind(m, ["h", "q"], self._pop_or_quit)
        table.set_default(m, lambda k: None)

    def _bind_common(self, m: Hashable) -> None:
        """Bindings shared by the list and message views."""
        table = self._table
        table.bind(m, "c", lambda k: self._compose(ComposeKind.NEW, None))
        table.bind(m, "r", self._on_selected(lambda mid: self._compose(ComposeKind.REPLY, mid)))
        table.bind(m, "a", self._on_selected(lambda mid: self._compose(ComposeKind.REPLY_ALL, mid)))
        table.bind(m, "f", self._on_selected(lambda mid: self._compose(ComposeKind.FORWARD, mid)))
        table.bind(m, "s", self._on_selected(
            lambda mid: Star(mid, starred=not self.selection.is_starred(mid))
        ))
        table.bind(m, "R", lambda k: Refresh())
        table.bind(m, "/", self._start_search)
        table.bind(m, ":", self._start_command)
        table.bind(m, "?", self._show_help)
        if m == Mode.NORMAL:
            table.bind(m, "e", self._selected_or_marked(Archive))
            table.bind(m, "d", self._selected_or_marked(Delete))

    def _navigate(self, target: NavTarget) -> Action:
        self._move_cursor(target)
        return Navigate(target)

    def _toggle_selected(self, message_id: str) -> None:
        selected = self.state.selected
        if message_id in selected:
            selected.discard(message_id)
        else:
            selected.add(message_id)

    def _extend_selection(self, target: NavTarget) -> Action:
        """Select the current row, move, and select the new row too."""
        current = self.selected_message_id
        if current is not None:
            self.state.selected.add(current)
        self._move_cursor(target)
        landed = self.selected_message_id
        if landed is not None:
            self.state.selected.add(landed)
        return Navigate(target)

    def _clear_or_pop(self, key: str) -> Action | None:
        if self.state.selected:
            self.state.selected.clear()
            return None
        return self._pop_or_quit(key)

    def _marked_ids(self) -> list[str]:
        """Selected ids still on screen, in display order."""
        selected = self.state.selected
        marked = [mid for mid in self.selection.visible_message_ids() if mid in selected]
        selected.clear()
        return marked

    def _selected_or_marked(self, build: Callable[[str], Action]) -> Callable[[str], Action | None]:
        """Handler acting on every marked thread, or on the cursor row if none are."""
        single = self._on_selected(build)

        def handler(key: str) -> Action | None:
            marked = self._marked_ids()
            if not marked:
                return single(key)
            return Batch(tuple(build(mid) for mid in marked))
        return handler

    def _start_prefix(self, key: str) -> None:
        self.state.pending = PendingKey(key, self._now)

    def _open(self, message_id: str) -> Action:
        self._push(View.MESSAGE)
        self.state.scroll = 0
        return OpenMessage(message_id)

    def _compose(self, kind: ComposeKind, source_id: str | None) -> Action:
        self._push(View.COMPOSE)
        self.state.mode = Mode.INSERT
        self.state.typeahead = []
        return Compose(kind, source_id)

    def _start_search(self, key: str) -> None:
        self.state.mode = Mode.SEARCH
        self.state.search_text = ""

    def _start_command(self, key: str) -> None:
        self.state.mode = Mode.COMMAND
        self.state.command_text = ""

    def _show_help(self, key: str) -> Action:
        self._push(View.HELP)
        return ShowHelp()

    # -------------------------------------------------------------------------
    # NORMAL: message and help views
    # -------------------------------------------------------------------------

    def _build_message(self) -> None:
        table, m = self._table, (Mode.NORMAL, View.MESSAGE)

        table.bind(m, ["j", keys.DOWN], lambda k: self._step_message(NavTarget.NEXT))
        table.bind(m, ["k", keys.UP], lambda k: self._step_message(NavTarget.PREVIOUS))
        table.bind(m, [keys.ctrl("d"), " "], lambda k: self._scroll(1))
        table.bind(m, keys.ctrl("u"), lambda k: self._scroll(-1))
        self._bind_common(m)
        # Archive/delete leave the message view; the message is gone
        table.bind(m, "e", self._on_selected(lambda mid: self._leave_with(Archive(mid))))
        table.bind(m, "d", self._on_selected(lambda mid: self._leave_with(Delete(mid))))
        table.bind(m, ["h", "q", keys.ESCAPE, keys.LEFT], self._pop_or_quit)
        table.set_default(m, lambda k: None)

    def _step_message(self, target: NavTarget) -> Action | None:
        if not self._move_cursor(target):
            return None
        self.state.scroll = 0
        message_id = self.selected_message_id
        return OpenMessage(message_id) if message_id is not None else None

    def _scroll(self, direction: int) -> None:
        """Move the message view half a page down (1) or up (-1)."""
        scroll = max(0, self.state.scroll + direction * (self.page_height // 2))
        if self.max_scroll is not None:
            scroll = min(scroll, max(0, self.max_scroll))
        self.state.scroll = scroll

    def _leave_with(self, action: Action) -> Action:
        self.state.view_stack.pop()
        return action

    def _build_help(self) -> None:
        table, m = self._table, (Mode.NORMAL, View.HELP)
        table.bind(m, ["?", "q", keys.ESCAPE], self._pop_or_quit)
        table.set_default(m, lambda k: None)

    # -------------------------------------------------------------------------
    # COMMAND and SEARCH
    # -------------------------------------------------------------------------

    def _build_line_modes(self) -> None:
        table = self._table
        for m, attr in ((Mode.COMMAND, "command_text"), (Mode.SEARCH, "search_text")):
            table.bind(m, keys.ESCAPE, self._cancel_line)
            table.bind(m, keys.BACKSPACE, lambda k, attr=attr: self._line_backspace(attr))
            table.bind_when(m, keys.is_printable, lambda k, attr=attr: self._line_append(attr, k))
            table.set_default(m, lambda k: None)
        table.bind(Mode.COMMAND, keys.ENTER, self._submit_command)
        table.bind(Mode.SEARCH, keys.ENTER, self._submit_search)

    def _line_append(self, attr: str, key: str) -> None:
        setattr(self.state, attr, getattr(self.state, attr) + key)

    def _line_backspace(self, attr: str) -> None:
        text = getattr(self.state, attr)
        if not text:
            # Backspace on an empty line leaves the mode, as in vim
            self._cancel_line(keys.BACKSPACE)
            return
        setattr(self.state, attr, text[:-1])

    def _cancel_line(self, key: str) -> None:
        self.state.mode = Mode.NORMAL
        self.state.command_text = ""
        self.state.search_text = ""

    def _submit_command(self, key: str) -> Action:
        text = self.state.command_text
        self._cancel_line(key)
        return RunCommand(text)

    def _submit_search(self, key: str) -> Action:
        query = self.state.search_text
        self._cancel_line(key)
        self.reset_cursor()
        return Search(query)

    # -------------------------------------------------------------------------
    # INSERT and compose delegation
    # -------------------------------------------------------------------------

    def _build_compose(self) -> None:
        table = self._table
        table.bind(Mode.INSERT, keys.ESCAPE, lambda k: self.close_compose())
        table.set_default(Mode.INSERT, self._hold)
        table.set_default(Mode.COMPOSE_NORMAL, self._to_editor)
        table.set_default(Mode.COMPOSE_INSERT, self._to_editor)

    def _hold(self, key: str) -> None:
        self.state.typeahead.append(key)

    def _to_editor(self, key: str) -> Action | None:
        editor = self.editor
        if editor is None:
            self.close_compose()
            return None
        action = editor.handle_key(key)
        if editor.closed:
            logger.info("Draft discarded")
            self.close_compose(editor)
        else:
            self.state.mode = editor.mode
        return action
