# =============================================================================
# Key Names
# =============================================================================
# The modal engines work on plain strings, one per key press:
#
#   - Printable characters are the character itself ("j", "G", "/", " ")
#   - Named keys use Textual's names: "enter", "escape", "tab", "shift+tab",
#     "backspace", "up", "down", "left", "right"
#   - Control chords are "ctrl+<c>" ("ctrl+s", "ctrl+d")
#
# normalize() turns a Textual key event's (key, character) pair into that
# form, so the engines never see terminal-specific aliases.
# =============================================================================

ENTER = "enter"
ESCAPE = "escape"
TAB = "tab"
SHIFT_TAB = "shift+tab"
BACKSPACE = "backspace"
UP = "up"
DOWN = "down"
LEFT = "left"
RIGHT = "right"

NAMED_KEYS = frozenset({ENTER, ESCAPE, TAB, SHIFT_TAB, BACKSPACE, UP, DOWN, LEFT, RIGHT})

# Terminal spellings of the same key
_ALIASES = {
    "backtab": SHIFT_TAB,
    "return": ENTER,
    "esc": ESCAPE,
    "ctrl+i": TAB,
    "ctrl+m": ENTER,
    "ctrl+h": BACKSPACE,
    "ctrl+left_square_bracket": ESCAPE,
}


def normalize(key: str, character: str | None = None) -> str:
    """
    Map a terminal key event to the engine's key name.

    Args:
        key: Textual's key name (e.g. "j", "slash", "ctrl+s", "backtab").
        character: The printable character for the key, if any.

    Returns:
        The character for printable keys, otherwise the canonical key name.
    """
    if key in _ALIASES:
        return _ALIASES[key]
    if key in NAMED_KEYS or key.startswith("ctrl+"):
        return key
    if character is not None and len(character) == 1 and character.isprintable():
        return character
    return key


def is_printable(key: str) -> bool:
    """True for keys that insert their own text."""
    return len(key) == 1 and key.isprintable()


def is_ctrl(key: str) -> bool:
    return key.startswith("ctrl+")


def ctrl(letter: str) -> str:
    """Key name for Ctrl+<letter>."""
    return f"ctrl+{letter.lower()}"
