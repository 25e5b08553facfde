# =============================================================================
# Modes and Views
# =============================================================================
# Shared by the ModalInputEngine and the ComposeEditor, which both key their
# transition tables on Mode.
# =============================================================================

from enum import Enum, auto


class Mode(Enum):
    """Input modes. QUIT is terminal: once entered, no key leaves it."""
    NORMAL = auto()
    # A compose view is open but its editor is not ready yet (e.g. a reply
    # waiting for the original body). Typed text is held and replayed.
    INSERT = auto()
    COMMAND = auto()
    SEARCH = auto()
    COMPOSE_NORMAL = auto()
    COMPOSE_INSERT = auto()
    QUIT = auto()

    @property
    def label(self) -> str:
        """Status line text."""
        return self.name.replace("COMPOSE_", "").replace("_", " ")


class View(Enum):
    """Navigation levels. LIST is always at the bottom of the stack."""
    LIST = auto()
    MESSAGE = auto()
    COMPOSE = auto()
    HELP = auto()
