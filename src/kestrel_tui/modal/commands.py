# =============================================================================
# Command Table
# =============================================================================
# Maps the text typed after ":" to an Action. Input is trimmed and
# lower-cased before lookup, so ":  Inbox " works. Anything else raises
# CommandError(UNKNOWN); the dispatcher surfaces it as a banner.
# =============================================================================

from collections.abc import Callable

from kestrel_tui.core import FolderType
from kestrel_tui.core.action import Action, OpenFolder, Quit, Refresh
from kestrel_tui.errors import CommandError, CommandErrorKind

COMMANDS: dict[str, Callable[[], Action]] = {
    "inbox": lambda: OpenFolder(FolderType.INBOX),
    "sent": lambda: OpenFolder(FolderType.SENT),
    "drafts": lambda: OpenFolder(FolderType.DRAFTS),
    "trash": lambda: OpenFolder(FolderType.TRASH),
    "archive": lambda: OpenFolder(FolderType.ARCHIVE),
    "refresh": Refresh,
    "quit": Quit,
}


def resolve_command(text: str) -> Action:
    """
    Resolve command-mode text to an Action.

    Args:
        text: Raw text typed after ":".

    Returns:
        The Action the command stands for.

    Raises:
        CommandError: UNKNOWN if the text names no command.
    """
    name = text.strip().lower()
    factory = COMMANDS.get(name)
    if factory is None:
        raise CommandError(CommandErrorKind.UNKNOWN, f"Unknown command: {text.strip()}")
    return factory()


def complete(prefix: str) -> list[str]:
    """Command names starting with `prefix`, for the command line hint."""
    needle = prefix.strip().lower()
    return [name for name in COMMANDS if name.startswith(needle)]
