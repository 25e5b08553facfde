# =============================================================================
# Modal Input Package
# =============================================================================
# Vim-style modal input: the engine that maps keys to Actions, the compose
# editor nested inside it, and the ":" command table.
# =============================================================================

from kestrel_tui.modal.modes import Mode, View
from kestrel_tui.modal.table import TransitionTable
from kestrel_tui.modal.compose import ComposeEditor
from kestrel_tui.modal.commands import resolve_command
from kestrel_tui.modal.engine import ModalInputEngine, ModeState, PendingKey

__all__ = [
    "Mode",
    "View",
    "TransitionTable",
    "ComposeEditor",
    "resolve_command",
    "ModalInputEngine",
    "ModeState",
    "PendingKey",
]
