# =============================================================================
# Folder List Widget
# =============================================================================
# The sidebar: every cached folder with its unread count, special folders
# first. The open folder is highlighted; a folder that stopped syncing is
# marked so the user knows its contents may be old.
#
# Folders are switched with keys (gi, :inbox, ...), never by focusing the
# sidebar, so the widget does not take focus.
# =============================================================================

from textual.widgets import Static

from kestrel_tui.core import Folder, FolderType
from kestrel_tui.sync import FolderSyncState


# Note: Avoid emojis with variation selectors as they cause terminal width issues
FOLDER_ICONS = {
    FolderType.INBOX: "📥",
    FolderType.SENT: "📤",
    FolderType.DRAFTS: "📝",
    FolderType.TRASH: "🗑",
    FolderType.JUNK: "⛔",
    FolderType.ARCHIVE: "📦",
    FolderType.OTHER: "📁",
}

_ORDER = [
    FolderType.INBOX,
    FolderType.SENT,
    FolderType.DRAFTS,
    FolderType.ARCHIVE,
    FolderType.TRASH,
    FolderType.JUNK,
    FolderType.OTHER,
]


def folder_sort_key(folder: Folder) -> tuple[int, str]:
    """Special folders first in a fixed order, then alphabetically."""
    return (_ORDER.index(folder.folder_type), folder.name.lower())


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


def folder_label(folder: Folder, state: FolderSyncState | None = None) -> str:
    """Icon, name, unread count and a sync marker."""
    icon = FOLDER_ICONS.get(folder.folder_type, "📁")
    label = f"{icon} {_escape(folder.name)}"
    if folder.unread_count > 0:
        label += f" ({folder.unread_count})"
    if folder.stale or state == FolderSyncState.STALE:
        label += " [red]![/]"
    elif state == FolderSyncState.SYNCING:
        label += " [dim]…[/]"
    return label


class FolderList(Static):
    """
    Sidebar listing the account's folders.

    Usage:
        >>> sidebar = FolderList(id="folder-list")
        >>> sidebar.show_folders(folders, current_id="INBOX")
    """

    can_focus = False

    def show_folders(
        self,
        folders: list[Folder],
        current_id: str | None,
        states: dict[str, FolderSyncState] | None = None,
    ) -> None:
        """
        Redraw the list.

        Args:
            folders: All cached folders.
            current_id: Id of the open folder.
            states: Per-folder sync state from the SyncEngine.
        """
        states = states or {}
        if not folders:
            self.update("[dim]No folders yet[/]")
            return

        lines = []
        for folder in sorted(folders, key=folder_sort_key):
            label = folder_label(folder, states.get(folder.id))
            if folder.id == current_id:
                label = f"[reverse]{label}[/]"
            lines.append(label)
        self.update("\n".join(lines))
