# =============================================================================
# Kestrel-TUI: A Modal Terminal Gmail Client
# =============================================================================
#
# Kestrel-TUI is a keyboard-only Gmail client with vim-style modes. Every
# action is applied to a local cache first and confirmed with the server in
# the background, so the interface never waits on the network.
#
# Features:
#   - OAuth 2.0 sign-in, tokens kept in the system keyring
#   - IMAP sync (polling + IDLE) with Gmail message and thread ids
#   - Optimistic archive, delete, star and read with rollback
#   - Modal compose editor (normal / insert, vim motions)
#   - SQLite warm-start cache
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__author__ = "Kord"
__app_name__ = "kestrel-tui"

# Main entry point - this is what gets called by the 'kestrel-tui' command
from kestrel_tui.app import main

__all__ = ["main", "__version__", "__app_name__"]
