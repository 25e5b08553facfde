# =============================================================================
# Kestrel-TUI Core Module
# =============================================================================
# This module contains the core domain models for Kestrel-TUI. These are pure
# Python dataclasses with no external dependencies, so they can be imported
# anywhere without causing circular dependency issues.
#
# The core models represent the fundamental concepts of the client:
#   - Account: The Gmail account and its OAuth client
#   - Folder: A mailbox with its sync cursor
#   - Thread: A conversation view over messages
#   - Message: An individual email message
#   - ComposeDraft: An email being written
#   - Action: A unit of user intent produced by the modal engine
# =============================================================================

from kestrel_tui.core.account import Account
from kestrel_tui.core.folder import Folder, FolderType, GMAIL_MAILBOXES
from kestrel_tui.core.message import BodyState, Message, MessageFlags
from kestrel_tui.core.thread import Thread
from kestrel_tui.core.draft import (
    ComposeDraft,
    ComposeField,
    ComposeKind,
    create_forward,
    create_reply,
)
from kestrel_tui.core import action

__all__ = [
    "Account",
    "Folder",
    "FolderType",
    "GMAIL_MAILBOXES",
    "Message",
    "MessageFlags",
    "BodyState",
    "Thread",
    "ComposeDraft",
    "ComposeField",
    "ComposeKind",
    "create_reply",
    "create_forward",
    "action",
]
