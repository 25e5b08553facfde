# =============================================================================
# Remote Module
# =============================================================================
# The mail service boundary:
#   - base: RemoteMailClient interface, SyncDelta, Mutation, RemoteError
#   - imap: Gmail over IMAP (aioimaplib, XOAUTH2)
#   - smtp: sending through Gmail SMTP (aiosmtplib, XOAUTH2)
#
# Only the interface is re-exported here; the adapters pull in the network
# stack and are imported from their own modules.
# =============================================================================

from kestrel_tui.remote.base import (
    Mutation,
    MutationKind,
    RemoteError,
    RemoteErrorKind,
    RemoteMailClient,
    SyncDelta,
)

__all__ = [
    "Mutation",
    "MutationKind",
    "RemoteError",
    "RemoteErrorKind",
    "RemoteMailClient",
    "SyncDelta",
]
