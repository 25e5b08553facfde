# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure the session surfaces to the user is one of these. Each error
# carries a `kind` enum so callers branch on the failure class rather than
# on message text:
#
#   - AuthError:        EXPIRED, REVOKED, NETWORK_UNAVAILABLE
#   - SyncError:        TRANSIENT, PERMANENT
#   - MutationError:    TRANSIENT, CONFLICT, PERMANENT
#   - CommandError:     UNKNOWN
#   - ValidationError:  EMPTY_RECIPIENT, EMPTY_CONTENT
#
# Propagation rules (see dispatch and sync):
#   - TRANSIENT errors are retried with backoff and only surface once the
#     retry budget is exhausted.
#   - PERMANENT errors surface immediately.
#   - CONFLICT forces a full resync of the affected folder.
#   - AuthError REVOKED is fatal to the session.
# =============================================================================

from enum import Enum


class AuthErrorKind(Enum):
    """Why a token could not be produced."""
    EXPIRED = "expired"
    REVOKED = "revoked"
    NETWORK_UNAVAILABLE = "network_unavailable"


class SyncErrorKind(Enum):
    """Failure class of a delta sync."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class MutationErrorKind(Enum):
    """Failure class of a remote mutation."""
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PERMANENT = "permanent"


class CommandErrorKind(Enum):
    UNKNOWN = "unknown"


class ValidationErrorKind(Enum):
    EMPTY_RECIPIENT = "empty_recipient"
    EMPTY_CONTENT = "empty_content"


class KestrelError(Exception):
    """Base class for all errors the session knows how to surface."""

    kind: Enum

    def __init__(self, kind: Enum, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value.replace("_", " "))

    @property
    def retryable(self) -> bool:
        """True if retrying the same operation may succeed."""
        return False

    @property
    def fatal(self) -> bool:
        """True if the session cannot continue without user intervention."""
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.name}, message={str(self)!r})"


class AuthError(KestrelError):
    """Raised when a valid access token cannot be produced."""

    kind: AuthErrorKind

    def __init__(self, kind: AuthErrorKind, message: str = "") -> None:
        super().__init__(kind, message)

    @property
    def retryable(self) -> bool:
        return self.kind == AuthErrorKind.NETWORK_UNAVAILABLE

    @property
    def fatal(self) -> bool:
        # A revoked grant can only be fixed by running the consent flow again
        return self.kind == AuthErrorKind.REVOKED


class SyncError(KestrelError):
    """Raised when a folder cannot be reconciled with the server."""

    kind: SyncErrorKind

    def __init__(self, kind: SyncErrorKind, message: str = "") -> None:
        super().__init__(kind, message)

    @property
    def retryable(self) -> bool:
        return self.kind == SyncErrorKind.TRANSIENT


class MutationError(KestrelError):
    """Raised when the server rejects or cannot apply a mutation."""

    kind: MutationErrorKind

    def __init__(self, kind: MutationErrorKind, message: str = "") -> None:
        super().__init__(kind, message)

    @property
    def retryable(self) -> bool:
        return self.kind == MutationErrorKind.TRANSIENT


class CommandError(KestrelError):
    """Raised for command-mode input that maps to no command."""

    kind: CommandErrorKind

    def __init__(self, kind: CommandErrorKind, message: str = "") -> None:
        super().__init__(kind, message)


class ValidationError(KestrelError):
    """Raised when a local precondition blocks an action before any network call."""

    kind: ValidationErrorKind

    def __init__(self, kind: ValidationErrorKind, message: str = "") -> None:
        super().__init__(kind, message)


def describe(error: BaseException) -> str:
    """
    Turn an error into a one-line banner text.

    Args:
        error: Any exception that reached the foreground.

    Returns:
        Short, user-facing description.
    """
    if isinstance(error, AuthError):
        if error.kind == AuthErrorKind.REVOKED:
            return "Access revoked - please sign in again"
        if error.kind == AuthErrorKind.NETWORK_UNAVAILABLE:
            return "Network unavailable - will retry"
        return f"Authentication expired: {error}"
    if isinstance(error, SyncError):
        if error.kind == SyncErrorKind.PERMANENT:
            return f"Folder is stale, run :refresh to resync ({error})"
        return f"Sync degraded: {error}"
    if isinstance(error, MutationError):
        if error.kind == MutationErrorKind.CONFLICT:
            return f"Out of date, resyncing folder ({error})"
        return f"Action failed: {error}"
    if isinstance(error, CommandError):
        return str(error)
    if isinstance(error, ValidationError):
        return str(error)
    return f"Error: {error}"
