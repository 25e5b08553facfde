# =============================================================================
# Transition Table
# =============================================================================
# A (mode, key) -> handler lookup shared by the ModalInputEngine and the
# ComposeEditor. Each mode has three layers, tried in order:
#
#   1. Exact bindings:     "j" -> next, "ctrl+s" -> send
#   2. Predicate bindings: any printable key -> insert it
#   3. A default handler:  everything else (usually a no-op)
#
# Every mode must have a default before the table is used, so every
# (mode, key) pair has an outcome. check_total() enforces that.
# =============================================================================

from collections.abc import Callable, Hashable, Iterable
from typing import Any

# A handler receives the key that selected it
Handler = Callable[[str], Any]
KeyPredicate = Callable[[str], bool]


class TransitionTable:
    """
    Key bindings per mode.

    Usage:
        >>> table = TransitionTable("normal")
        >>> table.bind(Mode.NORMAL, ["j", "down"], on_next)
        >>> table.bind_when(Mode.INSERT, is_printable, on_insert)
        >>> table.set_default(Mode.NORMAL, on_ignore)
        >>> table.check_total(Mode)
        >>> table.lookup(Mode.NORMAL, "j")("j")
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._exact: dict[Hashable, dict[str, Handler]] = {}
        self._predicates: dict[Hashable, list[tuple[KeyPredicate, Handler]]] = {}
        self._defaults: dict[Hashable, Handler] = {}

    def bind(self, mode: Hashable, keys: str | Iterable[str], handler: Handler) -> None:
        """
        Bind one or more keys in a mode.

        Raises:
            ValueError: If a key is already bound in that mode.
        """
        if isinstance(keys, str):
            keys = [keys]
        bindings = self._exact.setdefault(mode, {})
        for key in keys:
            if key in bindings:
                raise ValueError(f"{self.name}: {key!r} already bound in {mode}")
            bindings[key] = handler

    def bind_when(self, mode: Hashable, predicate: KeyPredicate, handler: Handler) -> None:
        """Bind every key matching `predicate` that has no exact binding."""
        self._predicates.setdefault(mode, []).append((predicate, handler))

    def set_default(self, mode: Hashable, handler: Handler) -> None:
        self._defaults[mode] = handler

    def lookup(self, mode: Hashable, key: str) -> Handler:
        """
        Find the handler for a key.

        Raises:
            LookupError: If the mode has no default (table not total).
        """
        handler = self._exact.get(mode, {}).get(key)
        if handler is not None:
            return handler
        for predicate, candidate in self._predicates.get(mode, []):
            if predicate(key):
                return candidate
        try:
            return self._defaults[mode]
        except KeyError:
            raise LookupError(f"{self.name}: no transition for {key!r} in {mode}") from None

    def is_bound(self, mode: Hashable, key: str) -> bool:
        """True if the key has an exact or predicate binding (not just the default)."""
        if key in self._exact.get(mode, {}):
            return True
        return any(predicate(key) for predicate, _ in self._predicates.get(mode, []))

    def bound_keys(self, mode: Hashable) -> list[str]:
        return sorted(self._exact.get(mode, {}))

    def check_total(self, modes: Iterable[Hashable]) -> None:
        """
        Verify every mode has a default transition.

        Raises:
            ValueError: Listing the modes without one.
        """
        missing = [str(mode) for mode in modes if mode not in self._defaults]
        if missing:
            raise ValueError(f"{self.name}: no default transition for {', '.join(missing)}")
