"""
Flag stores - scoped key/value state read by conditions and written by actions.

Two stores coexist per runner:
- game: injected by the caller, outlives the runner
- conversation: owned by the runner, reset on every start/restart

A flag reference prefixed with "conv:" resolves against the conversation
store (prefix stripped); any other reference is a game key, used verbatim.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any, Iterator, Optional, Protocol, runtime_checkable

from storyloom.core.errors import DialogueValidationError
from storyloom.dialogue.definitions import FLAG_VALUE_TYPES, FlagValue

CONVERSATION_PREFIX = "conv:"

# Methods an injected store must expose (checked structurally)
REQUIRED_METHODS = (
    "get",
    "set",
    "has",
    "delete",
    "clear",
    "increment",
    "decrement",
    "read_all",
    "keys",
)


@runtime_checkable
class FlagStoreProtocol(Protocol):
    """Capability interface for any flag store the runner can use."""

    def get(self, key: str, default: Any = None) -> Optional[FlagValue]: ...
    def set(self, key: str, value: FlagValue) -> Any: ...
    def has(self, key: str) -> bool: ...
    def delete(self, key: str) -> Any: ...
    def clear(self) -> Any: ...
    def increment(self, key: str, amount: float = 1) -> float: ...
    def decrement(self, key: str, amount: float = 1) -> float: ...
    def read_all(self) -> dict[str, FlagValue]: ...
    def keys(self) -> list[str]: ...


def ensure_flag_store(store: Any, name: str = "game_flags") -> Any:
    """
    Validate an injected flag store by shape, not type identity.

    Raises:
        DialogueValidationError: If any required method is missing.
    """
    for method in REQUIRED_METHODS:
        if not callable(getattr(store, method, None)):
            raise DialogueValidationError(
                f"{name} must be a flag store: missing method '{method}'", name
            )
    return store


def is_flag_value(value: Any) -> bool:
    return isinstance(value, FLAG_VALUE_TYPES)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class FlagStore:
    """
    In-memory flag store.

    Usage:
        flags = FlagStore({"gold": 10})
        flags.increment("gold", 5)   # 15
        flags.decrement("gold", 50)  # 0, never negative
    """

    def __init__(self, initial: Optional[dict[str, FlagValue]] = None):
        self._flags: dict[str, FlagValue] = {}
        if initial:
            for key, value in initial.items():
                self.set(key, value)

    def get(self, key: str, default: Any = None) -> Optional[FlagValue]:
        """Get a flag value."""
        return self._flags.get(key, default)

    def set(self, key: str, value: FlagValue) -> FlagStore:
        """Set a flag value (bool, number or string)."""
        if not isinstance(key, str):
            raise DialogueValidationError(f"Flag key must be a string, got {key!r}", "key")
        if not is_flag_value(value):
            raise DialogueValidationError(
                f"Flag '{key}' must be a bool, number or string, "
                f"got {type(value).__name__}",
                "value",
            )
        self._flags[key] = value
        return self

    def has(self, key: str) -> bool:
        return key in self._flags

    def delete(self, key: str) -> FlagStore:
        """Delete a flag (no error if absent)."""
        self._flags.pop(key, None)
        return self

    def clear(self) -> FlagStore:
        self._flags.clear()
        return self

    def increment(self, key: str, amount: float = 1) -> float:
        """
        Add to a numeric flag.

        Args:
            key: Flag name (absent or non-numeric counts as 0)
            amount: How much to add

        Returns:
            The new value
        """
        value = self._numeric(key) + amount
        self._flags[key] = value
        return value

    def decrement(self, key: str, amount: float = 1) -> float:
        """
        Subtract from a numeric flag, flooring the result at 0.

        Returns:
            The new value
        """
        value = max(0, self._numeric(key) - amount)
        self._flags[key] = value
        return value

    def read_all(self) -> dict[str, FlagValue]:
        """Snapshot of every flag."""
        return dict(self._flags)

    def keys(self) -> list[str]:
        """Flag names in insertion order."""
        return list(self._flags)

    def replace(self, values: dict[str, FlagValue]) -> FlagStore:
        """Replace the whole content with a snapshot."""
        self._flags.clear()
        for key, value in values.items():
            self.set(key, value)
        return self

    def _numeric(self, key: str) -> float:
        current = self._flags.get(key, 0)
        return current if _is_number(current) else 0

    def __contains__(self, key: object) -> bool:
        return key in self._flags

    def __len__(self) -> int:
        return len(self._flags)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __repr__(self) -> str:
        return f"FlagStore({self._flags!r})"


class ReadOnlyFlags:
    """Read-only view over a flag store."""

    def __init__(self, store: FlagStoreProtocol):
        self._store = store

    def get(self, key: str, default: Any = None) -> Optional[FlagValue]:
        value = self._store.get(key)
        return default if value is None else value

    def has(self, key: str) -> bool:
        return self._store.has(key)

    def read_all(self) -> dict[str, FlagValue]:
        return dict(self._store.read_all())

    def keys(self) -> list[str]:
        return list(self._store.keys())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._store.has(key)


class FlagScope(Enum):
    """Which store a flag reference points at."""
    GAME = auto()
    CONVERSATION = auto()


def resolve_flag_ref(ref: str) -> tuple[FlagScope, str]:
    """
    Split a flag reference into its scope and store key.

    "conv:met" -> (CONVERSATION, "met")
    "gold"     -> (GAME, "gold")
    "game:gold"-> (GAME, "game:gold")   # unknown prefixes stay part of the key
    """
    if ref.startswith(CONVERSATION_PREFIX):
        return FlagScope.CONVERSATION, ref[len(CONVERSATION_PREFIX):]
    return FlagScope.GAME, ref


class ScopedFlags:
    """The game/conversation store pair, addressed through flag references."""

    def __init__(self, game: FlagStoreProtocol, conversation: FlagStoreProtocol):
        self.game = game
        self.conversation = conversation

    def locate(self, ref: str) -> tuple[FlagStoreProtocol, str]:
        """Return the store and key a reference resolves to."""
        scope, key = resolve_flag_ref(ref)
        if scope is FlagScope.CONVERSATION:
            return self.conversation, key
        return self.game, key

    def get(self, ref: str) -> Optional[FlagValue]:
        store, key = self.locate(ref)
        return store.get(key)

    def has(self, ref: str) -> bool:
        store, key = self.locate(ref)
        return store.has(key)
