"""
History and serialization - navigable past positions and save/restore.

Every transition records a HistoryEntry holding a snapshot of the
conversation flags as they were when the node was left. Snapshots are
copies: mutating live flags afterwards never changes recorded history.

Persisted format (JSON-safe):
    {
      "dialogueId": "guard",
      "currentNodeId": "pass",
      "history": [{"nodeId": "greet", "node": {...}, "choiceIndex": 0,
                   "choice": {...}, "timestamp": 1700000000000,
                   "conversationFlags": {}}],
      "conversationFlags": {"bribed": true}
    }
"""

from __future__ import annotations

import time
from typing import Any, Iterator, Mapping, Optional

from pydantic import Field

from storyloom.core.model import Definition
from storyloom.dialogue.definitions import ChoiceDefinition, FlagValue, NodeDefinition


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)


class HistoryEntry(Definition):
    """
    A recorded prior position.

    Attributes:
        node_id: Node that was left
        node: Snapshot of that node's definition
        choice_index: Stable id of the choice taken (None for jumps)
        choice: The choice taken (None for jumps)
        timestamp: When the node was left, in ms since the epoch
        conversation_flags: Conversation flags at that moment
    """
    node_id: str
    node: NodeDefinition
    choice_index: Optional[int] = None
    choice: Optional[ChoiceDefinition] = None
    timestamp: int = Field(default_factory=now_ms)
    conversation_flags: dict[str, FlagValue] = Field(default_factory=dict)


class SerializedState(Definition):
    """Everything needed to restore a traversal (game flags excluded)."""
    dialogue_id: str
    current_node_id: str
    history: list[HistoryEntry] = Field(default_factory=list)
    conversation_flags: dict[str, FlagValue] = Field(default_factory=dict)


class History:
    """
    Runner-owned stack of history entries.

    Grows by one entry per transition, shrinks by one on back().
    """

    def __init__(self, entries: Optional[list[HistoryEntry]] = None):
        self._entries: list[HistoryEntry] = list(entries or [])

    def push(
        self,
        node_id: str,
        node: NodeDefinition,
        flags: Mapping[str, FlagValue],
        choice_index: Optional[int] = None,
        choice: Optional[ChoiceDefinition] = None,
    ) -> HistoryEntry:
        """Record a position, copying the flag snapshot."""
        entry = HistoryEntry(
            node_id=node_id,
            node=node,
            choice_index=choice_index,
            choice=choice,
            conversation_flags=dict(flags),
        )
        self._entries.append(entry)
        return entry

    def pop(self) -> Optional[HistoryEntry]:
        """Remove and return the most recent entry (None if empty)."""
        if not self._entries:
            return None
        return self._entries.pop()

    def clear(self) -> None:
        self._entries.clear()

    def replace(self, entries: list[HistoryEntry]) -> None:
        self._entries = list(entries)

    def entries(self) -> list[HistoryEntry]:
        """Deep copies of every entry, oldest first."""
        return [entry.model_copy(deep=True) for entry in self._entries]

    def to_list(self) -> list[dict[str, Any]]:
        """JSON-safe dicts of every entry, oldest first."""
        return [entry.to_dict() for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(list(self._entries))
