"""
Error hierarchy shared by every storyloom module.

Two kinds of failure sit under one root:
- DialogueValidationError: the caller misused the API (bad argument,
  wrong runner state, blocked choice, malformed injected capability)
- DialogueStructureError: dialogue content references a node that does
  not exist, or an auto-advance chain never terminates
"""

from __future__ import annotations

from typing import Optional


class DialogueError(Exception):
    """Base class for all dialogue errors."""


class DialogueValidationError(DialogueError):
    """Raised when an operation is called with invalid input or state."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DialogueStructureError(DialogueError):
    """Raised when dialogue content is structurally broken."""

    def __init__(
        self,
        message: str,
        dialogue_id: Optional[str] = None,
        node_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.dialogue_id = dialogue_id
        self.node_id = node_id
