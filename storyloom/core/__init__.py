"""
Core module.

Exports:
- DialogueError, DialogueValidationError, DialogueStructureError: Errors
- Definition: Immutable pydantic model base
- RunnerConfig: Runner configuration
- EventBus, Event, DialogueEvent: Event system
"""

from storyloom.core.errors import (
    DialogueError,
    DialogueValidationError,
    DialogueStructureError,
)
from storyloom.core.model import Definition
from storyloom.core.config import RunnerConfig
from storyloom.core.events import EventBus, Event, DialogueEvent

__all__ = [
    # Errors
    "DialogueError",
    "DialogueValidationError",
    "DialogueStructureError",
    # Models
    "Definition",
    # Config
    "RunnerConfig",
    # Events
    "EventBus",
    "Event",
    "DialogueEvent",
]
