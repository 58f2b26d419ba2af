"""
Typed event bus for runner notifications.

Uses Enums for event types to prevent magic strings. Each member also
carries a string value so callers can subscribe by name.

Usage:
    bus = EventBus()

    # Subscribe
    bus.subscribe(DialogueEvent.NODE_ENTERED, on_node_entered)

    # Publish (handlers may be sync or async)
    await bus.publish(DialogueEvent.NODE_ENTERED, node=node, speaker=None)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from storyloom.core.errors import DialogueValidationError

logger = logging.getLogger(__name__)


class DialogueEvent(Enum):
    """Notifications dispatched by a dialogue runner."""
    # Lifecycle
    DIALOGUE_STARTED = "dialogue_started"
    DIALOGUE_ENDED = "dialogue_ended"

    # Traversal
    NODE_ENTERED = "node_entered"
    NODE_EXITED = "node_exited"
    CHOICE_SELECTED = "choice_selected"

    # Engines
    ACTION_EXECUTED = "action_executed"
    CONDITION_EVALUATED = "condition_evaluated"

    @classmethod
    def parse(cls, value: DialogueEvent | str) -> DialogueEvent:
        """Resolve an enum member from a member or its string value/name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
            try:
                return cls[value.upper()]
            except KeyError:
                pass
        raise DialogueValidationError(f"Unknown event: {value!r}", "event")


@dataclass
class Event:
    """
    Event data container.

    Attributes:
        type: The event type (Enum member)
        data: Dictionary of event-specific data
    """
    type: DialogueEvent
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get event data by key."""
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        """Get event data by key (dict-style)."""
        return self.data[key]


# Type alias for event handlers
EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe dispatcher used for every runner notification.

    Features:
    - Typed events (Enum-based, or their string names)
    - Registration-order delivery
    - Sync and async handlers, each awaited before the next
    - One-shot handlers
    - Configurable error policy (isolate and log, or propagate)
    """

    def __init__(self, propagate_errors: bool = False):
        # Map of event type -> list of (handler, one_shot)
        self._handlers: dict[DialogueEvent, list[tuple[EventHandler, bool]]] = {}
        self.propagate_errors = propagate_errors

    def subscribe(
        self,
        event_type: DialogueEvent | str,
        handler: EventHandler,
        one_shot: bool = False,
    ) -> None:
        """
        Subscribe to an event type.

        Args:
            event_type: The event type (or its string value) to listen for
            handler: Callback function(event: Event), may be a coroutine function
            one_shot: If True, handler is removed after first call
        """
        if not callable(handler):
            raise DialogueValidationError("Event handler must be callable", "callback")

        event_type = DialogueEvent.parse(event_type)
        self._handlers.setdefault(event_type, []).append((handler, one_shot))

    def unsubscribe(self, event_type: DialogueEvent | str, handler: EventHandler) -> None:
        """
        Unsubscribe from an event type.

        Args:
            event_type: The event type
            handler: The handler to remove
        """
        event_type = DialogueEvent.parse(event_type)
        if event_type not in self._handlers:
            return

        self._handlers[event_type] = [
            (h, o) for h, o in self._handlers[event_type] if h != handler
        ]

    def handler_count(self, event_type: DialogueEvent | str) -> int:
        """Number of handlers subscribed to an event type."""
        return len(self._handlers.get(DialogueEvent.parse(event_type), []))

    def clear(self, event_type: DialogueEvent | str | None = None) -> None:
        """
        Clear handlers.

        Args:
            event_type: If specified, only clear handlers for this type.
                       If None, clear all handlers.
        """
        if event_type is None:
            self._handlers.clear()
            return

        self._handlers.pop(DialogueEvent.parse(event_type), None)

    async def publish(self, event_type: DialogueEvent, **data: Any) -> Event:
        """
        Publish an event.

        Args:
            event_type: The event type
            **data: Event data as keyword arguments

        Returns:
            The Event object delivered to the handlers
        """
        event = Event(type=event_type, data=data)
        await self._dispatch(event)
        return event

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to handlers."""
        handlers = self._handlers.get(event.type)
        if not handlers:
            return

        # Snapshot so handlers may (un)subscribe while we iterate
        for entry in list(handlers):
            handler, one_shot = entry
            if one_shot and entry in handlers:
                handlers.remove(entry)

            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                if self.propagate_errors:
                    raise
                logger.exception(f"Error in event handler for {event.type.value}")
