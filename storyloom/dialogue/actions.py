"""
Action execution - ordered state mutations and external callbacks.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from storyloom.core.errors import DialogueValidationError
from storyloom.core.events import DialogueEvent, EventBus
from storyloom.dialogue.definitions import (
    Action,
    CallbackAction,
    ClearAction,
    DecrementAction,
    IncrementAction,
    SetAction,
)
from storyloom.dialogue.flags import FlagStoreProtocol, ScopedFlags

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """
    What a callback handler receives.

    Attributes:
        action: The callback action being executed
        args: The action's args (empty list if none were given)
        node_id: Node the action belongs to (the source node for choice actions)
        game_flags: Game flag store
        conversation_flags: Conversation flag store
    """
    action: Optional[CallbackAction] = None
    args: list[Any] = field(default_factory=list)
    node_id: Optional[str] = None
    game_flags: Optional[FlagStoreProtocol] = None
    conversation_flags: Optional[FlagStoreProtocol] = None


# Type alias for action handlers
ActionHandler = Callable[[ActionContext], Union[Any, Awaitable[Any]]]


def validate_handlers(handlers: Optional[Mapping[str, Any]]) -> dict[str, ActionHandler]:
    """
    Check a handler table at construction time.

    Raises:
        DialogueValidationError: If the table is not a mapping or a handler is not callable.
    """
    if handlers is None:
        return {}
    if not isinstance(handlers, Mapping):
        raise DialogueValidationError("action_handlers must be a mapping", "action_handlers")

    for name, handler in handlers.items():
        if not callable(handler):
            raise DialogueValidationError(
                f"Action handler '{name}' must be callable", "action_handlers"
            )
    return dict(handlers)


class ActionExecutor:
    """
    Runs action lists strictly in order.

    Each action is awaited before the next starts, and an ACTION_EXECUTED
    event follows every action. An exception from a handler propagates as-is;
    actions that already ran are not rolled back.
    """

    def __init__(
        self,
        flags: ScopedFlags,
        handlers: Optional[Mapping[str, ActionHandler]] = None,
        events: Optional[EventBus] = None,
    ):
        self.flags = flags
        self.handlers = validate_handlers(handlers)
        self.events = events

    async def execute(
        self,
        actions: Optional[Sequence[Action]],
        context: Optional[ActionContext] = None,
    ) -> list[Any]:
        """
        Execute a sequence of actions.

        Args:
            actions: Actions to run (None or empty is a no-op)
            context: Base context for callback handlers

        Returns:
            The result of each action, in order
        """
        results = []
        for action in actions or ():
            result = await self.execute_one(action, context)
            results.append(result)
        return results

    async def execute_one(self, action: Action, context: Optional[ActionContext] = None) -> Any:
        """Execute a single action and publish ACTION_EXECUTED."""
        if isinstance(action, SetAction):
            store, key = self.flags.locate(action.flag)
            store.set(key, action.value)
            result = action.value

        elif isinstance(action, ClearAction):
            store, key = self.flags.locate(action.flag)
            store.delete(key)
            result = True

        elif isinstance(action, IncrementAction):
            store, key = self.flags.locate(action.flag)
            result = store.increment(key, 1 if action.value is None else action.value)

        elif isinstance(action, DecrementAction):
            store, key = self.flags.locate(action.flag)
            result = store.decrement(key, 1 if action.value is None else action.value)

        elif isinstance(action, CallbackAction):
            result = await self._run_callback(action, context)

        else:
            raise DialogueValidationError(f"Unknown action: {action!r}", "action")

        logger.debug(f"Executed {action!r} -> {result!r}")

        if self.events is not None:
            await self.events.publish(DialogueEvent.ACTION_EXECUTED, action=action, result=result)

        return result

    async def _run_callback(self, action: CallbackAction, context: Optional[ActionContext]) -> Any:
        handler = self.handlers.get(action.name)
        if handler is None:
            raise DialogueValidationError(
                f"Action handler not registered: {action.name}", "action_handlers"
            )
        if not callable(handler):
            raise DialogueValidationError(
                f"Action handler '{action.name}' is not callable", "action_handlers"
            )

        base = context if context is not None else ActionContext()
        game = base.game_flags if base.game_flags is not None else self.flags.game
        conversation = (
            base.conversation_flags
            if base.conversation_flags is not None
            else self.flags.conversation
        )
        call_context = ActionContext(
            action=action,
            args=list(action.args or []),
            node_id=base.node_id,
            game_flags=game,
            conversation_flags=conversation,
        )

        result = handler(call_context)
        if inspect.isawaitable(result):
            result = await result
        return result
