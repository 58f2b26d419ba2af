"""
Dialogue runner - drives one traversal of a dialogue graph.

The runner composes the flag stores, condition evaluator, action executor
and interpolator into a small state machine:

    IDLE --start--> ACTIVE --choose/auto-advance--> ENDED
                     ^  |                              |
                     +--+------- back/restart ---------+

Usage:
    runner = DialogueRunner(game_flags=flags, speakers={"guard": {"name": "Guard"}})
    runner.on(DialogueEvent.NODE_ENTERED, lambda event: print(event["node"].text))

    view = await runner.start(dialogue)
    view = await runner.choose(0)
    saved = runner.serialize()

Operations on one runner must not overlap: a mutating call made while
another is still in flight (from a listener, or a second task) raises
DialogueValidationError.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Iterator, Mapping, Optional

from storyloom.core.config import RunnerConfig
from storyloom.core.errors import DialogueStructureError, DialogueValidationError
from storyloom.core.events import DialogueEvent, EventBus, EventHandler
from storyloom.dialogue.actions import ActionContext, ActionExecutor, ActionHandler
from storyloom.dialogue.conditions import ConditionEvaluator
from storyloom.dialogue.definitions import (
    ChoiceDefinition,
    DialogueDefinition,
    FlagValue,
    NodeDefinition,
    Speaker,
    is_reserved_node_id,
)
from storyloom.dialogue.flags import FlagStore, FlagStoreProtocol, ScopedFlags, ensure_flag_store
from storyloom.dialogue.history import History, HistoryEntry, SerializedState
from storyloom.dialogue.i18n import I18nAdapter, ensure_i18n_adapter, translate
from storyloom.dialogue.interpolation import InterpolationFunction, Interpolator

logger = logging.getLogger(__name__)


class RunnerState(Enum):
    """Lifecycle of a runner."""
    IDLE = auto()      # No dialogue loaded
    ACTIVE = auto()    # Positioned on a node, awaiting a choice
    ENDED = auto()     # Positioned on an end node


class ChoiceUnavailableReason(Enum):
    """Why a choice cannot be selected."""
    DISABLED = "disabled"
    CONDITIONS_NOT_MET = "conditions_not_met"


@dataclass
class ChoiceView:
    """
    A choice as offered at the current node.

    Attributes:
        choice: The choice definition
        choice_id: Stable id - the choice's position in the node's full choice list
        available: Whether the choice can be selected right now
        reason: Why it is unavailable (None when available)
    """
    choice: ChoiceDefinition
    choice_id: int
    available: bool = True
    reason: Optional[ChoiceUnavailableReason] = None

    @property
    def text(self) -> str:
        return self.choice.text

    @property
    def next(self) -> str:
        return self.choice.next

    @property
    def tags(self) -> list[str]:
        return list(self.choice.tags or [])

    @property
    def disabled(self) -> bool:
        return self.choice.disabled

    @property
    def disabled_text(self) -> Optional[str]:
        return self.choice.disabled_text


@dataclass
class DialogueView:
    """Snapshot returned by start/choose/restart."""
    current_node: NodeDefinition
    available_choices: list[ChoiceView]
    is_ended: bool


ChoiceFilter = Callable[[ChoiceDefinition], bool]


def _parse_speakers(speakers: Optional[Mapping[str, Any]]) -> dict[str, Speaker]:
    if speakers is None:
        return {}
    if not isinstance(speakers, Mapping):
        raise DialogueValidationError("speakers must be a mapping", "speakers")
    return {
        speaker_id: Speaker.coerce(speaker, f"speakers.{speaker_id}")
        for speaker_id, speaker in speakers.items()
    }


def _require_int(value: Any, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise DialogueValidationError(f"{field} must be an integer, got {value!r}", field)
    return value


class DialogueRunner:
    """
    Executes a dialogue definition, one conversation at a time.

    Handles:
    - Node entry (i18n, interpolation, actions, auto-advance)
    - Choice availability and selection
    - History, back-navigation and jumps
    - Save/restore of position, history and conversation flags

    Every callback passed to the constructor is subscribed to the runner's
    EventBus before anything registered later with on(), and receives the
    same Event object.
    """

    def __init__(
        self,
        game_flags: Optional[FlagStoreProtocol] = None,
        action_handlers: Optional[Mapping[str, ActionHandler]] = None,
        speakers: Optional[Mapping[str, Speaker | Mapping[str, Any]]] = None,
        i18n: Optional[I18nAdapter] = None,
        interpolation: Optional[Mapping[str, InterpolationFunction]] = None,
        config: Optional[RunnerConfig] = None,
        on_node_enter: Optional[EventHandler] = None,
        on_node_exit: Optional[EventHandler] = None,
        on_choice_selected: Optional[EventHandler] = None,
        on_dialogue_start: Optional[EventHandler] = None,
        on_dialogue_end: Optional[EventHandler] = None,
        on_action_executed: Optional[EventHandler] = None,
        on_condition_evaluated: Optional[EventHandler] = None,
    ):
        self.config = config or RunnerConfig()

        # Injected capabilities (validated by shape)
        if game_flags is None:
            game_flags = FlagStore()
        ensure_flag_store(game_flags, "game_flags")
        if i18n is not None:
            ensure_i18n_adapter(i18n)
        self._i18n = i18n
        self._speakers = _parse_speakers(speakers)

        # Engines
        self.events = EventBus(propagate_errors=self.config.propagate_listener_errors)
        self._flags = ScopedFlags(game=game_flags, conversation=FlagStore())
        self._evaluator = ConditionEvaluator(self._flags)
        self._executor = ActionExecutor(self._flags, action_handlers, self.events)
        self._interpolator = Interpolator(interpolation)

        # Current state
        self._dialogue: Optional[DialogueDefinition] = None
        self._current_node_id: Optional[str] = None
        self._current_node: Optional[NodeDefinition] = None
        self._state = RunnerState.IDLE
        self._history = History()
        self._busy = False

        callbacks = (
            (DialogueEvent.NODE_ENTERED, on_node_enter),
            (DialogueEvent.NODE_EXITED, on_node_exit),
            (DialogueEvent.CHOICE_SELECTED, on_choice_selected),
            (DialogueEvent.DIALOGUE_STARTED, on_dialogue_start),
            (DialogueEvent.DIALOGUE_ENDED, on_dialogue_end),
            (DialogueEvent.ACTION_EXECUTED, on_action_executed),
            (DialogueEvent.CONDITION_EVALUATED, on_condition_evaluated),
        )
        for event_type, callback in callbacks:
            if callback is not None:
                self.events.subscribe(event_type, callback)

    # --- Properties ---

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def dialogue(self) -> Optional[DialogueDefinition]:
        return self._dialogue

    @property
    def current_node_id(self) -> Optional[str]:
        return self._current_node_id

    @property
    def game_flags(self) -> FlagStoreProtocol:
        return self._flags.game

    # --- Lifecycle ---

    async def start(self, dialogue: DialogueDefinition | Mapping[str, Any]) -> DialogueView:
        """
        Load a dialogue and enter its start node.

        Resets history and conversation flags.

        Raises:
            DialogueValidationError: If the definition is malformed, uses a
                reserved node id, or its start node is missing.
        """
        with self._exclusive("start"):
            definition = DialogueDefinition.coerce(dialogue, "dialogue")
            self._check_dialogue(definition)

            self._dialogue = definition
            self._history.clear()
            self._flags.conversation = FlagStore()
            self._current_node_id = definition.start_node
            self._current_node = None
            self._state = RunnerState.ACTIVE

            logger.info(f"Starting dialogue '{definition.id}' at '{definition.start_node}'")
            await self.events.publish(DialogueEvent.DIALOGUE_STARTED, dialogue=definition)
            await self._enter_node(definition.start_node)
            return await self._view()

    async def restart(self, preserve_conversation_flags: bool = False) -> DialogueView:
        """
        Return to the start node of the loaded dialogue.

        Args:
            preserve_conversation_flags: Keep the current conversation flags
        """
        with self._exclusive("restart"):
            dialogue = self._require_dialogue()

            self._history.clear()
            if not preserve_conversation_flags:
                self._flags.conversation = FlagStore()
            self._state = RunnerState.ACTIVE

            logger.info(f"Restarting dialogue '{dialogue.id}'")
            await self.events.publish(DialogueEvent.DIALOGUE_STARTED, dialogue=dialogue)
            await self._enter_node(dialogue.start_node)
            return await self._view()

    def is_ended(self) -> bool:
        return self._state is RunnerState.ENDED

    def get_current_node(self) -> Optional[NodeDefinition]:
        """Current node with its text already interpolated (None while idle)."""
        return self._current_node

    # --- Choices ---

    async def get_choices(
        self,
        filter: Optional[ChoiceFilter] = None,
        include_disabled: bool = False,
        include_unavailable: bool = False,
    ) -> list[ChoiceView]:
        """
        Choices at the current node, in authored order.

        Args:
            filter: Predicate applied to each ChoiceDefinition first
            include_disabled: Also return choices marked disabled
            include_unavailable: Return every choice, disabled ones included,
                each annotated with why it is unavailable

        Returns:
            ChoiceView list; each view records availability and reason.
            Empty while idle or ended.
        """
        views = []
        for choice_id, choice in enumerate(self._raw_choices()):
            if filter is not None and not filter(choice):
                continue

            view = self._assess(choice_id, choice)
            if choice.conditions is not None and not choice.disabled:
                await self.events.publish(
                    DialogueEvent.CONDITION_EVALUATED,
                    condition=choice.conditions,
                    result=view.available,
                )

            if not include_unavailable:
                if view.reason is ChoiceUnavailableReason.DISABLED and not include_disabled:
                    continue
                if view.reason is ChoiceUnavailableReason.CONDITIONS_NOT_MET:
                    continue
            views.append(view)
        return views

    async def choose(self, index: int) -> DialogueView:
        """
        Select a choice by its position in the default get_choices() list.

        Raises:
            DialogueValidationError: While idle or ended, or for an index
                outside the currently offered choices.
            DialogueStructureError: If the choice targets a missing node.
        """
        with self._exclusive("choose"):
            self._require_active()
            _require_int(index, "index")

            offered = [view for view in self._assess_all() if view.available]
            if not 0 <= index < len(offered):
                raise DialogueValidationError(f"Invalid choice index: {index}", "index")

            return await self._commit_choice(offered[index])

    async def choose_by_id(self, choice_id: int) -> DialogueView:
        """
        Select a choice by its stable id (ChoiceView.choice_id).

        Availability is re-checked at selection time, independent of which
        filtered view was rendered last.
        """
        with self._exclusive("choose"):
            self._require_active()
            _require_int(choice_id, "choice_id")

            choices = self._raw_choices()
            if not 0 <= choice_id < len(choices):
                raise DialogueValidationError(f"Invalid choice id: {choice_id}", "choice_id")

            view = self._assess(choice_id, choices[choice_id])
            if view.reason is ChoiceUnavailableReason.DISABLED:
                raise DialogueValidationError("Cannot select disabled choice", "choice_id")
            if view.reason is ChoiceUnavailableReason.CONDITIONS_NOT_MET:
                raise DialogueValidationError("Choice conditions not met", "choice_id")

            return await self._commit_choice(view)

    # --- Navigation ---

    async def back(self) -> None:
        """
        Undo the last transition.

        Restores the previous node and its conversation flag snapshot
        exactly. Node actions are not re-run. No-op on empty history.
        """
        with self._exclusive("back"):
            entry = self._history.pop()
            if entry is None or self._dialogue is None:
                return

            node = self._dialogue.get_node(entry.node_id) or entry.node
            self._flags.conversation.replace(entry.conversation_flags)
            logger.debug(f"Back to '{entry.node_id}'")
            await self._place(entry.node_id, node)

    async def jump_to(self, node_id: str) -> None:
        """
        Place the runner on a node directly.

        The current node is pushed onto history. The target's actions are
        NOT run and auto-advance is NOT followed.
        """
        with self._exclusive("jump_to"):
            dialogue = self._require_dialogue()
            target = dialogue.get_node(node_id)
            if target is None:
                raise DialogueValidationError(f"Node not found: {node_id}", "node_id")

            previous = dialogue.get_node(self._current_node_id)
            if previous is not None:
                self._history.push(
                    self._current_node_id, previous, self._flags.conversation.read_all()
                )
                await self.events.publish(DialogueEvent.NODE_EXITED, node=self._current_node)

            logger.debug(f"Jump to '{node_id}'")
            await self._place(node_id, target)

    def get_history(self) -> list[HistoryEntry]:
        """Copies of every history entry, oldest first."""
        return self._history.entries()

    # --- Serialization ---

    def serialize(self) -> dict[str, Any]:
        """
        JSON-safe snapshot of position, history and conversation flags.

        Game flags are not included.
        """
        if self._dialogue is None or self._current_node_id is None:
            raise DialogueValidationError("No active dialogue to serialize", "state")

        state = SerializedState(
            dialogue_id=self._dialogue.id,
            current_node_id=self._current_node_id,
            history=list(self._history),
            conversation_flags=self._flags.conversation.read_all(),
        )
        return state.to_dict()

    async def deserialize(self, state: SerializedState | Mapping[str, Any]) -> None:
        """
        Restore a serialized snapshot onto the loaded dialogue.

        The matching dialogue must already be started; the dialogue id in
        the snapshot is not cross-checked. Actions are not re-run.
        """
        with self._exclusive("deserialize"):
            if self._dialogue is None:
                raise DialogueValidationError(
                    "Start a dialogue before deserializing state", "state"
                )

            restored = SerializedState.coerce(state, "state")
            for node_id in [restored.current_node_id, *(e.node_id for e in restored.history)]:
                if is_reserved_node_id(node_id):
                    raise DialogueValidationError(f"Reserved node id: {node_id!r}", "state")

            node = self._dialogue.get_node(restored.current_node_id)
            if node is None:
                raise DialogueValidationError(
                    f"Node not found: {restored.current_node_id}", "state"
                )

            self._history.replace([entry.model_copy(deep=True) for entry in restored.history])
            self._flags.conversation = FlagStore(dict(restored.conversation_flags))

            logger.info(
                f"Restored dialogue '{self._dialogue.id}' at '{restored.current_node_id}' "
                f"({len(self._history)} history entries)"
            )
            await self._place(restored.current_node_id, node)

    # --- Conversation flags ---

    def get_conversation_flags(self) -> dict[str, FlagValue]:
        """Copy of the conversation flags."""
        return self._flags.conversation.read_all()

    def clear_conversation_flags(self) -> None:
        self._require_dialogue()
        self._flags.conversation.clear()

    # --- Events ---

    def on(self, event: DialogueEvent | str, callback: EventHandler) -> None:
        """Subscribe to a runner event (by enum member or name, e.g. "node_entered")."""
        self.events.subscribe(event, callback)

    def off(self, event: DialogueEvent | str, callback: EventHandler) -> None:
        self.events.unsubscribe(event, callback)

    # --- Internals ---

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        """Reject overlapping operations on this runner."""
        if self._busy:
            raise DialogueValidationError(
                f"Cannot {operation}: another runner operation is in progress", "state"
            )
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def _check_dialogue(self, dialogue: DialogueDefinition) -> None:
        for node_id in dialogue.nodes:
            if is_reserved_node_id(node_id):
                raise DialogueValidationError(f"Reserved node id: {node_id!r}", "nodes")
        if is_reserved_node_id(dialogue.start_node):
            raise DialogueValidationError(
                f"Reserved start node id: {dialogue.start_node!r}", "start_node"
            )
        if not dialogue.has_node(dialogue.start_node):
            raise DialogueValidationError(
                f"Start node not found: {dialogue.start_node}", "start_node"
            )

    def _require_dialogue(self) -> DialogueDefinition:
        if self._dialogue is None:
            raise DialogueValidationError("No active dialogue", "state")
        return self._dialogue

    def _require_active(self) -> None:
        self._require_dialogue()
        if self._state is RunnerState.ENDED:
            raise DialogueValidationError("Dialogue has ended", "state")

    def _raw_choices(self) -> list[ChoiceDefinition]:
        if self._state is not RunnerState.ACTIVE or self._dialogue is None:
            return []
        node = self._dialogue.get_node(self._current_node_id)
        if node is None:
            return []
        return list(node.choices or [])

    def _assess(self, choice_id: int, choice: ChoiceDefinition) -> ChoiceView:
        if choice.disabled:
            return ChoiceView(choice, choice_id, False, ChoiceUnavailableReason.DISABLED)
        if choice.conditions is not None and not self._evaluator.evaluate(choice.conditions):
            return ChoiceView(choice, choice_id, False, ChoiceUnavailableReason.CONDITIONS_NOT_MET)
        return ChoiceView(choice, choice_id)

    def _assess_all(self) -> list[ChoiceView]:
        return [self._assess(i, choice) for i, choice in enumerate(self._raw_choices())]

    def _speaker_for(self, node: NodeDefinition) -> Optional[Speaker]:
        if node.speaker is None:
            return None
        return self._speakers.get(node.speaker)

    def _action_context(self, node_id: Optional[str]) -> ActionContext:
        return ActionContext(
            node_id=node_id,
            game_flags=self._flags.game,
            conversation_flags=self._flags.conversation,
        )

    async def _render(self, node: NodeDefinition, speaker: Optional[Speaker]) -> NodeDefinition:
        """Copy of node with translated, interpolated text."""
        text = node.text
        if self.config.translate_text:
            text = translate(self._i18n, text)
        text = await self._interpolator.interpolate(text, self._flags, node, speaker)
        return node.model_copy(update={"text": text})

    async def _commit_choice(self, view: ChoiceView) -> DialogueView:
        dialogue = self._require_dialogue()
        choice = view.choice
        source_id = self._current_node_id
        source = dialogue.get_node(source_id)

        if not dialogue.has_node(choice.next):
            raise DialogueStructureError(
                f"Choice \"{choice.text}\" targets non-existent node \"{choice.next}\"",
                dialogue.id,
                source_id,
            )

        # Snapshot precedes the choice's actions
        snapshot = self._flags.conversation.read_all()

        logger.debug(f"Choice {view.choice_id} at '{source_id}' -> '{choice.next}'")
        await self._executor.execute(choice.actions, self._action_context(source_id))
        await self.events.publish(
            DialogueEvent.CHOICE_SELECTED, choice=choice, index=view.choice_id
        )
        await self.events.publish(DialogueEvent.NODE_EXITED, node=self._current_node)

        self._history.push(source_id, source, snapshot, choice_index=view.choice_id, choice=choice)
        await self._enter_node(choice.next)
        return await self._view()

    async def _enter_node(self, node_id: str) -> None:
        """
        Node-entry algorithm.

        For each node: interpolate -> run actions -> NODE_ENTERED, then stop
        at an end or at choices, or follow `next` (auto-advance).
        """
        dialogue = self._require_dialogue()
        limit = self.config.max_auto_advance_hops
        hops = 0

        while True:
            node = dialogue.get_node(node_id)
            if node is None:
                raise DialogueStructureError(
                    f"Node not found: {node_id}", dialogue.id, node_id
                )

            self._current_node_id = node_id
            self._state = RunnerState.ACTIVE
            speaker = self._speaker_for(node)
            self._current_node = await self._render(node, speaker)

            logger.debug(f"Entering node '{node_id}'")
            await self._executor.execute(node.actions, self._action_context(node_id))
            await self.events.publish(
                DialogueEvent.NODE_ENTERED, node=self._current_node, speaker=speaker
            )

            if node.is_end or node.is_dead_end:
                if not node.is_end:
                    logger.warning(
                        f"Node '{node_id}' in '{dialogue.id}' has no choices or next; "
                        f"ending dialogue"
                    )
                self._state = RunnerState.ENDED
                logger.info(f"Dialogue '{dialogue.id}' ended at '{node_id}'")
                await self.events.publish(
                    DialogueEvent.DIALOGUE_ENDED, dialogue_id=dialogue.id, node=self._current_node
                )
                return

            if node.has_choices:
                return

            # Auto-advance
            await self.events.publish(DialogueEvent.NODE_EXITED, node=self._current_node)
            hops += 1
            if limit is not None and hops > limit:
                raise DialogueStructureError(
                    f"Auto-advance exceeded {limit} hops (last node '{node_id}')",
                    dialogue.id,
                    node_id,
                )
            node_id = node.next

    async def _place(self, node_id: str, node: NodeDefinition) -> None:
        """Put the runner on a node without running actions or auto-advance."""
        self._current_node_id = node_id
        self._state = (
            RunnerState.ENDED if node.is_end or node.is_dead_end else RunnerState.ACTIVE
        )
        speaker = self._speaker_for(node)
        self._current_node = await self._render(node, speaker)
        await self.events.publish(
            DialogueEvent.NODE_ENTERED, node=self._current_node, speaker=speaker
        )

    async def _view(self) -> DialogueView:
        return DialogueView(
            current_node=self._current_node,
            available_choices=await self.get_choices(),
            is_ended=self.is_ended(),
        )
