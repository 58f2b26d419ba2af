"""
Dialogue module - branching conversation execution.

Provides:
- Dialogue definitions (nodes, choices, conditions, actions, speakers)
- Game and conversation flag stores
- Condition evaluation and action execution
- Text interpolation and optional i18n
- The DialogueRunner state machine, history and save/restore
- Static validation and JSON loading
"""

from storyloom.dialogue.definitions import (
    DialogueDefinition,
    NodeDefinition,
    ChoiceDefinition,
    Speaker,
    Condition,
    CheckCondition,
    AndCondition,
    OrCondition,
    NotCondition,
    UnknownCondition,
    Action,
    SetAction,
    ClearAction,
    IncrementAction,
    DecrementAction,
    CallbackAction,
    FlagValue,
    RESERVED_NODE_IDS,
    is_reserved_node_id,
)
from storyloom.dialogue.flags import (
    FlagStore,
    FlagStoreProtocol,
    FlagScope,
    ReadOnlyFlags,
    ScopedFlags,
    resolve_flag_ref,
)
from storyloom.dialogue.conditions import ConditionEvaluator, evaluate
from storyloom.dialogue.actions import ActionContext, ActionExecutor
from storyloom.dialogue.interpolation import InterpolationContext, Interpolator
from storyloom.dialogue.i18n import I18nAdapter, create_i18n_adapter
from storyloom.dialogue.history import History, HistoryEntry, SerializedState
from storyloom.dialogue.validation import ValidationResult, validate_dialogue
from storyloom.dialogue.loader import DialogueLibrary, load_dialogue, parse_dialogue
from storyloom.dialogue.runner import (
    DialogueRunner,
    DialogueView,
    ChoiceView,
    ChoiceUnavailableReason,
    RunnerState,
)

__all__ = [
    # Definitions
    "DialogueDefinition",
    "NodeDefinition",
    "ChoiceDefinition",
    "Speaker",
    "Condition",
    "CheckCondition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "UnknownCondition",
    "Action",
    "SetAction",
    "ClearAction",
    "IncrementAction",
    "DecrementAction",
    "CallbackAction",
    "FlagValue",
    "RESERVED_NODE_IDS",
    "is_reserved_node_id",
    # Flags
    "FlagStore",
    "FlagStoreProtocol",
    "FlagScope",
    "ReadOnlyFlags",
    "ScopedFlags",
    "resolve_flag_ref",
    # Engines
    "ConditionEvaluator",
    "evaluate",
    "ActionContext",
    "ActionExecutor",
    "InterpolationContext",
    "Interpolator",
    "I18nAdapter",
    "create_i18n_adapter",
    # History
    "History",
    "HistoryEntry",
    "SerializedState",
    # Validation & loading
    "ValidationResult",
    "validate_dialogue",
    "DialogueLibrary",
    "load_dialogue",
    "parse_dialogue",
    # Runner
    "DialogueRunner",
    "DialogueView",
    "ChoiceView",
    "ChoiceUnavailableReason",
    "RunnerState",
]
