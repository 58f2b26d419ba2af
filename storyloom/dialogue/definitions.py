"""
Dialogue definitions - the declarative conversation graph.

A dialogue is authored as JSON (or built in code) and parsed into these
immutable models:

```
{
  "id": "guard",
  "startNode": "greet",
  "nodes": {
    "greet": {
      "speaker": "guard",
      "text": "Halt, {{player_name}}!",
      "choices": [
        {"text": "Bribe", "next": "pass",
         "conditions": {"check": ["gold", ">=", 10]},
         "actions": [{"type": "decrement", "flag": "gold", "value": 10}]},
        {"text": "Leave", "next": "bye"}
      ]
    },
    "pass": {"text": "Move along.", "isEnd": true},
    "bye": {"text": "Good.", "isEnd": true}
  }
}
```
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    ConfigDict,
    Discriminator,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    Tag,
    model_validator,
)

from storyloom.core.model import Definition

# Value types supported by flag stores
FlagValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
FLAG_VALUE_TYPES = (bool, int, float, str)

# Node ids that must never be used as mapping keys in authored content
RESERVED_NODE_IDS = frozenset({"__proto__", "constructor", "prototype"})


def is_reserved_node_id(node_id: Any) -> bool:
    """Check whether a node id is reserved (or not a usable id at all)."""
    if not isinstance(node_id, str):
        return True
    if node_id in RESERVED_NODE_IDS:
        return True
    return len(node_id) > 4 and node_id.startswith("__") and node_id.endswith("__")


# --- Conditions ---

class CheckCondition(Definition):
    """Compare a flag against a value: {"check": [flag_ref, operator, value]}."""
    check: tuple[StrictStr, StrictStr, FlagValue]

    @property
    def flag(self) -> str:
        return self.check[0]

    @property
    def operator(self) -> str:
        return self.check[1]

    @property
    def value(self) -> Any:
        return self.check[2]


class AndCondition(Definition):
    """True when every sub-condition is true."""
    conditions: list[Condition] = Field(alias="and")


class OrCondition(Definition):
    """True when any sub-condition is true."""
    conditions: list[Condition] = Field(alias="or")


class NotCondition(Definition):
    """Negates a sub-condition."""
    condition: Condition = Field(alias="not")


class UnknownCondition(Definition):
    """
    Any condition shape the engine does not recognise.

    Kept rather than rejected so that availability fails closed.
    """
    model_config = ConfigDict(extra='allow')

    @model_validator(mode='before')
    @classmethod
    def _wrap_scalars(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return {"value": data}
        return data


def _is_check_body(body: Any) -> bool:
    """[flag_ref: str, operator: str, value: bool | number | str]"""
    if not isinstance(body, (list, tuple)) or len(body) != 3:
        return False
    flag, op, value = body
    return isinstance(flag, str) and isinstance(op, str) and isinstance(value, FLAG_VALUE_TYPES)


def _condition_tag(value: Any) -> str:
    """Pick the condition variant from raw data or a model instance."""
    if isinstance(value, Definition):
        return _CONDITION_TAGS_BY_TYPE.get(type(value), "unknown")
    if not isinstance(value, dict) or len(value) != 1:
        return "unknown"

    key, body = next(iter(value.items()))
    if key == "check":
        return "check" if _is_check_body(body) else "unknown"
    if key in ("and", "or") and isinstance(body, (list, tuple)):
        return key
    if key == "not":
        return "not"
    return "unknown"


Condition = Annotated[
    Union[
        Annotated[CheckCondition, Tag("check")],
        Annotated[AndCondition, Tag("and")],
        Annotated[OrCondition, Tag("or")],
        Annotated[NotCondition, Tag("not")],
        Annotated[UnknownCondition, Tag("unknown")],
    ],
    Discriminator(_condition_tag),
]

_CONDITION_TAGS_BY_TYPE: dict[type, str] = {
    CheckCondition: "check",
    AndCondition: "and",
    OrCondition: "or",
    NotCondition: "not",
    UnknownCondition: "unknown",
}


# --- Actions ---

class SetAction(Definition):
    """Write a flag value."""
    type: Literal["set"] = "set"
    flag: StrictStr
    value: FlagValue


class ClearAction(Definition):
    """Delete a flag."""
    type: Literal["clear"] = "clear"
    flag: StrictStr


class IncrementAction(Definition):
    """Add to a numeric flag (absent counts as 0)."""
    type: Literal["increment"] = "increment"
    flag: StrictStr
    value: Optional[Union[StrictInt, StrictFloat]] = None


class DecrementAction(Definition):
    """Subtract from a numeric flag, never going below 0."""
    type: Literal["decrement"] = "decrement"
    flag: StrictStr
    value: Optional[Union[StrictInt, StrictFloat]] = None


class CallbackAction(Definition):
    """Invoke a named handler registered on the runner."""
    type: Literal["callback"] = "callback"
    name: StrictStr
    args: Optional[list[Any]] = None


Action = Annotated[
    Union[SetAction, ClearAction, IncrementAction, DecrementAction, CallbackAction],
    Field(discriminator="type"),
]


# --- Graph ---

class ChoiceDefinition(Definition):
    """A labeled, conditionally available edge to another node."""
    text: str
    next: str
    conditions: Optional[Condition] = None
    actions: Optional[list[Action]] = None
    tags: Optional[list[str]] = None
    disabled: bool = False
    disabled_text: Optional[str] = None


class NodeDefinition(Definition):
    """A single unit of displayed text."""
    text: str
    speaker: Optional[str] = None
    tags: Optional[list[str]] = None
    actions: Optional[list[Action]] = None
    choices: Optional[list[ChoiceDefinition]] = None
    next: Optional[str] = None
    is_end: bool = False

    @property
    def has_choices(self) -> bool:
        return bool(self.choices)

    @property
    def is_dead_end(self) -> bool:
        """No way forward, even though not explicitly marked as an end."""
        return not self.has_choices and not self.next


class DialogueDefinition(Definition):
    """A complete dialogue graph."""
    id: str
    start_node: str
    nodes: dict[str, NodeDefinition]
    metadata: Optional[dict[str, Any]] = None

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        """Get a node by ID (reserved ids never resolve)."""
        if is_reserved_node_id(node_id):
            return None
        return self.nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None


class Speaker(Definition):
    """
    Display metadata for a speaker id.

    Attributes:
        name: Display name, also what {{speaker}} expands to
        portrait: Portrait asset id
        color: Text/name color hint
    Any extra keys are kept as-is.
    """
    model_config = ConfigDict(extra='allow')

    name: str
    portrait: Optional[str] = None
    color: Optional[str] = None


AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()
ChoiceDefinition.model_rebuild()
NodeDefinition.model_rebuild()
DialogueDefinition.model_rebuild()
