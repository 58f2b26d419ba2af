"""
Static dialogue validation - advisory content linting.

validate_dialogue() never raises; it reports every structural problem
it finds so authoring tools can show them all at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import ValidationError

from storyloom.dialogue.definitions import DialogueDefinition, is_reserved_node_id


@dataclass
class ValidationResult:
    """Outcome of validate_dialogue()."""
    valid: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def __bool__(self) -> bool:
        return self.valid


def _parse(dialogue: Any, result: ValidationResult) -> DialogueDefinition | None:
    if isinstance(dialogue, DialogueDefinition):
        return dialogue
    if not isinstance(dialogue, Mapping):
        result.add(f"Dialogue must be a mapping, got {type(dialogue).__name__}")
        return None
    try:
        return DialogueDefinition.model_validate(dialogue)
    except ValidationError as e:
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            result.add(f"{location}: {error['msg']}")
        return None


def validate_dialogue(dialogue: DialogueDefinition | Mapping[str, Any]) -> ValidationResult:
    """
    Validate a dialogue definition for structural integrity.

    Checks:
    - The definition parses and has at least one node
    - No reserved node ids are used
    - The start node exists
    - Every choice and auto-advance target exists
    - Every node is reachable from the start node

    Returns:
        ValidationResult with every error found
    """
    result = ValidationResult()
    definition = _parse(dialogue, result)
    if definition is None:
        return result

    if not definition.nodes:
        result.add("Dialogue must have at least one node")
        return result

    reserved = [node_id for node_id in definition.nodes if is_reserved_node_id(node_id)]
    for node_id in reserved:
        result.add(f"Reserved node id \"{node_id}\" is not allowed")

    if not definition.has_node(definition.start_node):
        result.add(f"Start node \"{definition.start_node}\" not found in nodes")

    # Iterative walk; the visited set makes cycles harmless
    reachable: set[str] = set()
    to_visit = [definition.start_node]

    while to_visit:
        node_id = to_visit.pop()
        if node_id in reachable:
            continue
        reachable.add(node_id)

        node = definition.get_node(node_id)
        if node is None:
            continue

        for choice in node.choices or ():
            if not definition.has_node(choice.next):
                result.add(
                    f"Choice \"{choice.text}\" in node \"{node_id}\" targets "
                    f"non-existent node \"{choice.next}\""
                )
            elif choice.next not in reachable:
                to_visit.append(choice.next)

        if node.next is not None:
            if not definition.has_node(node.next):
                result.add(
                    f"Node \"{node_id}\" auto-advances to non-existent node \"{node.next}\""
                )
            elif node.next not in reachable:
                to_visit.append(node.next)

    orphans = [
        node_id for node_id in definition.nodes
        if node_id not in reachable and node_id not in reserved
    ]
    if orphans:
        result.add(f"Unreachable nodes: {', '.join(orphans)}")

    return result
