"""
Dialogue loading.

Reads dialogue JSON files, validates them against the bundled JSON
schema and parses them into DialogueDefinitions.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterator, Optional

import jsonschema

from storyloom.core.errors import DialogueValidationError
from storyloom.dialogue.definitions import DialogueDefinition

SCHEMA_PATH = Path(__file__).parent / "schemas" / "dialogue.schema.json"

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def dialogue_schema() -> dict[str, Any]:
    """The bundled dialogue JSON schema."""
    with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
        return json.load(f)


def parse_dialogue(data: Any, source: str = "<data>") -> DialogueDefinition:
    """
    Validate raw JSON data and build a definition.

    Raises:
        DialogueValidationError: If the data fails schema or model validation.
    """
    try:
        jsonschema.validate(instance=data, schema=dialogue_schema())
    except jsonschema.ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path) or "<root>"
        raise DialogueValidationError(
            f"Invalid dialogue in {source} at {location}: {e.message}", "dialogue"
        ) from e

    return DialogueDefinition.coerce(data, "dialogue")


def load_dialogue(path: str | Path) -> DialogueDefinition:
    """
    Load a single dialogue file.

    Raises:
        DialogueValidationError: If the file is missing, not JSON, or invalid.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise DialogueValidationError(f"Dialogue file not found: {path}", "path") from e
    except json.JSONDecodeError as e:
        raise DialogueValidationError(f"Dialogue file is not valid JSON: {path}: {e}", "path") from e

    return parse_dialogue(data, str(path))


class DialogueLibrary:
    """
    Every dialogue in a directory, keyed by dialogue id.

    Invalid files are logged and skipped.

    Usage:
        library = DialogueLibrary("game/data/dialogue")
        library.load_all()
        await runner.start(library.get("guard"))
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._dialogues: dict[str, DialogueDefinition] = {}

    def load_all(self) -> int:
        """
        Load every *.json file in the directory.

        Returns:
            Number of dialogues loaded
        """
        self._dialogues.clear()

        if not self._path.exists():
            logger.warning(f"Dialogue directory not found: {self._path}")
            return 0

        for file_path in sorted(self._path.glob("*.json")):
            try:
                dialogue = load_dialogue(file_path)
            except DialogueValidationError as e:
                logger.error(f"Skipping {file_path}: {e}")
                continue

            if dialogue.id in self._dialogues:
                logger.warning(f"Duplicate dialogue id '{dialogue.id}' in {file_path}, replacing")
            self._dialogues[dialogue.id] = dialogue

        logger.info(f"Loaded {len(self._dialogues)} dialogues from {self._path}")
        return len(self._dialogues)

    def get(self, dialogue_id: str) -> Optional[DialogueDefinition]:
        return self._dialogues.get(dialogue_id)

    def ids(self) -> list[str]:
        return list(self._dialogues)

    def __contains__(self, dialogue_id: object) -> bool:
        return dialogue_id in self._dialogues

    def __len__(self) -> int:
        return len(self._dialogues)

    def __iter__(self) -> Iterator[DialogueDefinition]:
        return iter(list(self._dialogues.values()))
