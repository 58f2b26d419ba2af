"""
Definition base class for data-only models.

Definitions are immutable data containers with NO logic beyond
parsing. Dialogue content, speakers and persisted state are all
Definitions, which makes:
- JSON round-trips trivial (camelCase on the wire, snake_case in Python)
- Validation of externally authored content automatic
- Snapshots safe to share

Usage:
    class Speaker(Definition):
        name: str
        portrait: str | None = None

    Speaker.model_validate({"name": "Ada"})
"""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from storyloom.core.errors import DialogueValidationError

D = TypeVar("D", bound="Definition")


class Definition(BaseModel):
    """
    Base class for all definitions.

    Uses Pydantic for:
    - Automatic validation
    - JSON serialization (by alias, None fields dropped)
    - Type hints
    - Default values
    """

    model_config = ConfigDict(
        # Authored content uses camelCase keys
        alias_generator=to_camel,
        populate_by_name=True,
        # Typos in content should fail loudly
        extra='forbid',
        frozen=True,
    )

    @classmethod
    def coerce(cls: type[D], value: D | Mapping[str, Any], field: str | None = None) -> D:
        """
        Accept either an instance or a plain mapping.

        Raises:
            DialogueValidationError: If the mapping does not parse.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise DialogueValidationError(
                f"{field or cls.__name__} must be a {cls.__name__} or a mapping, "
                f"got {type(value).__name__}",
                field,
            )
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            raise DialogueValidationError(
                f"Invalid {cls.__name__}: {e}", field
            ) from e

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dict using the authored (camelCase) keys."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)
