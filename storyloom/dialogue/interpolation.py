"""
Text interpolation - expands {{token}} placeholders in node text.

Resolution order per token:
1. {{speaker}} -> current speaker's display name ("" if none)
2. A registered interpolation function -> its result as a string
3. Otherwise a flag reference ({{gold}}, {{conv:mood}})

Anything that cannot be resolved becomes an empty string.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from storyloom.core.errors import DialogueValidationError
from storyloom.dialogue.definitions import NodeDefinition, Speaker
from storyloom.dialogue.flags import ReadOnlyFlags, ScopedFlags

logger = logging.getLogger(__name__)

# Non-nested {{token}}
TOKEN_PATTERN = re.compile(r'\{\{\s*([^{}]*?)\s*\}\}')

SPEAKER_TOKEN = "speaker"


@dataclass(frozen=True)
class InterpolationContext:
    """Read-only context handed to interpolation functions."""
    current_node: NodeDefinition
    speaker: Optional[Speaker]
    game_flags: ReadOnlyFlags
    conversation_flags: ReadOnlyFlags


# Type alias for interpolation functions
InterpolationFunction = Callable[[InterpolationContext], Union[Any, Awaitable[Any]]]


def validate_functions(
    functions: Optional[Mapping[str, Any]],
) -> dict[str, InterpolationFunction]:
    """
    Check an interpolation function table at construction time.

    Raises:
        DialogueValidationError: If the table is not a mapping or an entry is not callable.
    """
    if functions is None:
        return {}
    if not isinstance(functions, Mapping):
        raise DialogueValidationError("interpolation must be a mapping", "interpolation")

    for name, fn in functions.items():
        if not callable(fn):
            raise DialogueValidationError(
                f"Interpolation function '{name}' must be callable", "interpolation"
            )
    return dict(functions)


def to_text(value: Any) -> str:
    """
    Coerce a resolved value to display text.

    None renders as "", booleans as "true"/"false", and whole floats
    without a trailing ".0".
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class Interpolator:
    """
    Expands placeholders using flags, speaker identity and registered functions.

    Usage:
        interpolator = Interpolator({"time_of_day": lambda ctx: "dusk"})
        text = await interpolator.interpolate("It is {{time_of_day}}.", flags, node)
    """

    def __init__(self, functions: Optional[Mapping[str, InterpolationFunction]] = None):
        self.functions = validate_functions(functions)

    def make_context(
        self,
        node: NodeDefinition,
        speaker: Optional[Speaker],
        flags: ScopedFlags,
    ) -> InterpolationContext:
        return InterpolationContext(
            current_node=node,
            speaker=speaker,
            game_flags=ReadOnlyFlags(flags.game),
            conversation_flags=ReadOnlyFlags(flags.conversation),
        )

    async def interpolate(
        self,
        text: str,
        flags: ScopedFlags,
        node: NodeDefinition,
        speaker: Optional[Speaker] = None,
    ) -> str:
        """
        Expand every {{token}} in text.

        Tokens are resolved one at a time in order of appearance, so
        async functions never run concurrently.
        """
        matches = list(TOKEN_PATTERN.finditer(text))
        if not matches:
            return text

        context = self.make_context(node, speaker, flags)
        parts: list[str] = []
        last = 0
        for match in matches:
            parts.append(text[last:match.start()])
            parts.append(await self.resolve(match.group(1), context, flags))
            last = match.end()
        parts.append(text[last:])
        return "".join(parts)

    async def resolve(
        self,
        token: str,
        context: InterpolationContext,
        flags: ScopedFlags,
    ) -> str:
        """Resolve a single token to its replacement text."""
        if token == SPEAKER_TOKEN:
            return context.speaker.name if context.speaker else ""

        fn = self.functions.get(token)
        if fn is not None:
            try:
                value = fn(context)
                if inspect.isawaitable(value):
                    value = await value
            except Exception:
                logger.warning(f"Interpolation function '{token}' failed", exc_info=True)
                return ""
            return to_text(value)

        if not token:
            return ""
        return to_text(flags.get(token))
