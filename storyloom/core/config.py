"""
Runner configuration.
"""

from __future__ import annotations

from typing import Optional

from storyloom.core.errors import DialogueValidationError


class RunnerConfig:
    """Configuration for a dialogue runner."""

    def __init__(
        self,
        max_auto_advance_hops: Optional[int] = 1000,
        propagate_listener_errors: bool = False,
        translate_text: bool = True,
    ):
        if max_auto_advance_hops is not None and (
            not isinstance(max_auto_advance_hops, int)
            or isinstance(max_auto_advance_hops, bool)
            or max_auto_advance_hops < 1
        ):
            raise DialogueValidationError(
                "max_auto_advance_hops must be a positive integer or None",
                "max_auto_advance_hops",
            )

        # None disables the ceiling
        self.max_auto_advance_hops = max_auto_advance_hops
        # When False, a failing listener is logged and the next one still runs
        self.propagate_listener_errors = propagate_listener_errors
        # Pass node text through the i18n adapter before interpolation
        self.translate_text = translate_text

    def __repr__(self) -> str:
        return (
            f"RunnerConfig(max_auto_advance_hops={self.max_auto_advance_hops!r}, "
            f"propagate_listener_errors={self.propagate_listener_errors!r}, "
            f"translate_text={self.translate_text!r})"
        )
