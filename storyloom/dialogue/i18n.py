"""
i18n adapter - optional translation of node text.

Only the t(key, params) contract is consumed. An adapter may also
expose has_key(key); when it does, text is only translated if it is a
known key, otherwise it is used literally.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from storyloom.core.errors import DialogueValidationError


@runtime_checkable
class I18nAdapter(Protocol):
    """Anything with a t(key, params) method."""

    def t(self, key: str, params: Optional[Mapping[str, Any]] = None) -> str: ...


def ensure_i18n_adapter(adapter: Any) -> Any:
    """
    Validate an i18n adapter by shape.

    Raises:
        DialogueValidationError: If t() is missing, or has_key is present but not callable.
    """
    if not callable(getattr(adapter, "t", None)):
        raise DialogueValidationError("i18n adapter must have a callable 't' method", "i18n")

    has_key = getattr(adapter, "has_key", None)
    if has_key is not None and not callable(has_key):
        raise DialogueValidationError("i18n adapter 'has_key' must be callable", "i18n")
    return adapter


class TranslatorAdapter:
    """
    Wraps a translation library instance.

    Usage:
        adapter = create_i18n_adapter(my_i18n)
        runner = DialogueRunner(i18n=adapter)
    """

    def __init__(self, instance: Any):
        self._instance = instance

    def t(self, key: str, params: Optional[Mapping[str, Any]] = None) -> str:
        return self._instance.t(key, dict(params or {}))

    def has_key(self, key: str) -> bool:
        has_key = getattr(self._instance, "has_key", None)
        if has_key is None:
            return True
        return bool(has_key(key))


def create_i18n_adapter(instance: Any) -> TranslatorAdapter:
    """Create an adapter from any object exposing t() (and optionally has_key())."""
    ensure_i18n_adapter(instance)
    return TranslatorAdapter(instance)


def translate(adapter: Optional[Any], text: str) -> str:
    """Translate text if the adapter knows it, else return it unchanged."""
    if adapter is None:
        return text

    has_key = getattr(adapter, "has_key", None)
    if has_key is not None and not has_key(text):
        return text
    return adapter.t(text, {})
