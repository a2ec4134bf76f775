"""Small text helpers for option search and table cells."""

from __future__ import annotations

from typing import Any, Iterable

_NEWLINES = str.maketrans({"\n": " ", "\r": " "})


def filter_options(options: Iterable[str], text: str) -> list[str]:
    """Options containing text, ignoring case; nothing for input under 3 bytes."""
    if len(text.encode()) < 3:
        return []
    needle = text.lower()
    return [option for option in options if needle in option.lower()]


def first_n_runes(text: str, n: int) -> str:
    """Shorten text to n characters plus '...', unless little would be cut."""
    if len(text) <= n:
        return text
    start = max(n, 0)
    rest = text[start:]
    if len(rest.encode("utf-8", "surrogatepass")) > 2:
        return text[:start] + "..."
    return text


def remove_newlines(text: str) -> str:
    """Replace line feeds and carriage returns with spaces."""
    return text.translate(_NEWLINES)


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def field_or_method(obj: Any, name: str) -> str:
    """Text of obj's attribute name, calling it first when it is a method."""
    try:
        value = getattr(obj, name)
    except AttributeError as e:
        raise AttributeError(f"failed accessing field and method named {name}: {e}") from e
    if callable(value):
        value = value()
    return _format(value)