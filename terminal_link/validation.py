"""Validation helpers for outbound payload precondition checks.

Eliminates repeated argument checks across the message payload types.
"""

from collections.abc import Collection
from typing import Any

from .errors import InvalidArgumentError


def require_not_blank(value: str, error_msg: str) -> None:
    """Require that a string is present and not just whitespace."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(error_msg)


def require_any(values: Collection[Any], error_msg: str) -> None:
    """Require that at least one of the values is truthy."""
    if not any(values):
        raise InvalidArgumentError(error_msg)


def require_number(value: Any, error_msg: str) -> None:
    """Require that a value is an int or float (bool excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(error_msg)


def require_non_negative(value: Any, error_msg: str) -> None:
    """Require that a value is a number and zero or greater."""
    require_number(value, error_msg)
    if value < 0:
        raise InvalidArgumentError(error_msg)


def require_one_of(value: Any, allowed: Collection[Any], error_msg: str) -> None:
    """Require that the value is one of the allowed choices."""
    if value not in allowed:
        raise InvalidArgumentError(error_msg)
