from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write collided with a uniqueness constraint (e.g. duplicate email)."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or ({"field": field} if field else {})


class StoreUnavailable(Exception):
    """The backing store could not be reached."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
