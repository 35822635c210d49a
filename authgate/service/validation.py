"""Field-level validation for the register and login forms.

Each validator returns a ``ValidationResult`` for one field; results are
combined with ``merge_results``. Nothing here raises: the caller decides
whether a non-empty result becomes a ``ValidationError``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 128
EMAIL_MAX_LENGTH = 254

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


@dataclass(frozen=True)
class ValidationResult:
    errors: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def valid(cls) -> "ValidationResult":
        return cls()

    @classmethod
    def invalid(cls, field_name: str, message: str) -> "ValidationResult":
        return cls(MappingProxyType({field_name: message}))


def merge_results(*results: ValidationResult) -> ValidationResult:
    """Combine per-field results; the first message recorded for a field wins."""
    merged: dict[str, str] = {}
    for result in results:
        for name, message in result.errors.items():
            merged.setdefault(name, message)
    return ValidationResult(MappingProxyType(merged))


def normalize_text(value: str) -> str:
    """Strip spoofing characters and apply NFKC."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Emails are case-insensitive identifiers."""
    return normalize_text(value.strip()).lower()


def validate_name(name: Optional[str]) -> ValidationResult:
    if not name or not name.strip():
        return ValidationResult.invalid("name", "Name is required")
    if len(name.strip()) > NAME_MAX_LENGTH:
        return ValidationResult.invalid(
            "name", f"Name must not exceed {NAME_MAX_LENGTH} characters"
        )
    return ValidationResult.valid()


def validate_email(email: Optional[str], *, check_format: bool = True) -> ValidationResult:
    if not email or not email.strip():
        return ValidationResult.invalid("email", "Email is required")
    if check_format:
        normalized = normalize_email(email)
        if len(normalized) > EMAIL_MAX_LENGTH or not _EMAIL_PATTERN.match(normalized):
            return ValidationResult.invalid("email", "Please enter a valid email address")
    return ValidationResult.valid()


def validate_password(password: Optional[str], *, check_policy: bool = True) -> ValidationResult:
    if not password:
        return ValidationResult.invalid("password", "Password is required")
    if check_policy:
        if len(password) < PASSWORD_MIN_LENGTH:
            return ValidationResult.invalid(
                "password", f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
            )
        if len(password) > PASSWORD_MAX_LENGTH:
            return ValidationResult.invalid(
                "password", f"Password must not exceed {PASSWORD_MAX_LENGTH} characters"
            )
    return ValidationResult.valid()


def validate_terms(accepted: Optional[bool]) -> ValidationResult:
    if accepted is not True:
        return ValidationResult.invalid("terms_accepted", "You must accept the terms of service")
    return ValidationResult.valid()


def validate_registration(
    name: Optional[str],
    email: Optional[str],
    password: Optional[str],
    terms_accepted: Optional[bool],
) -> ValidationResult:
    return merge_results(
        validate_name(name),
        validate_email(email),
        validate_password(password),
        validate_terms(terms_accepted),
    )


def validate_login(email: Optional[str], password: Optional[str]) -> ValidationResult:
    # presence only; password policy applies at registration
    return merge_results(
        validate_email(email, check_format=False),
        validate_password(password, check_policy=False),
    )
