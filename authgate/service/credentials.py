from __future__ import annotations

import secrets
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authgate.logging import get_logger
from authgate.storage.models import User

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        ...


class CredentialVerifier:
    """Checks email/password pairs against stored argon2id hashes.

    Every call performs exactly one argon2 verification. Unknown emails and
    unusable records are checked against a dummy hash so the time taken does
    not reveal whether the account exists.
    """

    def __init__(self, store: CredentialStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(32))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, email: str, password: str) -> Optional[str]:
        """Return the user id on success, None otherwise."""
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        if user is None or record is None or record[1] != PASSWORD_ALGO:
            if user is not None:
                self.logger.warning("password_record_unusable", user_id=user.id)
            self._burn(password)
            return None
        try:
            self._pwd_hasher.verify(record[0], password)
        except (InvalidHash, VerificationError):
            self.logger.info("password_verification_failed", user_id=user.id)
            return None
        return user.id

    def _burn(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            # mismatch is the expected outcome
            return


__all__ = ["CredentialVerifier", "CredentialStore", "PASSWORD_ALGO"]
