from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Optional

from authgate.logging import get_logger
from authgate.storage.models import Session

logger = get_logger(__name__)

ACCESS_AUDIENCE = "authgate-clients"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CookieSigner:
    """HMAC signing for the two auth cookies.

    The session cookie carries ``<session id>.<signature>``; the access cookie
    carries an HS256 JWT naming the session and its access-window expiry.
    Each cookie is signed with its own key derived from ``secret``.
    """

    def __init__(self, secret: str, issuer: str) -> None:
        self.issuer = issuer
        self._session_key = self._derive(secret, b"session-cookie")
        self._access_key = self._derive(secret, b"access-token")

    @staticmethod
    def _derive(secret: str, purpose: bytes) -> bytes:
        return hmac.new(secret.encode(), purpose, hashlib.sha256).digest()

    def _mac(self, key: bytes, message: str) -> str:
        return _encode_segment(hmac.new(key, message.encode(), hashlib.sha256).digest())

    def sign_session_id(self, session_id: str) -> str:
        return f"{session_id}.{self._mac(self._session_key, session_id)}"

    def unsign_session_id(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        session_id, sep, signature = value.rpartition(".")
        if not sep or not session_id:
            return None
        expected = self._mac(self._session_key, session_id)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            logger.warning("session_cookie_bad_signature")
            return None
        return session_id

    def issue_access_token(self, session: Session, *, now: datetime) -> str:
        payload = {
            "iss": self.issuer,
            "aud": ACCESS_AUDIENCE,
            "sub": session.user_id,
            "sid": session.id,
            "iat": int(now.timestamp()),
            "exp": int(session.access_expires_at.timestamp()),
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._mac(self._access_key, signing_input)}"

    def decode_access_token(self, token: Optional[str], *, now: datetime) -> Optional[dict[str, Any]]:
        """Return the payload of a well-signed, unexpired token, else None."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError):
            logger.warning("access_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("access_token_invalid_algorithm")
            return None
        expected = self._mac(self._access_key, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            logger.warning("access_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != ACCESS_AUDIENCE:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= now.timestamp():
            return None
        if not isinstance(payload.get("sid"), str):
            return None
        return payload


__all__ = ["CookieSigner", "ACCESS_AUDIENCE"]
