from __future__ import annotations

from datetime import timezone

from starlette.responses import Response

from authgate.config import Settings
from authgate.service.auth import IssuedSession


def apply_session_cookies(response: Response, issued: IssuedSession, settings: Settings) -> None:
    """Set both auth cookies for a freshly minted or renewed session."""
    # Expires must be rendered from a timezone.utc datetime
    response.set_cookie(
        settings.session_cookie_name,
        issued.session_cookie,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        expires=issued.session.expires_at.astimezone(timezone.utc),
        path="/",
    )
    response.set_cookie(
        settings.access_cookie_name,
        issued.access_token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        expires=issued.session.access_expires_at.astimezone(timezone.utc),
        path="/",
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.session_cookie_name, settings.access_cookie_name):
        response.delete_cookie(
            name, path="/", secure=settings.secure_cookies, httponly=True, samesite="lax"
        )
