"""Edge access decisions for page routes.

``decide`` is pure: it sees only the request path and whether the caller
holds a valid session signal. Working out that signal (cookie checks,
silent refresh) is the middleware's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple
from urllib.parse import urlencode, urlsplit


class GuardAction(str, Enum):
    ALLOW = "allow"
    REDIRECT_TO_LOGIN = "redirect_to_login"
    REDIRECT_TO_APP = "redirect_to_app"


@dataclass(frozen=True)
class GuardDecision:
    action: GuardAction
    original_path: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(GuardAction.ALLOW)

    @classmethod
    def redirect_to_login(cls, original_path: Optional[str] = None) -> "GuardDecision":
        return cls(GuardAction.REDIRECT_TO_LOGIN, original_path)

    @classmethod
    def redirect_to_app(cls) -> "GuardDecision":
        return cls(GuardAction.REDIRECT_TO_APP)

    @property
    def is_redirect(self) -> bool:
        return self.action is not GuardAction.ALLOW


@dataclass(frozen=True)
class RouteGuardConfig:
    protected: Tuple[str, ...] = ("/dashboard",)
    auth_only: Tuple[str, ...] = ("/login", "/register")
    login_path: str = "/login"
    app_home_path: str = "/dashboard"

    @classmethod
    def from_paths(
        cls,
        protected: Sequence[str],
        auth_only: Sequence[str],
        *,
        login_path: str = "/login",
        app_home_path: str = "/dashboard",
    ) -> "RouteGuardConfig":
        return cls(tuple(protected), tuple(auth_only), login_path, app_home_path)

    def is_protected(self, path: str) -> bool:
        return path.startswith(self.protected)

    def is_auth_only(self, path: str) -> bool:
        return path.startswith(self.auth_only)

    def applies_to(self, path: str) -> bool:
        return self.is_protected(path) or self.is_auth_only(path)


DEFAULT_CONFIG = RouteGuardConfig()


def decide(
    path: str, has_valid_session: bool, config: RouteGuardConfig = DEFAULT_CONFIG
) -> GuardDecision:
    if config.is_protected(path) and not has_valid_session:
        return GuardDecision.redirect_to_login(path)
    if config.is_auth_only(path) and has_valid_session:
        return GuardDecision.redirect_to_app()
    return GuardDecision.allow()


def is_safe_redirect(target: Optional[str]) -> bool:
    """True for a same-origin relative path.

    Browsers read "/\\host" like "//host" and drop tabs and newlines, so both
    are refused along with absolute URLs.
    """
    if not target or not target.startswith("/") or target[1:2] in ("/", "\\"):
        return False
    if any(ord(ch) < 0x20 or ch == "\x7f" for ch in target):
        return False
    parts = urlsplit(target)
    return not parts.scheme and not parts.netloc


def redirect_location(decision: GuardDecision, config: RouteGuardConfig = DEFAULT_CONFIG) -> str:
    """Render a redirect decision as a relative URL."""
    if decision.action is GuardAction.REDIRECT_TO_APP:
        return config.app_home_path
    if decision.action is GuardAction.REDIRECT_TO_LOGIN:
        if decision.original_path:
            return f"{config.login_path}?{urlencode({'redirect': decision.original_path})}"
        return config.login_path
    raise ValueError("allow decisions have no redirect location")


__all__ = [
    "GuardAction",
    "GuardDecision",
    "RouteGuardConfig",
    "DEFAULT_CONFIG",
    "decide",
    "is_safe_redirect",
    "redirect_location",
]
