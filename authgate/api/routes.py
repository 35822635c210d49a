from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from fastapi import APIRouter, Header, Query, Request, Response, WebSocket
from starlette.requests import HTTPConnection

from authgate.api.cookies import apply_session_cookies, clear_session_cookies
from authgate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    SessionResponse,
)
from authgate.logging import get_logger
from authgate.service.auth import SESSION_EXPIRED
from authgate.service.broadcast import LOGOUT_EVENT, Subscription
from authgate.service.errors import SessionExpiredError
from authgate.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# WebSocket close code for a missing or invalid session.
WS_UNAUTHORIZED = 4401


def get_runtime(conn: HTTPConnection) -> Runtime:
    return conn.app.state.runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _session_id(runtime: Runtime, conn: HTTPConnection) -> Optional[str]:
    raw = conn.cookies.get(runtime.settings.session_cookie_name)
    return runtime.auth.session_id_from_cookie(raw)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: If a field fails validation
        409: If the email is already registered
        429: If this client registers too often
    """
    runtime = get_runtime(request)
    issued = await runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        terms_accepted=body.terms_accepted,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        replaces_session_id=_session_id(runtime, request),
    )
    apply_session_cookies(response, issued, runtime.settings)
    return Envelope(status="ok", data=AuthResponse.build(issued.user, issued.session))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    The response body carries user and session metadata only; the session
    travels in HttpOnly cookies.

    Raises:
        400: If email or password is missing
        401: If the credentials do not match
        429: If the client or account is throttled
    """
    runtime = get_runtime(request)
    issued = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        replaces_session_id=_session_id(runtime, request),
    )
    apply_session_cookies(response, issued, runtime.settings)
    return Envelope(status="ok", data=AuthResponse.build(issued.user, issued.session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    tab_id: Optional[str] = Header(None, alias="X-Tab-ID"),
):
    runtime = get_runtime(request)
    session_id = _session_id(runtime, request)
    if session_id:
        # broadcast precedes revocation
        runtime.coordinator.publish_logout(session_id, origin_tab=tab_id)
    removed = await runtime.auth.logout(session_id)
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=LogoutResponse(logged_out=removed))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Renew the access window of the current session.

    Raises:
        401: If there is no session or it can no longer be refreshed
    """
    runtime = get_runtime(request)
    session_id = _session_id(runtime, request)
    if session_id is None:
        raise SessionExpiredError(SESSION_EXPIRED)
    issued = await runtime.auth.refresh(session_id)
    apply_session_cookies(response, issued, runtime.settings)
    return Envelope(status="ok", data={"session": SessionResponse.from_session(issued.session)})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(request: Request):
    runtime = get_runtime(request)
    found = await runtime.auth.get_session(_session_id(runtime, request))
    if found is None:
        return Envelope(status="ok", data=None)
    user, session = found
    return Envelope(status="ok", data=AuthResponse.build(user, session))


async def _wait_for_disconnect(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _pump_events(ws: WebSocket, subscription: Subscription, redirect: str) -> None:
    """Forward coordinator events to the socket until logout or disconnect."""
    disconnected = asyncio.create_task(_wait_for_disconnect(ws))
    try:
        while True:
            next_event = asyncio.create_task(subscription.next_event())
            done, _ = await asyncio.wait(
                {next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if next_event not in done:
                next_event.cancel()
                return
            event = next_event.result()
            await ws.send_json(event.to_message(redirect=redirect))
            if event.type == LOGOUT_EVENT:
                await ws.close(code=1000)
                return
    finally:
        disconnected.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await disconnected


@router.websocket("/auth/events")
async def auth_events(ws: WebSocket, tab_id: Optional[str] = Query(None)):
    """Push channel telling a tab that its session was logged out elsewhere."""
    runtime = get_runtime(ws)
    session_id = _session_id(runtime, ws)
    if session_id is None or await runtime.auth.get_session(session_id) is None:
        logger.info("auth_events_rejected")
        await ws.accept()
        await ws.close(code=WS_UNAUTHORIZED)
        return
    # subscribed before accept so no logout published after the handshake is missed
    subscription = runtime.coordinator.subscribe(session_id, tab_id)
    try:
        await ws.accept()
        await _pump_events(ws, subscription, runtime.guard.login_path)
    finally:
        runtime.coordinator.unsubscribe(subscription)
