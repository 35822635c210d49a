from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from authgate.api.cookies import apply_session_cookies, clear_session_cookies
from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.api.schemas import HealthResponse
from authgate.config import Settings, get_settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.route_guard import decide, is_safe_redirect, redirect_location
from authgate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

STATIC_DIR = Path(__file__).resolve().parent.parent / "frontend"

# Paths the route guard never evaluates.
_UNGUARDED_PREFIXES = ("/v1/", "/static/", "/healthz", "/favicon.ico")
_ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico")

_PAGES = {
    "/login": "login.html",
    "/register": "register.html",
    "/dashboard": "dashboard.html",
}


def _is_guardable(path: str) -> bool:
    if path.startswith(_UNGUARDED_PREFIXES):
        return False
    return not path.lower().endswith(_ASSET_SUFFIXES)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application and its runtime.

    Settings load (and fail on missing configuration) here, before anything
    is served. Run with ``uvicorn authgate.app:create_app --factory``.
    """
    settings = settings or get_settings()
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        logger.info("app_started", app_env=settings.app_env.value)
        yield
        try:
            await runtime.aclose()
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))

    app = FastAPI(title="authgate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings

    @app.middleware("http")
    async def enforce_route_guard(request: Request, call_next):
        path = request.url.path
        guard = runtime.guard
        if not _is_guardable(path) or not guard.applies_to(path):
            return await call_next(request)
        signal = await runtime.auth.resolve_signal(
            request.cookies.get(settings.session_cookie_name),
            request.cookies.get(settings.access_cookie_name),
        )
        target = f"{path}?{request.url.query}" if request.url.query else path
        decision = decide(target, signal.valid, guard)
        if decision.is_redirect:
            logger.info("route_guard_redirect", path=path, action=decision.action.value)
            response = RedirectResponse(redirect_location(decision, guard), status_code=307)
        else:
            response = await call_next(request)
        if signal.renewed is not None:
            apply_session_cookies(response, signal.renewed, settings)
        elif signal.clear_cookies:
            clear_session_cookies(response, settings)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        path = request.url.path
        if path.startswith("/v1/") or path in _PAGES or path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        response.headers.setdefault(
            "Content-Security-Policy",
            "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; connect-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
        )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take the correlation ID from X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.trusted_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Tab-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)

    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=STATIC_DIR, html=False), name="static")
    else:
        logger.warning("frontend_assets_missing", path=str(STATIC_DIR))

    def _page(name: str) -> FileResponse:
        page = STATIC_DIR / name
        if not page.exists():
            logger.warning("frontend_missing_page", page=str(page))
            raise HTTPException(status_code=404, detail="page missing")
        return FileResponse(page)

    @app.get("/", include_in_schema=False)
    async def index() -> RedirectResponse:
        return RedirectResponse(settings.app_home_path, status_code=307)

    def _auth_page(path: str, redirect: Optional[str]):
        if redirect is not None and not is_safe_redirect(redirect):
            logger.warning("unsafe_redirect_dropped", path=path)
            return RedirectResponse(path, status_code=307)
        return _page(_PAGES[path])

    @app.get("/login", include_in_schema=False)
    async def login_page(redirect: Optional[str] = None):
        return _auth_page("/login", redirect)

    @app.get("/register", include_in_schema=False)
    async def register_page(redirect: Optional[str] = None):
        return _auth_page("/register", redirect)

    @app.get("/dashboard", include_in_schema=False)
    async def dashboard_page() -> FileResponse:
        return _page(_PAGES["/dashboard"])

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Report store and cache reachability; 503 when the store is down."""
        checks = await runtime.health()
        healthy = checks.get("store") == "ok"
        body = HealthResponse(status="healthy" if healthy else "unhealthy", checks=checks)
        return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())

    logger.info(
        "app_created",
        protected_routes=list(runtime.guard.protected),
        auth_routes=list(runtime.guard.auth_only),
    )
    return app
