"""
Xunlei Panel Server

Password-protected front end for the Xunlei web UI. Logged-in browsers are
passed through to the package's CGI program; everyone else only sees the
login page.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import (
    FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response,
)
from fastapi.templating import Jinja2Templates

from . import __version__
from .auth import AuthGate, Credentials, Session, SessionStore, new_session_id
from .cgi_gateway import CgiGateway
from .config import SESSION_COOKIE, BackendEnvironment, Settings

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
SHA3_JS_PATH = PACKAGE_DIR / "static" / "sha3.min.js"

SESSION_CLEANUP_INTERVAL_SECONDS = 600
LOGIN_ERROR = "Wrong login/password"

# Probed by the daemon's own web UI before anything else
SYNO_TOKEN_PAYLOAD = {"SynoToken": ""}


async def cleanup_expired_sessions(store: SessionStore):
    """Background task: drop idle sessions so the table does not grow unbounded."""
    while True:
        await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SECONDS)
        try:
            removed = store.cleanup_expired()
            if removed:
                logger.info(f"Cleaned up {removed} expired session(s)")
        except Exception as e:
            logger.error(f"Session cleanup error: {e}")


def create_app(
    settings: Settings,
    store: Optional[SessionStore] = None,
    gateway: Optional[CgiGateway] = None,
    environment: Optional[BackendEnvironment] = None,
) -> FastAPI:
    """
    Build the panel application.

    Args:
        settings:    Launcher settings (credentials, port, package layout).
        store:       Session table; a fresh one is created when omitted.
        gateway:     CGI gateway; built from settings when omitted.
        environment: Daemon environment passed to CGI invocations.
    """
    store = store if store is not None else SessionStore(settings.session_ttl)
    gate = AuthGate(Credentials.from_plain(settings.auth_user, settings.auth_password))
    if gateway is None:
        environment = environment or BackendEnvironment.from_settings(settings)
        gateway = CgiGateway(settings, environment)
    cookie_max_age = int(store.ttl.total_seconds())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup_task = asyncio.create_task(cleanup_expired_sessions(store))
        logger.info(f"Xunlei panel listening on {settings.listen}")
        yield
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        logger.info("Xunlei panel stopped")

    app = FastAPI(
        title="Xunlei Panel",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.session_store = store
    app.state.auth_gate = gate
    app.state.gateway = gateway

    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    def login_page(request: Request, error: Optional[str] = None) -> HTMLResponse:
        return templates.TemplateResponse(request, "login.html", {"error": error})

    def has_session(request: Request) -> bool:
        return request.state.session is not None

    # =========================================================================
    # SESSIONS
    # =========================================================================
    # A request is logged in when its XUNLEI_SID cookie names a live session.
    # Routes read and replace request.state.session (login also replaces
    # request.state.sid); the middleware writes the result back to the store
    # afterwards and drops the presented id if it was replaced.
    # =========================================================================

    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        """Attach the session, run the route, then persist or evict it."""
        client_sid = request.cookies.get(SESSION_COOKIE)
        sid = client_sid or new_session_id()
        session = store.get(sid) if client_sid else None
        if session is None and not gate.enabled:
            session = Session(session_id=sid)
        request.state.sid = sid
        request.state.session = session

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error for {request.method} {request.url.path}")
            response = PlainTextResponse(f"An error occurred: {e}", status_code=500)

        session = request.state.session
        sid = request.state.sid
        if session is not None:
            session.touch()
            store.put(sid, session)
            response.set_cookie(
                key=SESSION_COOKIE,
                value=sid,
                httponly=True,
                samesite="lax",
                path="/",
                max_age=cookie_max_age,
            )
        if client_sid and (session is None or client_sid != sid):
            store.remove(client_sid)
        return response

    # =========================================================================
    # LOGIN
    # =========================================================================

    @app.post("/login")
    async def login_submit(request: Request):
        """Check the submitted SHA3-512 digests of user name and password."""
        form = await request.form()
        auth_user = form.get("auth_user")
        auth_password = form.get("auth_password")
        if not isinstance(auth_user, str) or not isinstance(auth_password, str):
            return PlainTextResponse("Missing auth_user or auth_password", status_code=400)

        client_ip = request.client.host if request.client else "unknown"
        if gate.decide(auth_user, auth_password):
            # A presented cookie is never promoted to a logged-in session
            request.state.sid = new_session_id()
            request.state.session = Session(session_id=request.state.sid)
            logger.info(f"Login succeeded from {client_ip}")
            return RedirectResponse("/", status_code=303)

        logger.info(f"Failed login from {client_ip}")
        return login_page(request, LOGIN_ERROR)

    @app.get("/login")
    async def login_form(request: Request):
        if has_session(request):
            return await gateway.proxy(request)
        return login_page(request)

    @app.get("/js/sha3.min.js")
    async def sha3_script(request: Request):
        """Hash function used by the login form."""
        if has_session(request):
            return await gateway.proxy(request)
        return FileResponse(SHA3_JS_PATH, media_type="application/javascript")

    # =========================================================================
    # LOGGED IN
    # =========================================================================

    @app.get("/webman/login.cgi")
    async def webman_login(request: Request):
        """DSM login probe; answered locally so the CGI program never sees it."""
        if not has_session(request):
            return RedirectResponse("/login", status_code=303)
        return JSONResponse(
            SYNO_TOKEN_PAYLOAD,
            media_type="application/json; charset=utf-8",
        )

    @app.api_route(
        "/{path:path}",
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    )
    async def cgi_passthrough(request: Request, path: str) -> Response:
        if not has_session(request):
            return RedirectResponse("/login", status_code=303)
        return await gateway.proxy(request)

    return app
