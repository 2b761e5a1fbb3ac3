"""
AuthService Application Entry Point
===================================

OIDC authentication gatekeeper sitting behind a reverse proxy / ingress
gateway. The proxy forwards every request here first: a 200 response carries
identity headers and lets the request through, anything else is returned to
the client as-is.

Listeners (all in one event loop):
    - Auth server   (SERVER_PORT, default 8080)        : /login/oidc, /logout, authentication check
    - Health server (HEALTH_SERVER_PORT, default 8081) : readiness probe
    - Web server    (WEB_SERVER_PORT, default 8082)    : login / logout pages

Startup:
    The health server starts answering immediately with 503. A setup task
    reads the CA bundle, discovers the OIDC provider (retrying every 10s until
    it succeeds), creates the stores and then flips the readiness flag.

Environment Variables Required:
    - OIDC_PROVIDER: Issuer URL of the OIDC provider
    - OIDC_SCOPES: Space-separated scopes (e.g., "profile email groups")
    - CLIENT_ID / CLIENT_SECRET: OAuth2 client credentials
    - REDIRECT_URL: Callback URL registered at the provider

Running the Service:
    python -m authservice.app.main
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .auth import auth_router
from .auth.oidc import DiscoveryError, OIDCClient
from .auth.routes import ALL_METHODS
from .auth.session import SessionManager
from .auth.state import StateStore
from .auth.utils import build_ssl_context
from .config import Settings, get_settings
from .dependencies import AppState
from .policy import ReadinessFlag
from .storage import MemoryStore, run_reaper
from .web import create_web_app

logger = logging.getLogger("authservice.main")

DISCOVERY_RETRY_SECONDS = 10


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# =============================================================================
# Application factories
# =============================================================================

def create_auth_app(app_state: AppState) -> FastAPI:
    """
    Build the authentication server application.

    Args:
        app_state: Shared state, populated later by setup()

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title="AuthService",
        description="OIDC authentication check for requests forwarded by a gateway",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "POST"],
    )

    app.include_router(auth_router)
    app.state.app_state = app_state

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log unhandled errors and answer with a generic 500.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "An unexpected error occurred"},
        )

    return app


def create_health_app(readiness: ReadinessFlag) -> FastAPI:
    """Readiness probe: every path answers 200 once setup has completed, 503 before."""
    app = FastAPI(title="AuthService Health", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{full_path:path}", methods=ALL_METHODS)
    async def readiness_check(full_path: str) -> PlainTextResponse:
        if readiness.is_set():
            return PlainTextResponse("OK")
        return PlainTextResponse("Not ready", status_code=503)

    return app


# =============================================================================
# Setup
# =============================================================================

async def setup(app_state: AppState) -> None:
    """
    Connect to the provider and create the stores, then mark the service ready.

    Discovery is retried forever; an unreadable CA bundle is fatal.

    Raises:
        OSError: If CA_BUNDLE is set but cannot be read
    """
    settings = app_state.settings

    ca_bundle = None
    if settings.CA_BUNDLE:
        ca_bundle = Path(settings.CA_BUNDLE).read_bytes()
        logger.info(f"Loaded CA bundle from {settings.CA_BUNDLE}")
    ssl_context = build_ssl_context(ca_bundle)

    while True:
        try:
            app_state.oidc = await OIDCClient.discover(
                settings.OIDC_PROVIDER,
                client_id=settings.CLIENT_ID,
                client_secret=settings.CLIENT_SECRET,
                redirect_url=settings.REDIRECT_URL,
                scopes=settings.scopes_list,
                auth_url=settings.OIDC_AUTH_URL,
                ssl_context=ssl_context,
            )
            break
        except DiscoveryError as e:
            logger.error(f"OIDC provider setup failed, retrying in {DISCOVERY_RETRY_SECONDS} seconds: {e}")
            await asyncio.sleep(DISCOVERY_RETRY_SECONDS)

    app_state.store = MemoryStore()
    app_state.reaper = asyncio.create_task(run_reaper(app_state.store, settings.STORE_REAP_INTERVAL))
    app_state.sessions = SessionManager(app_state.store, settings.SESSION_SECRET, settings.SESSION_MAX_AGE)
    app_state.states = StateStore(app_state.store, settings.STATE_MAX_AGE)

    app_state.readiness.set()
    logger.info("OIDC provider setup completed, service is ready")


# =============================================================================
# Serving
# =============================================================================

def _server(app: FastAPI, host: str, port: int, log_level: str) -> uvicorn.Server:
    return uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level.lower()))


async def serve(settings: Settings) -> int:
    """
    Run the three listeners and the setup task until one listener stops.

    Returns:
        Process exit status (always 1: the listeners are not meant to stop)
    """
    app_state = AppState(settings)
    host = settings.SERVER_HOSTNAME or "0.0.0.0"

    servers = {
        "health": _server(create_health_app(app_state.readiness), host, settings.HEALTH_SERVER_PORT, settings.LOG_LEVEL),
        "auth": _server(create_auth_app(app_state), host, settings.SERVER_PORT, settings.LOG_LEVEL),
        "web": _server(create_web_app(settings), host, settings.WEB_SERVER_PORT, settings.LOG_LEVEL),
    }
    tasks: List[asyncio.Task] = [
        asyncio.create_task(server.serve(), name=name) for name, server in servers.items()
    ]
    setup_task = asyncio.create_task(setup(app_state), name="setup")
    pending = set(tasks) | {setup_task}

    logger.info(
        "Starting AuthService",
        extra={
            "provider": settings.OIDC_PROVIDER,
            "auth_port": settings.SERVER_PORT,
            "health_port": settings.HEALTH_SERVER_PORT,
            "web_port": settings.WEB_SERVER_PORT,
        }
    )

    try:
        while True:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            stopped = False
            for task in done:
                if task.cancelled():
                    logger.error(f"Task {task.get_name()} was cancelled")
                elif task.exception() is not None:
                    logger.error(f"Task {task.get_name()} failed: {task.exception()}")
                elif task is not setup_task:
                    logger.error(f"Server {task.get_name()} stopped")
                else:
                    continue
                stopped = True
            if stopped:
                return 1
    finally:
        for server in servers.values():
            server.should_exit = True
        for task in pending:
            task.cancel()
        if app_state.reaper is not None:
            app_state.reaper.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def main() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    sys.exit(asyncio.run(serve(settings)))


if __name__ == "__main__":
    main()
