"""
Idea Manager connector service — application entry point.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_exception_handlers, register_middleware
from auth.jwt import decode_token
from auth.routes import router as auth_router
from config.settings import Settings, config
from connectors.coordinator import OAuthFlowCoordinator
from connectors.credential_store import CredentialStore
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.routes import router as connectors_router
from connectors.state_store import AuthorizationStateStore
from connectors.token_manager import TokenRefresher
from database.session import build_engine, build_session_factory
from notifications.gateway import NotificationGateway
from notifications.registry import ConnectionRegistry
from notifications.routes import router as notifications_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "aiosqlite", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def sweep_expired_states(states: AuthorizationStateStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await states.purge_expired()
        except Exception:
            # A failed sweep only delays cleanup; the next tick retries.
            logger.exception("OAuth state sweep failed")


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application and every long-lived service it needs.

    ``transport`` replaces the network for provider HTTP calls (tests pass
    an ``httpx.MockTransport``).
    """
    settings = settings or config

    app = FastAPI(
        title="Idea Manager Connectors",
        version="1.0.0",
        description="OAuth connections to Gmail, Google Workspace and LinkedIn, plus real-time reminders.",
    )

    engine = build_engine(settings.database_url, echo=False)
    session_factory = build_session_factory(engine)
    connectors = ConnectorRegistry.from_settings(settings, transport=transport)
    credentials = CredentialStore(session_factory, TokenCipher(settings.token_encryption_key))
    states = AuthorizationStateStore(session_factory, ttl_seconds=settings.oauth_state_ttl_seconds)
    connections = ConnectionRegistry(
        lambda token: decode_token(token, secret=settings.jwt_secret),
        queue_size=settings.ws_outbound_queue_size,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.connectors = connectors
    app.state.credentials = credentials
    app.state.states = states
    app.state.coordinator = OAuthFlowCoordinator(
        connectors, credentials, states, allowed_redirect_origins=settings.cors_origins,
    )
    app.state.refresher = TokenRefresher(
        connectors, credentials, margin_seconds=settings.token_refresh_margin_seconds,
    )
    app.state.connections = connections
    app.state.gateway = NotificationGateway(
        connections, publish_timeout=settings.ws_publish_timeout_seconds,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(auth_router, prefix="/api/v1/auth")
    app.include_router(connectors_router, prefix="/api/v1/connectors")
    app.include_router(notifications_router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {
            "status": "ok",
            "providers": connectors.list_configured(),
            "live_sessions": len(connections),
        }

    @app.on_event("startup")
    async def on_startup():
        purged = await states.purge_expired()
        if purged:
            logger.info("Removed %d expired OAuth states from previous run", purged)
        app.state.sweeper = asyncio.create_task(
            sweep_expired_states(states, settings.oauth_state_sweep_interval_seconds)
        )
        logger.info("Configured providers: %s", connectors.list_configured() or "none")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await engine.dispose()

    return app


if __name__ == "__main__":
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
