import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import chat_router, info_router, permission_router, sessions_router
from chat.permissions import PermissionCoordinator
from chat.relay import StreamRelay
from chat.session import SessionStore
from config import Settings, get_settings
from engine import AgentStreamSource, EngineFactory


def create_app(
    settings: Optional[Settings] = None,
    source: Optional[AgentStreamSource] = None,
    session_store: Optional[SessionStore] = None,
    permissions: Optional[PermissionCoordinator] = None,
    logger: Optional[logging.Logger] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logger = logger or logging.getLogger("chat-relay")

    app = FastAPI(
        title="Chat Relay Server",
        description="Streams agent turns to chat clients over server-sent \
        events and collects permission decisions",
        version="0.1.0"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify exact origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    permissions = permissions or PermissionCoordinator(
        timeout_seconds=settings.permission_timeout_seconds,
        logger=logger.getChild("permissions"),
    )
    session_store = session_store or SessionStore(logger=logger.getChild("sessions"))
    if source is None:
        source = EngineFactory.create_source(
            settings.engine_type,
            settings.get_engine_config(),
            permissions,
        )

    app.state.settings = settings
    app.state.permissions = permissions
    app.state.session_store = session_store
    app.state.relay = StreamRelay(
        source,
        session_store,
        permission_mode=settings.permission_mode,
        default_model=settings.default_model,
        default_working_directory=settings.working_directory,
        logger=logger.getChild("relay"),
    )

    app.include_router(chat_router, prefix="/api/chat", tags=["Chat"])
    app.include_router(
        permission_router, prefix="/api/chat/permission", tags=["Permissions"]
    )
    app.include_router(
        sessions_router, prefix="/api/chat/sessions", tags=["Sessions"]
    )
    app.include_router(info_router, prefix="/info", tags=["System Info"])

    @app.on_event("startup")
    async def startup_event():
        logger.info("Server starting")
        logger.info(f"Engine: {settings.engine_type}, model: {settings.default_model}")
        permissions.start_sweeper(settings.permission_sweep_interval_seconds)

    @app.on_event("shutdown")
    async def shutdown_event():
        await permissions.stop_sweeper()
        logger.info("Server stopped")

    return app
