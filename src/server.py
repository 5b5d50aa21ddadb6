import logging
import os
from typing import Optional

import logfire
import uvicorn

from api.app import create_app
from config import Settings
from engine import AgentStreamSource


class ChatRelayServer:
    def __init__(
        self,
        logger: logging.Logger,
        settings: Settings,
        source: Optional[AgentStreamSource] = None,
    ) -> None:
        self.logger = logger
        self.settings = settings

        self.host = settings.host
        self.port = settings.port

        self.app = create_app(settings, source=source, logger=self.logger)

        if settings.logfire_enabled:
            try:
                logfire.instrument_fastapi(self.app)
            except Exception as e:
                self.logger.warning(f"Failed to instrument FastAPI with Logfire: {e}")

    async def listen(self):
        """Start the server and listen for connections."""
        self.logger.info("Starting chat relay server")

        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="info" if self.settings.debug else "warning",
        )
        server = uvicorn.Server(config)

        try:
            self.logger.info(
                f"Chat relay server running on http://{self.host}:{self.port} "
                f"with PID {os.getpid()}"
            )
            await server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received shutdown signal")
        finally:
            self.logger.info("Chat relay server shutdown completed")
