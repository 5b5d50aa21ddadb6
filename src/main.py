import asyncio
import logging
import sys
from pathlib import Path

import logfire

from config import Settings, get_settings
from server import ChatRelayServer

HOME_DIR = Path.home()
CONFIG_DIR = HOME_DIR / ".chat-relay"
LOG_FILE = CONFIG_DIR / "chat-relay.log"


def validate_paths() -> None:
    CONFIG_DIR.mkdir(exist_ok=True, parents=True)

    # create an empty log file if missing
    if not LOG_FILE.exists():
        LOG_FILE.touch()


def setup_logging(settings: Settings) -> logging.Logger:
    # Initialize Logfire if enabled
    if settings.logfire_enabled:
        try:
            logfire.configure(
                token=settings.logfire_token,
                service_name=settings.logfire_service_name,
            )

            # Instrument HTTPX for HTTP request tracing
            logfire.instrument_httpx(capture_all=True)

            print(f"Logfire initialized for service: {settings.logfire_service_name}")
        except Exception as e:
            print(f"Failed to initialize Logfire: {e}")

    # Set logging level based on debug setting
    log_level = logging.DEBUG if settings.debug else logging.INFO

    logging.basicConfig(
        filename=LOG_FILE,
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("chat-relay")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


async def main() -> None:
    validate_paths()

    settings = get_settings()

    logger = setup_logging(settings)

    try:
        server = ChatRelayServer(logger, settings)
        await server.listen()
    except Exception as e:
        print(f"Error running server: {e}")
        sys.exit(1)


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
