"""CNC control service startup script."""

import os
import sys
import uvicorn
from loguru import logger

from cnc_control.api.machine.app import create_app


def setup_logging():
    """Setup logging configuration.

    Creates log directory if it doesn't exist and configures console and file handlers.
    Console handler uses colored output while file handler includes rotation.
    """
    log_dir = "logs"
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    logger.add(sys.stderr, format=log_format, level=os.getenv("CNC_LOG_LEVEL", "INFO").upper(), enqueue=True)

    file_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
        "{level: <8} | "
        "{name}:{function}:{line} - "
        "{message}"
    )
    logger.add(
        os.path.join(log_dir, "cnc_control.log"),
        rotation="1 day",
        retention="30 days",
        format=file_format,
        level="DEBUG",
        enqueue=True,
        compression="zip"
    )


def main():
    """Run CNC control service.

    Environment variables:
        CNC_SERVICE_HOST: Host to bind to (default: 0.0.0.0)
        CNC_SERVICE_PORT: Port to listen on (default: 8010)
        CNC_LOG_LEVEL: Console logging level (default: info)
    """
    try:
        setup_logging()
        logger.info("Starting CNC control service...")

        app = create_app()

        host = os.getenv("CNC_SERVICE_HOST", "0.0.0.0")
        port = int(os.getenv("CNC_SERVICE_PORT", "8010"))
        log_level = os.getenv("CNC_LOG_LEVEL", "info").lower()

        if port < 1 or port > 65535:
            raise ValueError(f"Invalid port number: {port}")

        if log_level not in ["debug", "info", "warning", "error", "critical"]:
            raise ValueError(f"Invalid log level: {log_level}")

        logger.info("CNC control service configuration:")
        logger.info(f"  Host: {host}")
        logger.info(f"  Port: {port}")
        logger.info(f"  Log level: {log_level}")

        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=log_level,
            access_log=True
        )

    except Exception:
        logger.exception("Failed to start CNC control service")
        sys.exit(1)


if __name__ == "__main__":
    main()
