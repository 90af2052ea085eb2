#!/usr/bin/env python
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger


UVICORN_LEVELS = {"TRACE": "trace", "DEBUG": "debug", "INFO": "info", "WARNING": "warning", "ERROR": "error", "CRITICAL": "critical"}


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")

    from src.approver.config import get_config

    config = get_config()
    configure_logging(config.log_level)
    logger.info("Kubelet CSR Approver, start running!")

    uvicorn.run(
        "src.approver.main:app",
        host=config.probe_host,
        port=config.probe_port,
        log_level=UVICORN_LEVELS.get(config.log_level, "info"),
    )
