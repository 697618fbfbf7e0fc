# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import hashlib
import hmac
import logging
import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["anonymize", "configure_logging", "logger"]

LOG_FILE = "logs/coreason_oidc.log"

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging messages to Loguru.
    httpx and authlib log through the stdlib; this keeps their records in the same sinks.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the stdlib call
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Injects the OpenTelemetry trace_id and span_id of the active span into `extra`.
    Used as a patcher for Loguru.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def anonymize(value: str, salt: str) -> str:
    """
    HMAC-SHA256 of `value` keyed with `salt`. Subject identifiers are only logged in this form.
    """
    return hmac.new(salt.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def configure_logging() -> None:
    """
    Configures the logger from COREASON_LOG_LEVEL and COREASON_LOG_JSON.
    Safe to call again when the environment changes.
    """
    log_level = os.getenv("COREASON_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("COREASON_LOG_JSON", "false").lower() == "true"

    try:
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    logger.configure(handlers=[], patcher=trace_id_injector)  # type: ignore[arg-type]

    if log_json:
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        logger.add(sys.stderr, level=log_level, format=TEXT_FORMAT)

    # File sink is always JSON; skipped on read-only filesystems
    try:
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            LOG_FILE,
            rotation="500 MB",
            retention="10 days",
            serialize=True,
            enqueue=True,
            level=log_level,
        )
    except (PermissionError, OSError):
        pass

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # Loguru-only levels (TRACE, SUCCESS) have no stdlib number
    numeric_level = logging.getLevelName(log_level)
    logging.getLogger().setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)


configure_logging()
