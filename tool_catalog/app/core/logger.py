from __future__ import annotations

import logging

from colorlog import ColoredFormatter

from tool_catalog.env import ENV


_HANDLER_MARKER = "_tool_catalog_colored_handler"

# Per-request chatter from the MCP client stack, shown only at DEBUG.
_CHATTY_LOGGERS = ("httpx", "httpcore", "mcp_use", "mcp.client")


def _resolve_log_level(level_name: str) -> int:
    value = (level_name or "INFO").strip().upper()
    return getattr(logging, value, logging.INFO)


def configure_logging(level_name: str | None = None) -> None:
    """Configure root logging once with env-driven log level."""
    root_logger = logging.getLogger()
    level = _resolve_log_level(level_name or ENV.log_level)
    root_logger.setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if level <= logging.DEBUG else logging.WARNING)

    has_custom_handler = any(getattr(handler, _HANDLER_MARKER, False) for handler in root_logger.handlers)
    if has_custom_handler:
        return

    # uvicorn or pytest may already own the root handlers.
    if root_logger.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        ColoredFormatter(
            "%(log_color)s%(levelname)s:%(name)s:%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red,bg_white",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    setattr(handler, _HANDLER_MARKER, True)
    root_logger.addHandler(handler)


def get_logger(name: str | None = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
