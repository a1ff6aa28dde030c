"""Exception utilities for narrow exception catching.

Every error raised on purpose by canopy derives from ``CanopyError`` so the
CLI can report it cleanly. The tuples below are for the best-effort paths
(teardown, DNS, rollback) that must keep going after an expected operational
failure while still letting programming errors surface.

Usage:
    from canopy.utils.exceptions import NETWORK_ERRORS, log_and_continue

    try:
        await dns.delete_record(domain, name, "AAAA")
    except NETWORK_ERRORS as e:
        log_and_continue(e, "dns_cleanup", logger)
"""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp


class CanopyError(Exception):
    """Base class for all errors raised by canopy."""


# Network-related exceptions for HTTP and socket operations
NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,  # Connection, payload and response errors
    ConnectionError,      # Connection refused, reset, aborted
    TimeoutError,         # Socket/connect timeout
    OSError,              # Low-level I/O errors (includes socket.error)
    asyncio.TimeoutError,
)

# Decoding exceptions for registry documents, API payloads and config
PARSE_ERRORS: tuple[type[BaseException], ...] = (
    json.JSONDecodeError,
    KeyError,
    TypeError,
    ValueError,
)

# File system exceptions for the local registry and config files
FS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    PermissionError,
    FileNotFoundError,
)

# External command execution (docker CLI)
PROCESS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    PermissionError,
    FileNotFoundError,
)


def log_and_continue(
    e: BaseException,
    context: str,
    logger_instance: logging.Logger,
    level: int = logging.WARNING,
) -> None:
    """Log exception with context, allowing the caller to continue.

    Args:
        e: The exception that was caught
        context: Short description of the operation (e.g., "teardown")
        logger_instance: Logger to use for logging
        level: Logging level (default: WARNING)
    """
    logger_instance.log(
        level,
        f"[{context}] Caught {type(e).__name__}: {e}",
    )


__all__ = [
    "CanopyError",
    "FS_ERRORS",
    "NETWORK_ERRORS",
    "PARSE_ERRORS",
    "PROCESS_ERRORS",
    "log_and_continue",
]
