"""Shared helpers: exception tuples and async subprocess execution."""

from canopy.utils.async_utils import (
    SubprocessError,
    SubprocessResult,
    SubprocessTimeoutError,
    async_subprocess_run,
)
from canopy.utils.exceptions import (
    FS_ERRORS,
    NETWORK_ERRORS,
    PARSE_ERRORS,
    PROCESS_ERRORS,
    CanopyError,
    log_and_continue,
)

__all__ = [
    "CanopyError",
    "FS_ERRORS",
    "NETWORK_ERRORS",
    "PARSE_ERRORS",
    "PROCESS_ERRORS",
    "SubprocessError",
    "SubprocessResult",
    "SubprocessTimeoutError",
    "async_subprocess_run",
    "log_and_continue",
]
