"""Non-blocking external commands for the Docker provider.

``async_subprocess_run`` wraps ``asyncio.create_subprocess_exec`` so a slow
``docker run`` or ``docker inspect`` keeps the event loop free and dies with
the task that started it. A missing binary surfaces as ``OSError``.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from canopy.utils.exceptions import CanopyError

logger = logging.getLogger(__name__)


class SubprocessError(CanopyError):
    """A command exited non-zero (with ``check=True``) or was killed."""

    def __init__(self, message: str, returncode: int | None = None, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SubprocessTimeoutError(SubprocessError):
    pass


@dataclass
class SubprocessResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def async_subprocess_run(
    cmd: Sequence[str],
    *,
    timeout: float = 60.0,
    check: bool = False,
    env: dict[str, str] | None = None,
) -> SubprocessResult:
    """Run ``cmd`` and capture its output.

    Args:
        cmd: Program and arguments, e.g. ``["docker", "ps", "-a"]``.
        timeout: Seconds before the child is killed and
            ``SubprocessTimeoutError`` is raised.
        check: Raise ``SubprocessError`` on a non-zero exit status.
        env: Replacement environment for the child.
    """
    command = shlex.join(cmd)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise SubprocessTimeoutError(f"{command} timed out after {timeout}s", returncode=-1) from None
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise

    result = SubprocessResult(returncode=proc.returncode or 0, stdout=_decode(out), stderr=_decode(err))
    logger.debug(f"{command} -> exit {result.returncode}")
    if check and not result.success:
        raise SubprocessError(
            f"{command} exited {result.returncode}: {result.stderr.strip()}",
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result
