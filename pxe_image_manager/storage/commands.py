"""Command execution utilities."""

from __future__ import annotations

import shutil
import subprocess
from typing import Optional, Sequence

from pxe_image_manager.logging import LoggerFactory

from .exceptions import CommandError


log = LoggerFactory.for_command()


def run_command(
    command: Sequence[str],
    *,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process without checking it.

    A timeout is reported as return code 124, the convention of timeout(1).
    """
    log.debug(f"Running command: {' '.join(command)}")
    try:
        return subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        log.warning(f"Command timed out after {timeout}s: {' '.join(command)}")
        return subprocess.CompletedProcess(list(command), 124, stdout="", stderr="timed out")
    except FileNotFoundError:
        return subprocess.CompletedProcess(
            list(command), 127, stdout="", stderr=f"{command[0]}: command not found"
        )


def run_checked_command(
    command: Sequence[str],
    *,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
) -> str:
    """Run a command and raise CommandError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command, None) from exc
    except FileNotFoundError as exc:
        raise CommandError(command, 127, f"{command[0]}: command not found") from exc
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        raise CommandError(command, result.returncode, stderr or stdout)
    return result.stdout


def command_available(name: str) -> bool:
    return shutil.which(name) is not None


__all__ = [
    "run_command",
    "run_checked_command",
    "command_available",
]
