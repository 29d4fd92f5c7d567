from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "PXE_IMAGE_MANAGER_LOG_DIR",
        Path.home() / ".local" / "state" / "pxe-image-manager" / "logs",
    )
)

_console_level = "INFO"


def _should_log_command(record) -> bool:
    """Hide raw command traces from the console unless debugging."""
    tags = record["extra"].get("tags", [])

    # Always log problems
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command" in tags:
        return logger.level(_console_level).no <= logger.level("DEBUG").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed registrations, rollbacks
    - SUCCESS/INFO: Per-step status of add/remove/cleanup
    - DEBUG: Command execution, file rewrites
    - TRACE: Detector probing

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/pxe-image-manager/logs)
    """
    global _console_level

    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        _console_level = "TRACE"
    elif debug:
        _console_level = "DEBUG"
    else:
        _console_level = "INFO"

    # SINK 1: Console (stderr) - per-step status for the operator
    logger.add(
        sys.stderr,
        level=_console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {exc}")
        return logger

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["export", "nfs"])
        source: Source component (e.g., "menu", "mount")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a command with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "add", "remove", "cleanup")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("add", image="ubuntu-24.04-server.iso") as log:
            log.info("Copying image to storage")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_registry() -> Logger:
        """Logger for sidecar metadata and image storage."""
        return logger.bind(source="registry", tags=["registry", "storage"])

    @staticmethod
    def for_detect() -> Logger:
        """Logger for distribution detection."""
        return logger.bind(source="detect", tags=["detect"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for loop devices, partition maps and mounts."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_export() -> Logger:
        """Logger for fstab, NFS exports and HTTP links."""
        return logger.bind(source="export", tags=["export", "nfs", "http"])

    @staticmethod
    def for_menu() -> Logger:
        """Logger for the GRUB boot menu."""
        return logger.bind(source="menu", tags=["menu", "grub"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, services)."""
        return logger.bind(source="system", tags=["system"])
