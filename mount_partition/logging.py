from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "MOUNT_PARTITION_LOG_DIR",
        Path.home() / ".local" / "state" / "mount-partition" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw command output off the console unless tracing."""
    tags = record["extra"].get("tags", [])
    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no
    return True


def setup_logging(
    *,
    verbose: bool = False,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    log_to_file: bool = True,
) -> Logger:
    """
    Setup logging sinks for a command line invocation.

    The console sink is only installed when one of verbose/debug/trace is set,
    so that a failing command prints nothing but its one-line error message.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when debug is enabled (3 day retention)
    - trace.log: TRACE+ events when trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        verbose: Log INFO events to stderr
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (command output included)
        log_dir: Custom log directory (defaults to ~/.local/state/mount-partition/logs)
        log_to_file: Set False to skip all file sinks
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    elif verbose:
        console_level = "INFO"
    else:
        console_level = None

    # SINK 1: Console (stderr)
    if console_level is not None:
        logger.add(
            sys.stderr,
            level=console_level,
            backtrace=False,
            diagnose=False,
            filter=_should_log_command_output,
            colorize=None,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[source]: <8}</cyan> | "
                "<blue>{extra[job_id]: <15}</blue> | "
                "{message}"
            ),
        )

    if not log_to_file:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking operations with automatic timing.

    Logs operation start, completion and failure with the elapsed time.

    Args:
        operation: Operation name (e.g., "mount", "detach")
        **details: Operation-specific details to log (image, partition, ...)

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("mount", image="/srv/disk.raw", partition=1) as log:
            log.debug("Resolving geometry")
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
                "{} failed: {}",
                operation.capitalize(),
                e,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_locator() -> Logger:
        """Logger for partition table resolution."""
        return logger.bind(source="locate", tags=["partition", "storage"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device queries and attachment."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount table reads and mount/umount calls."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_records() -> Logger:
        """Logger for persisted mount records and image locks."""
        return logger.bind(source="records", tags=["records"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return logger.bind(source="system", tags=["system"])
