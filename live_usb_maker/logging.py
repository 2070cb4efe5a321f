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
        "LIVE_USB_MAKER_LOG_DIR",
        Path.home() / ".local" / "state" / "live-usb-maker" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw subprocess output out of INFO-level sinks."""
    tags = record["extra"].get("tags", [])
    if "command-output" in tags:
        return record["level"].no <= logger.level("DEBUG").no
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
    - CRITICAL/ERROR: Provisioning failures, cleanup problems
    - SUCCESS/INFO: Stage transitions, device and image summaries
    - DEBUG: Every external command and its output
    - TRACE: Per-file copy events

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/live-usb-maker/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output if console_level == "INFO" else None,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log (INFO+)
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
        job_id: Job identifier for tracking a provisioning run
        tags: Tags for filtering (e.g., ["storage", "mount"])
        source: Source component (e.g., "mount", "crypto")

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
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking pipeline stages with automatic timing.

    Logs stage start, completion and failure with duration tracking.

    Args:
        operation: Stage name (e.g., "partition", "format", "populate")
        job_id: Identifier of the provisioning run the stage belongs to
        **details: Stage-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("format", job_id=session.job_id) as log:
            log.debug("Formatting live partition")
    """
    if job_id is None:
        job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
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
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_provision(job_id: str | None = None, **details) -> Logger:
        """Logger for a provisioning run."""
        if job_id is None:
            job_id = f"provision-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="provision", tags=["provision"], **details
        )

    @staticmethod
    def for_storage() -> Logger:
        """Logger for partitioning, formatting and copy operations."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for workspace and mount management."""
        return logger.bind(source="mount", tags=["storage", "mount"])

    @staticmethod
    def for_crypto() -> Logger:
        """Logger for LUKS container handling."""
        return logger.bind(source="crypto", tags=["storage", "crypto"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, CLI)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for copy progress, where every file would otherwise produce a line.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        """
        Initialize throttled logger.

        Args:
            log: Base logger to wrap
            interval_seconds: Minimum seconds between log emissions
        """
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging the pipeline's device-level events with
    consistent structure and fields.
    """

    @staticmethod
    def log_partition_created(
        log: Logger,
        device: str,
        number: int,
        start_sector: int,
        size_sectors: int | None,
        type_guid: str,
    ) -> None:
        """Log a single partition-table append."""
        log.info(
            f"Partition {number} created on {device}",
            event_type="partition_created",
            device=device,
            partition_number=number,
            start_sector=start_sector,
            size_sectors=size_sectors if size_sectors is not None else "remainder",
            type_guid=type_guid,
        )

    @staticmethod
    def log_volume_formatted(
        log: Logger, device: str, filesystem: str, label: str | None, **extra
    ) -> None:
        """Log a completed mkfs call."""
        log.info(
            f"Formatted {device} as {filesystem}",
            event_type="volume_formatted",
            device=device,
            filesystem=filesystem,
            label=label,
            **extra,
        )

    @staticmethod
    def log_cleanup(
        log: Logger, unreleased: list[str], mapping_closed: bool | None, **extra
    ) -> None:
        """Log the outcome of a failure-path cleanup."""
        level = "warning" if unreleased or mapping_closed is False else "info"
        getattr(log, level)(
            "Cleanup finished",
            event_type="cleanup",
            unreleased_mounts=unreleased,
            mapping_closed=mapping_closed,
            **extra,
        )
