"""Logging setup and per-operation timing for the Noteshelf core.

Store calls run inside ``timed_operation``, which feeds the process-wide
``metrics`` collector and writes START/END lines at DEBUG level.
"""
import logging
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "noteshelf"
LOG_FILE_NAME = "noteshelf.log"
DEFAULT_LOG_DIR = Path.home() / ".noteshelf" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_logging_configured = False


def _has_file_handler(target: logging.Logger, log_file: Path) -> bool:
    wanted = os.path.abspath(log_file)
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == wanted
        for h in target.handlers
    )


def _has_console_handler(target: logging.Logger) -> bool:
    # RotatingFileHandler is itself a StreamHandler subclass
    return any(
        type(h) is logging.StreamHandler for h in target.handlers
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Attach a rotating log file (and optionally stderr) to the package logger.

    Safe to call more than once: handlers already attached for the same
    file are not added again.

    Args:
        log_dir: Where ``noteshelf.log`` lives. Defaults to ~/.noteshelf/logs/
        level: Level for the package logger and its new handlers.
        max_bytes: Size at which the log file is rotated.
        backup_count: Rotated files kept alongside the live one.
        console: Also echo records to stderr.

    Returns:
        The log directory, created if it did not exist.
    """
    global _logging_configured

    directory = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / LOG_FILE_NAME

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    new_handlers = []
    if not _has_file_handler(package_logger, log_file):
        new_handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    if console and not _has_console_handler(package_logger):
        new_handlers.append(logging.StreamHandler())

    for handler in new_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    _logging_configured = True
    package_logger.info(
        f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})"
    )
    return directory


def is_logging_configured() -> bool:
    return _logging_configured


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperationStats:
    """Running totals for one store operation name."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    fastest_ms: Optional[float] = None
    slowest_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def observe(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if self.fastest_ms is None or duration_ms < self.fastest_ms:
            self.fastest_ms = duration_ms
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        if success:
            self.success_count += 1
            return
        self.error_count += 1
        self.last_error = error
        self.last_error_at = _utc_now()

    def snapshot(self) -> Dict[str, Any]:
        average = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(average, 2),
            "min_duration_ms": round(self.fastest_ms or 0.0, 2),
            "max_duration_ms": round(self.slowest_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_at.isoformat() if self.last_error_at else None
            ),
        }


class MetricsCollector:
    """Thread-safe tally of store calls, keyed by operation name."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: Dict[str, OperationStats] = {}
        self._since = _utc_now()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.observe(duration_ms, success, error)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation counts, durations and the most recent error."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across every operation since creation or the last reset."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            succeeded = sum(s.success_count for s in self._stats.values())
            return {
                "uptime_seconds": (_utc_now() - self._since).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": sum(s.error_count for s in self._stats.values()),
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._since = _utc_now()


metrics = MetricsCollector()


def _format_pairs(values: Dict[str, Any]) -> str:
    return ", ".join(f"{key}={value}" for key, value in values.items())


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, record it in ``metrics`` and log its start and end.

    The yielded dict carries a short ``correlation_id``; anything else the
    block stores in it (row counts, ids) is appended to the END line.

    Example:
        with timed_operation("search_notes", query=text) as op:
            rows = run_query()
            op["result_count"] = len(rows)
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {"correlation_id": correlation_id}
    logger.debug(f"[{correlation_id}] START {operation} ({_format_pairs(context)})")

    started = time.perf_counter()
    failure: Optional[str] = None
    try:
        yield details
    except Exception as e:
        failure = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, failure is None, failure)
        extra = {k: v for k, v in details.items() if k != "correlation_id"}
        outcome = "OK" if failure is None else f"ERROR: {failure}"
        logger.debug(
            f"[{correlation_id}] END {operation} ({elapsed_ms:.2f}ms) "
            f"[{outcome}] {_format_pairs(extra)}"
        )
