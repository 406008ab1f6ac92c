"""Observability utilities for the related-notes engine.

Rotating disk logging, per-operation metrics with JSON persistence,
and timing helpers for both sync blocks and async service calls.
"""
import functools
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".znote-related" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".znote-related" / "metrics.json"

# ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

T = TypeVar("T")


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Attaches a rotating file handler (and optionally a console handler)
    to the ``znote_related`` logger hierarchy.

    Args:
        log_dir: Directory for log files. Defaults to ~/.znote-related/logs/
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of rotated files to keep
        console: Also log to stderr

    Returns:
        Path to the log directory
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("znote_related")
    package_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = log_path / "znote-related.log"
    if not any(
        isinstance(h, RotatingFileHandler)
        and Path(h.baseFilename).resolve() == log_file.resolve()
        for h in package_logger.handlers
    ):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in package_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    package_logger.info(
        f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)"
    )
    return log_path


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class MetricsCollector:
    """Metrics collection for engine operations.

    Tracks timing, success/failure counts and the most recent error for
    each operation name (recommend, embed_all_notes, ...). Everything runs
    on one event loop, so no locking is needed.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 0,
    ):
        """Initialize the metrics collector.

        Args:
            metrics_file: Where save_metrics() writes. Defaults to ~/.znote-related/metrics.json
            auto_save_interval: Save to disk every N operations (0 to disable)
        """
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._operation_count_since_save = 0

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record one completed operation."""
        m = self._metrics[operation]
        m.count += 1
        m.total_duration_ms += duration_ms
        m.min_duration_ms = min(m.min_duration_ms, duration_ms)
        m.max_duration_ms = max(m.max_duration_ms, duration_ms)

        if success:
            m.success_count += 1
        else:
            m.error_count += 1
            m.last_error = error
            m.last_error_time = datetime.now(timezone.utc)

        self._operation_count_since_save += 1
        if (
            self._auto_save_interval > 0
            and self._operation_count_since_save >= self._auto_save_interval
        ):
            self.save_metrics()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Get a snapshot of all metrics, keyed by operation name."""
        result = {}
        for op, m in self._metrics.items():
            avg_duration = m.total_duration_ms / m.count if m.count > 0 else 0
            min_dur = m.min_duration_ms if m.min_duration_ms != float("inf") else 0
            result[op] = {
                "count": m.count,
                "success_count": m.success_count,
                "error_count": m.error_count,
                "success_rate": m.success_count / m.count if m.count > 0 else 0,
                "avg_duration_ms": round(avg_duration, 2),
                "min_duration_ms": round(min_dur, 2),
                "max_duration_ms": round(m.max_duration_ms, 2),
                "last_error": m.last_error,
                "last_error_time": (
                    m.last_error_time.isoformat() if m.last_error_time else None
                ),
            }
        return result

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate counts across all operations."""
        total_ops = sum(m.count for m in self._metrics.values())
        total_success = sum(m.success_count for m in self._metrics.values())
        return {
            "uptime_seconds": (
                datetime.now(timezone.utc) - self._start_time
            ).total_seconds(),
            "total_operations": total_ops,
            "total_success": total_success,
            "total_errors": total_ops - total_success,
            "overall_success_rate": total_success / total_ops if total_ops > 0 else 1.0,
            "operations_tracked": list(self._metrics.keys()),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._metrics.clear()
        self._start_time = datetime.now(timezone.utc)
        self._operation_count_since_save = 0

    def save_metrics(self) -> bool:
        """Write the current metrics to disk atomically.

        Returns:
            True if saved successfully, False otherwise.
        """
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.get_metrics(),
        }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._metrics_file.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self._metrics_file)
            self._operation_count_since_save = 0
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False

    def get_metrics_file(self) -> Path:
        """Get the path to the metrics file."""
        return self._metrics_file


# Global metrics collector instance
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Context manager for timing and logging operations.

    Yields a dict the caller can fill with result info; it is logged on
    completion together with the duration and a short correlation id.

    Example:
        with timed_operation("find_similar", limit=5) as op:
            results = scan()
            op["result_count"] = len(results)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {"correlation_id": correlation_id}

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error_msg = None
    success = True
    try:
        yield result_info
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        metrics.record_operation(operation, duration_ms, success, error_msg)

        result_str = ", ".join(
            f"{k}={v}" for k, v in result_info.items() if k != "correlation_id"
        )
        status = "OK" if success else f"ERROR: {error_msg}"
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )


def atimed(
    operation_name: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator timing an async service method through timed_operation.

    Example:
        @atimed("embed_all_notes")
        async def embed_all_notes(self) -> EmbedAllResult:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            context = {}
            if "note_id" in kwargs:
                context["note_id"] = kwargs["note_id"]
            with timed_operation(op_name, **context) as op:
                result = await func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op["result_count"] = len(result)
                elif result is not None:
                    op["has_result"] = True
                return result

        return wrapper

    return decorator
