"""
Logging and handshake timing for tlsnode.
"""
import json
import logging
import logging.handlers
import sys
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models.config import TlsSettings


@dataclass
class LogEntry:
    """One JSON log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    thread: str
    location: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceMetric:
    """Timing of one measured operation, such as one side of a handshake."""
    operation: str
    duration_ms: float
    started_at: str
    success: bool
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


def log_with_context(logger: logging.Logger, level: str, message: str, **context):
    """Log message with structured context picked up by JSONFormatter."""
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(message, extra={'context': context})


class JSONFormatter(logging.Formatter):
    """Formats records as single-line JSON, carrying context and exceptions."""

    def format(self, record: logging.LogRecord) -> str:
        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            thread=record.threadName,
            location=f"{record.module}.{record.funcName}:{record.lineno}",
            context=dict(getattr(record, 'context', None) or {})
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry.error = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(exc_type, exc_value, exc_tb)
            }

        return json.dumps(asdict(entry), default=str)


class PerformanceMonitor:
    """Collects timings of handshakes and other operations."""

    def __init__(self):
        self.metrics: List[PerformanceMetric] = []
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def measure_operation(self, operation: str, context: Optional[Dict[str, Any]] = None):
        """Time the enclosed block and record it, failed or not."""
        started_at = datetime.now(timezone.utc).isoformat()
        start_time = time.monotonic()
        error: Optional[BaseException] = None

        try:
            yield
        except Exception as e:
            error = e
            raise
        finally:
            metric = PerformanceMetric(
                operation=operation,
                duration_ms=(time.monotonic() - start_time) * 1000,
                started_at=started_at,
                success=error is None,
                error_type=type(error).__name__ if error is not None else None,
                error_message=str(error) if error is not None else None,
                context=dict(context or {})
            )

            with self.lock:
                self.metrics.append(metric)

            log_with_context(
                self.logger, 'debug', f"{operation} took {metric.duration_ms:.1f}ms",
                **{
                    **metric.context,
                    'operation': operation,
                    'duration_ms': metric.duration_ms,
                    'success': metric.success,
                    'error_type': metric.error_type,
                }
            )

    def get_metrics(self, operation: Optional[str] = None) -> List[PerformanceMetric]:
        """Get performance metrics, optionally for one operation."""
        with self.lock:
            filtered_metrics = self.metrics.copy()

        if operation:
            filtered_metrics = [m for m in filtered_metrics if m.operation == operation]

        return filtered_metrics

    def get_operation_stats(self, operation: str) -> Dict[str, Any]:
        """Get statistics for a specific operation."""
        metrics = self.get_metrics(operation=operation)

        if not metrics:
            return {}

        durations = [m.duration_ms for m in metrics]
        success_count = sum(1 for m in metrics if m.success)

        return {
            'operation': operation,
            'total_calls': len(metrics),
            'success_count': success_count,
            'failure_count': len(metrics) - success_count,
            'success_rate': success_count / len(metrics),
            'avg_duration_ms': sum(durations) / len(durations),
            'min_duration_ms': min(durations),
            'max_duration_ms': max(durations)
        }


class LoggingService:
    """Configures root logging from TlsSettings and owns the performance monitor."""

    def __init__(self, settings: Optional[TlsSettings] = None):
        """Initialize logging service with settings."""
        self.settings = settings or TlsSettings()
        self.performance_monitor = PerformanceMonitor()
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.info("Logging service initialized")

    def _setup_logging(self):
        """Replace root handlers with console and optional JSON file handlers."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.settings.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

        if self.settings.log_file_path:
            Path(self.settings.log_file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=self.settings.log_file_path,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(JSONFormatter())
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)

    def measure_performance(self, operation: str, context: Optional[Dict[str, Any]] = None):
        """Get performance measurement context manager."""
        return self.performance_monitor.measure_operation(operation, context)

    def get_performance_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """Get performance statistics."""
        if operation:
            return self.performance_monitor.get_operation_stats(operation)

        all_metrics = self.performance_monitor.get_metrics()
        operations = set(m.operation for m in all_metrics)
        return {
            op: self.performance_monitor.get_operation_stats(op)
            for op in operations
        }
