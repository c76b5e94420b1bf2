"""Prometheus metrics for the inbox watcher.

Metrics exported:
- shiftsync_connection_attempts_total: Counter of mailbox connection attempts
- shiftsync_messages_dispatched_total: Counter of dispatched messages by outcome
- shiftsync_shifts_extracted_total: Counter of extracted shift records
- shiftsync_calendar_operations_total: Counter of Google Calendar calls
- shiftsync_cursor_position: Gauge of the last committed ingestion cursor
- shiftsync_errors_total: Counter of errors by type

All metrics carry the ``mailbox`` label.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

connection_attempts_total = Counter(
    "shiftsync_connection_attempts_total",
    "Total number of mailbox connection attempts",
    labelnames=["mailbox", "status"],
)

messages_dispatched_total = Counter(
    "shiftsync_messages_dispatched_total",
    "Total number of messages handed to the dispatcher",
    labelnames=["mailbox", "status"],
)

shifts_extracted_total = Counter(
    "shiftsync_shifts_extracted_total",
    "Total number of shift records extracted from schedule attachments",
    labelnames=["mailbox"],
)

calendar_operations_total = Counter(
    "shiftsync_calendar_operations_total",
    "Total number of Google Calendar operations",
    labelnames=["mailbox", "operation", "status"],
)

cursor_position = Gauge(
    "shiftsync_cursor_position",
    "Value of the last committed ingestion cursor",
    labelnames=["mailbox", "kind"],
)

errors_total = Counter(
    "shiftsync_errors_total",
    "Total number of errors by type",
    labelnames=["mailbox", "error_type", "operation"],
)


class WatcherMetrics:
    """Metrics collector bound to one watched mailbox."""

    def __init__(self, mailbox: str) -> None:
        self._mailbox = mailbox

    def record_connection_attempt(self, status: str) -> None:
        """Record a connection attempt ("success" or "error")."""
        connection_attempts_total.labels(mailbox=self._mailbox, status=status).inc()

    def record_dispatch(self, status: str) -> None:
        """Record the outcome of dispatching one message.

        Args:
            status: Dispatch outcome ("synced", "skipped_sender", "no_attachment",
                "no_shifts" or "error")
        """
        messages_dispatched_total.labels(mailbox=self._mailbox, status=status).inc()

    def record_shifts(self, count: int) -> None:
        if count:
            shifts_extracted_total.labels(mailbox=self._mailbox).inc(count)

    def record_calendar_operation(self, operation: str, status: str) -> None:
        """Record a calendar call.

        Args:
            operation: "create", "delete" or "list"
            status: "success" or "error"
        """
        calendar_operations_total.labels(
            mailbox=self._mailbox,
            operation=operation,
            status=status,
        ).inc()

    def set_cursor(self, kind: str, value: int) -> None:
        cursor_position.labels(mailbox=self._mailbox, kind=kind).set(value)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record an error occurrence.

        Args:
            error_type: Type of error (e.g., "transport_error", "timeout")
            operation: Operation that failed (e.g., "connect", "gap_check")
        """
        errors_total.labels(
            mailbox=self._mailbox,
            error_type=error_type,
            operation=operation,
        ).inc()


def get_error_type(exc: Exception) -> str:
    """Map an exception to a short error type for metrics labeling."""
    exc_type = type(exc).__name__

    if "Timeout" in exc_type:
        return "timeout"
    if "Transport" in exc_type:
        return "transport_error"
    if "Extraction" in exc_type or "Parse" in exc_type:
        return "parse_error"
    if "Calendar" in exc_type or "HTTP" in exc_type:
        return "http_error"
    if "ConnectionError" in exc_type or "ConnectError" in exc_type:
        return "connection_error"

    return exc_type.lower()


def start_metrics_server(port: int) -> None:
    """Expose the default registry on ``0.0.0.0:<port>/metrics``."""
    start_http_server(port)
