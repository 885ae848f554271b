"""In-memory metrics for connection usage and query statistics."""

from __future__ import annotations

import enum
import threading


class ConnectionUsageKind(enum.Enum):
    """The way a connection was used."""

    WRITE = "WRITE"
    READ = "READ"
    PING = "PING"

    def __str__(self) -> str:
        return self.value


class NopClientMetrics:
    """Client metrics that record nothing."""

    def increment_connectivity_error_count(self) -> None:
        pass

    def increment_connection_usage_count(self, kind: ConnectionUsageKind, was_an_error: bool) -> None:
        pass


class Counter:
    """A monotonically increasing value."""

    def __init__(self, name: str = "", help: str = "") -> None:
        self.name = name
        self.help = help
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def inc(self) -> None:
        self.add(1.0)

    def add(self, value: float) -> None:
        if value < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += value


class LabeledCounter:
    """A family of counters distinguished by label values."""

    def __init__(self, name: str, label_names: tuple[str, ...] | list[str], help: str = "") -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], Counter] = {}
        self._lock = threading.Lock()

    def labels(self, *args: str) -> Counter:
        """Return the counter for the given label values, creating it on first use."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values for {self.name!r}, got {len(args)}"
            )
        key = tuple(str(arg) for arg in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = Counter(self.name, self.help)
            return child

    def items(self) -> dict[tuple[str, ...], float]:
        with self._lock:
            return {key: child.value for key, child in self._children.items()}


class Gauge:
    """A value that can be set arbitrarily."""

    def __init__(self, name: str = "", help: str = "") -> None:
        self.name = name
        self.help = help
        self.value = 0.0

    def set(self, value: float) -> None:
        self.value = float(value)


class Histogram:
    """Accumulates observations as a count and a sum."""

    def __init__(self, name: str = "", help: str = "") -> None:
        self.name = name
        self.help = help
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value


class Metrics:
    """All metrics of the connector, named with a common prefix."""

    def __init__(self, prefix: str = "gremcos") -> None:
        self.prefix = prefix

        def name(suffix: str) -> str:
            return f"{prefix}_{suffix}"

        self.connectivity_errors_total = Counter(
            name("connectivity_errors_total"), "Number of connectivity errors."
        )
        self.connection_usage_total = LabeledCounter(
            name("connection_usage_total"), ("kind", "error"), "Number of connection usages."
        )
        self.request_errors_total = Counter(name("request_errors_total"), "Number of failed requests.")
        self.request_retries_total = Counter(name("request_retries_total"), "Number of retried requests.")
        self.request_retry_timeouts_total = Counter(
            name("request_retry_timeouts_total"), "Number of retries stopped by the timeout."
        )
        self.status_code_total = LabeledCounter(
            name("request_status_code_total"), ("code",), "Number of responses per status code."
        )
        self.server_time_per_query_response_avg_ms = Gauge(
            name("server_time_per_query_response_avg_ms"), "Average server time per response."
        )
        self.server_time_per_query_ms = Gauge(name("server_time_per_query_ms"), "Server time per query.")
        self.request_charge_per_query_response_avg = Gauge(
            name("request_charge_per_query_response_avg"), "Average request charge per response."
        )
        self.request_charge_per_query = Gauge(name("request_charge_per_query"), "Request charge per query.")
        self.request_charge_total = Counter(name("request_charge_total"), "Accumulated request charge.")
        self.retry_after_ms = Histogram(name("retry_after_ms"), "Suggested wait before retrying.")

    def all(self) -> list[Counter | LabeledCounter | Gauge | Histogram]:
        """Every metric held by this instance."""
        return [
            self.connectivity_errors_total,
            self.connection_usage_total,
            self.request_errors_total,
            self.request_retries_total,
            self.request_retry_timeouts_total,
            self.status_code_total,
            self.server_time_per_query_response_avg_ms,
            self.server_time_per_query_ms,
            self.request_charge_per_query_response_avg,
            self.request_charge_per_query,
            self.request_charge_total,
            self.retry_after_ms,
        ]

    def increment_connectivity_error_count(self) -> None:
        self.connectivity_errors_total.inc()

    def increment_connection_usage_count(self, kind: ConnectionUsageKind, was_an_error: bool) -> None:
        self.connection_usage_total.labels(str(kind), "true" if was_an_error else "false").inc()