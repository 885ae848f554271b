"""Connector that runs Gremlin queries against a CosmosDB through a connection pool."""

from __future__ import annotations

import logging
import queue
import threading
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol

from gremcos.errors import GremcosError
from gremcos.metrics import Metrics
from gremcos.response import (
    AsyncResponse,
    Response,
    extract_first_error,
    extract_retry_conditions,
    parse_attribute_map,
)

_log = logging.getLogger(__name__)

_DEFAULT_RETRY_TIMEOUT = 30.0
_MILLISECOND = timedelta(milliseconds=1)
_END_OF_STREAM = object()

Duration = float | timedelta


class _QueryExecutor(Protocol):
    def execute(self, query: str) -> list[Response]: ...

    def execute_with_bindings(
        self, query: str, bindings: Mapping[str, Any] | None, rebindings: Mapping[str, Any] | None
    ) -> list[Response]: ...

    def execute_async(self, query: str) -> Iterable[AsyncResponse]: ...

    def is_connected(self) -> bool: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class StaticCredentials:
    """Credentials that never change, e.g. a username and the primary key of the account."""

    def __init__(self, username: str, password: str) -> None:
        self._username = username
        self._password = password

    def username(self) -> str:
        return self._username

    def password(self) -> str:
        return self._password


_NO_CREDENTIALS = StaticCredentials("", "")


def handle_timeout(done: threading.Event, retry_timeout: Duration, logger: logging.Logger) -> threading.Event:
    """Return an event that is set once retry_timeout passes before done is set."""
    timed_out = threading.Event()
    seconds = _seconds(retry_timeout)

    def watch() -> None:
        if not done.wait(max(0.0, seconds)):
            logger.debug(
                "Specified timeout (%ss) for retries exceeded. Hence the current request won't be "
                "retried even if a retry is suggested. This does not indicate that the request "
                "itself failed or timed out.",
                seconds,
            )
            timed_out.set()

    threading.Thread(target=watch, name="gremcos-retry-timeout", daemon=True).start()
    return timed_out


def wait_for_retry(wait: Duration, stop: threading.Event) -> bool:
    """Wait for the given time; False if stop was set first."""
    return not stop.wait(max(0.0, _seconds(wait)))


def update_request_metrics(responses: list[Response] | None, metrics: Metrics, is_a_retry: bool) -> None:
    """Update the request metrics from one chunk of responses."""
    if is_a_retry:
        metrics.request_retries_total.inc()
    if not responses:
        return

    retry_after = timedelta(0)
    charge_total = 0.0
    server_time_total = timedelta(0)

    for response in responses:
        try:
            info = parse_attribute_map(response.status.attributes)
        except ValueError:
            metrics.status_code_total.labels(str(response.status.code)).inc()
            continue
        metrics.status_code_total.labels(str(info.status_code)).inc()
        # cosmos already accumulates these values, so only the largest counts
        retry_after = max(retry_after, info.retry_after)
        charge_total = max(charge_total, info.request_charge_total)
        server_time_total = max(server_time_total, info.server_time_total)

    count = len(responses)
    server_ms = float(server_time_total // _MILLISECOND)
    metrics.server_time_per_query_response_avg_ms.set(server_ms / count)
    metrics.server_time_per_query_ms.set(server_ms)
    metrics.request_charge_per_query_response_avg.set(charge_total / count)
    metrics.request_charge_per_query.set(charge_total)
    metrics.request_charge_total.add(charge_total)
    metrics.retry_after_ms.observe(float(retry_after // _MILLISECOND))


def retry_loop(
    execute_request: Callable[[], list[Response]],
    max_retries: int,
    retry_timeout: Duration,
    metrics: Metrics | None,
    logger: logging.Logger,
) -> list[Response]:
    """Run execute_request, retrying as long as CosmosDB suggests it and limits allow."""
    if metrics is None:
        raise ValueError("metrics must not be nil")

    should_retry = max_retries > 0
    done = threading.Event()
    timed_out = handle_timeout(done, retry_timeout, logger)
    responses: list[Response] = []

    try:
        for attempt in range(max_retries + 1):
            try:
                responses = execute_request()
            except Exception as exc:
                update_request_metrics([], metrics, attempt > 0)
                metrics.request_errors_total.inc()
                raise GremcosError(f"executing request in retry loop: {exc}") from exc
            update_request_metrics(responses, metrics, attempt > 0)

            if not should_retry:
                return responses

            info = extract_retry_conditions(responses)
            if not (info.retry or info.retry_on_new_connection):
                return responses

            if info.retry_after > timedelta(0):
                logger.info(
                    "retry %d of query after %s because of header status code %d",
                    attempt + 1,
                    info.retry_after,
                    info.response_status_code,
                )
                if not wait_for_retry(info.retry_after, timed_out):
                    logger.warning(
                        "Timed out while waiting to do a retry after %s (timeout=%ss)",
                        info.retry_after,
                        _seconds(retry_timeout),
                    )
                    metrics.request_retry_timeouts_total.inc()
                    return responses

            if timed_out.is_set():
                metrics.request_retry_timeouts_total.inc()
                logger.warning("Timed out while doing a retry (timeout=%ss)", _seconds(retry_timeout))
                return responses
        return responses
    finally:
        done.set()


def _drain(results: queue.Queue) -> Iterator[AsyncResponse]:
    while (item := results.get()) is not _END_OF_STREAM:
        yield item


class Cosmos:
    """Executes queries on a CosmosDB Gremlin endpoint using a pool of connections."""

    def __init__(
        self,
        host: str,
        pool: _QueryExecutor,
        *,
        credentials: StaticCredentials | Any | None = None,
        logger: logging.Logger | None = None,
        max_retries: int = 0,
        retry_timeout: Duration | None = None,
        metrics: Metrics | None = None,
        metrics_prefix: str = "gremcos",
    ) -> None:
        self.host = host
        self.pool = pool
        self.credentials = credentials if credentials is not None else _NO_CREDENTIALS
        self.logger = logger if logger is not None else _log
        self.max_retries = max(0, max_retries)
        timeout = _seconds(retry_timeout) if retry_timeout is not None else 0.0
        self.retry_timeout = timeout if timeout > 0 else _DEFAULT_RETRY_TIMEOUT
        self.metrics = metrics if metrics is not None else Metrics(metrics_prefix)

    def __enter__(self) -> Cosmos:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _finish(self, responses: list[Response]) -> list[Response]:
        error = extract_first_error(responses)
        if error is not None:
            error.responses = responses
            raise error
        return responses

    def execute_query(self, query: Any) -> list[Response]:
        """Execute a query built by a query builder."""
        if query is None:
            raise ValueError("query is nil")
        return self.execute(str(query))

    def execute(self, query: str) -> list[Response]:
        """Execute a raw query; a failed response raises ResponseError carrying the responses."""
        responses = retry_loop(
            lambda: self.pool.execute(query), self.max_retries, self.retry_timeout, self.metrics, self.logger
        )
        return self._finish(responses)

    def execute_with_bindings(
        self, query: str, bindings: Mapping[str, Any] | None, rebindings: Mapping[str, Any] | None
    ) -> list[Response]:
        """Execute a raw query with bindings and rebindings."""
        responses = retry_loop(
            lambda: self.pool.execute_with_bindings(query, bindings, rebindings),
            self.max_retries,
            self.retry_timeout,
            self.metrics,
            self.logger,
        )
        return self._finish(responses)

    def execute_async(self, query: str) -> Iterator[AsyncResponse]:
        """Start a query and return an iterator over the responses of its final attempt.

        An error of the first attempt is raised here; later failures end the stream empty.
        """
        results: queue.Queue = queue.Queue()
        first_call = threading.Event()
        first_error: list[BaseException] = []
        collected: list[AsyncResponse] = []

        def attempt() -> list[Response]:
            try:
                stream = self.pool.execute_async(query)
            except Exception as exc:
                if not first_call.is_set():
                    first_error.append(exc)
                    first_call.set()
                raise
            first_call.set()
            collected.clear()
            responses: list[Response] = []
            error: str | None = None
            for item in stream:
                collected.append(item)
                responses.append(item.response)
                if item.error_message:
                    error = item.error_message if error is None else f"{item.error_message}: {error}"
            if error is not None:
                raise GremcosError(error)
            return responses

        def run() -> None:
            try:
                retry_loop(attempt, self.max_retries, self.retry_timeout, self.metrics, self.logger)
            except Exception as exc:
                self.logger.debug("asynchronous query failed: %s", exc)
            else:
                for item in collected:
                    results.put(item)
            finally:
                first_call.set()
                results.put(_END_OF_STREAM)

        threading.Thread(target=run, name="gremcos-execute-async", daemon=True).start()
        first_call.wait()
        if first_error:
            raise first_error[0]
        return _drain(results)

    def is_connected(self) -> bool:
        """Whether the pool has a live connection."""
        return self.pool.is_connected()

    def stop(self) -> None:
        """Close the pool and all of its connections."""
        self.logger.info("Teardown requested")
        self.pool.close()

    def is_healthy(self) -> bool:
        """Ping the database; False if the connection is not alive."""
        try:
            self.pool.ping()
        except Exception as exc:
            self.logger.warning("health check failed: %s", exc)
            return False
        return True

    def __str__(self) -> str:
        try:
            username = self.credentials.username()
        except Exception as exc:
            username = f"failed to obtain username: {exc}"
        connected = "true" if self.is_connected() else "false"
        return f"CosmosDB (connected={connected}, target={self.host}, user={username})"