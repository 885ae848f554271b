import logging
import threading
import time
from datetime import timedelta

import pytest

from gremcos.cosmos import (
    Cosmos,
    StaticCredentials,
    handle_timeout,
    retry_loop,
    update_request_metrics,
    wait_for_retry,
)
from gremcos.errors import GremcosError
from gremcos.metrics import Metrics
from gremcos.response import AsyncResponse, Response, ResponseError, Status

QUERY = 'g.V().has("user_id","12345")'
THROTTLED = "429 (3200) - Request was throttled and should be retried after value in x-ms-retry-after-ms"
LOGGER = logging.getLogger("test")


def success():
    return [Response(status=Status(code=Status.SUCCESS))]


def do_retry(retry_after="00:00:00.0500000"):
    return [
        Response(
            status=Status(
                code=Status.SERVER_ERROR,
                attributes={
                    "x-ms-status-code": 429,
                    "x-ms-substatus-code": 3200,
                    "x-ms-retry-after-ms": retry_after,
                },
            )
        )
    ]


class FakePool:
    def __init__(self, script=(), connected=True, ping_error=None):
        self.script = list(script)
        self.calls = 0
        self.connected = connected
        self.ping_error = ping_error
        self.closed = False

    def _next(self):
        self.calls += 1
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def execute(self, query):
        return self._next()

    def execute_with_bindings(self, query, bindings, rebindings):
        return self._next()

    def execute_async(self, query):
        return [r if isinstance(r, AsyncResponse) else AsyncResponse(response=r) for r in self._next()]

    def is_connected(self):
        return self.connected

    def ping(self):
        if self.ping_error:
            raise self.ping_error

    def close(self):
        self.closed = True


def make(pool, max_retries=3, retry_timeout=2.0):
    return Cosmos("ws://host", pool, max_retries=max_retries, retry_timeout=retry_timeout, logger=LOGGER)


def test_execute_query_none():
    with pytest.raises(ValueError, match="query is nil"):
        make(FakePool()).execute_query(None)


def test_execute_retries_success():
    pool = FakePool([do_retry()] * 3 + [success()])
    assert make(pool).execute(QUERY) == success()
    assert pool.calls == 4


def test_execute_no_retries():
    pool = FakePool([do_retry("00:00:00.5000000")])
    with pytest.raises(ResponseError) as info:
        make(pool, max_retries=0).execute(QUERY)
    assert str(info.value) == THROTTLED
    assert info.value.responses == do_retry("00:00:00.5000000")
    assert pool.calls == 1


def test_execute_max_retries_failure():
    pool = FakePool([do_retry()] * 4)
    with pytest.raises(ResponseError, match="429 \\(3200\\)") as info:
        make(pool).execute(QUERY)
    assert info.value.responses == do_retry()
    assert pool.calls == 4


def test_execute_no_retries_after_success():
    pool = FakePool([do_retry(), success(), do_retry()])
    assert make(pool).execute(QUERY) == success()
    assert pool.calls == 2


def test_execute_with_bindings_retries_success():
    pool = FakePool([do_retry()] * 3 + [success()])
    assert make(pool).execute_with_bindings(QUERY, None, None) == success()
    assert pool.calls == 4


def test_execute_with_bindings_no_retries():
    pool = FakePool([do_retry("00:00:00.5000000")])
    with pytest.raises(ResponseError) as info:
        make(pool, max_retries=0).execute_with_bindings(QUERY, None, None)
    assert str(info.value) == THROTTLED


def test_execute_with_bindings_max_retries_failure():
    pool = FakePool([do_retry()] * 4)
    with pytest.raises(ResponseError) as info:
        make(pool).execute_with_bindings(QUERY, {"a": 1}, {})
    assert str(info.value) == THROTTLED
    assert pool.calls == 4


def collect(stream):
    return [item.response for item in stream]


def test_execute_async_retries_success():
    pool = FakePool([do_retry()] * 3 + [success()])
    assert collect(make(pool).execute_async(QUERY)) == success()
    assert pool.calls == 4


def test_execute_async_no_retries():
    pool = FakePool([do_retry("00:00:00.5000000")])
    assert collect(make(pool, max_retries=0).execute_async(QUERY)) == do_retry("00:00:00.5000000")


def test_execute_async_max_retries_failure():
    pool = FakePool([do_retry()] * 4)
    assert collect(make(pool).execute_async(QUERY)) == do_retry()
    assert pool.calls == 4


def test_execute_async_no_retries_after_success():
    pool = FakePool([do_retry(), success()])
    assert collect(make(pool).execute_async(QUERY)) == success()
    assert pool.calls == 2


def test_execute_async_no_retries_after_timeout():
    pool = FakePool([do_retry()] * 4)
    assert collect(make(pool, retry_timeout=0.09).execute_async(QUERY)) == do_retry()
    assert pool.calls == 2


def test_execute_async_abort_if_retry_after_too_long():
    pool = FakePool([do_retry("00:00:00.2000000")] * 4)
    assert collect(make(pool, retry_timeout=0.11).execute_async(QUERY)) == do_retry("00:00:00.2000000")
    assert pool.calls == 1


def test_execute_async_first_call_error_raised():
    pool = FakePool([GremcosError("no connection")])
    with pytest.raises(GremcosError, match="no connection"):
        make(pool).execute_async(QUERY)


def test_execute_async_error_message_yields_nothing():
    pool = FakePool([[AsyncResponse(response=success()[0], error_message="broken")]])
    assert list(make(pool, max_retries=0).execute_async(QUERY)) == []


def test_wait_for_retry():
    stop = threading.Event()
    start = time.monotonic()
    assert wait_for_retry(0.02, stop) is True
    assert time.monotonic() - start >= 0.02


def test_wait_for_retry_abort():
    stop = threading.Event()
    stop.set()
    start = time.monotonic()
    assert wait_for_retry(timedelta(seconds=1), stop) is False
    assert time.monotonic() - start < 1.0


def test_handle_timeout():
    done = threading.Event()
    timed_out = handle_timeout(done, 0.05, LOGGER)
    assert not timed_out.is_set()
    assert timed_out.wait(1.0)
    done.set()


def test_handle_timeout_abort():
    done = threading.Event()
    timed_out = handle_timeout(done, 0.05, LOGGER)
    done.set()
    time.sleep(0.1)
    assert not timed_out.is_set()


def test_retry_loop_missing_metrics():
    with pytest.raises(ValueError, match="metrics must not be nil"):
        retry_loop(lambda: [], 0, 1.0, None, LOGGER)


def test_retry_loop_failure_no_retry():
    metrics = Metrics()

    def failing():
        raise RuntimeError("Failure")

    with pytest.raises(GremcosError, match="Failure"):
        retry_loop(failing, 1, 1.0, metrics, LOGGER)
    assert metrics.request_errors_total.value == 1


def test_retry_loop_success_no_retry():
    metrics = Metrics()
    responses = retry_loop(lambda: [Response(data=[], status=Status(code=200))], 1, 1.0, metrics, LOGGER)
    assert len(responses) == 1
    assert metrics.status_code_total.items() == {("200",): 1.0}
    assert metrics.retry_after_ms.sum == 0


def test_retry_loop_waiting_too_long_for_retry():
    metrics = Metrics()
    response = Response(
        status=Status(code=429, attributes={"x-ms-retry-after-ms": "00:10:00.00", "x-ms-status-code": "429"})
    )
    responses = retry_loop(lambda: [response], 1, 0.1, metrics, LOGGER)
    assert responses == [response]
    assert metrics.request_retry_timeouts_total.value == 1
    assert metrics.status_code_total.items() == {("429",): 1.0}
    assert metrics.retry_after_ms.sum == 600000


def test_retry_loop_endless_retries_respect_timeout():
    metrics = Metrics()
    calls = []

    def slow():
        calls.append(1)
        time.sleep(0.055)
        return [Response(status=Status(code=429, attributes={"x-ms-retry-after-ms": "00:00:00.000", "x-ms-status-code": "429"}))]

    responses = retry_loop(slow, 2, 0.1, metrics, LOGGER)
    assert len(responses) == 1
    assert len(calls) == 2


def test_update_metrics_no_responses():
    metrics = Metrics()
    update_request_metrics([], metrics, False)
    assert metrics.status_code_total.items() == {}
    assert metrics.retry_after_ms.count == 0


def test_update_metrics_zero():
    metrics = Metrics()
    responses = [
        Response(status=Status(code=Status.SUCCESS, attributes={"x-ms-status-code": 200})),
        Response(status=Status(code=Status.SUCCESS)),
    ]
    update_request_metrics(responses, metrics, False)
    assert metrics.status_code_total.items() == {("200",): 2.0}
    assert metrics.server_time_per_query_ms.value == 0
    assert metrics.request_charge_total.value == 0
    assert metrics.retry_after_ms.count == 1
    assert metrics.request_retries_total.value == 0


def test_update_metrics_full():
    metrics = Metrics()
    responses = [
        Response(
            status=Status(
                code=Status.SUCCESS,
                attributes={
                    "x-ms-status-code": 429,
                    "x-ms-substatus-code": 3200,
                    "x-ms-total-request-charge": 11,
                    "x-ms-total-server-time-ms": 22,
                    "x-ms-retry-after-ms": "00:00:00.033",
                },
            )
        )
    ]
    update_request_metrics(responses, metrics, True)
    assert metrics.request_retries_total.value == 1
    assert metrics.status_code_total.items() == {("429",): 1.0}
    assert metrics.server_time_per_query_response_avg_ms.value == 22
    assert metrics.server_time_per_query_ms.value == 22
    assert metrics.request_charge_per_query_response_avg.value == 11
    assert metrics.request_charge_per_query.value == 11
    assert metrics.request_charge_total.value == 11
    assert metrics.retry_after_ms.sum == 33


def test_credentials_and_string():
    password = "password"
    credentials = StaticCredentials("abcd", password=password)
    cosmos = Cosmos("ws://host", FakePool(connected=False), credentials=credentials)
    assert credentials.username() == "abcd"
    assert credentials.password() == "password"
    assert str(cosmos) == "CosmosDB (connected=false, target=ws://host, user=abcd)"


def test_automatic_retries_settings():
    assert make(FakePool(), max_retries=3, retry_timeout=1.0).retry_timeout == 1.0
    cosmos = make(FakePool(), max_retries=3, retry_timeout=0)
    assert cosmos.retry_timeout == 30.0
    assert cosmos.max_retries == 3


def test_metrics_prefix():
    cosmos = Cosmos("ws://host", FakePool(), metrics_prefix="prefix")
    assert cosmos.metrics.request_errors_total.name == "prefix_request_errors_total"


def test_is_healthy_and_stop():
    healthy = Cosmos("ws://host", FakePool())
    sick = Cosmos("ws://host", FakePool(ping_error=GremcosError("Not connected")))
    assert healthy.is_healthy() is True
    assert sick.is_healthy() is False
    healthy.stop()
    assert healthy.pool.closed is True


def test_is_connected():
    assert Cosmos("ws://host", FakePool(connected=True)).is_connected() is True
    assert Cosmos("ws://host", FakePool(connected=False)).is_connected() is False