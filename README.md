# gremcos

Building blocks for a Gremlin client for Azure Cosmos DB:

- a websocket dialer for `ws://` and `wss://` endpoints
- interpretation of the Cosmos-specific response headers
- automatic retries of requests that Cosmos DB marks as retryable
- in-memory request metrics
- a `Cosmos` connector that ties these together on top of a connection pool
  that you supply

## Installation

```
pip install gremcos
```

To run the tests as well:

```
pip install "gremcos[test]"
pytest
```

## The connector

`gremcos.cosmos.Cosmos(host, pool, *, credentials=None, logger=None,
max_retries=0, retry_timeout=None, metrics=None, metrics_prefix="gremcos")`
runs queries through `pool`. The pool is any object with these methods:

- `execute(query)`
- `execute_with_bindings(query, bindings, rebindings)`
- `execute_async(query)`
- `is_connected()`
- `ping()`
- `close()`

The first two return lists of `gremcos.response.Response`. `execute_async`
returns an iterable of `gremcos.response.AsyncResponse`.

```python
from gremcos.cosmos import Cosmos, StaticCredentials

password = "password"
credentials = StaticCredentials("user", password)

with Cosmos("wss://localhost:8182/gremlin", my_pool, credentials=credentials,
            max_retries=3, retry_timeout=2.0) as cosmos:
    for response in cosmos.execute("g.V().count()"):
        print(response.status.code, response.data)
```

The methods of `Cosmos`:

- `execute(query)` runs a raw query and returns the list of responses.
  - If a response carries an error status, a `ResponseError` is raised
    instead. The responses are attached to it as `responses`.
- `execute_with_bindings(query, bindings, rebindings)` does the same for a
  query with bindings.
- `execute_query(query)` runs `str(query)`. It raises `ValueError` if
  `query` is `None`.
- `execute_async(query)` returns an iterator over the `AsyncResponse`s of the
  last attempt.
  - An error raised by the first call to the pool is raised here.
  - If a later attempt fails, the iterator ends without yielding anything.
- `is_connected()` asks the pool whether it is connected.
- `is_healthy()` pings the pool. It returns `True` if the ping succeeds and
  `False` if it raises.
- `stop()` closes the pool. Leaving the `with` block calls it as well.
- `str(cosmos)` gives `CosmosDB (connected=..., target=..., user=...)`.

`retry_timeout` is given in seconds or as a `timedelta`. If it is missing or
not positive, it is 30 seconds.

## Retries

Cosmos DB status codes 409, 412, 429, 1007 and 1008 are retryable. When
`max_retries` is above zero, `gremcos.cosmos.retry_loop`:

1. Repeats the request up to `max_retries` more times.
2. Waits between tries for the time given in `x-ms-retry-after-ms`.
3. Stops once `retry_timeout` has passed and returns the last responses.

An exception from the request is raised as a `GremcosError`.

The helpers `handle_timeout`, `wait_for_retry` and `update_request_metrics`
are public as well.

## Responses

`gremcos.response` holds the following.

Data classes:

- `Status`, which has the Gremlin status code constants such as
  `Status.SUCCESS` and `Status.SERVER_ERROR`
- `Response`
- `AsyncResponse`

Functions:

- `parse_attribute_map(attributes)` reads the `x-ms-*` headers into a
  `ResponseInformation`. It raises `ValueError` if `x-ms-status-code` is
  missing or invalid.
- `status_code_to_description(code)` returns the documented meaning of a
  Cosmos status code.
- `extract_first_error(responses)` returns a `ResponseError` for the first
  failed response, or `None`. For a 500 it reports the Cosmos code and the
  substatus code, for example
  `429 (3200) - Request was throttled and should be retried after value in x-ms-retry-after-ms`.
- `extract_retry_conditions(responses)` returns a `RetryInformation` with
  `retry`, `retry_on_new_connection` and `retry_after`.

## Websocket dialer

`gremcos.connection.Websocket(host, *, timeout=5.0, writing_wait=15.0,
reading_wait=15.0, read_buffer_size=8192, write_buffer_size=8192,
dialer_factory=default_dialer_factory)` checks its arguments on creation. It
raises `ValueError` for:

- a host without `ws://` or `wss://`
- buffer sizes that are not positive
- a missing factory

Its methods:

- `connect()` opens the connection using websocket-client. A failure is
  raised as a `ConnectivityError`, with the server's handshake answer where
  there is one.
- `write(msg)` sends a binary frame.
- `read()` returns a `(message_type, data)` pair.
- `ping()` sends a ping frame. If the ping fails, the socket is marked as
  disconnected and `ConnectivityError` is raised.
- `close()` sends a normal close frame and shuts the socket down.
- `is_connected()` reports whether the socket is connected.

Reading, writing or pinging an unconnected socket raises `NoConnectionError`.

## Metrics

`gremcos.metrics.Metrics(prefix="gremcos")` holds counters, labelled counters,
gauges and a histogram for:

- status codes seen
- request charges
- server time
- retries, retry timeouts and request errors
- retry-after waits
- connectivity errors
- connection usage, by `ConnectionUsageKind`: `WRITE`, `READ` or `PING`

`NopClientMetrics` records nothing.

## Errors

Every error is a `gremcos.errors.GremcosError` and has a `category`, which is
`ErrorCategory.GENERAL` or `ErrorCategory.CONNECTIVITY`. The subclasses are:

- `ConnectivityError`
- `NoConnectionError`
- `ResponseError`
- `DialError`

## What this package does not do

This package does not include:

- a connection pool
- a Gremlin request/response protocol client: packaging requests, matching
  responses to request ids, and the authentication exchange

`Cosmos` needs a pool object from you that provides these. `Websocket` only
moves raw frames.