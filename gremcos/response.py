"""Gremlin responses and interpretation of CosmosDB response headers."""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, Iterable, Mapping

from gremcos.errors import GremcosError

_HEADER_REQUEST_CHARGE = "x-ms-request-charge"
_HEADER_REQUEST_CHARGE_TOTAL = "x-ms-total-request-charge"
_HEADER_SERVER_TIME_MS = "x-ms-server-time-ms"
_HEADER_SERVER_TIME_MS_TOTAL = "x-ms-total-server-time-ms"
_HEADER_STATUS_CODE = "x-ms-status-code"
_HEADER_SUB_STATUS_CODE = "x-ms-substatus-code"
_HEADER_RETRY_AFTER_MS = "x-ms-retry-after-ms"
_HEADER_ACTIVITY_ID = "x-ms-activity-id"
_HEADER_SOURCE = "x-ms-source"


@dataclass
class Status:
    """Status part of a Gremlin server response."""

    SUCCESS: ClassVar[int] = 200
    NO_CONTENT: ClassVar[int] = 204
    PARTIAL_CONTENT: ClassVar[int] = 206
    UNAUTHORIZED: ClassVar[int] = 401
    AUTHENTICATE: ClassVar[int] = 407
    MALFORMED_REQUEST: ClassVar[int] = 498
    INVALID_REQUEST_ARGUMENTS: ClassVar[int] = 499
    SERVER_ERROR: ClassVar[int] = 500
    SCRIPT_EVALUATION_ERROR: ClassVar[int] = 597
    SERVER_TIMEOUT: ClassVar[int] = 598
    SERVER_SERIALIZATION_ERROR: ClassVar[int] = 599

    code: int = 0
    message: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True for the success codes 200, 204 and 206."""
        return self.code in (self.SUCCESS, self.NO_CONTENT, self.PARTIAL_CONTENT)


@dataclass
class Response:
    """One response frame of the Gremlin server."""

    request_id: str = ""
    status: Status = field(default_factory=Status)
    data: Any = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class AsyncResponse:
    """A response delivered while streaming, with an optional error message."""

    response: Response = field(default_factory=Response)
    error_message: str = ""


class ResponseError(GremcosError):
    """The server answered a request with an error status."""

    def __init__(self, message: str, status_code: int = 0, sub_status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.sub_status_code = sub_status_code


@dataclass(frozen=True)
class StatusCodeDescription:
    """How a CosmosDB status code is to be treated."""

    response_status_code: int = 0
    retry: bool = False
    retry_on_new_connection: bool = False
    description: str = ""


NO_RETRY = StatusCodeDescription()


@dataclass(frozen=True)
class RetryInformation:
    """Whether and when a request should be retried."""

    description: StatusCodeDescription = NO_RETRY
    retry_after: timedelta = timedelta(0)

    @property
    def retry(self) -> bool:
        return self.description.retry

    @property
    def retry_on_new_connection(self) -> bool:
        return self.description.retry_on_new_connection

    @property
    def response_status_code(self) -> int:
        return self.description.response_status_code


@dataclass
class ResponseInformation:
    """CosmosDB specific information extracted from the response attributes."""

    status_code: int = 0
    sub_status_code: int = 0
    status_description: str = ""
    request_charge: float = 0.0
    request_charge_total: float = 0.0
    server_time: timedelta = timedelta(0)
    server_time_total: timedelta = timedelta(0)
    activity_id: str = ""
    retry_after: timedelta = timedelta(0)
    source: str = ""


def _describe(code: int, retry: bool, new_connection: bool, text: str) -> tuple[int, StatusCodeDescription]:
    return code, StatusCodeDescription(code, retry, new_connection, text)


_STATUS_CODE_DESCRIPTIONS: dict[int, StatusCodeDescription] = dict(
    [
        _describe(401, False, False, "Error message 'Unauthorized: Invalid credentials provided' is returned when authentication password doesn't match Cosmos DB account key. Navigate to your Cosmos DB Gremlin account in the Azure portal and confirm that the key is correct."),
        _describe(404, False, False, "Concurrent operations that attempt to delete and update the same edge or vertex simultaneously. Error message 'Owner resource does not exist' indicates that specified database or collection is incorrect in connection parameters in /dbs/<database name>/colls/<collection or graph name> format."),
        _describe(408, False, False, "'Server timeout' indicates that traversal took more than 30 seconds and was canceled by the server. Optimize your traversals to run quickly by filtering vertices or edges on every hop of traversal to narrow down search scope."),
        _describe(409, True, False, "'Conflicting request to resource has been attempted. Retry to avoid conflicts.' This usually happens when vertex or an edge with an identifier already exists in the graph."),
        _describe(412, True, False, "Status code is complemented with error message 'PreconditionFailedException': One of the specified pre-condition is not met. This error is indicative of an optimistic concurrency control violation between reading an edge or vertex and writing it back to the store after modification. Most common situations when this error occurs is property modification, for example g.V('identifier').property('name','value'). Gremlin engine would read the vertex, modify it, and write it back. If there is another traversal running in parallel trying to write the same vertex or an edge, one of them will receive this error. Application should submit traversal to the server again."),
        _describe(429, True, False, "Request was throttled and should be retried after value in x-ms-retry-after-ms"),
        _describe(500, False, False, "Error message that contains 'NotFoundException: Entity with the specified id does not exist in the system.' indicates that a database and/or collection was re-created with the same name. This error will disappear within 5 minutes as change propagates and invalidates caches in different Cosmos DB components. To avoid this issue, use unique database and collection names every time."),
        _describe(1000, False, False, "This status code is returned when server successfully parsed a message but wasn't able to execute. It usually indicates a problem with the query."),
        _describe(1001, False, False, "This code is returned when server completes traversal execution but fails to serialize response back to the client. This error can happen when traversal generates complex result, that is too large or does not conform to TinkerPop protocol specification. Application should simplify the traversal when it encounters this error."),
        _describe(1003, False, False, "'Query exceeded memory limit. Bytes Consumed: XXX, Max: YYY' is returned when traversal exceeds allowed memory limit. Memory limit is 2 GB per traversal."),
        _describe(1004, False, False, "This status code indicates malformed graph request. Request can be malformed when it fails deserialization, non-value type is being deserialized as value type or unsupported gremlin operation requested. Application should not retry the request because it will not be successful."),
        _describe(1007, True, True, "Usually this status code is returned with error message 'Could not process request. Underlying connection has been closed.'. This situation can happen if client driver attempts to use a connection that is being closed by the server. Application should retry the traversal on a different connection."),
        _describe(1008, True, True, "Cosmos DB Gremlin server can terminate connections to rebalance traffic in the cluster. Client drivers should handle this situation and use only live connections to send requests to the server. Occasionally client drivers may not detect that connection was closed. When application encounters an error, 'Connection is too busy. Please retry after sometime or open more connections.' it should retry traversal on a different connection."),
    ]
)

_CLOCK_RE = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})(?:\.(\d+))?")


def _to_int16(value: Any) -> int:
    """Convert a header value to a (wrapping) 16 bit integer; raise ValueError if impossible."""
    try:
        if value is None:
            number = 0
        elif isinstance(value, bool):
            number = int(value)
        elif isinstance(value, int):
            number = value
        elif isinstance(value, float):
            number = int(value)
        elif isinstance(value, str):
            number = int(value, 0)
        else:
            raise ValueError(f"unable to cast {value!r} of type {type(value).__name__} to int16")
    except OverflowError as exc:
        raise ValueError(f"unable to cast {value!r} to int16") from exc
    return ((number + 0x8000) & 0xFFFF) - 0x8000


def _round_f32(number: float) -> float:
    try:
        return struct.unpack("f", struct.pack("f", number))[0]
    except OverflowError:
        return math.copysign(math.inf, number)


def _to_float32(value: Any) -> float:
    """Convert a header value to single precision, 0.0 if it cannot be converted."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return _round_f32(float(value))
    if isinstance(value, str):
        try:
            number = float(value)
            return struct.unpack("f", struct.pack("f", number))[0]
        except (ValueError, OverflowError):
            return 0.0
    return 0.0


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _milliseconds_to_duration(value: Any) -> timedelta:
    micros = _round_f32(1000 * _to_float32(value))
    if not math.isfinite(micros):
        return timedelta(0)
    return timedelta(microseconds=int(micros))


def _parse_clock_duration(text: str) -> timedelta:
    match = _CLOCK_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as hh:mm:ss")
    hours, minutes, seconds = (int(match.group(i)) for i in (1, 2, 3))
    if hours >= 24 or minutes >= 60 or seconds >= 60:
        raise ValueError(f"{text!r} is out of range")
    fraction = match.group(4) or ""
    nanos = int(fraction[:9].ljust(9, "0")) if fraction else 0
    return timedelta(hours=hours, minutes=minutes, seconds=seconds, microseconds=nanos // 1000)


def status_code_to_description(code: int) -> str:
    """Return the documented meaning of a CosmosDB status code."""
    desc = _STATUS_CODE_DESCRIPTIONS.get(code)
    if desc is None:
        return f"Status code {code} is unknown"
    return desc.description


def parse_attribute_map(attributes: Mapping[str, Any] | None) -> ResponseInformation:
    """Parse CosmosDB headers from a response attribute map.

    Raises ValueError if the status code header is missing or invalid.
    """
    attributes = attributes or {}
    if _HEADER_STATUS_CODE not in attributes:
        raise ValueError(f"'{_HEADER_STATUS_CODE}' is missing")
    try:
        status_code = _to_int16(attributes[_HEADER_STATUS_CODE])
    except ValueError as exc:
        raise ValueError(f"Failed parsing '{_HEADER_STATUS_CODE}': {exc}") from exc

    info = ResponseInformation(
        status_code=status_code,
        status_description=status_code_to_description(status_code),
    )

    if _HEADER_SUB_STATUS_CODE in attributes:
        try:
            info.sub_status_code = _to_int16(attributes[_HEADER_SUB_STATUS_CODE])
        except ValueError:
            info.sub_status_code = 0
    if _HEADER_REQUEST_CHARGE in attributes:
        info.request_charge = _to_float32(attributes[_HEADER_REQUEST_CHARGE])
    if _HEADER_REQUEST_CHARGE_TOTAL in attributes:
        info.request_charge_total = _to_float32(attributes[_HEADER_REQUEST_CHARGE_TOTAL])
    if _HEADER_SERVER_TIME_MS in attributes:
        info.server_time = _milliseconds_to_duration(attributes[_HEADER_SERVER_TIME_MS])
    if _HEADER_SERVER_TIME_MS_TOTAL in attributes:
        info.server_time_total = _milliseconds_to_duration(attributes[_HEADER_SERVER_TIME_MS_TOTAL])
    if _HEADER_ACTIVITY_ID in attributes:
        info.activity_id = _to_string(attributes[_HEADER_ACTIVITY_ID])
    if _HEADER_RETRY_AFTER_MS in attributes:
        try:
            info.retry_after = _parse_clock_duration(_to_string(attributes[_HEADER_RETRY_AFTER_MS]))
        except ValueError:
            info.retry_after = timedelta(0)
    if _HEADER_SOURCE in attributes:
        info.source = _to_string(attributes[_HEADER_SOURCE])
    return info


def extract_first_error(responses: Iterable[Response] | None) -> ResponseError | None:
    """Return an error for the first failed response, or None if all succeeded."""
    for response in responses or ():
        status = response.status
        if status.ok:
            continue
        if status.code != Status.SERVER_ERROR:
            return ResponseError(f"{status.code} - {status.message}", status_code=status.code)
        try:
            info = parse_attribute_map(status.attributes)
        except ValueError as exc:
            return ResponseError(
                f"Failed parsing attributes of response: '{exc}'. "
                f"Unparsed error: {status.code} - {status.message}",
                status_code=status.code,
            )
        return ResponseError(
            f"{info.status_code} ({info.sub_status_code}) - {info.status_description}",
            status_code=info.status_code,
            sub_status_code=info.sub_status_code,
        )
    return None


def extract_retry_conditions(responses: Iterable[Response] | None) -> RetryInformation:
    """Determine from the responses whether and after how long to retry."""
    last_retry = NO_RETRY
    retry_after = timedelta(0)
    for response in responses or ():
        if response.status.ok:
            continue
        try:
            info = parse_attribute_map(response.status.attributes)
        except ValueError:
            continue
        desc = _STATUS_CODE_DESCRIPTIONS.get(info.status_code)
        if desc is None or not desc.retry:
            continue
        last_retry = desc
        if info.retry_after > retry_after:
            retry_after = info.retry_after
    return RetryInformation(last_retry, retry_after)