"""Websocket dialer used to talk to a Gremlin server."""

from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Mapping, Protocol

import websocket as wsclient

from gremcos.errors import ConnectivityError, GremcosError, NoConnectionError

_TEXT_MESSAGE = 1
_BINARY_MESSAGE = 2
_CLOSE_MESSAGE = 8
_PING_MESSAGE = 9
_PONG_MESSAGE = 10

_CLOSE_NORMAL_CLOSURE = 1000


def _format_close_message(code: int, text: str = "") -> bytes:
    return code.to_bytes(2, "big") + text.encode("utf-8")


@dataclass
class HandshakeResponse:
    """The HTTP answer of the server to a failed websocket handshake."""

    status: str = ""
    body: bytes | None = None


class DialError(GremcosError):
    """Establishing the websocket connection failed."""

    def __init__(self, message: str, response: HandshakeResponse | None = None) -> None:
        super().__init__(message)
        self.response = response


class _WebsocketConnection(Protocol):
    def set_pong_handler(self, handler: Callable[[str], None]) -> None: ...

    def set_write_deadline(self, deadline: float) -> None: ...

    def set_read_deadline(self, deadline: float) -> None: ...

    def write_message(self, message_type: int, data: bytes) -> None: ...

    def read_message(self) -> tuple[int, bytes]: ...

    def write_control(self, message_type: int, data: bytes, deadline: float) -> None: ...

    def close(self) -> None: ...


_Dialer = Callable[[str, Mapping[str, str]], _WebsocketConnection]
_DialerFactory = Callable[[int, int, float], _Dialer]


class _ClientConnection:
    """Adapts a websocket-client socket to the connection interface used here."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._pong_handler: Callable[[str], None] | None = None

    def _apply_deadline(self, deadline: float) -> None:
        self._ws.settimeout(max(0.0, deadline - time.monotonic()))

    def set_pong_handler(self, handler: Callable[[str], None]) -> None:
        self._pong_handler = handler

    def set_write_deadline(self, deadline: float) -> None:
        self._apply_deadline(deadline)

    def set_read_deadline(self, deadline: float) -> None:
        self._apply_deadline(deadline)

    def write_message(self, message_type: int, data: bytes) -> None:
        self._ws.send(data, opcode=message_type)

    def read_message(self) -> tuple[int, bytes]:
        while True:
            opcode, frame = self._ws.recv_data_frame(True)
            data = bytes(frame.data or b"")
            if opcode == _PONG_MESSAGE:
                if self._pong_handler is not None:
                    self._pong_handler(data.decode("utf-8", errors="replace"))
                continue
            if opcode == _PING_MESSAGE:
                continue
            if opcode == _CLOSE_MESSAGE:
                code = int.from_bytes(data[:2], "big") if len(data) >= 2 else 0
                raise ConnectivityError(f"connection closed by peer (code {code})")
            return opcode, data

    def write_control(self, message_type: int, data: bytes, deadline: float) -> None:
        self._apply_deadline(deadline)
        self._ws.send(data, opcode=message_type)

    def close(self) -> None:
        self._ws.shutdown()


def _status_line(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return str(code)


def default_dialer_factory(
    write_buffer_size: int, read_buffer_size: int, handshake_timeout: float
) -> _Dialer:
    """Return a dialer that opens connections with websocket-client."""
    sockopt = (
        (socket.SOL_SOCKET, socket.SO_SNDBUF, write_buffer_size),
        (socket.SOL_SOCKET, socket.SO_RCVBUF, read_buffer_size),
    )

    def dial(url: str, headers: Mapping[str, str]) -> _WebsocketConnection:
        ws = wsclient.WebSocket(sockopt=sockopt, enable_multithread=True)
        try:
            ws.connect(url, header=dict(headers), timeout=handshake_timeout)
        except wsclient.WebSocketBadStatusException as exc:
            body = getattr(exc, "resp_body", None)
            if isinstance(body, str):
                body = body.encode("utf-8")
            response = HandshakeResponse(_status_line(exc.status_code), body)
            raise DialError(str(exc), response) from exc
        except (wsclient.WebSocketException, OSError) as exc:
            raise DialError(str(exc) or type(exc).__name__) from exc
        return _ClientConnection(ws)

    return dial


def extract_connection_error(response: HandshakeResponse | None) -> GremcosError | None:
    """Describe a failed handshake from the server's answer, if there is one."""
    if response is None:
        return None
    if not response.body:
        return GremcosError(response.status)
    body = response.body
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body)
    if not text:
        return GremcosError(response.status)
    return GremcosError(f"{response.status}: {text}")


class Websocket:
    """A websocket dialer for a Gremlin server reachable at a ws:// or wss:// host."""

    def __init__(
        self,
        host: str,
        *,
        timeout: float = 5.0,
        writing_wait: float = 15.0,
        reading_wait: float = 15.0,
        read_buffer_size: int = 8192,
        write_buffer_size: int = 8192,
        dialer_factory: _DialerFactory | None = default_dialer_factory,
    ) -> None:
        if not (host.startswith("ws://") or host.startswith("wss://")):
            raise ValueError(
                f"Host '{host}' is invalid, expected protocol 'ws://' or 'wss://' missing"
            )
        if read_buffer_size <= 0:
            raise ValueError(f"Invalid size for read buffer: {read_buffer_size}")
        if write_buffer_size <= 0:
            raise ValueError(f"Invalid size for write buffer: {write_buffer_size}")
        if dialer_factory is None:
            raise ValueError("The factory for websocket dialers is nil")

        self.host = host
        self.timeout = timeout
        self.writing_wait = writing_wait
        self.reading_wait = reading_wait
        self.read_buffer_size = read_buffer_size
        self.write_buffer_size = write_buffer_size
        self.dialer_factory = dialer_factory

        self._conn: _WebsocketConnection | None = None
        self._connected = threading.Event()
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def connect(self) -> None:
        """Open the connection to the peer; must be called before reading or writing."""
        dial = self.dialer_factory(self.write_buffer_size, self.read_buffer_size, self.timeout)
        try:
            conn = dial(self.host, {})
        except Exception as exc:
            self._set_connection(None)
            message = (
                f"dialing '{self.host}' failed with {exc}. "
                "Probably '/gremlin' has to be added to the used hostname."
            )
            details = extract_connection_error(getattr(exc, "response", None))
            if details is not None:
                message += f" Details: {details}"
            raise ConnectivityError(message) from exc

        conn.set_pong_handler(lambda app_data: None)
        self._set_connection(conn)

    def _set_connection(self, conn: _WebsocketConnection | None) -> None:
        with self._write_lock, self._read_lock:
            self._conn = conn
            if conn is None:
                self._connected.clear()
            else:
                self._connected.set()

    def is_connected(self) -> bool:
        """Whether the underlying connection is established."""
        return self._connected.is_set()

    def write(self, msg: bytes) -> None:
        """Send a binary message over the socket."""
        if not self.is_connected():
            raise NoConnectionError()
        with self._write_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            conn.set_write_deadline(time.monotonic() + self.writing_wait)
            conn.write_message(_BINARY_MESSAGE, msg)

    def read(self) -> tuple[int, bytes]:
        """Receive one message as a (message type, data) pair."""
        if not self.is_connected():
            raise NoConnectionError()
        with self._read_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            conn.set_read_deadline(time.monotonic() + self.reading_wait)
            return conn.read_message()

    def close(self) -> None:
        """Send a normal close frame and shut the connection down."""
        if not self.is_connected():
            return
        with self._write_lock:
            try:
                if self._conn is not None:
                    self._conn.write_message(
                        _CLOSE_MESSAGE, _format_close_message(_CLOSE_NORMAL_CLOSURE)
                    )
            finally:
                if self._conn is not None:
                    try:
                        self._conn.close()
                    except Exception:
                        pass

    def ping(self) -> None:
        """Send a ping frame; a failure marks the socket as disconnected."""
        if not self.is_connected():
            raise NoConnectionError()
        failure: Exception | None = None
        with self._write_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            try:
                conn.write_control(_PING_MESSAGE, b"", time.monotonic() + self.writing_wait)
            except Exception as exc:
                failure = exc
        if failure is not None:
            self._set_connection(None)
            raise ConnectivityError(str(failure)) from failure