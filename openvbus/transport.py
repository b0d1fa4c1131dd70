"""Control channel to the bus daemon: length-prefixed messages over TCP."""

from __future__ import annotations

import os
import socket
import struct
import time
from typing import Optional

ADDRESS_ENV = "VBUSD_ADDRESS"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 47800

MAX_MESSAGE = 16 * 1024 * 1024
_LENGTH = struct.Struct("!I")
_CONNECT_ATTEMPTS = 5
_RETRY_DELAY_S = 0.05

Address = tuple[str, int]


class TransportError(OSError):
    """The daemon could not be reached or sent something unusable."""


def default_address() -> Address:
    """Daemon address: ``$VBUSD_ADDRESS`` as ``host:port``, else the built-in one."""
    text = os.environ.get(ADDRESS_ENV)
    if not text:
        return (DEFAULT_HOST, DEFAULT_PORT)
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise TransportError(f"bad daemon address {text!r}, expected host:port")
    return (host, int(port))


def write_message(sock: socket.socket, data: bytes) -> None:
    """Send one message: a 4-byte big-endian length followed by the data."""
    if len(data) > MAX_MESSAGE:
        raise TransportError(f"message of {len(data)} bytes is too large")
    sock.sendall(_LENGTH.pack(len(data)) + data)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(min(remaining, 65536))
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_message(sock: socket.socket) -> Optional[bytes]:
    """Receive one message; None if the peer closed cleanly before it began."""
    header = _recv_exact(sock, _LENGTH.size)
    if not header:
        return None
    if len(header) < _LENGTH.size:
        raise TransportError("connection closed inside a message header")
    (length,) = _LENGTH.unpack(header)
    if length > MAX_MESSAGE:
        raise TransportError(f"message of {length} bytes is too large")
    body = _recv_exact(sock, length)
    if len(body) < length:
        raise TransportError("connection closed inside a message")
    return body


def open_connection(address: Optional[Address] = None) -> socket.socket:
    """Connect to the daemon, retrying briefly while it is not yet listening."""
    target = address if address is not None else default_address()
    last_error: Optional[OSError] = None
    for _ in range(_CONNECT_ATTEMPTS):
        try:
            sock = socket.create_connection(target)
        except (ConnectionRefusedError, FileNotFoundError) as exc:
            last_error = exc
            time.sleep(_RETRY_DELAY_S)
            continue
        except OSError as exc:
            last_error = exc
            break
        sock.settimeout(None)
        return sock
    raise TransportError(f"cannot reach daemon at {target[0]}:{target[1]}: {last_error}")


def send_command(cmd: str, address: Optional[Address] = None) -> str:
    """Send one command line and return the response without trailing newlines."""
    with open_connection(address) as sock:
        try:
            write_message(sock, (cmd + "\n").encode("utf-8"))
            reply = read_message(sock)
        except TransportError:
            raise
        except OSError as exc:
            raise TransportError(f"daemon connection failed: {exc}") from exc
    if reply is None:
        raise TransportError("daemon closed the connection without a response")
    return reply.decode("utf-8", errors="replace").rstrip("\r\n")