"""Client for the bus daemon: single commands and live frame subscriptions."""

from __future__ import annotations

import contextlib
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from openvbus.recorder import RECORD_HEADER_SIZE, decode_record_header
from openvbus.transport import (
    Address,
    TransportError,
    open_connection,
    read_message,
    send_command,
    write_message,
)


@dataclass
class RawFrame:
    """A frame received from a daemon subscription."""

    proto: int
    tag: int  # CAN id / UDP source encoding / TCP direction
    ts_ns: int
    payload: bytes = b""


FrameHandler = Callable[[RawFrame], None]


class DaemonClient:
    """Sends commands to the daemon and streams frames of one subscribed bus."""

    def __init__(self, address: Optional[Address] = None) -> None:
        self.address = address
        self._lock = threading.Lock()
        self._sub_sock: Optional[socket.socket] = None
        self._sub_thread: Optional[threading.Thread] = None
        self._running = threading.Event()

    def send_cmd(self, cmd: str) -> str:
        """Send one command and return the response; raises TransportError."""
        return send_command(cmd, self.address)

    @property
    def subscribed(self) -> bool:
        thread = self._sub_thread
        return thread is not None and thread.is_alive()

    def subscribe(self, bus_name: str, callback: FrameHandler) -> None:
        """Stream frames of ``bus_name`` to ``callback`` on a background thread.

        Any previous subscription is stopped first. Raises TransportError if the
        daemon cannot be reached or refuses the subscription.
        """
        self.unsubscribe()
        sock = open_connection(self.address)
        try:
            write_message(sock, f"subscribe {bus_name}\n".encode("utf-8"))
            ack = read_message(sock)
        except OSError as exc:
            sock.close()
            raise TransportError(f"subscribe to {bus_name!r} failed: {exc}") from exc
        if ack is None or not ack.startswith(b"OK"):
            sock.close()
            text = "" if ack is None else ack.decode("utf-8", errors="replace").strip()
            raise TransportError(f"subscribe to {bus_name!r} refused: {text}")
        self._running.set()
        thread = threading.Thread(target=self._read_loop, args=(sock, callback), daemon=True)
        with self._lock:
            self._sub_sock = sock
            self._sub_thread = thread
        thread.start()

    def _read_loop(self, sock: socket.socket, callback: FrameHandler) -> None:
        while self._running.is_set():
            try:
                data = read_message(sock)
            except OSError:
                break
            if data is None:
                break
            if len(data) < RECORD_HEADER_SIZE:
                continue
            head, length = decode_record_header(data)
            end = RECORD_HEADER_SIZE + length
            if len(data) < end:
                continue
            callback(
                RawFrame(
                    proto=int(head.proto),
                    tag=head.tag,
                    ts_ns=head.ts_ns,
                    payload=data[RECORD_HEADER_SIZE:end],
                )
            )

    def unsubscribe(self) -> None:
        """Stop the active subscription, if any, and wait for its reader."""
        with self._lock:
            sock, thread = self._sub_sock, self._sub_thread
            self._sub_sock = self._sub_thread = None
        if sock is None:
            return
        self._running.clear()
        with contextlib.suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        sock.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def is_connected(self) -> bool:
        """Whether the daemon answers a command."""
        try:
            self.send_cmd("list")
        except TransportError:
            return False
        return True

    def close(self) -> None:
        self.unsubscribe()

    def __enter__(self) -> "DaemonClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()