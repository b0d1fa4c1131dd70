"""Live capture endpoints that feed received traffic into a bus."""

from __future__ import annotations

import logging
import socket
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from openvbus.bus import Bus
from openvbus.frame import Frame, Proto

log = logging.getLogger(__name__)

_MAX_DATAGRAM = 65535
_RECV_TIMEOUT_S = 0.5


class CaptureEndpoint(ABC):
    """A capture source attached to a bus, started and stopped by its owner."""

    @abstractmethod
    def start(self) -> None:
        """Begin capturing; raises OSError if the endpoint cannot be set up."""

    @abstractmethod
    def stop(self) -> None:
        """Stop capturing; does nothing if not running."""

    def __enter__(self) -> "CaptureEndpoint":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


def bind_address(host: str) -> str:
    """Return ``host`` if it is a dotted-decimal IPv4 address, else the any-address."""
    try:
        socket.inet_pton(socket.AF_INET, host)
    except (OSError, TypeError):
        return "0.0.0.0"
    return host


def udp_tag(src_ip: str, src_port: int, dst_port: int) -> int:
    """Pack a UDP frame tag: [src_ip 32][src_port 16][dst_port 16].

    The address occupies the top 32 bits as its network-order bytes read
    as a little-endian integer, the in-memory form of an IPv4 address word.
    """
    ip_word = int.from_bytes(socket.inet_aton(src_ip), "little")
    return (ip_word << 32) | ((src_port & 0xFFFF) << 16) | (dst_port & 0xFFFF)


class UdpEndpoint(CaptureEndpoint):
    """Receives UDP datagrams on a bound socket and sends each one onto the bus."""

    def __init__(self, bus: Bus, bind_host: str, port: int) -> None:
        self.bus = bus
        self.bind_host = bind_host
        self.port = port
        self._sock: Optional[socket.socket] = None
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def start(self) -> None:
        if self._running.is_set():
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        # No SO_REUSEADDR: binding a port already in use must fail.
        try:
            sock.bind((bind_address(self.bind_host), self.port))
        except OSError:
            sock.close()
            log.error("bind() failed on %s:%s", self.bind_host, self.port)
            raise
        sock.settimeout(_RECV_TIMEOUT_S)
        self.port = sock.getsockname()[1]
        self._sock = sock
        self._running.set()
        self._thread = threading.Thread(target=self._recv_loop, daemon=True)
        self._thread.start()
        log.info("listening on UDP %s:%s", self.bind_host, self.port)

    def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        log.info("UDP endpoint stopped")

    def _recv_loop(self) -> None:
        sock = self._sock
        assert sock is not None
        while self._running.is_set():
            try:
                data, (src_ip, src_port) = sock.recvfrom(_MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError:
                continue
            if not data:
                continue
            frame = Frame(
                proto=Proto.UDP,
                tag=udp_tag(src_ip, src_port, self.port),
                ts_ns=time.monotonic_ns(),
                payload=data,
            )
            self.bus.send(None, frame)