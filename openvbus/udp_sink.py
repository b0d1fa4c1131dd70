"""Forward every frame sent on a bus as a UDP datagram."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

from openvbus.bus import Bus
from openvbus.frame import Frame

log = logging.getLogger(__name__)

_SNDBUF = 4 * 1024 * 1024


class UdpSink:
    """Installs itself as the bus forward callback and sends each payload to a host.

    The callback fires inside ``Bus.send`` on the sender's thread, before the
    scheduler delay, so forwarding adds no latency.
    """

    def __init__(self, bus: Bus, dst_host: str, dst_port: int) -> None:
        self.bus = bus
        self.dst_host = dst_host
        self.dst_port = dst_port
        self._sock: Optional[socket.socket] = None
        self._dst: Optional[tuple] = None
        self._lock = threading.Lock()
        self.active = False

    def start(self) -> None:
        """Resolve the destination and begin forwarding; raises OSError on failure."""
        if self.active:
            return
        try:
            infos = socket.getaddrinfo(
                self.dst_host, self.dst_port, socket.AF_INET, socket.SOCK_DGRAM
            )
        except OSError:
            log.error("cannot resolve host: %s", self.dst_host)
            raise
        if not infos:
            raise OSError(f"cannot resolve host: {self.dst_host}")
        self._dst = infos[0][4]
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, _SNDBUF)
        except OSError:
            pass
        with self._lock:
            self._sock = sock
        self.bus.fwd_cb = self._forward
        self.active = True
        log.info("forwarding to %s:%s", self.dst_host, self.dst_port)

    def stop(self) -> None:
        if not self.active:
            return
        self.bus.fwd_cb = None
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
        self.active = False
        log.info("UDP sink stopped")

    def _forward(self, frame: Frame) -> None:
        if not frame.payload:
            return
        with self._lock:
            sock = self._sock
            if sock is None or self._dst is None:
                return
            try:
                sock.sendto(bytes(frame.payload), self._dst)
            except OSError:
                pass

    def __enter__(self) -> "UdpSink":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()