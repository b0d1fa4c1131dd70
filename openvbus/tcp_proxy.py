"""Transparent TCP proxy that records both directions onto a bus."""

from __future__ import annotations

import contextlib
import logging
import socket
import threading
import time
from typing import Optional

from openvbus.bus import Bus
from openvbus.capture import CaptureEndpoint, bind_address
from openvbus.frame import Frame, Proto

log = logging.getLogger(__name__)

_BUF_SIZE = 65536
_ACCEPT_TIMEOUT_S = 0.2

CLIENT_TO_SERVER = 0
SERVER_TO_CLIENT = 1


def _connect_to(host: str, port: int) -> Optional[socket.socket]:
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    except OSError:
        return None
    if not infos:
        return None
    family, socktype, proto, _name, addr = infos[0]
    sock = socket.socket(family, socktype, proto)
    try:
        sock.connect(addr)
    except OSError:
        sock.close()
        return None
    return sock


def _shutdown(sock: socket.socket) -> None:
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)


class TcpProxy(CaptureEndpoint):
    """Listens on a bind address and relays one connection at a time to a target.

    Every chunk relayed is sent onto the bus as a TCP frame whose tag is the
    direction: 0 for client to server, 1 for server to client.
    """

    def __init__(
        self, bus: Bus, bind_host: str, bind_port: int, target_host: str, target_port: int
    ) -> None:
        self.bus = bus
        self.bind_host = bind_host
        self.bind_port = bind_port
        self.target_host = target_host
        self.target_port = target_port
        self._listener: Optional[socket.socket] = None
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._conn_lock = threading.Lock()
        self._conn: tuple[socket.socket, ...] = ()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def start(self) -> None:
        if self._running.is_set():
            return
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((bind_address(self.bind_host), self.bind_port))
            listener.listen(1)
        except OSError:
            listener.close()
            log.error("bind/listen failed on %s:%s", self.bind_host, self.bind_port)
            raise
        listener.settimeout(_ACCEPT_TIMEOUT_S)
        self.bind_port = listener.getsockname()[1]
        self._listener = listener
        self._running.set()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()
        log.info(
            "listening on TCP port %s -> %s:%s", self.bind_port, self.target_host, self.target_port
        )

    def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        with self._conn_lock:
            for sock in self._conn:
                _shutdown(sock)
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        log.info("TCP proxy stopped")

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None
        while self._running.is_set():
            try:
                client, (client_ip, client_port) = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            client.setblocking(True)
            log.info("client connected: %s:%s", client_ip, client_port)
            server = _connect_to(self.target_host, self.target_port)
            if server is None:
                log.error("could not connect to %s:%s", self.target_host, self.target_port)
                client.close()
                continue
            self._proxy_connection(client, server)
            log.info("connection closed")

    def _proxy_connection(self, client: socket.socket, server: socket.socket) -> None:
        with self._conn_lock:
            self._conn = (client, server)
        if not self._running.is_set():
            _shutdown(client)
            _shutdown(server)
        back = threading.Thread(
            target=self._relay_half, args=(server, client, SERVER_TO_CLIENT), daemon=True
        )
        back.start()
        self._relay_half(client, server, CLIENT_TO_SERVER)
        _shutdown(client)
        _shutdown(server)
        back.join()
        with self._conn_lock:
            self._conn = ()
        client.close()
        server.close()

    def _relay_half(self, src: socket.socket, dst: socket.socket, direction: int) -> None:
        while self._running.is_set():
            try:
                data = src.recv(_BUF_SIZE)
            except OSError:
                break
            if not data:
                break
            try:
                dst.sendall(data)
            except OSError:
                break
            frame = Frame(
                proto=Proto.TCP, tag=direction, ts_ns=time.monotonic_ns(), payload=data
            )
            self.bus.send(None, frame)