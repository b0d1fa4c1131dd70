"""Bus daemon: owns named virtual buses and answers text commands over the control channel."""

from __future__ import annotations

import argparse
import contextlib
import logging
import re
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from openvbus.bus import Bus, CanBus, EthHub
from openvbus.capture import CaptureEndpoint, UdpEndpoint
from openvbus.clock import Clock, RealtimeClock
from openvbus.frame import Frame, Proto, hex_to_bytes
from openvbus.recorder import Recorder, Replayer, encode_record
from openvbus.replay import (
    UdpStream,
    parse_mode,
    replay_onto_bus,
    replay_sync,
    replay_to_udp,
)
from openvbus.scheduler import Scheduler
from openvbus.tcp_proxy import TcpProxy
from openvbus.transport import (
    Address,
    TransportError,
    default_address,
    read_message,
    write_message,
)
from openvbus.udp_sink import UdpSink

log = logging.getLogger(__name__)

CAN20_MAX_PAYLOAD = 8
CANFD_MAX_PAYLOAD = 64

_DRAIN_INTERVAL_S = 0.001
_ACCEPT_TIMEOUT_S = 0.2

_DECIMAL = re.compile(r"\s*(\d+)")
_ANY_BASE = re.compile(r"\s*(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


class _BadArgument(ValueError):
    """A command argument could not be parsed."""


def _uint(text: str, auto_base: bool = False) -> int:
    """Parse a leading unsigned number; with ``auto_base`` accept 0x.. and 0.. prefixes."""
    match = (_ANY_BASE if auto_base else _DECIMAL).match(text)
    if match is None:
        raise _BadArgument(f"bad number {text}")
    digits = match.group(1)
    if not auto_base:
        return int(digits)
    if digits[:2].lower() == "0x":
        return int(digits, 16)
    if digits.startswith("0"):
        return int(digits, 8)
    return int(digits)


def _port(text: str) -> int:
    return _uint(text) & 0xFFFF


def _can_open(path: str) -> bool:
    try:
        Replayer(path).close()
    except (OSError, ValueError):
        return False
    return True


def _background(fn: Callable[..., object], *args: object) -> None:
    def run() -> None:
        with contextlib.suppress(OSError, ValueError):
            fn(*args)

    threading.Thread(target=run, daemon=True).start()


def _close_quietly(sock: socket.socket) -> None:
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)
    with contextlib.suppress(OSError):
        sock.close()


class _Subscription:
    """A connection that receives every frame delivered on a bus."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stream: Optional[socket.socket] = None

    def attach(self, stream: socket.socket, greeting: Optional[bytes] = None) -> bool:
        """Make ``stream`` the subscriber, replacing any previous one."""
        with self._lock:
            old, self._stream = self._stream, None
            if old is not None:
                _close_quietly(old)
            if greeting is not None:
                try:
                    write_message(stream, greeting)
                except OSError:
                    return False
            self._stream = stream
            return True

    def detach(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            _close_quietly(stream)

    def deliver(self, frame: Frame) -> None:
        data = encode_record(frame)
        with self._lock:
            if self._stream is None:
                return
            try:
                write_message(self._stream, data)
            except OSError:
                _close_quietly(self._stream)
                self._stream = None


@dataclass
class BusWrap:
    """A named bus with its optional recorder, capture endpoint, forwarder and subscriber."""

    bus: Bus
    rec: Optional[Recorder] = None
    cap: Optional[CaptureEndpoint] = None
    sink: Optional[UdpSink] = None
    sub: _Subscription = field(default_factory=_Subscription)

    def detach_recorder(self) -> None:
        self.bus.record_cb = None
        rec, self.rec = self.rec, None
        if rec is not None:
            rec.close()

    def attach_recorder(self, path: str) -> bool:
        self.detach_recorder()
        try:
            rec = Recorder(path)
        except OSError:
            return False
        self.rec = rec

        def record(frame: Frame) -> None:
            # Deliveries already queued may arrive after the recorder closed.
            with contextlib.suppress(ValueError, OSError):
                rec.write(frame)

        self.bus.record_cb = record
        return True

    def attach_sub(self) -> None:
        self.bus.sub_cb = self.sub.deliver

    def detach_sub(self) -> None:
        self.bus.sub_cb = None
        self.sub.detach()

    def stop_capture(self) -> None:
        cap, self.cap = self.cap, None
        if cap is not None:
            cap.stop()

    def stop_forward(self) -> None:
        sink, self.sink = self.sink, None
        if sink is not None:
            sink.stop()

    def release(self) -> None:
        self.detach_sub()
        self.detach_recorder()
        self.stop_capture()
        self.stop_forward()


class Daemon:
    """Keeps the named buses, drains their scheduler and serves control connections."""

    def __init__(self, address: Optional[Address] = None, clock: Optional[Clock] = None) -> None:
        self.address: Address = address if address is not None else default_address()
        self.clock: Clock = clock if clock is not None else RealtimeClock()
        self.scheduler = Scheduler(self.clock)
        self.buses: dict[str, BusWrap] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._conns: set[socket.socket] = set()
        self._conns_lock = threading.Lock()
        self._commands: dict[str, tuple[int, Callable[[list[str]], str]]] = {
            "create": (4, self._cmd_create),
            "delete": (2, self._cmd_delete),
            "list": (1, lambda args: self.list_buses()),
            "record": (3, self._cmd_record),
            "stoprec": (2, self._cmd_stoprec),
            "stats": (2, self._cmd_stats),
            "send-eth": (3, self._cmd_send_eth),
            "send-can": (4, self._cmd_send_can),
            "send-canfd": (4, self._cmd_send_canfd),
            "replay": (4, self._cmd_replay),
            "capture-udp": (4, self._cmd_capture_udp),
            "capture-tcp": (6, self._cmd_capture_tcp),
            "stop-capture": (2, self._cmd_stop_capture),
            "forward-udp": (4, self._cmd_forward_udp),
            "stop-forward": (2, self._cmd_stop_forward),
            "replay-udp": (6, self._cmd_replay_udp),
            "replay-sync": (5, self._cmd_replay_sync),
            "quit": (1, self._cmd_quit),
        }

    @property
    def shutdown_requested(self) -> bool:
        return self._stop.is_set()

    # ── commands ────────────────────────────────────────────────────────────

    def handle_command(self, line: str, stream: Optional[socket.socket] = None) -> str:
        """Run one command line and return the response text.

        ``stream`` is the connection the command came on; ``subscribe`` turns
        it into a frame stream.
        """
        resp, sub = self._dispatch(line, stream)
        if sub is not None and stream is not None:
            sub.attach(stream)
        return resp

    def list_buses(self) -> str:
        """Names of all buses, one per line."""
        with self._lock:
            return "".join(f"{name}\n" for name in self.buses)

    def _dispatch(
        self, line: str, stream: Optional[socket.socket]
    ) -> tuple[str, Optional[_Subscription]]:
        args = line.split()
        if not args:
            return "ERR empty", None
        if args[0] == "subscribe" and len(args) >= 2:
            if stream is None:
                return "ERR no stream", None
            with self._lock:
                wrap = self.buses.get(args[1])
                if wrap is None:
                    return "ERR no bus", None
                wrap.attach_sub()
                return "OK stream", wrap.sub
        entry = self._commands.get(args[0])
        if entry is None or len(args) < entry[0]:
            return "ERR cmd", None
        try:
            return entry[1](args), None
        except _BadArgument as exc:
            return f"ERR {exc}", None

    def _cmd_create(self, args: list[str]) -> str:
        name, kind = args[1], args[2]
        with self._lock:
            if name in self.buses:
                return "ERR already exists"
            if kind == "eth":
                self.buses[name] = BusWrap(EthHub(self.scheduler, self.clock, _uint(args[3])))
                return "OK created eth"
            if kind == "can":
                self.buses[name] = BusWrap(CanBus(self.scheduler, self.clock, _uint(args[3])))
                return "OK created can"
            return "ERR type"

    def _cmd_delete(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.pop(args[1], None)
            if wrap is None:
                return "ERR no bus"
            wrap.release()
        return "OK deleted"

    def _cmd_record(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            if args[2] == "on" and len(args) >= 4:
                return "OK rec on" if wrap.attach_recorder(args[3]) else "ERR open failed"
            wrap.detach_recorder()
            return "OK rec off"

    def _cmd_stoprec(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            wrap.detach_recorder()
            return "OK rec off"

    def _cmd_stats(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            stats = wrap.bus.stats
            return f"tx={stats.tx_frames} rx={stats.rx_frames} drops={stats.drops}"

    def _send(self, name: str, frame: Frame) -> str:
        with self._lock:
            wrap = self.buses.get(name)
            if wrap is None:
                return "ERR no bus"
            wrap.bus.send(None, frame)
            return "OK sent"

    def _cmd_send_eth(self, args: list[str]) -> str:
        return self._send(args[1], Frame(proto=Proto.ETH2, payload=hex_to_bytes(args[2])))

    def _cmd_send_can(self, args: list[str]) -> str:
        payload = hex_to_bytes(args[3])
        if len(payload) > CAN20_MAX_PAYLOAD:
            return "ERR payload too long (max 8 bytes for CAN 2.0)"
        with self._lock:
            if args[1] not in self.buses:
                return "ERR no bus"
        frame = Frame(proto=Proto.CAN20, tag=_uint(args[2], auto_base=True), payload=payload)
        return self._send(args[1], frame)

    def _cmd_send_canfd(self, args: list[str]) -> str:
        payload = hex_to_bytes(args[3])
        if len(payload) > CANFD_MAX_PAYLOAD:
            return "ERR payload too long (max 64 bytes for CAN FD)"
        with self._lock:
            if args[1] not in self.buses:
                return "ERR no bus"
        frame = Frame(proto=Proto.CANFD, tag=_uint(args[2], auto_base=True), payload=payload)
        return self._send(args[1], frame)

    def _cmd_replay(self, args: list[str]) -> str:
        name, path, mode = args[1], args[2], args[3]
        with self._lock:
            wrap = self.buses.get(name)
            if wrap is None:
                return "ERR no bus"
            bus = wrap.bus
        if not _can_open(path):
            return f"ERR open: {path}"
        try:
            timing = parse_mode(mode)
        except ValueError:
            return "ERR bad scale"
        _background(replay_onto_bus, bus, path, timing, self.clock)
        return "OK replay started"

    def _cmd_capture_udp(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            if wrap.cap is not None:
                wrap.cap.stop()
            endpoint = UdpEndpoint(wrap.bus, args[2], _port(args[3]))
            try:
                endpoint.start()
            except OSError:
                return "ERR bind failed"
            wrap.cap = endpoint
            return "OK capturing udp"

    def _cmd_capture_tcp(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            if wrap.cap is not None:
                wrap.cap.stop()
            proxy = TcpProxy(wrap.bus, args[2], _port(args[3]), args[4], _port(args[5]))
            try:
                proxy.start()
            except OSError:
                return "ERR listen failed"
            wrap.cap = proxy
            return "OK capturing tcp"

    def _cmd_stop_capture(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            wrap.stop_capture()
            return "OK capture stopped"

    def _cmd_forward_udp(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            wrap.stop_forward()
            sink = UdpSink(wrap.bus, args[2], _port(args[3]))
            try:
                sink.start()
            except OSError:
                return "ERR forward failed"
            wrap.sink = sink
            return "OK forwarding udp"

    def _cmd_stop_forward(self, args: list[str]) -> str:
        with self._lock:
            wrap = self.buses.get(args[1])
            if wrap is None:
                return "ERR no bus"
            wrap.stop_forward()
            return "OK forward stopped"

    def _cmd_replay_udp(self, args: list[str]) -> str:
        path, host, port, mode = args[2], args[3], _port(args[4]), args[5]
        if not _can_open(path):
            return f"ERR open: {path}"
        try:
            timing = parse_mode(mode)
        except ValueError:
            return "ERR bad scale"
        _background(replay_to_udp, path, host, port, timing, self.clock)
        return "OK replay-udp started"

    def _cmd_replay_sync(self, args: list[str]) -> str:
        if (len(args) - 2) % 3 != 0:
            return "ERR cmd"
        try:
            timing = parse_mode(args[1])
        except ValueError:
            return "ERR bad scale"
        rest = args[2:]
        streams = [
            UdpStream(file=rest[i], host=rest[i + 1], port=_port(rest[i + 2]))
            for i in range(0, len(rest), 3)
        ]
        for stream in streams:
            if not _can_open(stream.file):
                return f"ERR open failed: {stream.file}"
        try:
            replay_sync(streams, timing, self.clock)
        except (OSError, ValueError):
            return "ERR open failed"
        return f"OK sync started {len(streams)} streams"

    def _cmd_quit(self, args: list[str]) -> str:
        self._stop.set()
        return "OK bye"

    # ── serving ─────────────────────────────────────────────────────────────

    def start(self) -> Address:
        """Listen on the control address; return the address actually bound."""
        listener = socket.create_server(self.address)
        listener.settimeout(_ACCEPT_TIMEOUT_S)
        host, port = listener.getsockname()[:2]
        self.address = (host, port)
        self._listener = listener
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()
        return self.address

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None
        while not self._stop.is_set():
            try:
                conn, _peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            threading.Thread(target=self._serve_connection, args=(conn,), daemon=True).start()

    def _serve_connection(self, conn: socket.socket) -> None:
        with self._conns_lock:
            self._conns.add(conn)
        handed_over = False
        try:
            while not self._stop.is_set():
                try:
                    data = read_message(conn)
                except OSError:
                    break
                if data is None:
                    break
                line = data.decode("utf-8", errors="replace").rstrip("\r\n")
                resp, sub = self._dispatch(line, conn)
                reply = (resp + "\n").encode("utf-8")
                if sub is not None:
                    handed_over = sub.attach(conn, reply)
                    return
                try:
                    write_message(conn, reply)
                except OSError:
                    break
        finally:
            with self._conns_lock:
                self._conns.discard(conn)
            if not handed_over:
                _close_quietly(conn)

    def serve_forever(self) -> None:
        """Deliver scheduled frames about every millisecond until shut down."""
        while not self._stop.wait(_DRAIN_INTERVAL_S):
            self.scheduler.run_until(self.clock.now())
        with self._lock:
            for wrap in self.buses.values():
                if wrap.rec is not None:
                    wrap.rec.close()

    def shutdown(self) -> None:
        """Ask ``serve_forever`` and the accept loop to stop."""
        self._stop.set()

    def close(self) -> None:
        """Stop serving and release every bus, capture, forwarder and connection."""
        self._stop.set()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()
        thread, self._accept_thread = self._accept_thread, None
        if thread is not None:
            thread.join()
        with self._lock:
            wraps = list(self.buses.values())
            self.buses.clear()
        for wrap in wraps:
            wrap.release()
        with self._conns_lock:
            conns = list(self._conns)
        for conn in conns:
            _close_quietly(conn)

    def __enter__(self) -> "Daemon":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _parse_address(text: str) -> Address:
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise TransportError(f"bad address {text!r}, expected host:port")
    return (host, int(port))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the daemon until a ``quit`` command or an interrupt."""
    parser = argparse.ArgumentParser(prog="vbusd", description="Virtual bus daemon.")
    parser.add_argument("--address", help="host:port to listen on")
    ns = parser.parse_args(argv)
    try:
        address = _parse_address(ns.address) if ns.address else default_address()
    except TransportError as exc:
        print(exc, file=sys.stderr)
        return 1
    daemon = Daemon(address)
    try:
        host, port = daemon.start()
    except OSError as exc:
        print(f"cannot listen on {address[0]}:{address[1]}: {exc}", file=sys.stderr)
        return 1
    print(f"vbusd running. Address: {host}:{port}")
    print("Send 'quit' to stop.")
    try:
        daemon.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        daemon.close()
    print("vbusd stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())