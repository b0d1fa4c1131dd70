"""UDP / TCP traffic generator and passive sink for exercising capture endpoints."""

from __future__ import annotations

import contextlib
import re
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

USAGE = """Usage:
  vbus_bench udp  <host> <port> <rate> [duration_sec]
  vbus_bench tcp  <host> <port> <rate> [duration_sec]
  vbus_bench recv <port>

Rate: 1g  10g  100m  500k  (bits/sec)
Examples:
  vbus_bench udp  127.0.0.1 9000 1g 30
  vbus_bench tcp  127.0.0.1 9000 10g
  vbus_bench recv 9000
"""

_NS_PER_S = 1_000_000_000
_UDP_SNDBUF = 4 * 1024 * 1024
_TCP_SNDBUF = 8 * 1024 * 1024
_RCVBUF = 8 * 1024 * 1024
_RECV_BUF = 65536
_RECV_TIMEOUT_S = 0.5
_ACCEPT_TIMEOUT_S = 0.2
_REPORT_INTERVAL_S = 1.0

_NUMBER = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_SUFFIXES = {"g": 1e9, "m": 1e6, "k": 1e3}


def parse_rate(text: str) -> int:
    """Parse a rate in bits/s with an optional g, m or k suffix; raises ValueError."""
    match = _NUMBER.match(text)
    if match is None:
        raise ValueError(f"bad rate {text!r}")
    value = float(match.group(0))
    suffix = text[-1:].lower()
    value *= _SUFFIXES.get(suffix, 1.0)
    if value < 0:
        raise ValueError(f"rate must not be negative: {text!r}")
    return int(value)


def payload_size_for_rate(bps: int) -> int:
    """Payload size that keeps per-packet overhead manageable at the given rate."""
    if bps >= 5_000_000_000:
        return 65000
    if bps >= 500_000_000:
        return 16384
    if bps >= 50_000_000:
        return 4096
    return 1400


def ramp_payload(size: int) -> bytes:
    """A ramp pattern 0..127 repeated, so a receiver can spot corruption."""
    return bytes(i & 0x7F for i in range(size))


def resolve_addr(host: str, port: int) -> tuple[str, int]:
    """Resolve a host name or dotted-decimal address to an IPv4 socket address."""
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as exc:
        raise OSError(f"Cannot resolve host: {host}") from exc
    if not infos:
        raise OSError(f"Cannot resolve host: {host}")
    addr = infos[0][4]
    return (addr[0], addr[1])


@dataclass
class TrafficStats:
    """Byte, packet and error counters shared between threads."""

    bytes: int = 0
    packets: int = 0
    errors: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_packet(self, nbytes: int) -> None:
        with self._lock:
            self.bytes += nbytes
            self.packets += 1

    def add_error(self) -> None:
        with self._lock:
            self.errors += 1

    def snapshot(self) -> tuple[int, int, int]:
        """Current (bytes, packets, errors)."""
        with self._lock:
            return self.bytes, self.packets, self.errors


class TokenBucket:
    """Bits available to send, refilled by elapsed time and capped at four packets."""

    def __init__(self, rate_bps: int, packet_bits: int) -> None:
        self.rate_bps = rate_bps
        self.packet_bits = packet_bits
        self.capacity = packet_bits * 4
        self.tokens = packet_bits

    @property
    def ready(self) -> bool:
        """Whether a whole packet may be sent now."""
        return self.tokens >= self.packet_bits

    def refill(self, elapsed_ns: int) -> None:
        """Add the bits earned over ``elapsed_ns`` nanoseconds."""
        self.tokens += int(self.rate_bps * elapsed_ns / 1e9)
        if self.tokens > self.capacity:
            self.tokens = self.capacity

    def take(self, bits: int) -> bool:
        """Spend ``bits`` if that many are available; report whether they were."""
        if self.tokens < bits:
            return False
        self.tokens -= bits
        return True

    def wait_ns(self) -> int:
        """Nanoseconds until a whole packet is available."""
        deficit = self.packet_bits - self.tokens
        if deficit <= 0:
            return 0
        if self.rate_bps > 0:
            return deficit * _NS_PER_S // self.rate_bps
        return 1_000_000


def _pace(wait_ns: int) -> None:
    if wait_ns > 2_000_000:
        time.sleep((wait_ns - 500_000) / _NS_PER_S)
    elif wait_ns > 50_000:
        time.sleep(0)
    # Shorter waits busy-spin, needed for accurate pacing at high rates.


def _reporter(stats: TrafficStats, label: str, done: threading.Event) -> None:
    print(f"\n{'Sec':<6}  {'Pkts/s':>10}  {'Bits/s':>12}  {'Total MB':>10}  {'Errors':>8}")
    print(f"{'------':<6}  {'-' * 10:>10}  {'-' * 12:>12}  {'-' * 10:>10}  {'-' * 8:>8}")
    prev_bytes = prev_pkts = 0
    sec = 0
    while not done.wait(_REPORT_INTERVAL_S):
        sec += 1
        total_bytes, packets, errors = stats.snapshot()
        mbits = (total_bytes - prev_bytes) * 8.0 / 1e6
        dp = packets - prev_pkts
        prev_bytes, prev_pkts = total_bytes, packets
        print(
            f"[{label}] {sec:<4}  {dp:>10}  {mbits:>11.1f}M  "
            f"{total_bytes / 1e6:>10.2f}  {errors:>8}",
            flush=True,
        )


def _start_reporter(stats: TrafficStats, label: str, done: threading.Event) -> threading.Thread:
    thread = threading.Thread(target=_reporter, args=(stats, label, done), daemon=True)
    thread.start()
    return thread


def _print_summary(total_bytes: int, t_start: int) -> None:
    elapsed_s = (time.monotonic_ns() - t_start) // _NS_PER_S
    gbps = total_bytes * 8.0 / 1e9 / max(1.0, float(elapsed_s))
    print(f"\nDone. Total: {total_bytes / 1e6:.2f} MB  ({gbps:.2f} Gbit/s avg)")


def run_udp_send(
    host: str,
    port: int,
    rate_bps: int,
    duration_ns: int,
    stop: Optional[threading.Event] = None,
) -> TrafficStats:
    """Send paced UDP datagrams until the duration ends (0 = forever) or ``stop`` is set."""
    stop = stop if stop is not None else threading.Event()
    dst = resolve_addr(host, port)
    psize = payload_size_for_rate(rate_bps)
    payload = ramp_payload(psize)
    bucket = TokenBucket(rate_bps, psize * 8)
    stats = TrafficStats()
    done = threading.Event()

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, _UDP_SNDBUF)
        reporter = _start_reporter(stats, "UDP", done)
        print(
            f"UDP sender: {host}:{port}  payload={psize} B  "
            f"rate={rate_bps / 1e9:.2f} Gbit/s  duration={duration_ns // _NS_PER_S} s"
        )
        t_start = last_fill = time.monotonic_ns()
        try:
            while not stop.is_set():
                now = time.monotonic_ns()
                bucket.refill(now - last_fill)
                last_fill = now
                if duration_ns > 0 and now - t_start >= duration_ns:
                    break
                if bucket.ready:
                    try:
                        sent = sock.sendto(payload, dst)
                    except OSError:
                        sent = -1
                    if sent > 0:
                        stats.add_packet(sent)
                        bucket.take(bucket.packet_bits)
                    else:
                        stats.add_error()
                else:
                    _pace(bucket.wait_ns())
        finally:
            done.set()
            reporter.join()
    _print_summary(stats.bytes, t_start)
    return stats


def run_tcp_send(
    host: str,
    port: int,
    rate_bps: int,
    duration_ns: int,
    stop: Optional[threading.Event] = None,
) -> TrafficStats:
    """Stream paced chunks over one TCP connection; raises OSError if it cannot connect."""
    stop = stop if stop is not None else threading.Event()
    dst = resolve_addr(host, port)
    psize = payload_size_for_rate(rate_bps)
    payload = ramp_payload(psize)
    bucket = TokenBucket(rate_bps, psize * 8)
    stats = TrafficStats()
    done = threading.Event()

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP) as sock:
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, _TCP_SNDBUF)
        try:
            sock.connect(dst)
        except OSError as exc:
            raise OSError("connect failed (is vbus_bench recv running?)") from exc
        reporter = _start_reporter(stats, "TCP", done)
        print(
            f"TCP sender: {host}:{port}  chunk={psize} B  "
            f"rate={rate_bps / 1e9:.2f} Gbit/s  duration={duration_ns // _NS_PER_S} s"
        )
        t_start = last_fill = time.monotonic_ns()
        try:
            while not stop.is_set():
                now = time.monotonic_ns()
                bucket.refill(now - last_fill)
                last_fill = now
                if duration_ns > 0 and now - t_start >= duration_ns:
                    break
                if bucket.ready:
                    try:
                        sent = sock.send(payload)
                    except OSError:
                        stats.add_error()
                        break  # connection dropped
                    if sent > 0:
                        stats.add_packet(sent)
                        bucket.take(sent * 8)
                    else:
                        stats.add_error()
                else:
                    _pace(bucket.wait_ns())
        finally:
            done.set()
            reporter.join()
    _print_summary(stats.bytes, t_start)
    return stats


def _udp_sink(sock: socket.socket, stats: TrafficStats, stop: threading.Event) -> None:
    sock.settimeout(_RECV_TIMEOUT_S)
    while not stop.is_set():
        try:
            data = sock.recv(_RECV_BUF)
        except OSError:
            continue
        if data:
            stats.add_packet(len(data))


def _tcp_sink(listener: socket.socket, stats: TrafficStats, stop: threading.Event) -> None:
    listener.settimeout(_ACCEPT_TIMEOUT_S)
    while not stop.is_set():
        try:
            client, _peer = listener.accept()
        except OSError:
            continue
        print("[sink] TCP client connected")
        client.settimeout(_RECV_TIMEOUT_S)
        with client:
            while not stop.is_set():
                try:
                    data = client.recv(_RECV_BUF)
                except OSError:
                    break
                if not data:
                    break
                stats.add_packet(len(data))
        print("[sink] TCP client disconnected")


def run_recv(port: int, stop: Optional[threading.Event] = None) -> TrafficStats:
    """Count UDP datagrams and TCP bytes arriving on ``port`` until ``stop`` is set.

    Raises OSError if the UDP port cannot be bound; a TCP bind failure only
    disables the TCP side.
    """
    stop = stop if stop is not None else threading.Event()
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    tcp: Optional[socket.socket] = socket.socket(
        socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP
    )
    assert tcp is not None
    with contextlib.suppress(OSError):
        udp.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, _RCVBUF)
    # No SO_REUSEADDR on UDP: a port already taken must make bind fail.
    with contextlib.suppress(OSError):
        tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        tcp.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, _RCVBUF)

    try:
        udp.bind(("0.0.0.0", port))
    except OSError as exc:
        udp.close()
        tcp.close()
        raise OSError(
            f"UDP bind on port {port} failed ({exc}). Is vbusd already capturing on "
            "this port? Stop the capture first, or use a different port."
        ) from exc
    try:
        tcp.bind(("0.0.0.0", port))
        tcp.listen(1)
    except OSError as exc:
        print(
            f"WARNING: TCP bind on port {port} failed ({exc}) - TCP sink disabled.",
            file=sys.stderr,
        )
        tcp.close()
        tcp = None

    print(
        f"Passive sink on port {port} (UDP{' + TCP' if tcp is not None else ' only'}). "
        "Press Ctrl-C to stop."
    )
    stats = TrafficStats()
    workers = [
        _start_reporter(stats, "RECV", stop),
        threading.Thread(target=_udp_sink, args=(udp, stats, stop), daemon=True),
    ]
    if tcp is not None:
        workers.append(threading.Thread(target=_tcp_sink, args=(tcp, stats, stop), daemon=True))
    for worker in workers[1:]:
        worker.start()
    try:
        for worker in workers:
            while worker.is_alive():
                worker.join(0.1)
    finally:
        stop.set()
        for worker in workers:
            worker.join()
        udp.close()
        if tcp is not None:
            tcp.close()
    return stats


def _usage() -> int:
    print(USAGE, end="", file=sys.stderr)
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the traffic generator or the sink named by the first argument."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        return _usage()
    mode = args[0]
    stop = threading.Event()
    try:
        if mode == "recv":
            if len(args) < 2:
                return _usage()
            port = int(args[1]) & 0xFFFF
            run_recv(port, stop)
            return 0
        if mode in ("udp", "tcp"):
            if len(args) < 4:
                return _usage()
            host = args[1]
            port = int(args[2]) & 0xFFFF
            rate = parse_rate(args[3])
            duration_ns = int(args[4]) * _NS_PER_S if len(args) >= 5 else 0
            runner = run_udp_send if mode == "udp" else run_tcp_send
            runner(host, port, rate, duration_ns, stop)
            return 0
    except ValueError:
        return _usage()
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        stop.set()
        return 0
    return _usage()


if __name__ == "__main__":
    sys.exit(main())