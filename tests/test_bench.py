import socket
import threading
import time
from unittest import mock

import pytest

from openvbus.bench import (
    TokenBucket,
    TrafficStats,
    main,
    parse_rate,
    payload_size_for_rate,
    ramp_payload,
    resolve_addr,
    run_recv,
    run_tcp_send,
    run_udp_send,
)


@pytest.mark.parametrize(
    "text, expected",
    [("1g", 1_000_000_000), ("100m", 100_000_000), ("500k", 500_000), ("1200", 1200), ("2G", 2_000_000_000)],
)
def test_parse_rate_suffixes(text, expected):
    assert parse_rate(text) == expected


def test_parse_rate_rejects_garbage():
    with pytest.raises(ValueError):
        parse_rate("fast")


@pytest.mark.parametrize(
    "bps, size",
    [
        (10_000_000_000, 65000),
        (5_000_000_000, 65000),
        (1_000_000_000, 16384),
        (500_000_000, 16384),
        (100_000_000, 4096),
        (50_000_000, 4096),
        (1_000_000, 1400),
    ],
)
def test_payload_size_for_rate(bps, size):
    assert payload_size_for_rate(bps) == size


def test_payload_size_monotonic():
    rates = [0, 10**6, 10**8, 10**9, 10**10]
    sizes = [payload_size_for_rate(r) for r in rates]
    assert sizes == sorted(sizes)


def test_ramp_payload_pattern():
    data = ramp_payload(200)
    assert len(data) == 200
    assert data[:128] == bytes(range(128))
    assert data[128:] == bytes(range(72))
    assert max(data) < 128


def test_resolve_addr_numeric():
    assert resolve_addr("127.0.0.1", 9000) == ("127.0.0.1", 9000)


def test_resolve_addr_failure():
    with mock.patch("openvbus.bench.socket.getaddrinfo", side_effect=socket.gaierror("nope")):
        with pytest.raises(OSError, match="Cannot resolve host"):
            resolve_addr("nowhere", 9000)


def test_traffic_stats_counts():
    stats = TrafficStats()
    stats.add_packet(100)
    stats.add_packet(50)
    stats.add_error()
    assert stats.snapshot() == (150, 2, 1)


def test_token_bucket_starts_with_one_packet():
    bucket = TokenBucket(1_000_000, 8000)
    assert bucket.ready
    assert bucket.take(8000)
    assert not bucket.ready
    assert not bucket.take(8000)


def test_token_bucket_caps_at_four_packets():
    bucket = TokenBucket(1_000_000_000, 8000)
    bucket.refill(10_000_000_000)
    assert bucket.tokens == bucket.capacity == 4 * 8000
    taken = 0
    while bucket.take(8000):
        taken += 1
    assert taken == 4


def test_token_bucket_refill_and_wait():
    bucket = TokenBucket(1_000_000, 8000)
    bucket.take(8000)
    wait = bucket.wait_ns()
    assert wait > 0
    bucket.refill(wait)
    assert bucket.ready
    assert bucket.wait_ns() == 0


def test_token_bucket_zero_rate_wait():
    bucket = TokenBucket(0, 8000)
    bucket.take(8000)
    assert bucket.wait_ns() == 1_000_000
    bucket.refill(10**12)
    assert not bucket.ready


def test_udp_send_delivers_ramp():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as rx:
        rx.bind(("127.0.0.1", 0))
        rx.settimeout(2.0)
        port = rx.getsockname()[1]
        stats = run_udp_send("127.0.0.1", port, 1_000_000, 300_000_000, threading.Event())
        assert stats.packets >= 1
        assert stats.bytes == stats.packets * 1400
        assert rx.recv(65536) == ramp_payload(1400)


def test_udp_send_stopped_early():
    stop = threading.Event()
    stop.set()
    stats = run_udp_send("127.0.0.1", 9, 1_000_000, 0, stop)
    assert stats.snapshot() == (0, 0, 0)


def test_tcp_send_streams_ramp():
    received = bytearray()
    with socket.create_server(("127.0.0.1", 0)) as server:
        port = server.getsockname()[1]

        def serve():
            conn, _ = server.accept()
            with conn:
                while True:
                    data = conn.recv(65536)
                    if not data:
                        break
                    received.extend(data)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        stats = run_tcp_send("127.0.0.1", port, 1_000_000, 300_000_000, threading.Event())
        thread.join(5)
    assert stats.bytes >= 1400
    assert len(received) == stats.bytes
    assert bytes(received[:1400]) == ramp_payload(1400)


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def test_tcp_send_connect_refused():
    port = _free_port()
    with pytest.raises(OSError, match="connect failed"):
        run_tcp_send("127.0.0.1", port, 1_000_000, 100_000_000, threading.Event())


def test_run_recv_counts_datagrams():
    port = _free_port()
    stop = threading.Event()
    payload = b"x" * 32

    def sender():
        time.sleep(0.3)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as tx:
            for _ in range(20):
                tx.sendto(payload, ("127.0.0.1", port))
                time.sleep(0.05)
        stop.set()

    thread = threading.Thread(target=sender, daemon=True)
    thread.start()
    stats = run_recv(port, stop)
    thread.join(5)
    assert stats.packets >= 1
    assert stats.bytes == stats.packets * len(payload)


def test_run_recv_port_taken():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as holder:
        holder.bind(("0.0.0.0", 0))
        port = holder.getsockname()[1]
        with pytest.raises(OSError, match="UDP bind"):
            run_recv(port, threading.Event())


def test_main_without_arguments(capsys):
    assert main([]) == 1
    assert "Usage:" in capsys.readouterr().err


@pytest.mark.parametrize("argv", [["bogus"], ["udp", "127.0.0.1"], ["recv"], ["tcp", "h", "x", "1g"]])
def test_main_bad_arguments(argv, capsys):
    assert main(argv) == 1
    assert "Usage:" in capsys.readouterr().err


def test_main_udp_runs(capsys):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as rx:
        rx.bind(("127.0.0.1", 0))
        port = rx.getsockname()[1]
        assert main(["udp", "127.0.0.1", str(port), "100k", "1"]) == 0
    out = capsys.readouterr().out
    assert "UDP sender: 127.0.0.1" in out
    assert "Done. Total:" in out