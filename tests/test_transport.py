import socket
import threading

import pytest

from openvbus.transport import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    TransportError,
    default_address,
    open_connection,
    read_message,
    send_command,
    write_message,
)


def _serve_once(reply):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    received = []

    def run():
        conn, _ = listener.accept()
        with conn:
            received.append(read_message(conn))
            write_message(conn, reply)
        listener.close()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return listener.getsockname(), received, thread


def _closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def test_default_address_builtin(monkeypatch):
    monkeypatch.delenv("VBUSD_ADDRESS", raising=False)
    assert default_address() == (DEFAULT_HOST, DEFAULT_PORT)


def test_default_address_from_environment(monkeypatch):
    monkeypatch.setenv("VBUSD_ADDRESS", "localhost:1234")
    assert default_address() == ("localhost", 1234)


def test_default_address_rejects_garbage(monkeypatch):
    monkeypatch.setenv("VBUSD_ADDRESS", "no-port-here")
    with pytest.raises(TransportError):
        default_address()


def test_message_round_trip():
    a, b = socket.socketpair()
    with a, b:
        write_message(a, b"list\n")
        write_message(a, b"")
        assert read_message(b) == b"list\n"
        assert read_message(b) == b""
        a.close()
        assert read_message(b) is None


def test_truncated_message_raises():
    a, b = socket.socketpair()
    with a, b:
        a.sendall(b"\x00\x00\x00\x10abc")
        a.close()
        with pytest.raises(TransportError):
            read_message(b)


def test_send_command_strips_newlines():
    address, received, thread = _serve_once(b"OK created eth\r\n")
    resp = send_command("create bus1 eth 1000000000", address)
    thread.join(timeout=5)
    assert resp == "OK created eth"
    assert received == [b"create bus1 eth 1000000000\n"]


def test_send_command_keeps_inner_lines():
    address, _received, thread = _serve_once(b"a\nb\n\n")
    resp = send_command("list", address)
    thread.join(timeout=5)
    assert resp.splitlines() == ["a", "b"]


def test_open_connection_refused():
    with pytest.raises(TransportError):
        open_connection(("127.0.0.1", _closed_port()))


def test_send_command_without_daemon():
    with pytest.raises(TransportError):
        send_command("list", ("127.0.0.1", _closed_port()))


def test_send_command_no_response():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)

    def run():
        conn, _ = listener.accept()
        read_message(conn)
        conn.close()
        listener.close()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    with pytest.raises(TransportError):
        send_command("list", listener.getsockname())
    thread.join(timeout=5)