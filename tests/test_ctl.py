import socket
import threading

from openvbus.ctl import main
from openvbus.transport import read_message, write_message


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
    host, port = listener.getsockname()
    return f"{host}:{port}", received, thread


def test_no_arguments_prints_usage(capsys):
    assert main([]) == 1
    assert "Usage: vbusctl" in capsys.readouterr().err


def test_unreachable_daemon(monkeypatch, capsys):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    monkeypatch.setenv("VBUSD_ADDRESS", f"127.0.0.1:{port}")
    assert main(["list"]) == 2
    assert "Failed to contact vbusd" in capsys.readouterr().err


def test_sends_joined_command_and_prints_reply(monkeypatch, capsys):
    address, received, thread = _serve_once(b"OK created can\n")
    monkeypatch.setenv("VBUSD_ADDRESS", address)
    code = main(["create", "bus1", "can", "500000"])
    thread.join(timeout=5)
    assert code == 0
    assert received == [b"create bus1 can 500000\n"]
    assert capsys.readouterr().out == "OK created can\n"