import socket

import pytest

from openvbus.bus import EthHub
from openvbus.clock import RealtimeClock
from openvbus.frame import Frame
from openvbus.scheduler import Scheduler
from openvbus.udp_sink import UdpSink


@pytest.fixture
def hub():
    clock = RealtimeClock()
    return EthHub(Scheduler(clock), clock, 1_000_000_000)


@pytest.fixture
def receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def test_forwards_payload_immediately(hub, receiver):
    port = receiver.getsockname()[1]
    with UdpSink(hub, "127.0.0.1", port) as sink:
        assert hub.fwd_cb is not None
        hub.send(None, Frame(payload=b"video-chunk"))
        data, _ = receiver.recvfrom(65535)
        assert sink.active is True
    assert data == b"video-chunk"


def test_empty_payload_is_not_sent(hub, receiver):
    port = receiver.getsockname()[1]
    with UdpSink(hub, "127.0.0.1", port) as sink:
        hub.send(None, Frame(payload=b""))
        hub.send(None, Frame(payload=b"x"))
        data, _ = receiver.recvfrom(65535)
        assert sink.active is True
    assert hub.stats.tx_frames == 2
    assert data == b"x"


def test_stop_clears_forward_callback(hub, receiver):
    port = receiver.getsockname()[1]
    sink = UdpSink(hub, "127.0.0.1", port)
    sink.start()
    sink.stop()
    assert hub.fwd_cb is None
    assert sink.active is False
    hub.send(None, Frame(payload=b"late"))
    receiver.settimeout(0.3)
    with pytest.raises(TimeoutError):
        receiver.recvfrom(65535)


def test_unresolvable_host_raises(hub):
    sink = UdpSink(hub, "no-such-host.invalid", 9000)
    with pytest.raises(OSError):
        sink.start()
    assert sink.active is False
    assert hub.fwd_cb is None