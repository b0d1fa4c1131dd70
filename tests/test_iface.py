import pytest

from openvbus.app_state import InterfaceDesc
from openvbus.iface import IfaceStats, Interface, MockInterface, make_interface


def test_mock_driver_builds_mock_interface():
    iface = make_interface(InterfaceDesc("Mock (synthetic traffic)", "mock"))
    assert isinstance(iface, MockInterface)
    assert iface.name == "Mock"


@pytest.mark.parametrize("driver", ["pcap", "udp", "tcp", ""])
def test_other_drivers_have_no_local_backend(driver):
    assert make_interface(InterfaceDesc("x", driver)) is None


def test_start_and_stop_toggle_running():
    iface = MockInterface()
    assert iface.running is False
    assert iface.start() is True
    assert iface.running is True
    iface.stop()
    assert iface.running is False


def test_stats_are_snapshots():
    iface = MockInterface()
    snapshot = iface.stats()
    assert snapshot == IfaceStats(rx_pkts=0, tx_pkts=0)
    snapshot.rx_pkts = 99
    assert iface.stats().rx_pkts == 0


def test_interface_base_is_abstract():
    with pytest.raises(TypeError):
        Interface()