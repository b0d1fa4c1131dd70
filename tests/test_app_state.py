from concurrent.futures import ThreadPoolExecutor

from openvbus.app_state import (
    AppState,
    BusEntry,
    FilterRule,
    FilterType,
    InterfaceDesc,
    Packet,
    next_id,
)


def test_next_id_strictly_increases():
    ids = [next_id() for _ in range(10)]
    assert ids == sorted(set(ids))
    assert len(set(ids)) == 10
    assert ids[0] >= 1


def test_next_id_unique_across_threads():
    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(next_id) for _ in range(800)]
        results = [future.result() for future in futures]
    assert len(set(results)) == len(results) == 800
    assert next_id() > max(results)


def test_bus_entries_do_not_share_containers():
    a, b = BusEntry(name="A"), BusEntry(name="B")
    a.filters.append(FilterRule(FilterType.EXCLUDE, "size:*"))
    a.ring.appendleft(Packet())
    assert b.filters == []
    assert len(b.ring) == 0


def test_bus_entry_capture_defaults():
    bus = BusEntry()
    assert (bus.bind_host, bus.bind_port) == ("0.0.0.0", 9000)
    assert (bus.forward_host, bus.forward_port) == ("127.0.0.1", 9000)
    assert bus.enabled is True and bus.iface is None


def test_app_states_are_independent():
    s1, s2 = AppState(), AppState()
    s1.buses.append(BusEntry(name="Bus1"))
    s1.log_lines.append("line")
    assert s2.buses == [] and s2.log_lines == []
    assert s2.record_all_prefix == "capture"
    assert s2.replay_all_mode == "exact"


def test_packet_preview_is_sized_buffer():
    assert Packet().preview == bytes(64)


def test_filter_rule_defaults_to_include():
    rule = FilterRule(expr="vlan:*")
    assert rule.type is FilterType.INCLUDE
    assert InterfaceDesc("Mock", "mock").driver == "mock"