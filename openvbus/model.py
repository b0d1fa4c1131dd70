"""Application model: buses, their capture/record/forward state and the daemon link."""

from __future__ import annotations

import contextlib
import random
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from openvbus.app_state import (
    AppState,
    BusEntry,
    FilterRule,
    FilterType,
    InterfaceDesc,
    Packet,
    next_id,
)
from openvbus.daemon_client import DaemonClient, RawFrame
from openvbus.iface import Interface, make_interface
from openvbus.project import ProjectError, load_project, save_project, write_recent
from openvbus.transport import Address, TransportError

RING_CAPACITY = 4096
LOG_CAPACITY = 1024
PREVIEW_SIZE = 64
PING_INTERVAL_NS = 2_000_000_000
ETH_LINK_BPS = 1_000_000_000
_PROTO_ETH2 = 1
_FILTER_REPR_MAX = 47

_PROTO_NAMES = {1: "ETH", 2: "CAN", 3: "CANFD", 4: "UDP", 5: "TCP"}


def proto_name(proto: int) -> str:
    """Short display name of a protocol number, or ``?``."""
    return _PROTO_NAMES.get(proto, "?")


def glob_match(pattern: str, text: str) -> bool:
    """Match ``text`` against a glob supporting ``*`` and ``?``."""
    pi = ti = 0
    star_pi: Optional[int] = None
    star_ti = 0
    while ti < len(text):
        if pi < len(pattern) and pattern[pi] in (text[ti], "?"):
            pi += 1
            ti += 1
        elif pi < len(pattern) and pattern[pi] == "*":
            star_pi, star_ti = pi, ti
            pi += 1
        elif star_pi is not None:
            star_ti += 1
            pi, ti = star_pi + 1, star_ti
        else:
            return False
    while pi < len(pattern) and pattern[pi] == "*":
        pi += 1
    return pi == len(pattern)


def passes_filters(filters: Iterable[FilterRule], packet: Packet) -> bool:
    """Whether a packet passes every include rule and no exclude rule."""
    rules = list(filters)
    if not rules:
        return True
    text = f"vlan:{packet.vlan} size:{packet.size}"[:_FILTER_REPR_MAX]
    for rule in rules:
        matched = glob_match(rule.expr, text)
        if rule.type == FilterType.EXCLUDE and matched:
            return False
        if rule.type == FilterType.INCLUDE and not matched:
            return False
    return True


@dataclass(frozen=True)
class _Stream:
    bus_name: str
    src_file: str


def _source_file(bus: BusEntry) -> str:
    return bus.replay_path or bus.record_path


def _ready_for_replay(bus: BusEntry) -> bool:
    return bool(_source_file(bus)) and bool(bus.forward_host) and bus.forward_port != 0


def _push_ring(bus: BusEntry, packet: Packet) -> None:
    bus.ring.appendleft(packet)
    if len(bus.ring) > RING_CAPACITY:
        bus.ring.pop()


class Model:
    """Keeps the application state in step with the daemon, or with mock traffic when offline."""

    def __init__(self, state: AppState, address: Optional[Address] = None) -> None:
        self.state = state
        self.address = address
        self._rng = random.Random(1234)
        self._tick_ns = 0
        self._last_ping = 0
        self._ifaces: dict[int, Interface] = {}
        self._daemon = DaemonClient(address)
        self._subs: dict[int, DaemonClient] = {}
        self._queue_lock = threading.Lock()
        self._frame_queue: list[tuple[int, RawFrame]] = []

        state.daemon_connected = self._daemon.is_connected()
        if state.daemon_connected:
            self.add_log("[startup] Connected to vbusd")
        else:
            self.add_log("[startup] vbusd not found – running in mock mode")

    def _send(self, cmd: str) -> str:
        try:
            return self._daemon.send_cmd(cmd)
        except TransportError:
            return ""

    # ── buses ───────────────────────────────────────────────────────────────

    def new_bus(self, name: str) -> BusEntry:
        """Add a bus, select it, and create it on the daemon when connected."""
        bus = BusEntry(id=next_id(), name=name)
        self.state.buses.append(bus)
        self.state.selected_bus = bus.id
        if self.state.daemon_connected:
            resp = self._send(f"create {name} eth {ETH_LINK_BPS}")
            self.add_log(f"[create] bus '{name}' → daemon: {resp}")
            self._subscribe_frames(bus)
        else:
            self.add_log(f"[create] bus '{name}' (local mock)")
        return bus

    def delete_bus(self, bus_id: int) -> None:
        bus = self.get_bus(bus_id)
        if bus is None:
            return
        if bus.recording:
            self.stop_record(bus)
        self._unsubscribe_frames(bus_id)
        self.detach_iface(bus)
        if self.state.daemon_connected:
            resp = self._send(f"delete {bus.name}")
            self.add_log(f"[delete] bus '{bus.name}' → daemon: {resp}")
        else:
            self.add_log(f"[delete] bus '{bus.name}'")
        self.state.buses.remove(bus)
        self.state.selected_bus = self.state.buses[0].id if self.state.buses else 0

    def get_bus(self, bus_id: int) -> Optional[BusEntry]:
        return next((b for b in self.state.buses if b.id == bus_id), None)

    # ── frame subscription ──────────────────────────────────────────────────

    def _subscribe_frames(self, bus: BusEntry) -> None:
        bus_id = bus.id
        client = DaemonClient(self.address)

        def on_frame(frame: RawFrame) -> None:
            with self._queue_lock:
                self._frame_queue.append((bus_id, frame))

        try:
            client.subscribe(bus.name, on_frame)
        except TransportError:
            self.add_log(f"[sub] WARNING: could not subscribe to '{bus.name}'")
            return
        self._subs[bus_id] = client
        self.add_log(f"[sub] subscribed to frames on '{bus.name}'")

    def _unsubscribe_frames(self, bus_id: int) -> None:
        client = self._subs.pop(bus_id, None)
        if client is not None:
            client.unsubscribe()

    # ── tick ────────────────────────────────────────────────────────────────

    def tick(self, dt: float) -> None:
        """Advance by ``dt`` seconds: ping the daemon, drain frames, make mock traffic."""
        self._tick_ns += int(dt * 1e9)

        if self._tick_ns - self._last_ping > PING_INTERVAL_NS:
            self._last_ping = self._tick_ns
            was = self.state.daemon_connected
            self.state.daemon_connected = self._daemon.is_connected()
            if not was and self.state.daemon_connected:
                self.add_log("[daemon] connected")
                if self.state.needs_daemon_sync:
                    self._sync_buses_to_daemon()
            elif was and not self.state.daemon_connected:
                self.add_log("[daemon] disconnected")

        with self._queue_lock:
            pending, self._frame_queue = self._frame_queue, []
        for bus_id, raw in pending:
            bus = self.get_bus(bus_id)
            if bus is None or not bus.enabled:
                continue
            packet = Packet(
                timestamp_ns=raw.ts_ns,
                vlan=0,
                size=len(raw.payload) & 0xFFFF,
                proto=raw.proto,
                preview=bytes(raw.payload[:PREVIEW_SIZE]).ljust(PREVIEW_SIZE, b"\0"),
            )
            if passes_filters(bus.filters, packet):
                _push_ring(bus, packet)

        if not self.state.daemon_connected:
            for bus in self.state.buses:
                if not bus.enabled or bus.id in self._subs:
                    continue
                packet = Packet(
                    timestamp_ns=self._tick_ns,
                    proto=_PROTO_ETH2,
                    vlan=100 if self._rng.randint(0, 1) else 0,
                    size=self._rng.randint(64, 1500),
                    preview=self._rng.randbytes(PREVIEW_SIZE),
                )
                if passes_filters(bus.filters, packet):
                    _push_ring(bus, packet)

    # ── interfaces ──────────────────────────────────────────────────────────

    def enumerate_ifaces(self) -> list[InterfaceDesc]:
        return [
            InterfaceDesc(name="UDP capture (receive datagrams)", driver="udp"),
            InterfaceDesc(name="TCP proxy (transparent relay)", driver="tcp"),
            InterfaceDesc(name="Mock (synthetic traffic)", driver="mock"),
        ]

    def attach_iface(self, bus: BusEntry, desc: InterfaceDesc) -> None:
        self.detach_iface(bus)
        bus.iface = desc

        if desc.driver == "mock":
            backend = make_interface(desc)
            if backend is None:
                bus.iface = None
                return
            backend.start()
            self._ifaces[bus.id] = backend
            self.add_log(f"[iface] mock attached to '{bus.name}'")
            return

        if not self.state.daemon_connected:
            self.add_log(f"[iface] daemon not connected – cannot attach {desc.driver}")
            bus.iface = None
            return

        resp = ""
        if desc.driver == "udp":
            resp = self._send(f"capture-udp {bus.name} {bus.bind_host} {bus.bind_port}")
            self.add_log(
                f"[capture] UDP {bus.bind_host}:{bus.bind_port} on '{bus.name}' → {resp}"
            )
        elif desc.driver == "tcp":
            resp = self._send(
                f"capture-tcp {bus.name} {bus.bind_host} {bus.bind_port} "
                f"{bus.target_host} {bus.target_port}"
            )
            self.add_log(
                f"[capture] TCP proxy {bus.bind_host}:{bus.bind_port} → "
                f"{bus.target_host}:{bus.target_port} on '{bus.name}' → {resp}"
            )

        if resp.startswith("ERR"):
            bus.iface = None
            self.add_log(f"[iface] FAILED: {resp}")

    def detach_iface(self, bus: BusEntry) -> None:
        backend = self._ifaces.pop(bus.id, None)
        if backend is not None:
            backend.stop()
        if bus.iface is not None and bus.iface.driver != "mock" and self.state.daemon_connected:
            resp = self._send(f"stop-capture {bus.name}")
            self.add_log(f"[iface] detached capture on '{bus.name}' → {resp}")
        elif bus.iface is not None:
            self.add_log(f"[iface] detached '{bus.iface.driver}' from '{bus.name}'")
        bus.iface = None

    # ── recording ───────────────────────────────────────────────────────────

    def start_record(self, bus: BusEntry) -> None:
        if not self.state.daemon_connected:
            self.add_log("[rec] daemon not connected")
            return
        if not bus.record_path:
            self.add_log("[rec] no output path set")
            return
        resp = self._send(f"record {bus.name} on {bus.record_path}")
        bus.recording = resp.startswith("OK")
        self.add_log(f"[rec] start '{bus.name}' → {resp}")

    def stop_record(self, bus: BusEntry) -> None:
        if not self.state.daemon_connected:
            return
        resp = self._send(f"stoprec {bus.name}")
        bus.recording = False
        self.add_log(f"[rec] stop '{bus.name}' → {resp}")

    def start_record_all(self) -> None:
        """Record every bus to ``{prefix}_{busname}.vbuscap``."""
        if not self.state.daemon_connected:
            self.add_log("[rec-all] daemon not connected")
            return
        any_recording = False
        for bus in self.state.buses:
            path = f"{self.state.record_all_prefix}_{bus.name}.vbuscap"
            bus.record_path = path
            resp = self._send(f"record {bus.name} on {path}")
            bus.recording = resp.startswith("OK")
            self.add_log(f"[rec-all] '{bus.name}' -> {resp}")
            any_recording = any_recording or bus.recording
        self.state.global_recording = any_recording

    def stop_record_all(self) -> None:
        for bus in self.state.buses:
            if not bus.recording:
                continue
            resp = self._send(f"stoprec {bus.name}")
            bus.recording = False
            self.add_log(f"[rec-all] stop '{bus.name}' -> {resp}")
        self.state.global_recording = False

    def start_replay_all(self) -> list[threading.Thread]:
        """Replay every ready bus at once, each on its own connection; return the threads."""
        if not self.state.daemon_connected:
            self.add_log("[replay-all] daemon not connected")
            return []

        mode = self.state.replay_all_mode
        if mode == "scale":
            mode = f"scale:{self.state.replay_all_scale:.3f}"

        ready = [b for b in self.state.buses if _ready_for_replay(b)]
        if not ready:
            self.add_log(
                "[replay-all] no buses ready — set replay/record file + "
                "forward host:port in Inspector"
            )
            return []

        streams = [_Stream(bus_name=b.name, src_file=_source_file(b)) for b in ready]
        for bus in ready:
            if not bus.forwarding:
                self.start_forward(bus)

        self.add_log(f"[replay-all] starting {len(streams)} stream(s), mode={mode}")
        self.state.global_replaying = True

        threads = []
        for stream in streams:
            cmd = f"replay {stream.bus_name} {stream.src_file} {mode}"
            self.add_log(f"[replay-all] -> {cmd}")
            thread = threading.Thread(target=self._send_detached, args=(cmd,), daemon=True)
            thread.start()
            threads.append(thread)
        return threads

    def _send_detached(self, cmd: str) -> None:
        with contextlib.suppress(TransportError):
            DaemonClient(self.address).send_cmd(cmd)

    # ── project ─────────────────────────────────────────────────────────────

    def _clear_buses(self) -> None:
        while self.state.buses:
            self.delete_bus(self.state.buses[0].id)

    def new_project(self) -> None:
        self._clear_buses()
        self.state.project_path = ""
        self.state.global_recording = False
        self.state.global_replaying = False
        self.state.needs_daemon_sync = False
        self.add_log("[project] new project")
        self.new_bus("Bus1")

    def load_project(self, path: str) -> bool:
        """Replace all buses with those of a project file; report success."""
        self._clear_buses()
        self.state.global_recording = False
        self.state.global_replaying = False
        try:
            load_project(path, self.state)
        except (ProjectError, OSError, ValueError):
            self.add_log(f"[project] failed to load: {path}")
            return False
        self.state.project_path = path
        with contextlib.suppress(OSError):
            write_recent(path)
        self.add_log(f"[project] loaded: {path} ({len(self.state.buses)} bus(es))")
        if self.state.daemon_connected:
            self._sync_buses_to_daemon()
        return True

    def save_project(self, path: str) -> None:
        try:
            save_project(path, self.state)
        except (ProjectError, OSError, ValueError):
            self.add_log(f"[project] failed to save: {path}")
            return
        self.state.project_path = path
        with contextlib.suppress(OSError):
            write_recent(path)
        self.add_log(f"[project] saved: {path}")

    def _sync_buses_to_daemon(self) -> None:
        if not self.state.daemon_connected:
            return
        for bus in self.state.buses:
            resp = self._send(f"create {bus.name} eth {ETH_LINK_BPS}")
            self.add_log(f"[sync] create '{bus.name}' -> {resp}")
            if bus.id not in self._subs:
                self._subscribe_frames(bus)
        self.state.needs_daemon_sync = False
        self.add_log(f"[sync] {len(self.state.buses)} bus(es) synced to daemon")

    # ── replay and forward ──────────────────────────────────────────────────

    def replay_file(self, bus: BusEntry, mode: str) -> None:
        if not self.state.daemon_connected:
            self.add_log("[replay] daemon not connected")
            return
        if not bus.replay_path:
            self.add_log("[replay] no file path set")
            return
        resp = self._send(f"replay {bus.name} {bus.replay_path} {mode}")
        self.add_log(f"[replay] '{bus.name}' {mode} → {resp}")

    def start_forward(self, bus: BusEntry) -> None:
        if not self.state.daemon_connected:
            self.add_log("[fwd] daemon not connected")
            return
        resp = self._send(f"forward-udp {bus.name} {bus.forward_host} {bus.forward_port}")
        bus.forwarding = resp.startswith("OK")
        self.add_log(
            f"[fwd] start '{bus.name}' → {bus.forward_host}:{bus.forward_port} → {resp}"
        )

    def stop_forward(self, bus: BusEntry) -> None:
        if not self.state.daemon_connected:
            return
        resp = self._send(f"stop-forward {bus.name}")
        bus.forwarding = False
        self.add_log(f"[fwd] stop '{bus.name}' → {resp}")

    # ── log and lifetime ────────────────────────────────────────────────────

    def add_log(self, msg: str) -> None:
        """Append a line stamped with model time, keeping at most LOG_CAPACITY lines."""
        self.state.log_lines.append(f"[{self._tick_ns / 1e9:08.3f}] {msg}")
        if len(self.state.log_lines) > LOG_CAPACITY:
            del self.state.log_lines[0]

    def close(self) -> None:
        """Stop every subscription and mock interface."""
        subs, self._subs = self._subs, {}
        for client in subs.values():
            client.unsubscribe()
        ifaces, self._ifaces = self._ifaces, {}
        for backend in ifaces.values():
            backend.stop()
        self._daemon.close()

    def __enter__(self) -> "Model":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()