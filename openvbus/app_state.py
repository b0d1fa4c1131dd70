"""State shared by the bus manager front end."""

from __future__ import annotations

import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

_ids = itertools.count(1)
_id_lock = threading.Lock()


def next_id() -> int:
    """Return a process-wide unique, increasing identifier starting at 1."""
    with _id_lock:
        return next(_ids)


class FilterType(Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


@dataclass
class FilterRule:
    """A glob pattern that includes or excludes packets."""

    type: FilterType = FilterType.INCLUDE
    expr: str = ""


@dataclass
class Packet:
    """Summary of a frame shown in the packet list."""

    timestamp_ns: int = 0
    vlan: int = 0  # 0 if untagged
    size: int = 0
    proto: int = 0
    preview: bytes = bytes(64)  # first bytes of the payload


@dataclass
class InterfaceDesc:
    """A capture interface: display name and driver (udp, tcp, mock)."""

    name: str = ""
    driver: str = ""


@dataclass
class BusEntry:
    """A bus as the front end sees it, with capture, recording and forward settings."""

    id: int = 0
    name: str = ""
    iface: Optional[InterfaceDesc] = None
    filters: list[FilterRule] = field(default_factory=list)
    ring: deque = field(default_factory=deque)
    enabled: bool = True

    bind_host: str = "0.0.0.0"
    bind_port: int = 9000
    target_host: str = "127.0.0.1"
    target_port: int = 0

    recording: bool = False
    record_path: str = ""
    replay_path: str = ""

    forward_host: str = "127.0.0.1"
    forward_port: int = 9000
    forwarding: bool = False


@dataclass
class AppState:
    """Everything the front end keeps between frames."""

    buses: list[BusEntry] = field(default_factory=list)
    selected_bus: int = 0
    show_demo: bool = False
    request_exit: bool = False
    daemon_connected: bool = False
    log_lines: list[str] = field(default_factory=list)

    record_all_prefix: str = "capture"  # files: {prefix}_{busname}.vbuscap
    global_recording: bool = False

    replay_all_mode: str = "exact"  # exact | burst | scale
    replay_all_scale: float = 1.0
    global_replaying: bool = False

    project_path: str = ""
    needs_daemon_sync: bool = False