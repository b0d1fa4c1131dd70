"""Save and load bus manager projects as JSON, and remember the last one used."""

from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any, Union

from openvbus.app_state import AppState, BusEntry, next_id

PathLike = Union[str, "os.PathLike[str]"]

PROJECT_VERSION = 1

# Field capacities, including the terminator slot of the stored form.
_PREFIX_CAP = 256
_MODE_CAP = 16
_HOST_CAP = 64
_PATH_CAP = 256

RECENT_DIR = "OpenVBus"
RECENT_FILE = "last_project.txt"
RECENT_FALLBACK = "openvbus_last_project.txt"


class ProjectError(Exception):
    """A project file could not be written, read or understood."""


def save_project(path: PathLike, state: AppState) -> None:
    """Write the project settings and buses of ``state`` to ``path``.

    Runtime-only state (recording, forwarding, selection, log) is not saved.
    """
    data = {
        "version": PROJECT_VERSION,
        "record_all_prefix": state.record_all_prefix,
        "replay_all_mode": state.replay_all_mode,
        "replay_all_scale": float(state.replay_all_scale),
        "buses": [
            {
                "name": bus.name,
                "bind_host": bus.bind_host,
                "bind_port": bus.bind_port,
                "target_host": bus.target_host,
                "target_port": bus.target_port,
                "record_path": bus.record_path,
                "replay_path": bus.replay_path,
                "forward_host": bus.forward_host,
                "forward_port": bus.forward_port,
            }
            for bus in state.buses
        ],
    }
    try:
        text = json.dumps(data, indent=2, sort_keys=True) + "\n"
        Path(path).write_text(text, encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
        raise ProjectError(f"cannot save project {path}: {exc}") from exc


def _text(obj: dict, key: str, default: str, cap: int) -> str:
    value = obj.get(key, default)
    if not isinstance(value, str):
        raise ProjectError(f"{key!r} must be a string")
    return value[: cap - 1]


def _port(obj: dict, key: str, default: int) -> int:
    value = obj.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProjectError(f"{key!r} must be a number")
    return int(value) & 0xFFFF


def _bus_from_json(item: Any) -> BusEntry:
    if not isinstance(item, dict):
        raise ProjectError("bus entries must be objects")
    name = item.get("name", "Bus")
    if not isinstance(name, str):
        raise ProjectError("'name' must be a string")
    return BusEntry(
        id=next_id(),
        name=name,
        bind_host=_text(item, "bind_host", "0.0.0.0", _HOST_CAP),
        bind_port=_port(item, "bind_port", 9000),
        target_host=_text(item, "target_host", "127.0.0.1", _HOST_CAP),
        target_port=_port(item, "target_port", 0),
        record_path=_text(item, "record_path", "", _PATH_CAP),
        replay_path=_text(item, "replay_path", "", _PATH_CAP),
        forward_host=_text(item, "forward_host", "127.0.0.1", _HOST_CAP),
        forward_port=_port(item, "forward_port", 9000),
    )


def load_project(path: PathLike, state: AppState) -> None:
    """Replace the buses and project settings of ``state`` with those in ``path``.

    Nothing is created on the daemon; ``needs_daemon_sync`` is set instead.
    ``state`` is left untouched if the file cannot be read or understood.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        raise ProjectError(f"cannot load project {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ProjectError("project file must hold a JSON object")

    prefix = state.record_all_prefix
    if "record_all_prefix" in data:
        prefix = _text(data, "record_all_prefix", "", _PREFIX_CAP)
    mode = state.replay_all_mode
    if "replay_all_mode" in data:
        mode = _text(data, "replay_all_mode", "", _MODE_CAP)
    scale = state.replay_all_scale
    if "replay_all_scale" in data:
        value = data["replay_all_scale"]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ProjectError("'replay_all_scale' must be a number")
        scale = float(value)

    items = data.get("buses", [])
    if not isinstance(items, list):
        raise ProjectError("'buses' must be a list")
    buses = [_bus_from_json(item) for item in items]

    state.record_all_prefix = prefix
    state.replay_all_mode = mode
    state.replay_all_scale = scale
    state.buses = buses
    state.selected_bus = buses[0].id if buses else 0
    state.needs_daemon_sync = True


def recent_path() -> str:
    """Path of the file naming the last project used."""
    appdata = os.environ.get("APPDATA")
    if appdata:
        directory = os.path.join(appdata, RECENT_DIR)
        with contextlib.suppress(OSError):
            os.makedirs(directory, exist_ok=True)
        return os.path.join(directory, RECENT_FILE)
    return RECENT_FALLBACK


def read_recent() -> str:
    """Return the last project path recorded, or an empty string."""
    try:
        with open(recent_path(), encoding="utf-8") as handle:
            line = handle.readline()
    except OSError:
        return ""
    return line.rstrip("\r\n ")


def write_recent(project_path: str) -> None:
    """Record ``project_path`` as the last project used; failures are ignored."""
    with contextlib.suppress(OSError):
        with open(recent_path(), "w", encoding="utf-8") as handle:
            handle.write(f"{project_path}\n")