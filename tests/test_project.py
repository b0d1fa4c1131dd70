import json
import os

import pytest

from openvbus.app_state import AppState, BusEntry
from openvbus.project import (
    ProjectError,
    load_project,
    read_recent,
    recent_path,
    save_project,
    write_recent,
)


def _sample_state():
    state = AppState(record_all_prefix="run", replay_all_mode="scale", replay_all_scale=2.5)
    state.buses = [
        BusEntry(id=1, name="front", bind_port=7000, record_path="a.vbuscap", recording=True),
        BusEntry(id=2, name="rear", target_host="10.0.0.2", target_port=8080,
                 forward_host="10.0.0.9", forward_port=5005, replay_path="b.vbuscap"),
    ]
    return state


def test_round_trip(tmp_path):
    path = tmp_path / "p.ovbproj"
    original = _sample_state()
    save_project(path, original)
    loaded = AppState()
    load_project(path, loaded)
    assert loaded.record_all_prefix == original.record_all_prefix
    assert loaded.replay_all_mode == original.replay_all_mode
    assert loaded.replay_all_scale == original.replay_all_scale
    fields = ["name", "bind_host", "bind_port", "target_host", "target_port",
              "record_path", "replay_path", "forward_host", "forward_port"]
    for a, b in zip(original.buses, loaded.buses):
        assert [getattr(a, f) for f in fields] == [getattr(b, f) for f in fields]
    assert len(loaded.buses) == len(original.buses)
    assert all(not b.recording for b in loaded.buses)
    assert loaded.selected_bus == loaded.buses[0].id
    assert loaded.needs_daemon_sync is True


def test_loaded_ids_are_fresh_and_distinct(tmp_path):
    path = tmp_path / "p.ovbproj"
    save_project(path, _sample_state())
    state = AppState()
    load_project(path, state)
    ids = [b.id for b in state.buses]
    assert len(set(ids)) == len(ids)
    assert all(i > 0 for i in ids)


def test_saved_document(tmp_path):
    path = tmp_path / "p.ovbproj"
    save_project(path, _sample_state())
    text = path.read_text(encoding="utf-8")
    data = json.loads(text)
    assert text.endswith("\n")
    assert data["version"] == 1
    assert data["buses"][0]["bind_port"] == 7000
    assert list(data) == sorted(data)


def test_defaults_for_missing_fields(tmp_path):
    path = tmp_path / "p.ovbproj"
    path.write_text(json.dumps({"buses": [{}]}), encoding="utf-8")
    state = AppState(record_all_prefix="keep")
    load_project(path, state)
    bus = state.buses[0]
    assert bus.name == "Bus"
    assert (bus.bind_host, bus.bind_port) == ("0.0.0.0", 9000)
    assert (bus.target_host, bus.target_port) == ("127.0.0.1", 0)
    assert (bus.forward_host, bus.forward_port) == ("127.0.0.1", 9000)
    assert state.record_all_prefix == "keep"


def test_long_strings_are_truncated(tmp_path):
    path = tmp_path / "p.ovbproj"
    path.write_text(json.dumps({"replay_all_mode": "x" * 40}), encoding="utf-8")
    state = AppState()
    load_project(path, state)
    assert state.replay_all_mode == "x" * 15
    assert state.buses == []
    assert state.selected_bus == 0


def test_missing_file_raises(tmp_path):
    with pytest.raises(ProjectError):
        load_project(tmp_path / "absent.ovbproj", AppState())


def test_bad_json_raises_and_keeps_state(tmp_path):
    path = tmp_path / "p.ovbproj"
    path.write_text("{not json", encoding="utf-8")
    state = _sample_state()
    with pytest.raises(ProjectError):
        load_project(path, state)
    assert [b.name for b in state.buses] == ["front", "rear"]


def test_wrong_type_raises_and_keeps_state(tmp_path):
    path = tmp_path / "p.ovbproj"
    path.write_text(json.dumps({"record_all_prefix": "new", "buses": [{"bind_port": "x"}]}),
                    encoding="utf-8")
    state = _sample_state()
    with pytest.raises(ProjectError):
        load_project(path, state)
    assert state.record_all_prefix == "run"


def test_save_to_missing_directory_raises(tmp_path):
    with pytest.raises(ProjectError):
        save_project(tmp_path / "nope" / "p.ovbproj", AppState())


def test_recent_under_appdata(tmp_path, monkeypatch):
    monkeypatch.setenv("APPDATA", str(tmp_path))
    path = recent_path()
    assert path == os.path.join(str(tmp_path), "OpenVBus", "last_project.txt")
    assert os.path.isdir(os.path.dirname(path))
    write_recent("/work/demo.ovbproj")
    assert read_recent() == "/work/demo.ovbproj"


def test_recent_fallback_and_trimming(tmp_path, monkeypatch):
    monkeypatch.delenv("APPDATA", raising=False)
    monkeypatch.chdir(tmp_path)
    assert recent_path() == "openvbus_last_project.txt"
    assert read_recent() == ""
    (tmp_path / "openvbus_last_project.txt").write_text("demo.ovbproj  \r\nmore\n")
    assert read_recent() == "demo.ovbproj"