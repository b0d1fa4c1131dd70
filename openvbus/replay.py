"""Replay capture files onto a bus or out to the network as UDP datagrams."""

from __future__ import annotations

import contextlib
import socket
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence

from openvbus.bus import Bus
from openvbus.clock import Clock
from openvbus.frame import Frame
from openvbus.recorder import PathLike, Replayer

SYNC_START_SLACK_NS = 50_000_000
_SNDBUF = 4 * 1024 * 1024
_POLL_S = 0.0001


@dataclass(frozen=True)
class ReplayTiming:
    """Pacing of a replay: keep the recorded gaps (scaled) or send at once."""

    do_timing: bool = True
    scale: float = 1.0


@dataclass(frozen=True)
class UdpStream:
    """One capture file replayed to one UDP destination."""

    file: str
    host: str
    port: int


def parse_mode(mode: str) -> ReplayTiming:
    """Parse ``exact``, ``burst`` or ``scale:K``; raises ValueError on a bad scale."""
    do_timing = mode != "burst"
    scale = 1.0
    if mode.startswith("scale:"):
        try:
            scale = float(mode[len("scale:"):])
        except ValueError as exc:
            raise ValueError(f"bad scale in replay mode {mode!r}") from exc
    return ReplayTiming(do_timing=do_timing, scale=scale)


def _wait_until(clock: Clock, t: int) -> None:
    while clock.now() < t:
        time.sleep(_POLL_S)


def _paced(
    frames: Iterable[Frame],
    timing: ReplayTiming,
    clock: Clock,
    start: int,
    origin: Optional[int] = None,
) -> Iterator[Frame]:
    """Yield frames at their recorded offsets from ``start``.

    With no fixed ``origin`` the first non-zero timestamp seen is the origin.
    """
    first = origin if origin is not None else 0
    for frame in frames:
        if timing.do_timing:
            if origin is None and first == 0:
                first = frame.ts_ns
            offset = int((frame.ts_ns - first) * timing.scale)
            _wait_until(clock, start + offset)
        yield frame


def replay_onto_bus(bus: Bus, path: PathLike, timing: ReplayTiming, clock: Clock) -> int:
    """Send every frame of a capture file onto ``bus``; return how many were sent."""
    count = 0
    with Replayer(path) as replayer:
        start = clock.now()
        for frame in _paced(replayer, timing, clock, start):
            bus.send(None, frame)
            count += 1
    return count


def _send_datagram(sock: socket.socket, payload: bytes, dst: tuple) -> None:
    with contextlib.suppress(OSError):
        sock.sendto(bytes(payload), dst)


def replay_to_udp(
    path: PathLike, host: str, port: int, timing: ReplayTiming, clock: Clock
) -> int:
    """Send each frame payload of a capture file to ``host:port``; return the count."""
    count = 0
    with Replayer(path) as replayer, socket.socket(
        socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP
    ) as sock:
        start = clock.now()
        for frame in _paced(replayer, timing, clock, start):
            _send_datagram(sock, frame.payload, (host, port))
            count += 1
    return count


def first_timestamp(paths: Iterable[PathLike]) -> int:
    """Smallest non-zero first timestamp across capture files, or 0 if none.

    Every file is opened, so an unreadable one raises.
    """
    found: Optional[int] = None
    for path in paths:
        with Replayer(path) as replayer:
            frame = replayer.next_frame()
        if frame is not None and frame.ts_ns > 0:
            if found is None or frame.ts_ns < found:
                found = frame.ts_ns
    return found if found is not None else 0


def _sync_stream(
    stream: UdpStream, timing: ReplayTiming, clock: Clock, start: int, origin: int
) -> None:
    try:
        replayer = Replayer(stream.file)
    except (OSError, ValueError):
        return
    with replayer, socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, _SNDBUF)
        _wait_until(clock, start)
        dst = (stream.host, stream.port)
        for frame in _paced(replayer, timing, clock, start, origin):
            _send_datagram(sock, frame.payload, dst)


def replay_sync(
    streams: Sequence[UdpStream], timing: ReplayTiming, clock: Clock
) -> list[threading.Thread]:
    """Replay several captures at once against one shared time origin.

    All files are checked first; then one thread per stream is started, all
    aligned to a start point slightly in the future. The threads are returned.
    """
    if not streams:
        raise ValueError("replay_sync needs at least one stream")
    origin = first_timestamp(s.file for s in streams)
    start = clock.now() + SYNC_START_SLACK_NS
    threads = []
    for stream in streams:
        thread = threading.Thread(
            target=_sync_stream, args=(stream, timing, clock, start, origin), daemon=True
        )
        thread.start()
        threads.append(thread)
    return threads