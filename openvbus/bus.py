"""Virtual buses: an Ethernet hub and a CAN bus with serialisation delay."""

from __future__ import annotations

import dataclasses
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from openvbus.clock import Clock
from openvbus.frame import Frame, Proto
from openvbus.scheduler import Scheduler

FrameCallback = Callable[[Frame], None]

_NS_PER_S = 1_000_000_000


class Endpoint(ABC):
    """Something that receives frames delivered on a bus."""

    @abstractmethod
    def on_rx(self, frame: Frame) -> None:
        """Handle a delivered frame."""


@dataclass
class BusStats:
    """Frame counters of a bus."""

    rx_frames: int = 0
    tx_frames: int = 0
    drops: int = 0


class Bus(ABC):
    """Broadcast medium: a sent frame reaches every other connected endpoint.

    ``fwd_cb`` fires at once on the sender's thread; ``record_cb``, ``sub_cb``
    and the endpoints are reached through the scheduler after the delay.
    """

    def __init__(self, scheduler: Scheduler, clock: Clock) -> None:
        self.scheduler = scheduler
        self.clock = clock
        self.stats = BusStats()
        self.record_cb: Optional[FrameCallback] = None
        self.sub_cb: Optional[FrameCallback] = None
        self.fwd_cb: Optional[FrameCallback] = None
        self._endpoints: list[Endpoint] = []
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()

    def connect(self, endpoint: Endpoint) -> None:
        with self._lock:
            self._endpoints.append(endpoint)

    def disconnect(self, endpoint: Endpoint) -> None:
        with self._lock:
            self._endpoints = [ep for ep in self._endpoints if ep is not endpoint]

    @abstractmethod
    def delivery_delay(self, frame: Frame) -> int:
        """Time in nanoseconds the frame takes on the wire."""

    def _stamp(self, frame: Frame, now: int) -> Frame:
        return dataclasses.replace(frame, ts_ns=now)

    def send(self, src: Optional[Endpoint], frame: Frame) -> None:
        """Put a frame on the bus on behalf of ``src`` (None for external)."""
        now = self.clock.now()
        deliver_at = now + self.delivery_delay(frame)
        frame = self._stamp(frame, now)

        with self._stats_lock:
            self.stats.tx_frames += 1

        with self._lock:
            targets = [ep for ep in self._endpoints if ep is not src]
            record_cb, sub_cb, fwd_cb = self.record_cb, self.sub_cb, self.fwd_cb

        if fwd_cb is not None:
            fwd_cb(frame)

        def deliver() -> None:
            if record_cb is not None:
                record_cb(frame)
            if sub_cb is not None:
                sub_cb(frame)
            for endpoint in targets:
                endpoint.on_rx(frame)
                with self._stats_lock:
                    self.stats.rx_frames += 1

        self.scheduler.post(deliver_at, deliver)


class EthHub(Bus):
    """Ethernet hub with a fixed link rate."""

    FRAMING_BYTES = 18

    def __init__(self, scheduler: Scheduler, clock: Clock, link_bps: int) -> None:
        super().__init__(scheduler, clock)
        self.link_bps = link_bps

    def delivery_delay(self, frame: Frame) -> int:
        bits = (len(frame.payload) + self.FRAMING_BYTES) * 8
        return bits * _NS_PER_S // self.link_bps if self.link_bps > 0 else 0

    def _stamp(self, frame: Frame, now: int) -> Frame:
        return dataclasses.replace(frame, proto=Proto.ETH2, ts_ns=now)


class CanBus(Bus):
    """CAN 2.0 / CAN FD bus with a fixed bitrate."""

    CAN20_OVERHEAD_BITS = 43
    CANFD_OVERHEAD_BITS = 67

    def __init__(self, scheduler: Scheduler, clock: Clock, bitrate: int) -> None:
        super().__init__(scheduler, clock)
        self.bitrate = bitrate

    def delivery_delay(self, frame: Frame) -> int:
        overhead = (
            self.CANFD_OVERHEAD_BITS if frame.proto == Proto.CANFD else self.CAN20_OVERHEAD_BITS
        )
        bits = overhead + len(frame.payload) * 8
        return bits * _NS_PER_S // self.bitrate if self.bitrate > 0 else 0

    def _stamp(self, frame: Frame, now: int) -> Frame:
        proto = Proto.CANFD if frame.proto == Proto.CANFD else Proto.CAN20
        return dataclasses.replace(frame, proto=proto, ts_ns=now)