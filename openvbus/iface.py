"""Local capture interfaces attached to a bus by the front end."""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from openvbus.app_state import InterfaceDesc


@dataclass
class IfaceStats:
    rx_pkts: int = 0
    tx_pkts: int = 0


class Interface(ABC):
    """A capture backend that can be started and stopped."""

    name: str = ""

    @abstractmethod
    def start(self) -> bool:
        """Begin capturing; return whether it started."""

    @abstractmethod
    def stop(self) -> None:
        """Stop capturing."""

    @abstractmethod
    def stats(self) -> IfaceStats:
        """Return a snapshot of the packet counters."""


class MockInterface(Interface):
    """Interface that only tracks whether it is running."""

    name = "Mock"

    def __init__(self) -> None:
        self._stats = IfaceStats()
        self.running = False

    def start(self) -> bool:
        self.running = True
        return True

    def stop(self) -> None:
        self.running = False

    def stats(self) -> IfaceStats:
        return dataclasses.replace(self._stats)


def make_interface(desc: InterfaceDesc) -> Optional[Interface]:
    """Build the backend for ``desc.driver``; None if no local backend exists."""
    if desc.driver == "mock":
        return MockInterface()
    return None