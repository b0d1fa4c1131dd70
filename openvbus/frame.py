"""Frames carried on a virtual bus."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class Proto(IntEnum):
    """Protocol of a frame."""

    ETH2 = 1
    CAN20 = 2
    CANFD = 3
    UDP = 4  # tag = (src_ip << 32) | (src_port << 16) | dst_port
    TCP = 5  # tag = direction: 0 client->server, 1 server->client


@dataclass
class Frame:
    """One unit of traffic: protocol, tag, timestamp and payload."""

    proto: int = 0
    tag: int = 0  # ETH: reserved; CAN: identifier
    ts_ns: int = 0
    payload: bytes = b""


def _nibble(char: str) -> int:
    if "0" <= char <= "9":
        return ord(char) - ord("0")
    if "a" <= char <= "f":
        return 10 + ord(char) - ord("a")
    if "A" <= char <= "F":
        return 10 + ord(char) - ord("A")
    return 0


def hex_to_bytes(hex_text: str) -> bytes:
    """Decode a hex string; odd length gives nothing, bad digits count as zero."""
    if len(hex_text) % 2:
        return b""
    pairs = zip(hex_text[::2], hex_text[1::2])
    return bytes((_nibble(hi) << 4) | _nibble(lo) for hi, lo in pairs)