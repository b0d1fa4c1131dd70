"""Capture files: record bus frames to disk and read them back."""

from __future__ import annotations

import os
import struct
import threading
from enum import Enum
from typing import BinaryIO, Iterator, Optional, Union

from openvbus.frame import Frame, Proto

PathLike = Union[str, "os.PathLike[str]"]

MAGIC = b"VBUSCAP\x00"
VERSION = 1

_FILE_HEADER = struct.Struct("<8sII")
# proto, flags, reserved, (pad), tag, ts_ns, len, (pad)
_RECORD_HEADER = struct.Struct("<BBH4xQQI4x")

FILE_HEADER_SIZE = _FILE_HEADER.size
RECORD_HEADER_SIZE = _RECORD_HEADER.size

_U64 = (1 << 64) - 1


class CaptureFormatError(ValueError):
    """The data is not a valid capture file or record."""


class ReplayMode(Enum):
    """How replay paces the recorded frames."""

    EXACT = "exact"
    BURST = "burst"
    SCALE = "scale"


def _to_proto(value: int) -> int:
    try:
        return Proto(value)
    except ValueError:
        return value


def encode_record(frame: Frame) -> bytes:
    """Serialise a frame as a record header followed by its payload."""
    payload = bytes(frame.payload)
    header = _RECORD_HEADER.pack(
        int(frame.proto) & 0xFF, 0, 0, frame.tag & _U64, frame.ts_ns & _U64, len(payload)
    )
    return header + payload


def decode_record_header(data: bytes) -> tuple[Frame, int]:
    """Parse a record header; return the frame without payload and the payload length."""
    if len(data) < RECORD_HEADER_SIZE:
        raise CaptureFormatError(
            f"record header needs {RECORD_HEADER_SIZE} bytes, got {len(data)}"
        )
    proto, _flags, _reserved, tag, ts_ns, length = _RECORD_HEADER.unpack_from(data)
    return Frame(proto=_to_proto(proto), tag=tag, ts_ns=ts_ns), length


class Recorder:
    """Writes frames to a capture file."""

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self._file: Optional[BinaryIO] = None
        self._lock = threading.Lock()
        if path is not None:
            self.open(path)

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self, path: PathLike) -> None:
        """Create the file and write its header; raises OSError on failure."""
        handle = open(path, "wb")
        try:
            handle.write(_FILE_HEADER.pack(MAGIC, VERSION, 0))
        except OSError:
            handle.close()
            raise
        with self._lock:
            previous, self._file = self._file, handle
        if previous is not None:
            previous.close()

    def close(self) -> None:
        with self._lock:
            handle, self._file = self._file, None
        if handle is not None:
            handle.close()

    def write(self, frame: Frame) -> None:
        """Append one frame; raises ValueError if the recorder is not open."""
        data = encode_record(frame)
        with self._lock:
            if self._file is None:
                raise ValueError("recorder is not open")
            self._file.write(data)

    def __enter__(self) -> "Recorder":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Replayer:
    """Reads frames back from a capture file."""

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self._file: Optional[BinaryIO] = None
        if path is not None:
            self.open(path)

    def open(self, path: PathLike) -> None:
        """Open a capture file and check its header."""
        handle = open(path, "rb")
        try:
            header = handle.read(FILE_HEADER_SIZE)
            if len(header) < FILE_HEADER_SIZE:
                raise CaptureFormatError("truncated capture header")
            magic, version, _reserved = _FILE_HEADER.unpack(header)
            if magic[:7] != MAGIC[:7]:
                raise CaptureFormatError("not a capture file")
            if version != VERSION:
                raise CaptureFormatError(f"unsupported capture version {version}")
        except BaseException:
            handle.close()
            raise
        self.close()
        self._file = handle

    def next_frame(self) -> Optional[Frame]:
        """Return the next frame, or None at the end or on a truncated record."""
        if self._file is None:
            return None
        header = self._file.read(RECORD_HEADER_SIZE)
        if len(header) < RECORD_HEADER_SIZE:
            return None
        frame, length = decode_record_header(header)
        payload = self._file.read(length) if length else b""
        if len(payload) < length:
            return None
        frame.payload = payload
        return frame

    def close(self) -> None:
        handle, self._file = self._file, None
        if handle is not None:
            handle.close()

    def __iter__(self) -> Iterator[Frame]:
        while (frame := self.next_frame()) is not None:
            yield frame

    def __enter__(self) -> "Replayer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()