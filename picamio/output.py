"""Base video stream output: keyframe gating, pause handling, timestamps and metadata."""

from __future__ import annotations

import enum
import logging
import sys
from collections import deque
from typing import Any, Mapping, TextIO

logger = logging.getLogger(__name__)


class OutputFlag(enum.IntFlag):
    """Flags describing a buffer handed to an output."""

    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def _value_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:f}"
    if isinstance(value, (list, tuple)):
        return "[ " + ", ".join(_value_to_string(item) for item in value) + " ]"
    return str(value)


def _div_trunc(value: int, divisor: int) -> tuple[int, int]:
    quotient = abs(value) // divisor
    if value < 0:
        quotient = -quotient
    return quotient, value - quotient * divisor


def start_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever opens a metadata stream in the given format."""
    if fmt == "json":
        out.write("[\n")
        out.flush()


def write_metadata(out: TextIO, fmt: str, metadata: Mapping[str, Any], first_write: bool) -> None:
    """Write one frame's metadata as text lines or as a JSON object."""
    if fmt == "txt":
        for name, value in metadata.items():
            out.write(f"{name}={_value_to_string(value)}\n")
        out.write("\n")
    else:
        if not first_write:
            out.write(",\n")
        out.write("{")
        first_done = False
        for name, value in metadata.items():
            text = _value_to_string(value)
            quote = '"' if "/" in text else ""
            out.write(("," if first_done else "") + "\n" + f'    "{name}": {quote}{text}{quote}')
            first_done = True
        out.write("\n}")
    out.flush()


def stop_metadata_output(out: TextIO, fmt: str) -> None:
    """Write whatever closes a metadata stream in the given format."""
    if fmt == "json":
        out.write("\n]\n")
        out.flush()


class Output:
    """An output that accepts encoded buffers but writes none of them.

    Subclasses override ``output_buffer`` to send the data somewhere.
    """

    def __init__(self, options):
        self.options = options
        self._fp_timestamps: TextIO | None = None
        self._state = _State.WAITING_KEYFRAME
        self._time_offset = 0
        self._last_timestamp = 0
        self._metadata_out: TextIO = sys.stdout
        self._metadata_file: TextIO | None = None
        self._metadata_started = False
        self._metadata_queue: deque[Mapping[str, Any]] = deque()
        self._closed = False

        if options.save_pts:
            try:
                self._fp_timestamps = open(options.save_pts, "w")
            except OSError as exc:
                raise RuntimeError("Failed to open timestamp file " + options.save_pts) from exc
            self._fp_timestamps.write("# timecode format v2\n")

        if options.metadata and options.metadata != "-":
            try:
                self._metadata_file = open(options.metadata, "w")
            except OSError as exc:
                self._close_timestamps()
                raise RuntimeError("Failed to open metadata file " + options.metadata) from exc
            self._metadata_out = self._metadata_file
            start_metadata_output(self._metadata_out, options.metadata_format)

        self._enable = not options.pause

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def signal(self) -> None:
        """Toggle whether output is enabled."""
        self._enable = not self._enable

    def output_ready(self, mem, timestamp_us: int, keyframe: bool) -> None:
        """Accept an encoded buffer, gating on keyframes and hiding pauses in the timestamps."""
        flags = OutputFlag.KEYFRAME if keyframe else OutputFlag.NONE
        if not self._enable:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= OutputFlag.RESTART
        if self._state is not _State.RUNNING:
            return

        if flags & OutputFlag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self.output_buffer(mem, self._last_timestamp, flags)

        if self._fp_timestamps is not None:
            self.timestamp_ready(self._last_timestamp)

        if self.options.metadata:
            if not self._metadata_queue:
                raise RuntimeError("no metadata queued for output buffer")
            metadata = self._metadata_queue.popleft()
            write_metadata(self._metadata_out, self.options.metadata_format, metadata,
                           not self._metadata_started)
            self._metadata_started = True

    def metadata_ready(self, metadata: Mapping[str, Any]) -> None:
        """Queue the metadata that belongs to the next buffer to be output."""
        if not self.options.metadata:
            return
        self._metadata_queue.append(metadata)

    def output_buffer(self, mem, timestamp_us: int, flags: OutputFlag) -> None:
        """Send a buffer somewhere; the base output discards it."""

    def timestamp_ready(self, timestamp: int) -> None:
        """Record a timestamp, in milliseconds with three decimals, to the timestamp file."""
        if self._fp_timestamps is None:
            return
        whole, frac = _div_trunc(timestamp, 1000)
        self._fp_timestamps.write(f"{whole}.{frac:03d}\n")
        if self.options.flush:
            self._fp_timestamps.flush()

    def _close_timestamps(self) -> None:
        if self._fp_timestamps is not None:
            self._fp_timestamps.close()
            self._fp_timestamps = None

    def close(self) -> None:
        """Finish the timestamp and metadata files."""
        if self._closed:
            return
        self._closed = True
        self._close_timestamps()
        if self.options.metadata:
            stop_metadata_output(self._metadata_out, self.options.metadata_format)
        if self._metadata_file is not None:
            self._metadata_file.close()
            self._metadata_file = None