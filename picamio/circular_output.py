"""Keep recent encoded frames in a ring buffer and write them out on close."""

from __future__ import annotations

import logging
import struct
import sys

from .output import Output, OutputFlag

logger = logging.getLogger(__name__)

_ALIGN = 16
_HEADER = struct.Struct("<I?3xq")


def _align_up(length: int) -> int:
    return (length + _ALIGN - 1) & ~(_ALIGN - 1)


class CircularBuffer:
    """A fixed-size byte ring buffer; one byte is always kept free."""

    def __init__(self, size: int):
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Remove and return the next ``n`` bytes."""
        parts = []
        if self._rptr + n >= self._size:
            parts.append(bytes(self._buf[self._rptr:]))
            n -= self._size - self._rptr
            self._rptr = 0
        parts.append(bytes(self._buf[self._rptr:self._rptr + n]))
        self._rptr += n
        return b"".join(parts)

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data) -> None:
        view = memoryview(data).cast("B")
        n = len(view)
        if n >= self._size:
            raise ValueError("data larger than circular buffer")
        offset = 0
        if self._wptr + n >= self._size:
            first = self._size - self._wptr
            self._buf[self._wptr:] = view[:first]
            offset = first
            n -= first
            self._wptr = 0
        self._buf[self._wptr:self._wptr + n] = view[offset:offset + n]
        self._wptr += n


class CircularOutput(Output):
    """Hold frames in a buffer of ``options.circular`` megabytes; save from the first keyframe on close."""

    def __init__(self, options):
        super().__init__(options)
        self._cb = CircularBuffer(options.circular << 20)
        self._owns_fp = False
        if options.output == "-":
            self._fp = sys.stdout.buffer
        elif options.output:
            try:
                self._fp = open(options.output, "wb")
            except OSError as exc:
                Output.close(self)
                raise RuntimeError("could not open output file") from exc
            self._owns_fp = True
        else:
            Output.close(self)
            raise RuntimeError("could not open output file")

    def output_buffer(self, mem, timestamp_us: int, flags: OutputFlag) -> None:
        view = memoryview(mem).cast("B")
        size = len(view)
        pad = (_ALIGN - size) & (_ALIGN - 1)
        while size + pad + _HEADER.size > self._cb.available():
            if self._cb.empty():
                raise RuntimeError("circular buffer too small")
            length, _, _ = _HEADER.unpack(self._cb.read(_HEADER.size))
            self._cb.skip(_align_up(length))
        self._cb.write(_HEADER.pack(size, bool(flags & OutputFlag.KEYFRAME), timestamp_us))
        self._cb.write(view)
        self._cb.pad(pad)

    def timestamp_ready(self, timestamp: int) -> None:
        """Timestamps are only written for the frames saved on close."""

    def _dump(self) -> None:
        total = frames = 0
        seen_keyframe = False
        while not self._cb.empty():
            length, keyframe, timestamp = _HEADER.unpack(self._cb.read(_HEADER.size))
            seen_keyframe |= keyframe
            if seen_keyframe:
                self._fp.write(self._cb.read(length))
                self._cb.skip((_ALIGN - length) & (_ALIGN - 1))
                total += length
                Output.timestamp_ready(self, timestamp)
                frames += 1
            else:
                self._cb.skip(_align_up(length))
        if self._owns_fp:
            self._fp.close()
        else:
            self._fp.flush()
        self._fp = None
        logger.info("Wrote %d bytes (%d frames)", total, frames)

    def close(self) -> None:
        if self._fp is not None:
            self._dump()
        super().close()