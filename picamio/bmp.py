"""Save an RGB image as an uncompressed 24-bit BMP file."""

from __future__ import annotations

import logging
import struct
import sys
from contextlib import contextmanager

from .types import PixelFormat

logger = logging.getLogger(__name__)

_FILE_HEADER = struct.Struct("<2sIHHI")
_IMAGE_HEADER = struct.Struct("<IIiHHIIIIII")
_OFFSET = _FILE_HEADER.size + _IMAGE_HEADER.size
_PELS_PER_METRE = 100000


@contextmanager
def _open_output(filename: str):
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
        return
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError("failed to open file " + filename) from exc
    with fp:
        yield fp


def bmp_save(mem, info, filename: str, options) -> None:
    """Write the first plane of ``mem``, an RGB888 image, to ``filename`` ("-" for stdout)."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise RuntimeError("pixel format for bmp should be RGB")

    line = info.width * 3
    pitch = (line + 3) & ~3
    padding = bytes(pitch - line)
    data = memoryview(mem[0]).cast("B")
    if info.height and len(data) < (info.height - 1) * info.stride + line:
        raise ValueError("image buffer too small")

    filesize = _OFFSET + info.height * pitch
    file_header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, _OFFSET)
    # A negative height makes the rows run top to bottom.
    image_header = _IMAGE_HEADER.pack(_IMAGE_HEADER.size, info.width, -info.height, 1, 24, 0, 0,
                                      _PELS_PER_METRE, _PELS_PER_METRE, 0, 0)

    with _open_output(filename) as fp:
        try:
            fp.write(file_header)
            fp.write(image_header)
        except OSError as exc:
            raise RuntimeError("failed to write BMP file") from exc
        for row in range(info.height):
            start = row * info.stride
            try:
                fp.write(data[start:start + line])
                if padding:
                    fp.write(padding)
            except OSError as exc:
                raise RuntimeError(f"failed to write BMP file, row {row}") from exc

    logger.debug("Wrote %d bytes to BMP file", filesize)