"""Save a BGR888 image (bytes in R, G, B order) as a PNG file."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager

import numpy as np
from numpy.lib.stride_tricks import as_strided
from PIL import Image

from .types import PixelFormat

logger = logging.getLogger(__name__)


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


def _pixels(mem, info) -> np.ndarray:
    data = np.frombuffer(memoryview(mem).cast("B"), dtype=np.uint8)
    line = 3 * info.width
    if info.height and (info.height - 1) * info.stride + line > data.size:
        raise ValueError("image buffer too small")
    rows = as_strided(data, shape=(info.height, line), strides=(info.stride, 1), writeable=False)
    return np.ascontiguousarray(rows).reshape(info.height, info.width, 3)


def png_save(mem, info, filename: str, options) -> None:
    """Write the first plane of ``mem`` to ``filename`` ("-" for stdout) as an 8-bit RGB PNG."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise RuntimeError("pixel format for png should be BGR")

    image = Image.fromarray(_pixels(mem[0], info))
    with _open_output(filename) as fp:
        try:
            # Fast compression gives most of the size reduction at a fraction of the cost.
            image.save(fp, format="PNG", compress_level=1)
        except OSError as exc:
            raise RuntimeError("failed to write PNG file " + filename) from exc
    logger.debug("Wrote PNG file %s", filename)