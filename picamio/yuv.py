"""Save uncompressed YUV420 or RGB data from YUV420, YUYV or RGB images."""

from __future__ import annotations

import sys
from contextlib import contextmanager

import numpy as np
from numpy.lib.stride_tricks import as_strided

from .types import PixelFormat


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


def _rows(data: np.ndarray, offset: int, rows: int, stride: int, width: int) -> np.ndarray:
    if rows <= 0 or width <= 0:
        return np.zeros((max(rows, 0), max(width, 0)), dtype=np.uint8)
    if offset + (rows - 1) * stride + width > data.size:
        raise ValueError("image buffer too small")
    return as_strided(data[offset:], shape=(rows, width), strides=(stride, 1), writeable=False)


def _bytes(mem) -> np.ndarray:
    return np.frombuffer(memoryview(mem).cast("B"), dtype=np.uint8)


def _write_planes(filename: str, planes) -> None:
    with _open_output(filename) as fp:
        try:
            for plane in planes:
                fp.write(np.ascontiguousarray(plane).tobytes())
        except OSError as exc:
            raise RuntimeError("failed to write file " + filename) from exc


def _yuv420_save(mem, info, filename: str, options) -> None:
    if options.encoding != "yuv420":
        raise RuntimeError("output format " + options.encoding + " not supported")
    w, h, stride = info.width, info.height, info.stride
    if w & 1 or h & 1:
        raise RuntimeError("both width and height must be even")
    if len(mem) != 1:
        raise RuntimeError("incorrect number of planes in YUV420 data")
    data = _bytes(mem[0])
    y = _rows(data, 0, h, stride, w)
    u_offset = stride * h
    v_offset = u_offset + (stride // 2) * (h // 2)
    u = _rows(data, u_offset, h // 2, stride // 2, w // 2)
    v = _rows(data, v_offset, h // 2, stride // 2, w // 2)
    _write_planes(filename, (y, u, v))


def _yuyv_save(mem, info, filename: str, options) -> None:
    if options.encoding != "yuv420":
        raise RuntimeError("output format " + options.encoding + " not supported")
    if info.width & 1 or info.height & 1:
        raise RuntimeError("both width and height must be even")
    packed = _rows(_bytes(mem[0]), 0, info.height, info.stride, 2 * info.width)
    y = packed[:, 0::2]
    u = packed[0::2, 1::4]
    v = packed[0::2, 3::4]
    _write_planes(filename, (y, u, v))


def _rgb_save(mem, info, filename: str, options) -> None:
    if options.encoding != "rgb":
        raise RuntimeError("encoding should be set to rgb")
    rows = _rows(_bytes(mem[0]), 0, info.height, info.stride, 3 * info.width)
    _write_planes(filename, (rows,))


def yuv_save(mem, info, filename: str, options) -> None:
    """Write raw planar YUV420 (from YUV420 or YUYV) or packed RGB to ``filename``."""
    fmt = info.pixel_format
    if fmt is PixelFormat.YUYV:
        _yuyv_save(mem, info, filename, options)
    elif fmt is PixelFormat.YUV420:
        _yuv420_save(mem, info, filename, options)
    elif fmt in (PixelFormat.BGR888, PixelFormat.RGB888):
        _rgb_save(mem, info, filename, options)
    else:
        raise RuntimeError("unrecognised YUV/RGB save format")