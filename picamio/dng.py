"""Save raw Bayer images as DNG files with a small greyscale thumbnail."""

from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.lib.stride_tricks import as_strided

from .types import PixelFormat

logger = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE_STRING = "libcamera-still"

TIFF_RGGB = (0, 1, 1, 2)
TIFF_GRBG = (1, 0, 2, 1)
TIFF_BGGR = (2, 1, 1, 0)
TIFF_GBRG = (1, 2, 0, 1)

_COMPRESS_OFFSET = 2048


@dataclass(frozen=True)
class BayerFormat:
    """How a raw pixel format is laid out: bit depth, colour order and packing."""

    name: str
    bits: int
    order: tuple[int, int, int, int]
    packed: bool
    compressed: bool


BAYER_FORMATS: dict[PixelFormat, BayerFormat] = {
    PixelFormat.SRGGB10_CSI2P: BayerFormat("RGGB-10", 10, TIFF_RGGB, True, False),
    PixelFormat.SGRBG10_CSI2P: BayerFormat("GRBG-10", 10, TIFF_GRBG, True, False),
    PixelFormat.SBGGR10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.SGBRG10_CSI2P: BayerFormat("GBRG-10", 10, TIFF_GBRG, True, False),
    PixelFormat.SRGGB10: BayerFormat("RGGB-10", 10, TIFF_RGGB, False, False),
    PixelFormat.SGRBG10: BayerFormat("GRBG-10", 10, TIFF_GRBG, False, False),
    PixelFormat.SBGGR10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.SGBRG10: BayerFormat("GBRG-10", 10, TIFF_GBRG, False, False),
    PixelFormat.SRGGB12_CSI2P: BayerFormat("RGGB-12", 12, TIFF_RGGB, True, False),
    PixelFormat.SGRBG12_CSI2P: BayerFormat("GRBG-12", 12, TIFF_GRBG, True, False),
    PixelFormat.SBGGR12_CSI2P: BayerFormat("BGGR-12", 12, TIFF_BGGR, True, False),
    PixelFormat.SGBRG12_CSI2P: BayerFormat("GBRG-12", 12, TIFF_GBRG, True, False),
    PixelFormat.SRGGB12: BayerFormat("RGGB-12", 12, TIFF_RGGB, False, False),
    PixelFormat.SGRBG12: BayerFormat("GRBG-12", 12, TIFF_GRBG, False, False),
    PixelFormat.SBGGR12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),
    PixelFormat.SGBRG12: BayerFormat("GBRG-12", 12, TIFF_GBRG, False, False),
    PixelFormat.SRGGB16: BayerFormat("RGGB-16", 16, TIFF_RGGB, False, False),
    PixelFormat.SGRBG16: BayerFormat("GRBG-16", 16, TIFF_GRBG, False, False),
    PixelFormat.SBGGR16: BayerFormat("BGGR-16", 16, TIFF_BGGR, False, False),
    PixelFormat.SGBRG16: BayerFormat("GBRG-16", 16, TIFF_GBRG, False, False),
    PixelFormat.R10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.R10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.R12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),
    PixelFormat.RGGB16_PISP_COMP1: BayerFormat("RGGB-16-PISP", 16, TIFF_RGGB, False, True),
    PixelFormat.GRBG16_PISP_COMP1: BayerFormat("GRBG-16-PISP", 16, TIFF_GRBG, False, True),
    PixelFormat.GBRG16_PISP_COMP1: BayerFormat("GBRG-16-PISP", 16, TIFF_GBRG, False, True),
    PixelFormat.BGGR16_PISP_COMP1: BayerFormat("BGGR-16-PISP", 16, TIFF_BGGR, False, True),
}


def _byte_rows(src, info, row_bytes: int) -> np.ndarray:
    data = np.frombuffer(memoryview(src).cast("B"), dtype=np.uint8)
    height = info.height
    if height <= 0 or row_bytes <= 0:
        return np.zeros((max(height, 0), max(row_bytes, 0)), dtype=np.uint8)
    if (height - 1) * info.stride + row_bytes > data.size:
        raise ValueError("image buffer too small")
    view = as_strided(data, shape=(height, row_bytes), strides=(info.stride, 1), writeable=False)
    return np.ascontiguousarray(view)


def unpack_10bit(src, info) -> np.ndarray:
    """Unpack CSI-2 10-bit data (4 pixels in 5 bytes) into a (height, width) uint16 array."""
    width, height = info.width, info.height
    groups = (width + 3) // 4
    rows = _byte_rows(src, info, groups * 5).reshape(height, groups, 5).astype(np.uint16)
    low = rows[..., 4]
    pixels = np.stack([(rows[..., k] << 2) | ((low >> (2 * k)) & 3) for k in range(4)], axis=-1)
    return pixels.reshape(height, groups * 4)[:, :width].astype(np.uint16)


def unpack_12bit(src, info) -> np.ndarray:
    """Unpack CSI-2 12-bit data (2 pixels in 3 bytes) into a (height, width) uint16 array."""
    width, height = info.width, info.height
    groups = (width + 1) // 2
    rows = _byte_rows(src, info, groups * 3).reshape(height, groups, 3).astype(np.uint16)
    low = rows[..., 2]
    pixels = np.stack([(rows[..., k] << 4) | ((low >> (4 * k)) & 15) for k in range(2)], axis=-1)
    return pixels.reshape(height, groups * 2)[:, :width].astype(np.uint16)


def unpack_16bit(src, info) -> np.ndarray:
    """Read little-endian 16-bit pixels into a (height, width) uint16 array."""
    rows = _byte_rows(src, info, 2 * info.width)
    return rows.view("<u2").reshape(info.height, info.width).astype(np.uint16)


def _dequantize(q: np.ndarray, qmode: np.ndarray) -> np.ndarray:
    mode0 = np.where(q < 320, 16 * q, 32 * (q - 160))
    mode3 = np.where(q < 94, 256 * q, np.minimum(0xFFFF, 512 * (q - 47)))
    result = np.select([qmode == 0, qmode == 1, qmode == 2], [mode0, 64 * q, 128 * q], mode3)
    return result & 0xFFFF


def _sub_block(w: np.ndarray) -> np.ndarray:
    w = w.astype(np.int64)
    qmode = w & 3
    field0 = (w >> 2) & 511
    field1 = (w >> 11) & 127
    field2 = (w >> 18) & 127
    field3 = (w >> 25) & 127
    special = (qmode == 2) & (field0 >= 384)
    high = field1 >= 64
    q1 = np.where(special, field0, np.where(high, field0, field0 + 64 - field1))
    q2 = np.where(special, field1 + 384, np.where(high, field0 + field1 - 64, field0))
    p1 = np.maximum(0, q1 - 64)
    p1 = np.where(qmode == 2, np.minimum(384, p1), p1)
    p2 = np.maximum(0, q2 - 64)
    p2 = np.where(qmode == 2, np.minimum(384, p2), p2)
    q0 = p1 + field2
    q3 = p2 + field3

    mode3 = qmode == 3
    pack0 = (w >> 2) & 32767
    pack1 = (w >> 17) & 32767
    q0 = np.where(mode3, (pack0 & 15) + 16 * ((pack0 >> 8) // 11), q0)
    q1 = np.where(mode3, (pack0 >> 4) % 176, q1)
    q2 = np.where(mode3, (pack1 & 15) + 16 * ((pack1 >> 8) // 11), q2)
    q3 = np.where(mode3, (pack1 >> 4) % 176, q3)

    q = np.stack([q0, q1, q2, q3], axis=-1)
    return _dequantize(q, qmode[..., None])


def uncompress(src, info) -> np.ndarray:
    """Decompress PiSP mode-1 data into a (height, width rounded up to 8) uint16 array."""
    blocks = (info.width + 7) // 8
    rows = _byte_rows(src, info, blocks * 8)
    words = rows.view("<u4").reshape(info.height, blocks, 2)
    out = np.empty((info.height, blocks, 8), dtype=np.int64)
    out[..., 0::2] = _sub_block(words[..., 0])
    out[..., 1::2] = _sub_block(words[..., 1])
    out = np.minimum(0xFFFF, out + _COMPRESS_OFFSET)
    return out.reshape(info.height, blocks * 8).astype(np.uint16)


class Matrix:
    """A 3x3 matrix held row by row in ``m``."""

    def __init__(self, *args):
        if not args:
            self.m = (0.0,) * 9
        elif len(args) == 9:
            self.m = tuple(float(v) for v in args)
        else:
            raise TypeError("Matrix takes 0 or 9 values")

    @classmethod
    def diagonal(cls, d0, d1, d2) -> "Matrix":
        return cls(d0, 0, 0, 0, d1, 0, 0, 0, d2)

    def transpose(self) -> "Matrix":
        m = self.m
        return Matrix(m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8])

    def cofactor(self) -> "Matrix":
        m = self.m
        return Matrix(m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
                      -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
                      m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3])

    def adjugate(self) -> "Matrix":
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.m
        return (m[0] * (m[4] * m[8] - m[5] * m[7])
                - m[1] * (m[3] * m[8] - m[5] * m[6])
                + m[2] * (m[3] * m[7] - m[4] * m[6]))

    def inverse(self) -> "Matrix":
        det = self.determinant()
        if det == 0:
            raise ValueError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __mul__(self, other):
        if isinstance(other, Matrix):
            a, b = self.m, other.m
            return Matrix(*(
                a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
                for i in range(3) for j in range(3)
            ))
        if isinstance(other, (int, float)):
            return Matrix(*(v * other for v in self.m))
        return NotImplemented

    def __rmul__(self, other):
        if isinstance(other, (int, float)):
            return self * other
        return NotImplemented

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.m == other.m

    def __repr__(self) -> str:
        return f"Matrix{self.m!r}"


_DEFAULT_CCM = Matrix(1.90255, -0.77478, -0.12777,
                      -0.31338, 1.88197, -0.56858,
                      -0.06001, -0.61785, 1.67786)
_RGB2XYZ = Matrix(0.4124564, 0.3575761, 0.1804375,
                  0.2126729, 0.7151522, 0.0721750,
                  0.0193339, 0.1191920, 0.9503041)

# TIFF field types.
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10


@dataclass(frozen=True)
class _Field:
    tag: int
    type: int
    count: int
    payload: bytes


def _shorts(tag: int, *values: int) -> _Field:
    return _Field(tag, _SHORT, len(values), struct.pack(f"<{len(values)}H", *values))


def _longs(tag: int, *values: int) -> _Field:
    return _Field(tag, _LONG, len(values), struct.pack(f"<{len(values)}I", *values))


def _bytes_field(tag: int, values: Sequence[int]) -> _Field:
    return _Field(tag, _BYTE, len(values), bytes(values))


def _ascii(tag: int, text: str) -> _Field:
    data = text.encode("utf-8") + b"\x00"
    return _Field(tag, _ASCII, len(data), data)


def _fraction(value: float, signed: bool) -> tuple[int, int]:
    limit = 0x7FFFFFFF if signed else 0xFFFFFFFF
    lower = -limit if signed else 0
    if math.isnan(value):
        return 0, 1
    if math.isinf(value):
        return (limit if value > 0 else lower), 1
    frac = Fraction(value).limit_denominator(1_000_000)
    return max(lower, min(limit, frac.numerator)), frac.denominator


def _rationals(tag: int, values: Sequence[float]) -> _Field:
    parts = [_fraction(v, False) for v in values]
    payload = b"".join(struct.pack("<II", n, d) for n, d in parts)
    return _Field(tag, _RATIONAL, len(parts), payload)


def _srationals(tag: int, values: Sequence[float]) -> _Field:
    parts = [_fraction(v, True) for v in values]
    payload = b"".join(struct.pack("<ii", n, d) for n, d in parts)
    return _Field(tag, _SRATIONAL, len(parts), payload)


def _even(n: int) -> int:
    return n + (n & 1)


def _ifd_size(fields: Sequence[_Field]) -> int:
    extra = sum(_even(len(f.payload)) for f in fields if len(f.payload) > 4)
    return 2 + 12 * len(fields) + 4 + extra


def _ifd_bytes(fields: Sequence[_Field], offset: int) -> bytes:
    ordered = sorted(fields, key=lambda f: f.tag)
    header = bytearray(struct.pack("<H", len(ordered)))
    data_area = bytearray()
    data_start = offset + 2 + 12 * len(ordered) + 4
    for f in ordered:
        header += struct.pack("<HHI", f.tag, f.type, f.count)
        if len(f.payload) <= 4:
            header += f.payload.ljust(4, b"\x00")
        else:
            header += struct.pack("<I", data_start + len(data_area))
            data_area += f.payload
            if len(f.payload) & 1:
                data_area += b"\x00"
    header += struct.pack("<I", 0)
    return bytes(header + data_area)


def _thumbnail(buf: np.ndarray, info, bits: int) -> np.ndarray:
    th, tw = info.height >> 4, info.width >> 4
    if th == 0 or tw == 0:
        return np.zeros((th, tw, 3), dtype=np.uint8)
    b = buf.astype(np.int64)
    grey = (b[0:16 * th:16, 0:16 * tw:16] + b[0:16 * th:16, 1:16 * tw:16]
            + b[1:16 * th:16, 0:16 * tw:16] + b[1:16 * th:16, 1:16 * tw:16])
    grey = ((grey << 14) & 0xFFFFFFFF) >> bits
    grey = np.floor(np.sqrt(grey.astype(np.float64))).astype(np.int64) & 0xFF
    return np.repeat(grey.astype(np.uint8)[..., None], 3, axis=-1)


def _black_levels(bayer: BayerFormat, metadata: Mapping[str, Any]) -> list[float]:
    scale = (1 << bayer.bits) / 65536.0
    levels = [4096 * scale] * 4
    bl = metadata.get("SensorBlackLevels")
    if bl is None:
        logger.error("WARNING: no black level found, using default")
        return levels
    # Levels arrive as R, Gr, Gb, B; re-order them for the actual Bayer order.
    for i in range(4):
        j = bayer.order[i]
        j = 0 if j == 0 else (3 if j == 2 else 1 + bool(bayer.order[i ^ 1]))
        levels[j] = bl[i] * scale
    return levels


def dng_save(mem, info, metadata: Mapping[str, Any], filename: str, cam_model: str, options) -> None:
    """Write the raw image in ``mem[0]`` to ``filename`` as a DNG file."""
    bayer = BAYER_FORMATS.get(info.pixel_format)
    if bayer is None:
        raise RuntimeError("unsupported Bayer format")
    logger.info("Bayer format is %s", bayer.name)

    src = mem[0]
    if bayer.compressed:
        buf = uncompress(src, info)
    elif bayer.packed:
        buf = unpack_10bit(src, info) if bayer.bits == 10 else unpack_12bit(src, info)
    else:
        buf = unpack_16bit(src, info)

    black_levels = _black_levels(bayer, metadata)

    exposure = metadata.get("ExposureTime")
    exp_time = 10000.0
    if exposure is not None:
        exp_time = float(exposure)
    else:
        logger.error("WARNING: default to exposure time of %gus", exp_time)
    exp_time /= 1e6

    ag = metadata.get("AnalogueGain")
    iso = 100
    if ag is not None:
        iso = int(ag * 100.0) & 0xFFFF
    else:
        logger.error("WARNING: default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix.diagonal(1, 1, 1)
    cg = metadata.get("ColourGains")
    if cg is not None:
        neutral[0] = 1.0 / cg[0]
        neutral[2] = 1.0 / cg[1]
        wb_gains = Matrix.diagonal(cg[0], 1, cg[1])

    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(*ccm_values[:9])
    else:
        ccm = _DEFAULT_CCM
        logger.error("WARNING: no CCM metadata found")

    cam_xyz = (_RGB2XYZ * ccm * wb_gains).inverse()
    logger.debug("Black levels %s, exposure time %gus, ISO %d", black_levels, exp_time * 1e6, iso)
    logger.debug("Neutral %s", neutral)
    logger.debug("Cam_XYZ: %s", cam_xyz.m)

    thumb = _thumbnail(buf, info, bayer.bits)
    thumb_bytes = thumb.tobytes()
    raw_bytes = np.ascontiguousarray(buf[:, :info.width]).astype("<u2").tobytes()

    exif_fields = [
        _ascii(36867, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
        _shorts(34855, iso),
        _rationals(33434, [exp_time]),
    ]
    lp = metadata.get("LensPosition")
    if lp is not None:
        dist = 1.0 / lp if lp > 0.0 else math.inf
        exif_fields.append(_rationals(37382, [dist]))

    thumb_off = 8
    raw_off = _even(thumb_off + len(thumb_bytes))
    ifd0_off = _even(raw_off + len(raw_bytes))
    white = (1 << bayer.bits) - 1

    def ifd0_fields(sub_off: int, exif_off: int) -> list[_Field]:
        return [
            _longs(254, 1),
            _longs(256, info.width >> 4),
            _longs(257, info.height >> 4),
            _shorts(258, 8, 8, 8),
            _shorts(259, 1),
            _shorts(262, 2),
            _ascii(271, MAKE_STRING),
            _ascii(272, cam_model),
            _longs(273, thumb_off),
            _shorts(274, 1),
            _shorts(277, 3),
            _longs(278, max(info.height >> 4, 1)),
            _longs(279, len(thumb_bytes)),
            _shorts(284, 1),
            _ascii(305, SOFTWARE_STRING),
            _longs(330, sub_off),
            _longs(34665, exif_off),
            _bytes_field(50706, (1, 1, 0, 0)),
            _bytes_field(50707, (1, 0, 0, 0)),
            _ascii(50708, MAKE_STRING + " " + cam_model),
            _srationals(50721, cam_xyz.m),
            _rationals(50728, neutral),
            _shorts(50778, 21),
        ]

    sub_fields = [
        _longs(254, 0),
        _longs(256, info.width),
        _longs(257, info.height),
        _shorts(258, 16),
        _shorts(259, 1),
        _shorts(262, 32803),
        _longs(273, raw_off),
        _shorts(277, 1),
        _longs(278, max(info.height, 1)),
        _longs(279, len(raw_bytes)),
        _shorts(284, 1),
        _shorts(33421, 2, 2),
        _bytes_field(33422, bayer.order),
        _shorts(50713, 2, 2),
        _rationals(50714, black_levels),
        _longs(50717, white),
    ]

    sub_off = ifd0_off + _ifd_size(ifd0_fields(0, 0))
    exif_off = sub_off + _ifd_size(sub_fields)

    out = bytearray(b"II*\x00" + struct.pack("<I", ifd0_off))
    out += thumb_bytes
    out += bytes(raw_off - len(out))
    out += raw_bytes
    out += bytes(ifd0_off - len(out))
    out += _ifd_bytes(ifd0_fields(sub_off, exif_off), ifd0_off)
    out += _ifd_bytes(sub_fields, sub_off)
    out += _ifd_bytes(exif_fields, exif_off)

    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError("could not open file " + filename) from exc
    with fp:
        try:
            fp.write(out)
        except OSError as exc:
            raise RuntimeError("error writing DNG image data") from exc