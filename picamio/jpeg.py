"""Save YUV images as JPEG files carrying EXIF data and an optional thumbnail."""

from __future__ import annotations

import enum
import logging
import re
import struct
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import numpy as np
from PIL import Image

from .types import PixelFormat

logger = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE_STRING = "libcamera-apps"
EXIF_HEADER = bytes((0xFF, 0xD8, 0xFF, 0xE1))
_EXIF_PREAMBLE = b"Exif\x00\x00"
_THUMB_LIMIT = 60000


class ExifFormat(enum.IntEnum):
    """EXIF value formats, numbered as in the TIFF specification."""

    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10

    @property
    def size(self) -> int:
        return _FORMAT_SIZES[self]


_FORMAT_SIZES = {
    ExifFormat.BYTE: 1, ExifFormat.ASCII: 1, ExifFormat.SHORT: 2, ExifFormat.LONG: 4,
    ExifFormat.RATIONAL: 8, ExifFormat.SBYTE: 1, ExifFormat.UNDEFINED: 1,
    ExifFormat.SSHORT: 2, ExifFormat.SLONG: 4, ExifFormat.SRATIONAL: 8,
}

# Name -> (tag id, format, components); zero components means variable.
_TAGS: dict[str, tuple[int, ExifFormat, int]] = {
    "InteroperabilityIndex": (0x0001, ExifFormat.ASCII, 0),
    "GPSLatitudeRef": (0x0001, ExifFormat.ASCII, 0),
    "GPSLatitude": (0x0002, ExifFormat.RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, ExifFormat.ASCII, 0),
    "GPSLongitude": (0x0004, ExifFormat.RATIONAL, 3),
    "GPSAltitudeRef": (0x0005, ExifFormat.BYTE, 1),
    "GPSAltitude": (0x0006, ExifFormat.RATIONAL, 1),
    "ImageWidth": (0x0100, ExifFormat.SHORT, 1),
    "ImageLength": (0x0101, ExifFormat.SHORT, 1),
    "Compression": (0x0103, ExifFormat.SHORT, 1),
    "ImageDescription": (0x010E, ExifFormat.ASCII, 0),
    "Make": (0x010F, ExifFormat.ASCII, 0),
    "Model": (0x0110, ExifFormat.ASCII, 0),
    "Orientation": (0x0112, ExifFormat.SHORT, 1),
    "XResolution": (0x011A, ExifFormat.RATIONAL, 1),
    "YResolution": (0x011B, ExifFormat.RATIONAL, 1),
    "ResolutionUnit": (0x0128, ExifFormat.SHORT, 1),
    "Software": (0x0131, ExifFormat.ASCII, 0),
    "DateTime": (0x0132, ExifFormat.ASCII, 0),
    "Artist": (0x013B, ExifFormat.ASCII, 0),
    "JPEGInterchangeFormat": (0x0201, ExifFormat.LONG, 1),
    "JPEGInterchangeFormatLength": (0x0202, ExifFormat.LONG, 1),
    "YCbCrCoefficients": (0x0211, ExifFormat.UNDEFINED, 0),
    "Copyright": (0x8298, ExifFormat.ASCII, 0),
    "ExposureTime": (0x829A, ExifFormat.RATIONAL, 1),
    "FNumber": (0x829D, ExifFormat.RATIONAL, 1),
    "ISOSpeedRatings": (0x8827, ExifFormat.SHORT, 1),
    "DateTimeOriginal": (0x9003, ExifFormat.ASCII, 0),
    "DateTimeDigitized": (0x9004, ExifFormat.ASCII, 0),
    "ShutterSpeedValue": (0x9201, ExifFormat.SRATIONAL, 1),
    "ApertureValue": (0x9202, ExifFormat.RATIONAL, 1),
    "BrightnessValue": (0x9203, ExifFormat.SRATIONAL, 1),
    "ExposureBiasValue": (0x9204, ExifFormat.SRATIONAL, 1),
    "MaxApertureValue": (0x9205, ExifFormat.RATIONAL, 1),
    "SubjectDistance": (0x9206, ExifFormat.RATIONAL, 1),
    "FocalLength": (0x920A, ExifFormat.RATIONAL, 1),
    "UserComment": (0x9286, ExifFormat.UNDEFINED, 0),
    "FocalLengthIn35mmFilm": (0xA405, ExifFormat.SHORT, 1),
}

_IFD_NAMES = ("IFD0", "EXIF", "GPS", "EINT", "IFD1")
_EXIF_POINTER = 0x8769
_GPS_POINTER = 0x8825
_INTEROP_POINTER = 0xA005

# Formats some tags need that the tag table does not give them.
_EXIF_EXCEPTIONS = {0x0211: (ExifFormat.RATIONAL, 3)}


def _wrap_signed(value: int, bits: int) -> int:
    half = 1 << (bits - 1)
    return ((value + half) & ((1 << bits) - 1)) - half


_INT_RE = re.compile(r"\s*([+-]?\d+)")
_RATIONAL_RE = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")


def _read_int(text: str, what: str) -> tuple[int, int]:
    match = _INT_RE.match(text)
    if match is None:
        raise RuntimeError("failed to read EXIF " + what)
    return int(match.group(1)), match.end()


def _read_rational(text: str, what: str) -> tuple[int, int, int]:
    match = _RATIONAL_RE.match(text)
    if match is None:
        raise RuntimeError("failed to read EXIF " + what)
    return int(match.group(1)), int(match.group(2)), match.end()


def _reader_short(text, data, offset):
    value, n = _read_int(text, "unsigned short")
    struct.pack_into("<H", data, offset, value & 0xFFFF)
    return n


def _reader_sshort(text, data, offset):
    value, n = _read_int(text, "signed short")
    struct.pack_into("<h", data, offset, _wrap_signed(value, 16))
    return n


def _reader_long(text, data, offset):
    value, n = _read_int(text, "unsigned long")
    struct.pack_into("<I", data, offset, value & 0xFFFFFFFF)
    return n


def _reader_slong(text, data, offset):
    value, n = _read_int(text, "signed long")
    struct.pack_into("<i", data, offset, _wrap_signed(value, 32))
    return n


def _reader_rational(text, data, offset):
    num, den, n = _read_rational(text, "unsigned rational")
    struct.pack_into("<II", data, offset, num & 0xFFFFFFFF, den & 0xFFFFFFFF)
    return n


def _reader_srational(text, data, offset):
    num, den, n = _read_rational(text, "signed rational")
    struct.pack_into("<ii", data, offset, _wrap_signed(num, 32), _wrap_signed(den, 32))
    return n


_READERS: dict[ExifFormat, Callable[[str, bytearray, int], int]] = {
    ExifFormat.SHORT: _reader_short,
    ExifFormat.SSHORT: _reader_sshort,
    ExifFormat.LONG: _reader_long,
    ExifFormat.SLONG: _reader_slong,
    ExifFormat.RATIONAL: _reader_rational,
    ExifFormat.SRATIONAL: _reader_srational,
}


@dataclass
class ExifEntry:
    """One EXIF tag with its format, component count and little-endian value bytes."""

    tag: int
    format: ExifFormat
    components: int
    data: bytearray = field(default_factory=bytearray)

    def set_string(self, text: str) -> None:
        encoded = text.encode("utf-8")
        self.data = bytearray(encoded)
        self.components = len(encoded)
        self.format = ExifFormat.ASCII

    def set_short(self, value: int) -> None:
        struct.pack_into("<H", self.data, 0, int(value) & 0xFFFF)

    def set_long(self, value: int) -> None:
        struct.pack_into("<I", self.data, 0, int(value) & 0xFFFFFFFF)

    def set_rational(self, num: int, den: int) -> None:
        struct.pack_into("<II", self.data, 0, int(num) & 0xFFFFFFFF, int(den) & 0xFFFFFFFF)


_HEADER_RE = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")


class ExifData:
    """EXIF tags grouped by IFD, saved as an APP1 payload in Intel byte order."""

    def __init__(self):
        self.ifds: dict[str, dict[int, ExifEntry]] = {name: {} for name in _IFD_NAMES}

    def create_tag(self, ifd: str, tag: str) -> ExifEntry:
        """Return the entry for the named tag in ``ifd``, creating it if needed."""
        if ifd not in self.ifds:
            raise RuntimeError("bad IFD name " + ifd)
        try:
            tag_id, fmt, components = _TAGS[tag]
        except KeyError:
            raise RuntimeError("failed to allocate EXIF entry " + tag) from None
        entries = self.ifds[ifd]
        entry = entries.get(tag_id)
        if entry is None:
            size = components * fmt.size if fmt is not ExifFormat.ASCII else 0
            entry = ExifEntry(tag_id, fmt, components, bytearray(size))
            entries[tag_id] = entry
        return entry

    def read_tag(self, text: str) -> None:
        """Apply one ``IFD.Tag=value[,value...]`` setting."""
        match = _HEADER_RE.match(text)
        if match is None:
            raise RuntimeError("failed to read EXIF IFD and tag")
        ifd, tag_name = match.groups()
        if ifd not in self.ifds:
            raise RuntimeError("bad IFD name " + ifd)
        if tag_name not in _TAGS:
            logger.error("WARNING: no EXIF tag %s found - ignoring", tag_name)
            return
        consumed = match.end()
        entry = self.create_tag(ifd, tag_name)

        if entry.format is ExifFormat.UNDEFINED:
            if entry.tag in _EXIF_EXCEPTIONS:
                entry.format, entry.components = _EXIF_EXCEPTIONS[entry.tag]
                entry.data = bytearray()
            else:
                logger.error("WARNING: libexif format for tag %s undefined - treating as ASCII", tag_name)
                entry.format = ExifFormat.ASCII

        if entry.format is ExifFormat.ASCII:
            entry.set_string(text[consumed:])
            return
        reader = _READERS.get(entry.format)
        if reader is None:
            logger.error("WARNING: format for EXIF tag %s unknown - ignoring", tag_name)
            return

        item_size = entry.format.size
        if not entry.data or entry.components == 0:
            if entry.components == 0:
                entry.components = text[consumed:].count(",") + 1
            entry.data = bytearray(entry.components * item_size)
        for i in range(entry.components):
            if consumed >= len(text):
                raise RuntimeError("too few parameters for EXIF tag " + tag_name)
            consumed += reader(text[consumed:], entry.data, i * item_size) + 1

    def save(self) -> bytes:
        """Serialise to ``Exif\\0\\0`` followed by a little-endian TIFF structure."""
        exif = dict(self.ifds["EXIF"])
        gps = dict(self.ifds["GPS"])
        interop = dict(self.ifds["EINT"])
        ifd0 = dict(self.ifds["IFD0"])
        ifd1 = dict(self.ifds["IFD1"])

        # Pointer entries hold placeholders until the layout is known.
        if interop:
            exif[_INTEROP_POINTER] = ExifEntry(_INTEROP_POINTER, ExifFormat.LONG, 1, bytearray(4))
        if exif:
            ifd0[_EXIF_POINTER] = ExifEntry(_EXIF_POINTER, ExifFormat.LONG, 1, bytearray(4))
        if gps:
            ifd0[_GPS_POINTER] = ExifEntry(_GPS_POINTER, ExifFormat.LONG, 1, bytearray(4))

        order = [("IFD0", ifd0), ("EXIF", exif), ("GPS", gps), ("EINT", interop), ("IFD1", ifd1)]
        layout = [(name, entries) for name, entries in order if entries or name == "IFD0"]
        offsets = {}
        pos = 8
        for name, entries in layout:
            offsets[name] = pos
            pos += _ifd_size(entries)

        if "EINT" in offsets:
            exif[_INTEROP_POINTER].set_long(offsets["EINT"])
        if "EXIF" in offsets:
            ifd0[_EXIF_POINTER].set_long(offsets["EXIF"])
        if "GPS" in offsets:
            ifd0[_GPS_POINTER].set_long(offsets["GPS"])

        out = bytearray(b"II*\x00" + struct.pack("<I", 8))
        for name, entries in layout:
            next_offset = offsets["IFD1"] if name == "IFD0" and "IFD1" in offsets else 0
            out += _ifd_bytes(entries, offsets[name], next_offset)
        return _EXIF_PREAMBLE + bytes(out)


def _padded(length: int) -> int:
    return length + (length & 1)


def _ifd_size(entries: Mapping[int, ExifEntry]) -> int:
    extra = sum(_padded(len(e.data)) for e in entries.values() if len(e.data) > 4)
    return 2 + 12 * len(entries) + 4 + extra


def _ifd_bytes(entries: Mapping[int, ExifEntry], offset: int, next_offset: int) -> bytes:
    header = bytearray(struct.pack("<H", len(entries)))
    data_area = bytearray()
    data_start = offset + 2 + 12 * len(entries) + 4
    for tag in sorted(entries):
        entry = entries[tag]
        header += struct.pack("<HHI", entry.tag, int(entry.format), entry.components)
        if len(entry.data) <= 4:
            header += bytes(entry.data).ljust(4, b"\x00")
        else:
            header += struct.pack("<I", data_start + len(data_area))
            data_area += entry.data
            if len(entry.data) & 1:
                data_area += b"\x00"
    header += struct.pack("<I", next_offset)
    return bytes(header + data_area)


def _bytes_of(mem) -> np.ndarray:
    return np.frombuffer(memoryview(mem).cast("B"), dtype=np.uint8)


def _gather(data: np.ndarray, index: np.ndarray) -> np.ndarray:
    if index.size and int(index.max()) >= data.size:
        raise ValueError("image buffer too small")
    return data[index]


def _sample_planes(mem, info, output_width: int, output_height: int):
    data = _bytes_of(mem)
    scan = np.arange(output_height, dtype=np.int64)
    cols = (np.arange(output_width, dtype=np.int64) * info.width) // output_width
    if info.pixel_format is PixelFormat.YUYV:
        row_offset = ((scan * info.height) // output_height) * info.stride
        off = cols * 2
        aligned = off & ~3
        base = row_offset[:, None]
        return (_gather(data, base + off[None, :]),
                _gather(data, base + (aligned + 1)[None, :]),
                _gather(data, base + (aligned + 3)[None, :]))
    if info.pixel_format is PixelFormat.YUV420:
        stride2 = info.stride // 2
        u_start = info.stride * info.height
        v_start = u_start + stride2 * (info.height // 2)
        row_offset = ((scan * info.height) // output_height) * info.stride
        uv_offset = (((scan // 2) * info.height) // output_height) * stride2
        uv_cols = cols // 2
        return (_gather(data, row_offset[:, None] + cols[None, :]),
                _gather(data, u_start + uv_offset[:, None] + uv_cols[None, :]),
                _gather(data, v_start + uv_offset[:, None] + uv_cols[None, :]))
    raise RuntimeError("unsupported YUV format in JPEG encode")


def yuv_to_jpeg(mem, info, output_width: int, output_height: int, quality: int, restart: int) -> bytes:
    """Encode a YUYV or YUV420 image, resampled to the output size, as a JPEG."""
    y, u, v = _sample_planes(mem, info, output_width, output_height)
    image = Image.merge("YCbCr", [Image.fromarray(np.ascontiguousarray(p)) for p in (y, u, v)])
    params: dict[str, Any] = {"quality": min(max(int(quality), 1), 100)}
    if restart:
        params["restart_marker_blocks"] = int(restart)
    from io import BytesIO
    out = BytesIO()
    image.save(out, format="JPEG", **params)
    return out.getvalue()


def create_exif_data(mem, info, metadata: Mapping[str, Any], cam_model: str, options) -> tuple[bytes, bytes]:
    """Build the EXIF payload and, if ``options.thumb_quality`` is set, the thumbnail JPEG."""
    exif = ExifData()
    exif.create_tag("EXIF", "Make").set_string(MAKE_STRING)
    exif.create_tag("EXIF", "Model").set_string(cam_model)
    exif.create_tag("EXIF", "Software").set_string(SOFTWARE_STRING)
    time_string = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    for name in ("DateTime", "DateTimeOriginal", "DateTimeDigitized"):
        exif.create_tag("EXIF", name).set_string(time_string)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        logger.debug("Exposure time: %s", exposure_time)
        exif.create_tag("EXIF", "ExposureTime").set_rational(int(exposure_time), 1000000)
    ag = metadata.get("AnalogueGain")
    if ag is not None:
        dg = metadata.get("DigitalGain")
        gain = ag * (dg if dg is not None else 1.0)
        logger.debug("Ag %s Dg %s Total %s", ag, dg, gain)
        exif.create_tag("EXIF", "ISOSpeedRatings").set_short(int(100 * gain))
    lp = metadata.get("LensPosition")
    if lp is not None:
        exif.create_tag("EXIF", "SubjectDistance").set_rational(1000, int(1000.0 * lp))

    for item in options.exif:
        logger.debug("Processing EXIF item: %s", item)
        exif.read_tag(item)

    thumb = b""
    if options.thumb_quality:
        logger.debug("Thumbnail dimensions are %d x %d", options.thumb_width, options.thumb_height)
        exif.create_tag("IFD1", "ImageWidth").set_short(options.thumb_width)
        exif.create_tag("IFD1", "ImageLength").set_short(options.thumb_height)
        exif.create_tag("IFD1", "Compression").set_short(6)
        offset_entry = exif.create_tag("IFD1", "JPEGInterchangeFormat")
        offset_entry.set_long(0)
        length_entry = exif.create_tag("IFD1", "JPEGInterchangeFormatLength")
        length_entry.set_long(0)

        exif_len = len(exif.save())
        q = options.thumb_quality
        while q > 0:
            thumb = yuv_to_jpeg(mem[0], info, options.thumb_width, options.thumb_height, q, 0)
            if len(thumb) < _THUMB_LIMIT:
                break
            q -= 5
        logger.debug("Thumbnail size %d", len(thumb))
        if q <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")
        # The offset is relative to the TIFF header, after the 6-byte preamble.
        offset_entry.set_long(exif_len - 6)
        length_entry.set_long(len(thumb))

    return exif.save(), thumb


def _strip_header(jpeg: bytes) -> bytes:
    if jpeg[:2] != b"\xff\xd8":
        raise RuntimeError("encoder produced an invalid JPEG")
    pos = 2
    if jpeg[pos:pos + 2] == b"\xff\xe0":
        pos += 2 + struct.unpack(">H", jpeg[pos + 2:pos + 4])[0]
    return jpeg[pos:]


@contextmanager
def _open_output(filename: str, error_name: str):
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
        return
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError("failed to open file " + error_name) from exc
    with fp:
        yield fp


def jpeg_save(mem, info, metadata: Mapping[str, Any], filename: str, cam_model: str, options) -> None:
    """Write a JPEG with EXIF data (and thumbnail) to ``filename`` ("-" for stdout)."""
    if info.width & 1 or info.height & 1:
        raise RuntimeError("both width and height must be even")
    if len(mem) != 1:
        raise RuntimeError("only single plane YUV supported")

    exif_buffer, thumb = create_exif_data(mem, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(mem[0], info, info.width, info.height, options.quality, options.restart)
    logger.debug("JPEG size is %d", len(jpeg))
    logger.debug("EXIF data len %d", len(exif_buffer))

    length = len(exif_buffer) + len(thumb) + 2
    with _open_output(filename, options.output or filename) as fp:
        try:
            fp.write(EXIF_HEADER)
            fp.write(bytes(((length >> 8) & 0xFF, length & 0xFF)))
            fp.write(exif_buffer)
            fp.write(thumb)
            fp.write(_strip_header(jpeg))
        except OSError as exc:
            raise RuntimeError("failed to write file - output probably corrupt") from exc