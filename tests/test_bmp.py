import struct

import pytest
from PIL import Image

from picamio.bmp import bmp_save
from picamio.types import PixelFormat, StillOptions, StreamInfo


def _image(width, height, stride):
    buf = bytearray(stride * height)
    pixels = {}
    for y in range(height):
        for x in range(width):
            b, g, r = (x * 40) % 256, (y * 90) % 256, (x + y * 7) % 256
            buf[y * stride + 3 * x: y * stride + 3 * x + 3] = bytes([b, g, r])
            pixels[(x, y)] = (r, g, b)
    return bytes(buf), pixels


def test_header_fields(tmp_path):
    data, _ = _image(3, 2, 12)
    info = StreamInfo(width=3, height=2, stride=12, pixel_format=PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([data], info, str(path), StillOptions())
    raw = path.read_bytes()
    assert raw[:2] == b"BM"
    assert struct.unpack_from("<I", raw, 2)[0] == len(raw)
    assert struct.unpack_from("<I", raw, 10)[0] == 54
    assert struct.unpack_from("<I", raw, 14)[0] == 40
    assert struct.unpack_from("<Ii", raw, 18) == (3, -2)


def test_pixels_round_trip(tmp_path):
    data, pixels = _image(5, 4, 20)
    info = StreamInfo(width=5, height=4, stride=20, pixel_format=PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([data], info, str(path), StillOptions())
    with Image.open(path) as img:
        assert img.size == (5, 4)
        rgb = img.convert("RGB")
        for pos, value in pixels.items():
            assert rgb.getpixel(pos) == value


def test_rows_padded_to_four_bytes(tmp_path):
    data, _ = _image(3, 2, 9)
    info = StreamInfo(width=3, height=2, stride=9, pixel_format=PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([data], info, str(path), StillOptions())
    raw = path.read_bytes()
    assert (len(raw) - 54) % 4 == 0
    assert (len(raw) - 54) // 2 >= 9


def test_wrong_format_rejected(tmp_path):
    info = StreamInfo(width=2, height=2, stride=6, pixel_format=PixelFormat.BGR888)
    with pytest.raises(RuntimeError, match="should be RGB"):
        bmp_save([bytes(12)], info, str(tmp_path / "x.bmp"), StillOptions())


def test_unopenable_file(tmp_path):
    info = StreamInfo(width=2, height=2, stride=6, pixel_format=PixelFormat.RGB888)
    with pytest.raises(RuntimeError, match="failed to open file"):
        bmp_save([bytes(12)], info, str(tmp_path / "missing" / "x.bmp"), StillOptions())