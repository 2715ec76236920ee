import struct
from fractions import Fraction

import numpy as np
import pytest
from PIL import Image

from picamio.dng import (
    Matrix,
    dng_save,
    uncompress,
    unpack_10bit,
    unpack_12bit,
    unpack_16bit,
)
from picamio.types import PixelFormat, StillOptions, StreamInfo

_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 10: 8}


def _decode(typ, count, raw):
    if typ == 2:
        return raw.rstrip(b"\x00").decode()
    if typ == 1:
        return tuple(raw)
    if typ == 3:
        return struct.unpack(f"<{count}H", raw)
    if typ == 4:
        return struct.unpack(f"<{count}I", raw)
    fmt = "<II" if typ == 5 else "<ii"
    return tuple(Fraction(*struct.unpack_from(fmt, raw, 8 * i)) for i in range(count))


def _parse_ifd(data, offset):
    (n,) = struct.unpack_from("<H", data, offset)
    tags = {}
    for i in range(n):
        entry = offset + 2 + 12 * i
        tag, typ, count = struct.unpack_from("<HHI", data, entry)
        size = _SIZES[typ] * count
        pos = entry + 8
        if size > 4:
            (pos,) = struct.unpack_from("<I", data, pos)
        tags[tag] = _decode(typ, count, data[pos:pos + size])
    return tags


def _pack10(values):
    out = bytearray()
    for start in range(0, len(values), 4):
        group = list(values[start:start + 4]) + [0] * (4 - len(values[start:start + 4]))
        out += bytes(v >> 2 for v in group)
        out.append(sum((v & 3) << (2 * k) for k, v in enumerate(group)))
    return bytes(out)


def _pack12(values):
    out = bytearray()
    for start in range(0, len(values), 2):
        group = list(values[start:start + 2]) + [0] * (2 - len(values[start:start + 2]))
        out += bytes(v >> 4 for v in group)
        out.append((group[0] & 15) | ((group[1] & 15) << 4))
    return bytes(out)


def _save(tmp_path, metadata=None, fmt=PixelFormat.SRGGB16, width=32, height=32, fill=1000):
    info = StreamInfo(width=width, height=height, stride=width * 2, pixel_format=fmt)
    pixels = np.full((height, width), fill, dtype="<u2")
    mem = [pixels.tobytes()]
    path = tmp_path / "out.dng"
    dng_save(mem, info, metadata or {}, str(path), "model-x", StillOptions())
    data = path.read_bytes()
    (ifd0_off,) = struct.unpack_from("<I", data, 4)
    ifd0 = _parse_ifd(data, ifd0_off)
    sub = _parse_ifd(data, ifd0[330][0])
    exif = _parse_ifd(data, ifd0[34665][0])
    return path, data, info, mem, ifd0, sub, exif


def test_matrix_identity_product():
    a = Matrix(1, 2, 3, 4, 5, 6, 7, 8, 10)
    assert (a * Matrix.diagonal(1, 1, 1)).m == a.m


def test_matrix_transpose_twice_is_identity():
    a = Matrix(1, 2, 3, 4, 5, 6, 7, 8, 9)
    assert a.transpose().transpose() == a
    assert a.transpose().m[1] == a.m[3]


def test_matrix_determinant_of_diagonal():
    assert Matrix.diagonal(2, 3, 4).determinant() == pytest.approx(24)


def test_matrix_inverse_round_trip():
    a = Matrix(2, 1, 0, 1, 3, 1, 0, 1, 4)
    product = a * a.inverse()
    assert product.m == pytest.approx(Matrix.diagonal(1, 1, 1).m, abs=1e-9)


def test_matrix_adjugate_relation():
    a = Matrix(2, 1, 0, 1, 3, 1, 0, 1, 4)
    expected = (Matrix.diagonal(1, 1, 1) * a.determinant()).m
    assert (a * a.adjugate()).m == pytest.approx(expected)


def test_matrix_scalar_multiply():
    assert (Matrix.diagonal(1, 2, 3) * 2.0).m == pytest.approx(Matrix.diagonal(2, 4, 6).m)


def test_matrix_singular_inverse_raises():
    with pytest.raises(ValueError):
        Matrix().inverse()


def test_matrix_wrong_arity():
    with pytest.raises(TypeError):
        Matrix(1, 2, 3)


@pytest.mark.parametrize("width", [4, 6, 8])
def test_unpack_10bit_round_trip(width):
    rng = np.random.default_rng(1)
    values = rng.integers(0, 1024, size=(2, width))
    row_bytes = [_pack10(list(row)) for row in values]
    stride = len(row_bytes[0]) + 3
    src = b"".join(r.ljust(stride, b"\x00") for r in row_bytes)
    info = StreamInfo(width=width, height=2, stride=stride, pixel_format=PixelFormat.SRGGB10_CSI2P)
    assert np.array_equal(unpack_10bit(src, info), values)


@pytest.mark.parametrize("width", [2, 5])
def test_unpack_12bit_round_trip(width):
    rng = np.random.default_rng(2)
    values = rng.integers(0, 4096, size=(3, width))
    row_bytes = [_pack12(list(row)) for row in values]
    stride = len(row_bytes[0])
    src = b"".join(row_bytes)
    info = StreamInfo(width=width, height=3, stride=stride, pixel_format=PixelFormat.SRGGB12_CSI2P)
    assert np.array_equal(unpack_12bit(src, info), values)


def test_unpack_16bit_skips_stride_padding():
    rows = np.array([[1, 2, 3], [400, 500, 60000]], dtype="<u2")
    src = b"".join(r.tobytes() + b"\xff\xff" for r in rows)
    info = StreamInfo(width=3, height=2, stride=8, pixel_format=PixelFormat.SRGGB16)
    assert np.array_equal(unpack_16bit(src, info), rows)


def test_unpack_buffer_too_small():
    info = StreamInfo(width=4, height=4, stride=8, pixel_format=PixelFormat.SRGGB16)
    with pytest.raises(ValueError):
        unpack_16bit(bytes(10), info)


def test_uncompress_zero_block():
    info = StreamInfo(width=8, height=1, stride=8, pixel_format=PixelFormat.RGGB16_PISP_COMP1)
    out = uncompress(bytes(8), info)
    assert out.tolist() == [[2048, 2048, 3072, 3072, 2048, 2048, 2048, 2048]]


def test_uncompress_pads_width_and_offsets_values():
    rng = np.random.default_rng(3)
    info = StreamInfo(width=10, height=3, stride=16, pixel_format=PixelFormat.RGGB16_PISP_COMP1)
    out = uncompress(rng.integers(0, 256, size=48, dtype=np.uint8).tobytes(), info)
    assert out.shape == (3, 16)
    assert int(out.min()) >= 2048


@pytest.mark.parametrize(
    "fmt, pattern, white",
    [
        (PixelFormat.SRGGB16, (0, 1, 1, 2), (65535,)),
        (PixelFormat.SGRBG16, (1, 0, 2, 1), (65535,)),
        (PixelFormat.R10, (2, 1, 1, 0), (1023,)),
    ],
)
def test_bayer_table_orders(tmp_path, fmt, pattern, white):
    *_, sub, _ = _save(tmp_path, fmt=fmt, fill=500)
    assert sub[33422] == pattern
    assert sub[50717] == white


def test_unsupported_format(tmp_path):
    info = StreamInfo(width=16, height=16, stride=48, pixel_format=PixelFormat.RGB888)
    with pytest.raises(RuntimeError, match="unsupported Bayer format"):
        dng_save([bytes(48 * 16)], info, {}, str(tmp_path / "x.dng"), "m", StillOptions())


def test_unwritable_path(tmp_path):
    info = StreamInfo(width=16, height=16, stride=32, pixel_format=PixelFormat.SRGGB16)
    with pytest.raises(RuntimeError, match="could not open file"):
        dng_save([bytes(32 * 16)], info, {}, str(tmp_path / "no" / "x.dng"), "m", StillOptions())


def test_header_and_make_model(tmp_path):
    _, data, _, _, ifd0, _, _ = _save(tmp_path)
    assert data[:4] == b"II*\x00"
    assert ifd0[271] == "Raspberry Pi"
    assert ifd0[272] == "model-x"
    assert ifd0[50708] == "Raspberry Pi model-x"
    assert ifd0[305] == "libcamera-still"
    assert ifd0[256] == (2,) and ifd0[257] == (2,)


def test_raw_data_round_trip(tmp_path):
    _, data, info, mem, _, sub, _ = _save(tmp_path)
    start, length = sub[273][0], sub[279][0]
    stored = np.frombuffer(data[start:start + length], dtype="<u2").reshape(info.height, info.width)
    assert np.array_equal(stored, unpack_16bit(mem[0], info))
    assert sub[258] == (16,)
    assert sub[262] == (32803,)
    assert sub[33422] == (0, 1, 1, 2)
    assert sub[50717] == (65535,)


def test_default_black_level(tmp_path):
    *_, sub, _ = _save(tmp_path)
    assert sub[50714] == (Fraction(4096),) * 4


def test_exif_values(tmp_path):
    *_, exif = _save(tmp_path, {"ExposureTime": 10000, "AnalogueGain": 2.0, "LensPosition": 2.0})
    assert exif[33434] == (Fraction(1, 100),)
    assert exif[34855] == (200,)
    assert exif[37382] == (Fraction(1, 2),)


def test_neutral_from_colour_gains(tmp_path):
    *_, ifd0, _, _ = _save(tmp_path, {"ColourGains": (2.0, 4.0)})
    assert ifd0[50728] == (Fraction(1, 2), Fraction(1), Fraction(1, 4))


def test_colour_matrix_inverts_rgb_to_xyz(tmp_path):
    identity = (1, 0, 0, 0, 1, 0, 0, 0, 1)
    *_, ifd0, _, _ = _save(tmp_path, {"ColourCorrectionMatrix": identity, "ColourGains": (1.0, 1.0)})
    cam_xyz = Matrix(*(float(v) for v in ifd0[50721]))
    rgb2xyz = Matrix(0.4124564, 0.3575761, 0.1804375,
                     0.2126729, 0.7151522, 0.0721750,
                     0.0193339, 0.1191920, 0.9503041)
    assert (cam_xyz * rgb2xyz).m == pytest.approx(identity, abs=1e-4)


def test_thumbnail_readable_and_uniform(tmp_path):
    path, *_ = _save(tmp_path, width=48, height=32)
    with Image.open(path) as img:
        assert img.size == (3, 2)
        assert img.mode == "RGB"
        pixels = np.asarray(img)
    assert (pixels == pixels[0, 0]).all()


def test_compressed_format_saves_width_only(tmp_path):
    info = StreamInfo(width=20, height=16, stride=24, pixel_format=PixelFormat.RGGB16_PISP_COMP1)
    path = tmp_path / "c.dng"
    dng_save([bytes(24 * 16)], info, {}, str(path), "m", StillOptions())
    data = path.read_bytes()
    (ifd0_off,) = struct.unpack_from("<I", data, 4)
    sub = _parse_ifd(data, _parse_ifd(data, ifd0_off)[330][0])
    assert sub[279] == (20 * 16 * 2,)
    assert sub[256] == (20,)