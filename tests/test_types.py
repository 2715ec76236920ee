import dataclasses

import pytest

from picamio.types import PixelFormat, StillOptions, StreamInfo, VideoOptions


def test_pixel_format_lookup_by_value_round_trips():
    for fmt in PixelFormat:
        assert PixelFormat(fmt.value) is fmt


def test_stream_info_is_immutable():
    info = StreamInfo(width=4, height=2, stride=4, pixel_format=PixelFormat.YUV420)
    with pytest.raises(dataclasses.FrozenInstanceError):
        info.width = 8
    assert info.width == 4


def test_stream_info_replace_keeps_other_fields():
    info = StreamInfo(width=4, height=2, stride=4, pixel_format=PixelFormat.RGB888)
    wider = dataclasses.replace(info, width=8)
    assert wider.width == 8
    assert (wider.height, wider.stride, wider.pixel_format) == (info.height, info.stride, info.pixel_format)


def test_still_options_exif_lists_are_independent():
    first = StillOptions()
    second = StillOptions()
    first.exif.append("IFD0.Artist=someone")
    assert second.exif == []
    assert first.exif == ["IFD0.Artist=someone"]


def test_video_options_compare_by_value():
    assert VideoOptions(output="a.h264") == VideoOptions(output="a.h264")
    assert VideoOptions(output="a.h264") != VideoOptions(output="b.h264")