from pathlib import Path

import pytest

from picamio.file_output import FileOutput
from picamio.output import OutputFlag
from picamio.types import VideoOptions


def test_writes_all_buffers_to_one_file(tmp_path):
    path = tmp_path / "video.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"key", 0, True)
        out.output_ready(b"delta", 33000, False)
    assert path.read_bytes() == b"keydelta"


def test_segments_start_on_keyframe_after_duration(tmp_path):
    pattern = str(tmp_path / "seg%03d.h264")
    out = FileOutput(VideoOptions(output=pattern, segment=1000))
    out.output_buffer(b"A", 0, OutputFlag.KEYFRAME)
    out.output_buffer(b"B", 500000, OutputFlag.NONE)
    out.output_buffer(b"C", 800000, OutputFlag.KEYFRAME)
    out.output_buffer(b"D", 1500000, OutputFlag.KEYFRAME)
    out.close()
    assert Path(pattern % 0).read_bytes() == b"ABC"
    assert Path(pattern % 1).read_bytes() == b"D"


def test_split_with_wrap_reuses_names(tmp_path):
    pattern = str(tmp_path / "part%d.bin")
    out = FileOutput(VideoOptions(output=pattern, split=True, wrap=2))
    restart = OutputFlag.KEYFRAME | OutputFlag.RESTART
    out.output_buffer(b"first", 0, restart)
    out.output_buffer(b"second", 10, restart)
    out.output_buffer(b"third", 20, restart)
    out.close()
    written = sorted(p.name for p in tmp_path.iterdir())
    assert written == [Path(pattern % 0).name, Path(pattern % 1).name]
    assert Path(pattern % 0).read_bytes() == b"third"
    assert Path(pattern % 1).read_bytes() == b"second"


def test_empty_buffer_opens_file_without_writing(tmp_path):
    path = tmp_path / "empty.bin"
    out = FileOutput(VideoOptions(output=str(path)))
    out.output_buffer(b"", 0, OutputFlag.KEYFRAME)
    out.close()
    assert path.read_bytes() == b""


def test_unopenable_file_raises(tmp_path):
    out = FileOutput(VideoOptions(output=str(tmp_path / "nope" / "x.bin")))
    with pytest.raises(RuntimeError, match="failed to open output file"):
        out.output_buffer(b"x", 0, OutputFlag.KEYFRAME)
    out.close()


def test_bad_pattern_raises(tmp_path):
    out = FileOutput(VideoOptions(output=str(tmp_path / "%d-%d.bin")))
    with pytest.raises(RuntimeError, match="failed to generate filename"):
        out.output_buffer(b"x", 0, OutputFlag.KEYFRAME)
    out.close()