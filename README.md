# picamio

Still-image writers and video stream outputs for camera frames.

`picamio` takes frames from a camera pipeline, described by a
`StreamInfo` (width, height, stride, pixel format), and writes them to
files:

- **Still images**
  - `picamio.jpeg.jpeg_save` encodes a YUV420 or YUYV image as a JPEG
    carrying EXIF data (make, model, software, date and time, exposure
    time, ISO, subject distance, plus any `IFD.Tag=value` settings in
    `StillOptions.exif`) and, when `thumb_quality` is set, a thumbnail.
    `ExifData` builds and serialises the EXIF block on its own.
  - `picamio.dng.dng_save` writes raw Bayer data as a DNG with a small
    greyscale thumbnail. Packed 10- and 12-bit CSI-2 data, plain 16-bit
    data and PiSP compressed data are unpacked first (`unpack_10bit`,
    `unpack_12bit`, `unpack_16bit`, `uncompress`).
  - `picamio.png.png_save` writes a `BGR888` image as PNG.
  - `picamio.bmp.bmp_save` writes an `RGB888` image as a 24-bit BMP.
  - `picamio.yuv.yuv_save` dumps planar YUV420 (from YUV420 or YUYV
    input) or packed RGB bytes.

  Passing `"-"` as the file name writes to standard output (except for
  DNG).

- **Video outputs**, fed one encoded buffer at a time through
  `output_ready(mem, timestamp_us, keyframe)`:
  - `picamio.output.Output` waits for a keyframe before passing anything
    on, hides pauses (toggled with `signal()`) from the timestamps, writes
    a timestamp file (`save_pts`) and per-frame metadata (`metadata`,
    `metadata_format` of `"json"` or `"txt"`, fed through
    `metadata_ready`). On its own it writes no video data.
  - `picamio.file_output.FileOutput` writes to `options.output`, which may
    hold a printf-style counter such as `"clip%04d.h264"`; it starts new
    files by `segment` length, on restart when `split` is set, and wraps
    the counter at `wrap`.
  - `picamio.circular_output.CircularOutput` keeps the latest frames in a
    ring buffer of `options.circular` megabytes and, when closed, writes
    them out starting from the first keyframe.

  Every output is a context manager; `close()` finishes its files.

## Installation

```
pip install picamio
```

## Examples

Saving a still:

```python
from picamio.types import PixelFormat, StreamInfo, StillOptions
from picamio.jpeg import jpeg_save

info = StreamInfo(width=640, height=480, stride=640, pixel_format=PixelFormat.YUV420)
options = StillOptions(quality=90, exif=["IFD0.Artist=example"])
jpeg_save([frame_bytes], info, {"ExposureTime": 10000, "AnalogueGain": 2.0},
          "still.jpg", "imx000", options)
```

Writing already-encoded video buffers to a file:

```python
from picamio.types import VideoOptions
from picamio.file_output import FileOutput

options = VideoOptions(output="video.h264", save_pts="timestamps.txt")
with FileOutput(options) as output:
    for data, timestamp_us, keyframe in encoded_frames:
        output.output_ready(data, timestamp_us, keyframe)
```

## What this package does not do

It does not capture frames or encode video: the buffers handed to an
output must already be encoded. There is no network output and no helper
that picks an output from the options; construct `Output`, `FileOutput`
or `CircularOutput` directly. There is no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```