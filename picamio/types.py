"""Pixel formats, stream descriptions and the options that drive outputs and encoders."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

DEFAULT_FRAMERATE = 30.0


class PixelFormat(enum.Enum):
    """Pixel layouts that images and video frames may arrive in."""

    RGB888 = "RGB888"
    BGR888 = "BGR888"
    YUV420 = "YUV420"
    YUYV = "YUYV"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"

    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"

    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"

    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"

    RGGB16_PISP_COMP1 = "RGGB16_PISP_COMP1"
    GRBG16_PISP_COMP1 = "GRBG16_PISP_COMP1"
    GBRG16_PISP_COMP1 = "GBRG16_PISP_COMP1"
    BGGR16_PISP_COMP1 = "BGGR16_PISP_COMP1"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of one image or video stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: PixelFormat | None = None
    colour_space: str | None = None


@dataclass
class StillOptions:
    """Options that control how still images are saved."""

    output: str = ""
    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: list[str] = field(default_factory=list)
    verbose: int = 1


@dataclass
class VideoOptions:
    """Options that control video encoding and where encoded output goes."""

    output: str = ""
    codec: str = "h264"
    quality: int = 50
    bitrate: int = 0
    profile: str = ""
    level: str = ""
    intra: int = 0
    inline_headers: bool = False
    width: int = 0
    height: int = 0
    framerate: float | None = None
    libav_video_codec: str = "h264_v4l2m2m"
    libav_format: str = ""
    libav_audio: bool = False
    circular: int = 0
    segment: int = 0
    split: bool = False
    wrap: int = 0
    flush: bool = False
    save_pts: str = ""
    metadata: str = ""
    metadata_format: str = "json"
    pause: bool = False
    listen: bool = False
    verbose: int = 1