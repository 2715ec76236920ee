"""Still-image writers (JPEG, DNG, PNG, BMP, YUV) and video stream outputs for camera frames."""

__version__ = "0.1.0"