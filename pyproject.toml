[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "picamio"
version = "0.1.0"
description = "Still-image writers (JPEG with EXIF, DNG, PNG, BMP, raw YUV/RGB) and video stream outputs for camera frames"
requires-python = ">=3.10"
keywords = ["camera", "jpeg", "dng", "exif", "raw", "bayer", "yuv", "png", "bmp", "video"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Capture :: Digital Camera",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pillow",
    "numpy",
]

[tool.hatch.build.targets.wheel]
packages = ["picamio"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
