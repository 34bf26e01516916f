[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ustreamer"
version = "4.9"
description = "Shared-memory video frame sinks, RTP/H.264 packetizing and a sink dump tool"
requires-python = ">=3.10"
keywords = ["video", "mjpeg", "h264", "rtp", "sdp", "shared-memory", "streaming"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ustreamer-dump = "ustreamer.dump:main"

[tool.hatch.build.targets.wheel]
packages = ["ustreamer"]

[tool.pytest.ini_options]
addopts = "-ra"
