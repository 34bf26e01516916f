"""JPEG header reading and decoding to RGB24 frames."""

from __future__ import annotations

import io

from PIL import Image, UnidentifiedImageError

from .frame import Frame, PixelFormat, is_jpeg
from .logs import get_logger

_RGB_COMPONENTS = 3


class UnjpegError(Exception):
    """The JPEG data could not be decompressed."""


def unjpeg(src: Frame, decode: bool = True) -> Frame:
    """Read a JPEG frame into an RGB24 frame.

    The result always carries the image geometry and the source metadata;
    its data holds the decoded pixels only when ``decode`` is true.
    """
    if not is_jpeg(src.format):
        raise ValueError("Source frame is not a JPEG")

    try:
        with Image.open(io.BytesIO(bytes(src.data))) as image:
            if image.format != "JPEG":
                raise UnjpegError(f"Not a JPEG image: {image.format}")
            width, height = image.size
            pixels = image.convert("RGB").tobytes() if decode else b""
    except UnjpegError as err:
        get_logger().error("Can't decompress JPEG: %s", err)
        raise
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as err:
        get_logger().error("Can't decompress JPEG: %s", err)
        raise UnjpegError(str(err)) from err

    dest = Frame()
    dest.copy_meta_from(src)
    dest.format = PixelFormat.RGB24
    dest.width = width
    dest.height = height
    dest.stride = width * _RGB_COMPONENTS
    dest.set_data(pixels)
    return dest