"""Video frames: pixel data plus the metadata that travels with it."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


def fourcc(code: str) -> int:
    """Pack a four-character code into its little-endian integer form."""
    if len(code) != 4:
        raise ValueError(f"A fourcc code must have 4 characters, got {code!r}")
    return int.from_bytes(code.encode("ascii"), "little")


class PixelFormat(enum.IntEnum):
    """Pixel formats the streamer knows about, as fourcc values."""

    YUYV = fourcc("YUYV")
    UYVY = fourcc("UYVY")
    RGB565 = fourcc("RGBP")
    RGB24 = fourcc("RGB3")
    MJPEG = fourcc("MJPG")
    JPEG = fourcc("JPEG")
    H264 = fourcc("H264")


_BYTES_PER_PIXEL = {
    PixelFormat.YUYV: 2,
    PixelFormat.UYVY: 2,
    PixelFormat.RGB565: 2,
    PixelFormat.RGB24: 3,
    PixelFormat.MJPEG: 0,
    PixelFormat.JPEG: 0,
}


def fourcc_to_string(fmt: int) -> str:
    """Render a fourcc value as text, with a ``-BE`` suffix for big-endian formats."""
    chars = "".join(chr((fmt >> shift) & 0x7F) for shift in (0, 8, 16, 24))
    if fmt & (1 << 31):
        chars += "-BE"
    return chars.split("\0", 1)[0]


def is_jpeg(fmt: int) -> bool:
    """True for the JPEG and MJPEG formats."""
    return fmt in (PixelFormat.JPEG, PixelFormat.MJPEG)


@dataclass
class Frame:
    """A frame's bytes and metadata."""

    data: bytearray = field(default_factory=bytearray)
    width: int = 0
    height: int = 0
    format: int = 0
    stride: int = 0
    online: bool = False
    key: bool = False
    grab_ts: float = 0.0
    encode_begin_ts: float = 0.0
    encode_end_ts: float = 0.0

    def __post_init__(self) -> None:
        self.data = bytearray(self.data)

    @property
    def used(self) -> int:
        """Number of bytes of frame data."""
        return len(self.data)

    def set_data(self, data) -> None:
        """Replace the frame data with a copy of ``data``."""
        self.data = bytearray(data)

    def append_data(self, data) -> None:
        """Append ``data`` to the frame data."""
        self.data.extend(data)

    def copy(self) -> Frame:
        """An independent copy of this frame, data and metadata."""
        duplicate = Frame(data=self.data)
        duplicate.copy_meta_from(self)
        return duplicate

    def copy_meta_from(self, other: Frame) -> None:
        """Take every metadata field from ``other``; the data is left alone."""
        self.width = other.width
        self.height = other.height
        self.format = other.format
        self.stride = other.stride
        self.online = other.online
        self.key = other.key
        self.grab_ts = other.grab_ts
        self.encode_begin_ts = other.encode_begin_ts
        self.encode_end_ts = other.encode_end_ts

    def same_meta(self, other) -> bool:
        """Compare size and metadata, ignoring timestamps."""
        return (
            other.used == self.used
            and other.width == self.width
            and other.height == self.height
            and other.format == self.format
            and other.stride == self.stride
            and bool(other.online) == bool(self.online)
            and bool(other.key) == bool(self.key)
        )

    def same_content(self, other: Frame) -> bool:
        """Same metadata (timestamps aside) and identical data."""
        return self.same_meta(other) and bytes(self.data) == bytes(other.data)

    def padding(self) -> int:
        """Bytes of padding at the end of each row for raw formats."""
        try:
            bytes_per_pixel = _BYTES_PER_PIXEL[PixelFormat(self.format)]
        except (ValueError, KeyError):
            raise ValueError(f"Unknown pixelformat: {fourcc_to_string(self.format)!r}") from None
        if bytes_per_pixel > 0 and self.stride > self.width:
            return self.stride - self.width * bytes_per_pixel
        return 0