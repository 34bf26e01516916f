"""Reader for frames published into a shared-memory sink."""

from __future__ import annotations

import fcntl
import os
import time

from .frame import Frame
from .memsink import (
    MEMSINK_MAGIC,
    MEMSINK_VERSION,
    SharedHeader,
    _map_shared,
    _open_shared,
    _read_data,
    _write_last_client_ts,
)
from .tools import flock_timedwait, now_monotonic

_POLLING = 0.001


class Memsink:
    """A client that waits for new frames in a shared-memory sink."""

    def __init__(
        self,
        obj: str,
        lock_timeout: float = 1.0,
        wait_timeout: float = 1.0,
        drop_same_frames: float = 0.0,
    ) -> None:
        self._obj = obj
        self._lock_timeout = float(lock_timeout)
        self._wait_timeout = float(wait_timeout)
        self._drop_same_frames = float(drop_same_frames)
        self._fd = -1
        self._mem = None
        self._frame = Frame()
        self._frame_id = 0
        self._frame_ts = 0.0

        if not self._lock_timeout > 0:
            raise ValueError("lock_timeout must be > 0")
        if not self._wait_timeout > 0:
            raise ValueError("wait_timeout must be > 0")
        if not self._drop_same_frames >= 0:
            raise ValueError("drop_same_frames must be >= 0")

        self._fd = _open_shared(obj)
        try:
            self._mem = _map_shared(self._fd)
        except OSError:
            self.close()
            raise

    @property
    def obj(self) -> str:
        return self._obj

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    @property
    def wait_timeout(self) -> float:
        return self._wait_timeout

    @property
    def drop_same_frames(self) -> float:
        return self._drop_same_frames

    def close(self) -> None:
        """Release the mapping and the descriptor."""
        if self._mem is not None:
            self._mem.close()
            self._mem = None
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1

    def __enter__(self) -> Memsink:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Memsink({self._obj})>"

    def is_opened(self) -> bool:
        """True until the sink is closed."""
        return self._mem is not None and self._fd >= 0

    def _is_duplicate(self, header: SharedHeader, now: float) -> bool:
        return (
            self._frame.same_meta(header)
            and self._frame_ts + self._drop_same_frames > now
            and _read_data(self._mem, header.used) == bytes(self._frame.data)
        )

    def _wait_locked(self) -> bool:
        """Wait for a new frame; on success the lock is left held."""
        deadline = now_monotonic() + self._wait_timeout
        while True:
            locked = flock_timedwait(self._fd, self._lock_timeout)
            now = now_monotonic()
            if locked:
                header = SharedHeader.unpack(self._mem)
                fresh = (
                    header.magic == MEMSINK_MAGIC
                    and header.version == MEMSINK_VERSION
                    and header.id != self._frame_id
                )
                if fresh and not (self._drop_same_frames > 0 and self._is_duplicate(header, now)):
                    return True
                if fresh:
                    self._frame_id = header.id
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            time.sleep(_POLLING)
            if now >= deadline:
                return False

    def wait_frame(self) -> dict | None:
        """Return the next new frame as a dict, or None when the wait timed out."""
        if not self.is_opened():
            raise RuntimeError("Closed")
        if not self._wait_locked():
            return None

        header = SharedHeader.unpack(self._mem)
        self._frame.set_data(_read_data(self._mem, header.used))
        self._frame.copy_meta_from(header)
        self._frame_id = header.id
        self._frame_ts = now_monotonic()
        _write_last_client_ts(self._mem, self._frame_ts)
        fcntl.flock(self._fd, fcntl.LOCK_UN)

        frame = self._frame
        return {
            "width": frame.width,
            "height": frame.height,
            "format": frame.format,
            "stride": frame.stride,
            "online": bool(frame.online),
            "key": bool(frame.key),
            "grab_ts": float(frame.grab_ts),
            "encode_begin_ts": float(frame.encode_begin_ts),
            "encode_end_ts": float(frame.encode_end_ts),
            "data": bytes(frame.data),
        }