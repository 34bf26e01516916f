"""Frame exchange through a POSIX shared-memory object guarded by flock."""

from __future__ import annotations

import errno
import fcntl
import math
import mmap
import os
import struct
import tempfile
from dataclasses import dataclass

from .frame import Frame
from .logs import LogLevel, get_logger
from .tools import flock_timedwait, now_id, now_monotonic

MEMSINK_MAGIC = 0xCAFEBABECAFEBABE
MEMSINK_VERSION = 2
MEMSINK_MAX_DATA = 33554432

# Layout of the shared block: timestamps are 80-bit extended floats in
# 16-byte aligned slots, frame data follows the header.
_HEADER_FORMAT = "<QI4xQQIIII??14x16s16s16s16s"
HEADER_SIZE = struct.calcsize(_HEADER_FORMAT)
DATA_OFFSET = HEADER_SIZE
SHARED_SIZE = HEADER_SIZE + MEMSINK_MAX_DATA
_LAST_CLIENT_TS_OFFSET = HEADER_SIZE - 16
_LD_SIZE = 16

_SHM_DIR = "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()


class MemsinkError(Exception):
    """A shared-memory sink operation failed."""


def _pack_ld(value: float) -> bytes:
    value = float(value)
    sign = 0x8000 if math.copysign(1.0, value) < 0 else 0
    if math.isnan(value):
        exponent, mantissa = 0x7FFF, 0xC000000000000000
    elif math.isinf(value):
        exponent, mantissa = 0x7FFF, 1 << 63
    elif value == 0:
        exponent, mantissa = 0, 0
    else:
        fraction, power = math.frexp(abs(value))
        mantissa = int(fraction * (1 << 64))
        exponent = power - 1 + 16383
    return mantissa.to_bytes(8, "little") + (sign | exponent).to_bytes(2, "little") + bytes(6)


def _unpack_ld(raw: bytes) -> float:
    mantissa = int.from_bytes(raw[:8], "little")
    sign_exp = int.from_bytes(raw[8:10], "little")
    sign = -1.0 if sign_exp & 0x8000 else 1.0
    exponent = sign_exp & 0x7FFF
    if exponent == 0x7FFF:
        if mantissa & ((1 << 63) - 1):
            return math.nan
        return sign * math.inf
    if exponent == 0:
        if mantissa == 0:
            return math.copysign(0.0, sign)
        return sign * math.ldexp(mantissa, 1 - 16383 - 63)
    return sign * math.ldexp(mantissa, exponent - 16383 - 63)


@dataclass
class SharedHeader:
    """The header at the start of the shared block."""

    magic: int = 0
    version: int = 0
    id: int = 0
    used: int = 0
    width: int = 0
    height: int = 0
    format: int = 0
    stride: int = 0
    online: bool = False
    key: bool = False
    grab_ts: float = 0.0
    encode_begin_ts: float = 0.0
    encode_end_ts: float = 0.0
    last_client_ts: float = 0.0

    def pack(self) -> bytes:
        """Serialize to the shared layout."""
        return struct.pack(
            _HEADER_FORMAT,
            self.magic,
            self.version,
            self.id,
            self.used,
            self.width,
            self.height,
            self.format,
            self.stride,
            bool(self.online),
            bool(self.key),
            _pack_ld(self.grab_ts),
            _pack_ld(self.encode_begin_ts),
            _pack_ld(self.encode_end_ts),
            _pack_ld(self.last_client_ts),
        )

    @classmethod
    def unpack(cls, buffer) -> SharedHeader:
        """Read a header from the start of ``buffer``."""
        fields = struct.unpack_from(_HEADER_FORMAT, buffer, 0)
        return cls(*fields[:10], *(_unpack_ld(raw) for raw in fields[10:]))


def _shm_path(obj: str) -> str:
    return os.path.join(_SHM_DIR, obj.lstrip("/"))


def _open_shared(obj: str, create: bool = False, mode: int = 0) -> int:
    flags = os.O_RDWR | (os.O_CREAT if create else 0)
    return os.open(_shm_path(obj), flags, mode)


def _map_shared(fd: int) -> mmap.mmap:
    try:
        return mmap.mmap(fd, SHARED_SIZE, mmap.MAP_SHARED, mmap.PROT_READ | mmap.PROT_WRITE)
    except ValueError as err:
        raise OSError(errno.EINVAL, str(err)) from err


def _write_last_client_ts(mem: mmap.mmap, ts: float) -> None:
    mem[_LAST_CLIENT_TS_OFFSET:_LAST_CLIENT_TS_OFFSET + _LD_SIZE] = _pack_ld(ts)


def _read_data(mem: mmap.mmap, used: int) -> bytes:
    return mem[DATA_OFFSET:DATA_OFFSET + min(used, MEMSINK_MAX_DATA)]


class MemSink:
    """One side (server or client) of a shared-memory frame sink."""

    def __init__(
        self,
        name: str,
        obj: str,
        server: bool = False,
        mode: int = 0o660,
        rm: bool = False,
        client_ttl: float = 10,
        timeout: float = 1,
    ) -> None:
        self.name = name
        self.obj = obj
        self.server = server
        self.rm = rm
        self.client_ttl = client_ttl
        self.timeout = timeout
        self.has_clients = False
        self.last_id = 0
        self._fd = -1
        self._mem: mmap.mmap | None = None
        self._log = get_logger()

        self._log.info("Using %s-sink: %s", name, obj)

        mask = os.umask(0)
        try:
            self._fd = _open_shared(obj, create=server, mode=mode)
        except OSError as err:
            self._log.error("%s-sink: Can't open shared memory: %s", name, err.strerror or err)
            raise MemsinkError(f"{name}-sink: Can't open shared memory") from err
        finally:
            os.umask(mask)

        try:
            if server:
                try:
                    os.ftruncate(self._fd, SHARED_SIZE)
                except OSError as err:
                    self._log.error("%s-sink: Can't truncate shared memory: %s", name, err.strerror or err)
                    raise MemsinkError(f"{name}-sink: Can't truncate shared memory") from err
            try:
                self._mem = _map_shared(self._fd)
            except OSError as err:
                self._log.error("%s-sink: Can't mmap shared memory: %s", name, err.strerror or err)
                raise MemsinkError(f"{name}-sink: Can't mmap shared memory") from err
        except MemsinkError:
            self.close()
            raise

    def close(self) -> None:
        """Unmap and close the shared memory, removing it if asked to."""
        if self._mem is not None:
            try:
                self._mem.close()
            except (OSError, BufferError) as err:
                self._log.error("%s-sink: Can't unmap shared memory: %s", self.name, err)
            self._mem = None
        if self._fd >= 0:
            try:
                os.close(self._fd)
            except OSError as err:
                self._log.error("%s-sink: Can't close shared memory fd: %s", self.name, err.strerror)
            self._fd = -1
            if self.rm:
                try:
                    os.unlink(_shm_path(self.obj))
                except FileNotFoundError:
                    pass
                except OSError as err:
                    self._log.error("%s-sink: Can't remove shared memory: %s", self.name, err.strerror)

    def __enter__(self) -> MemSink:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _require_open(self) -> mmap.mmap:
        if self._mem is None:
            raise MemsinkError(f"{self.name}-sink: Closed")
        return self._mem

    def _unlock(self) -> None:
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        except OSError as err:
            self._log.error("%s-sink: Can't unlock memory: %s", self.name, err.strerror)
            raise MemsinkError(f"{self.name}-sink: Can't unlock memory") from err

    def server_check(self, frame: Frame) -> bool:
        """Tell whether the frame should be written to the sink.

        True when a client holds the lock, the block is not yet initialized,
        a client was seen within ``client_ttl`` or the frame metadata changed.
        """
        if not self.server:
            raise MemsinkError("server_check() is for the server side only")
        mem = self._require_open()
        try:
            fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self.has_clients = True
            return True
        except OSError as err:
            self._log.error("%s-sink: Can't lock memory: %s", self.name, err.strerror)
            return False

        header = SharedHeader.unpack(mem)
        if header.magic != MEMSINK_MAGIC or header.version != MEMSINK_VERSION:
            try:
                self._unlock()
            except MemsinkError:
                pass
            return True

        has_clients = header.last_client_ts + self.client_ttl > now_monotonic()
        self.has_clients = has_clients
        try:
            self._unlock()
        except MemsinkError:
            return False
        return has_clients or not frame.same_meta(header)

    def server_put(self, frame: Frame) -> bool:
        """Expose a frame; False if it was too big or the memory was busy."""
        if not self.server:
            raise MemsinkError("server_put() is for the server side only")
        mem = self._require_open()
        start = now_monotonic()

        if frame.used > MEMSINK_MAX_DATA:
            self._log.error(
                "%s-sink: Can't put frame: is too big (%d > %d)", self.name, frame.used, MEMSINK_MAX_DATA
            )
            return False

        try:
            locked = flock_timedwait(self._fd, 1)
        except OSError as err:
            self._log.error("%s-sink: Can't lock memory: %s", self.name, err.strerror)
            raise MemsinkError(f"{self.name}-sink: Can't lock memory") from err

        if not locked:
            self._log.log(
                LogLevel.VERBOSE.logging_level,
                "%s-sink: ===== Shared memory is busy now; frame skipped",
                self.name,
            )
            return False

        self._log.log(LogLevel.VERBOSE.logging_level, "%s-sink: >>>>> Exposing new frame ...", self.name)
        current = SharedHeader.unpack(mem)
        self.last_id = now_id()
        mem[DATA_OFFSET:DATA_OFFSET + frame.used] = bytes(frame.data)
        header = SharedHeader(
            magic=MEMSINK_MAGIC,
            version=MEMSINK_VERSION,
            id=self.last_id,
            used=frame.used,
            width=frame.width,
            height=frame.height,
            format=frame.format,
            stride=frame.stride,
            online=frame.online,
            key=frame.key,
            grab_ts=frame.grab_ts,
            encode_begin_ts=frame.encode_begin_ts,
            encode_end_ts=frame.encode_end_ts,
            last_client_ts=current.last_client_ts,
        )
        mem[:HEADER_SIZE] = header.pack()
        self.has_clients = header.last_client_ts + self.client_ttl > now_monotonic()

        self._unlock()
        self._log.log(
            LogLevel.VERBOSE.logging_level,
            "%s-sink: Exposed new frame; full exposition time = %.3f",
            self.name,
            now_monotonic() - start,
        )
        return True

    def client_get(self) -> Frame | None:
        """Fetch a new frame, or None if there is nothing new or the lock timed out."""
        if self.server:
            raise MemsinkError("client_get() is for the client side only")
        mem = self._require_open()

        try:
            locked = flock_timedwait(self._fd, self.timeout)
        except OSError as err:
            self._log.error("%s-sink: Can't lock memory: %s", self.name, err.strerror)
            raise MemsinkError(f"{self.name}-sink: Can't lock memory") from err
        if not locked:
            return None

        frame = None
        try:
            header = SharedHeader.unpack(mem)
            if header.magic == MEMSINK_MAGIC:
                if header.version != MEMSINK_VERSION:
                    self._log.error(
                        "%s-sink: Protocol version mismatch: sink=%d, required=%d",
                        self.name,
                        header.version,
                        MEMSINK_VERSION,
                    )
                    raise MemsinkError(
                        f"{self.name}-sink: Protocol version mismatch: "
                        f"sink={header.version}, required={MEMSINK_VERSION}"
                    )
                if header.id != self.last_id:
                    self.last_id = header.id
                    frame = Frame(data=_read_data(mem, header.used))
                    frame.copy_meta_from(header)
                _write_last_client_ts(mem, now_monotonic())
        finally:
            self._unlock()
        return frame