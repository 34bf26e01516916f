"""Time, hashing, locking and encoding helpers shared across the package."""

from __future__ import annotations

import base64
import fcntl
import math
import os
import time

VERSION_MAJOR = 4
VERSION_MINOR = 9
VERSION = f"{VERSION_MAJOR}.{VERSION_MINOR}"
VERSION_U = VERSION_MAJOR * 1000 + VERSION_MINOR

RN = "\r\n"

_U32 = 0xFFFFFFFF
_LOCK_POLLING = 0.001

_MONOTONIC_CLOCK = getattr(time, "CLOCK_MONOTONIC_RAW", getattr(time, "CLOCK_MONOTONIC", None))


def _monotonic_ns() -> int:
    if _MONOTONIC_CLOCK is not None and hasattr(time, "clock_gettime_ns"):
        return time.clock_gettime_ns(_MONOTONIC_CLOCK)
    return time.monotonic_ns()


def _ns_to_ms_seconds(ns: int) -> float:
    sec, nsec = divmod(ns, 1_000_000_000)
    msec = (nsec + 500_000) // 1_000_000
    if msec > 999:
        sec += 1
        msec = 0
    return sec + msec / 1000


def triple_u32(x: int) -> int:
    """Mix the low 32 bits of ``x`` into a well-distributed 32-bit value."""
    x &= _U32
    x ^= x >> 17
    x = (x * 0xED5AD4BB) & _U32
    x ^= x >> 11
    x = (x * 0xAC4C1B51) & _U32
    x ^= x >> 15
    x = (x * 0x31848BAB) & _U32
    x ^= x >> 14
    return x


def floor_ms(now: float) -> int:
    """Return the whole second that ``now`` falls into."""
    return math.floor(now)


def align_size(size: int, to: int) -> int:
    """Round ``size`` up to a multiple of ``to`` (a power of two)."""
    return (size + (to - 1)) & ~(to - 1)


def now_monotonic() -> float:
    """Monotonic clock in seconds, rounded to milliseconds."""
    return _ns_to_ms_seconds(_monotonic_ns())


def now_monotonic_us() -> int:
    """Monotonic clock in whole microseconds."""
    return _monotonic_ns() // 1000


def now_id() -> int:
    """A 64-bit identifier derived from the monotonic clock."""
    now = now_monotonic_us()
    return triple_u32(now) | (triple_u32(now + 12345) << 32)


def now_real() -> float:
    """Wall-clock time in seconds, rounded to milliseconds."""
    return _ns_to_ms_seconds(time.time_ns())


def cores_available() -> int:
    """Number of online processors, clamped to the range 1..4."""
    try:
        cores = os.sysconf("SC_NPROCESSORS_ONLN")
    except (AttributeError, ValueError, OSError):
        cores = os.cpu_count() or 0
    return max(min(max(cores, 0), 4), 1)


def flock_timedwait(fd, timeout: float) -> bool:
    """Try to take an exclusive flock on ``fd`` until ``timeout`` seconds pass.

    Returns True once the lock is held and False if it stayed busy; any other
    locking failure raises OSError.
    """
    deadline = now_monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            if now_monotonic() > deadline:
                return False
        time.sleep(_LOCK_POLLING)


def base64_encode(data: bytes) -> str:
    """Standard padded base64 of ``data`` as text."""
    return base64.b64encode(bytes(data)).decode("ascii")