import fcntl
import os
import uuid

import pytest

from ustreamer import memsink
from ustreamer.frame import Frame, PixelFormat
from ustreamer.memsink import (
    HEADER_SIZE,
    MEMSINK_MAGIC,
    MEMSINK_MAX_DATA,
    MEMSINK_VERSION,
    MemSink,
    MemsinkError,
    SharedHeader,
)


@pytest.fixture
def sink_name():
    name = f"ustreamer-test-{uuid.uuid4().hex}"
    yield name
    path = memsink._shm_path(name)
    if os.path.exists(path):
        os.unlink(path)


def _frame(data=b"\x01\x02\x03\x04", width=640):
    return Frame(
        data=data,
        width=width,
        height=480,
        format=PixelFormat.JPEG,
        stride=0,
        online=True,
        key=True,
        grab_ts=1.5,
        encode_begin_ts=1.75,
        encode_end_ts=2.0,
    )


def test_header_round_trip():
    header = SharedHeader(
        magic=MEMSINK_MAGIC,
        version=MEMSINK_VERSION,
        id=123456789,
        used=42,
        width=1920,
        height=1080,
        format=PixelFormat.H264,
        stride=3840,
        online=True,
        key=False,
        grab_ts=12.5,
        encode_begin_ts=-3.25,
        encode_end_ts=0.0,
        last_client_ts=123456.789,
    )
    packed = header.pack()
    assert len(packed) == HEADER_SIZE
    assert SharedHeader.unpack(packed) == header


def test_header_layout_fixed_fields():
    packed = SharedHeader(magic=MEMSINK_MAGIC, version=MEMSINK_VERSION, grab_ts=1.0).pack()
    assert packed[:8] == MEMSINK_MAGIC.to_bytes(8, "little")
    assert packed[8:12] == MEMSINK_VERSION.to_bytes(4, "little")
    assert packed[64:80] == b"\x00" * 7 + b"\x80\xff\x3f" + b"\x00" * 6


@pytest.mark.parametrize("value", [0.0, 1.0, -2.5, 1e-300, 1e300, 0.001, 98765.4321])
def test_long_double_round_trip(value):
    assert memsink._unpack_ld(memsink._pack_ld(value)) == value


def test_put_then_get(sink_name):
    frame = _frame()
    with MemSink("out", sink_name, server=True, rm=True) as server:
        assert server.server_put(frame) is True
        with MemSink("in", sink_name) as client:
            got = client.client_get()
            assert got == frame
            assert client.client_get() is None


def test_get_from_uninitialized_sink(sink_name):
    with MemSink("out", sink_name, server=True, rm=True):
        with MemSink("in", sink_name) as client:
            assert client.client_get() is None


def test_get_sees_newer_frame(sink_name):
    with MemSink("out", sink_name, server=True, rm=True) as server:
        with MemSink("in", sink_name) as client:
            server.server_put(_frame(b"aaaa"))
            assert bytes(client.client_get().data) == b"aaaa"
            server.server_put(_frame(b"bbbbbb"))
            got = client.client_get()
            assert bytes(got.data) == b"bbbbbb"
            assert got.used == 6


def test_too_big_frame_is_skipped(sink_name):
    with MemSink("out", sink_name, server=True, rm=True) as server:
        assert server.server_put(Frame(data=bytes(MEMSINK_MAX_DATA + 1))) is False
        with MemSink("in", sink_name) as client:
            assert client.client_get() is None


def test_version_mismatch_raises(sink_name):
    with MemSink("out", sink_name, server=True, rm=True) as server:
        server.server_put(_frame())
        path = memsink._shm_path(sink_name)
        with open(path, "r+b") as fp:
            fp.seek(8)
            fp.write((MEMSINK_VERSION + 1).to_bytes(4, "little"))
        with MemSink("in", sink_name) as client:
            with pytest.raises(MemsinkError):
                client.client_get()
            with open(path, "r+b") as fp:
                fp.seek(8)
                fp.write(MEMSINK_VERSION.to_bytes(4, "little"))
            assert client.client_get() == _frame()


def test_server_check_uninitialized(sink_name):
    with MemSink("out", sink_name, server=True, rm=True, client_ttl=0) as server:
        assert server.server_check(_frame()) is True


def test_server_check_meta(sink_name):
    frame = _frame()
    with MemSink("out", sink_name, server=True, rm=True, client_ttl=0) as server:
        server.server_put(frame)
        assert server.server_check(frame) is False
        assert server.has_clients is False
        assert server.server_check(_frame(width=320)) is True


def test_server_check_sees_client(sink_name):
    frame = _frame()
    with MemSink("out", sink_name, server=True, rm=True, client_ttl=10) as server:
        server.server_put(frame)
        with MemSink("in", sink_name) as client:
            client.client_get()
        assert server.server_check(frame) is True
        assert server.has_clients is True


def test_server_check_locked_by_client(sink_name):
    with MemSink("out", sink_name, server=True, rm=True, client_ttl=0) as server:
        server.server_put(_frame())
        fd = os.open(memsink._shm_path(sink_name), os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            assert server.server_check(_frame()) is True
            assert server.has_clients is True
            assert server.server_put(_frame(b"zz")) is False
        finally:
            os.close(fd)


def test_client_get_times_out_when_locked(sink_name):
    with MemSink("out", sink_name, server=True, rm=True) as server:
        server.server_put(_frame())
        with MemSink("in", sink_name, timeout=0) as client:
            fd = os.open(memsink._shm_path(sink_name), os.O_RDWR)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                assert client.client_get() is None
            finally:
                os.close(fd)
            assert client.client_get() == _frame()


def test_missing_sink_raises(sink_name):
    with pytest.raises(MemsinkError):
        MemSink("in", sink_name)


def test_side_checks(sink_name):
    with MemSink("out", sink_name, server=True, rm=True) as server:
        with pytest.raises(MemsinkError):
            server.client_get()
        with MemSink("in", sink_name) as client:
            with pytest.raises(MemsinkError):
                client.server_put(_frame())


def test_close_removes_object(sink_name):
    server = MemSink("out", sink_name, server=True, rm=True)
    path = memsink._shm_path(sink_name)
    assert os.path.exists(path)
    server.close()
    server.close()
    assert not os.path.exists(path)
    with pytest.raises(MemsinkError):
        server.server_put(_frame())