import struct

import pytest

from ustreamer.frame import Frame, PixelFormat
from ustreamer.rtp import (
    FU_OVERHEAD,
    HEADER_SIZE,
    RTP_DATAGRAM_SIZE,
    Rtp,
    find_annexb,
)
from ustreamer.tools import base64_encode

SC = b"\x00\x00\x01"
SPS = b"\x67\x42\xe0\x1f\xaa"
PPS = b"\x68\xce\x3c\x80"


def h264(data: bytes) -> Frame:
    return Frame(data=data, format=PixelFormat.H264)


def collect(rtp: Rtp, data: bytes) -> list[bytes]:
    out: list[bytes] = []
    rtp.wrap_h264(h264(data), out.append)
    return out


def test_find_annexb_positions():
    data = b"\xff" + SC + b"\x65" + SC
    assert find_annexb(data) == 1
    assert find_annexb(data, 2) == 5
    assert find_annexb(data, 6) == -1
    assert find_annexb(b"\x00\x00") == -1


def test_single_nalu_datagram():
    rtp = Rtp(ssrc=0x01020304)
    nalu = b"\x65" + b"\x11" * 50
    packets = collect(rtp, SC + nalu)
    assert len(packets) == 1
    packet = packets[0]
    assert packet[0] == 0x80
    assert packet[1] == 0x80 | 96
    assert packet[8:12] == b"\x01\x02\x03\x04"
    assert packet[HEADER_SIZE:] == nalu


def test_multiple_nalus_marker_and_seq():
    rtp = Rtp(ssrc=7)
    packets = collect(rtp, SC + SPS + SC + PPS + SC + b"\x65\x01\x02")
    assert [p[HEADER_SIZE:] for p in packets] == [SPS, PPS, b"\x65\x01\x02"]
    assert [p[1] & 0x80 for p in packets] == [0, 0, 0x80]
    seqs = [struct.unpack(">H", p[2:4])[0] for p in packets]
    assert seqs == [0, 1, 2]
    assert rtp.seq == 3
    pts = {p[4:8] for p in packets}
    assert len(pts) == 1


def test_four_byte_start_code_strips_extra_zero():
    rtp = Rtp(ssrc=1)
    data = b"\x00\x00\x00\x01\x67AA\x00\x00\x00\x01\x68BB"
    packets = collect(rtp, data)
    assert [p[HEADER_SIZE:] for p in packets] == [b"\x67AA", b"\x68BB"]


def test_no_start_code_sends_nothing():
    rtp = Rtp(ssrc=1)
    assert collect(rtp, b"\x65\x01\x02\x03") == []
    assert rtp.seq == 0


def test_sps_pps_captured_and_sdp():
    rtp = Rtp(ssrc=1)
    assert rtp.make_sdp() is None
    collect(rtp, SC + SPS)
    assert rtp.sps == SPS
    assert rtp.make_sdp() is None
    collect(rtp, SC + PPS)
    assert rtp.pps == PPS
    sdp = rtp.make_sdp()
    assert sdp.startswith("v=0\r\n")
    assert sdp.endswith("a=sendonly\r\n")
    assert f"a=fmtp:96 sprop-sps={base64_encode(SPS)}\r\n" in sdp
    assert f"a=fmtp:96 sprop-pps={base64_encode(PPS)}\r\n" in sdp
    assert "a=rtpmap:96 H264/90000\r\n" in sdp


def test_fu_a_fragmentation_round_trip():
    rtp = Rtp(ssrc=9)
    nalu = b"\x65" + bytes(i % 251 for i in range(2999))
    packets = collect(rtp, SC + nalu)
    assert len(packets) > 1
    assert all(len(p) <= RTP_DATAGRAM_SIZE for p in packets)
    assert all(p[HEADER_SIZE] == 0x7C for p in packets)
    fu_headers = [p[HEADER_SIZE + 1] for p in packets]
    assert fu_headers[0] == 0x85
    assert fu_headers[-1] == 0x45
    assert all(h == 0x05 for h in fu_headers[1:-1])
    assert [p[1] & 0x80 for p in packets] == [0] * (len(packets) - 1) + [0x80]
    assert b"".join(p[FU_OVERHEAD:] for p in packets) == nalu[1:]


def test_size_boundary_between_single_and_fragmented():
    rtp = Rtp(ssrc=1)
    fits = b"\x65" + b"\x00\x02" * ((RTP_DATAGRAM_SIZE - HEADER_SIZE - 1) // 2) + b"\x02"
    assert len(fits) + HEADER_SIZE == RTP_DATAGRAM_SIZE
    assert len(collect(rtp, SC + fits)) == 1
    too_big = fits + b"\x02"
    assert len(collect(rtp, SC + too_big)) == 2


def test_sequence_wraps():
    rtp = Rtp(ssrc=1)
    rtp.seq = 0xFFFF
    packets = collect(rtp, SC + b"\x65\x01" + SC + b"\x65\x02")
    assert [struct.unpack(">H", p[2:4])[0] for p in packets] == [0xFFFF, 0]


def test_rejects_non_h264():
    rtp = Rtp(ssrc=1)
    with pytest.raises(ValueError):
        rtp.wrap_h264(Frame(data=SC + b"\x65", format=PixelFormat.JPEG), lambda _: None)