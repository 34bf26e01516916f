"""Packing of H.264 frames into RTP datagrams, and the matching SDP offer."""

from __future__ import annotations

import struct
import threading
from typing import Callable

from .frame import Frame, PixelFormat
from .tools import RN, base64_encode, now_id, now_monotonic_us, triple_u32

RTP_DATAGRAM_SIZE = 1200
PAYLOAD = 96
HEADER_SIZE = 12
FU_OVERHEAD = HEADER_SIZE + 2

_ANNEXB = b"\x00\x00\x01"
_PRE = len(_ANNEXB)
_NALU_SPS = 7
_NALU_PPS = 8
_NALU_FU_A = 28


def find_annexb(data, start: int = 0) -> int:
    """Offset of the first ``00 00 01`` start code at or after ``start``, or -1."""
    return bytes(data).find(_ANNEXB, start)


class Rtp:
    """An RTP H.264 packetizer that remembers the stream's SPS and PPS."""

    def __init__(self, ssrc: int | None = None) -> None:
        if ssrc is None:
            ssrc = triple_u32(now_monotonic_us())
        self.ssrc = ssrc & 0xFFFFFFFF
        self.seq = 0
        self._sps = b""
        self._pps = b""
        self._lock = threading.Lock()

    @property
    def sps(self) -> bytes:
        """The last sequence parameter set seen, or empty bytes."""
        with self._lock:
            return self._sps

    @property
    def pps(self) -> bytes:
        """The last picture parameter set seen, or empty bytes."""
        with self._lock:
            return self._pps

    def make_sdp(self) -> str | None:
        """An SDP offer for the stream, or None until SPS and PPS are known."""
        with self._lock:
            if not self._sps or not self._pps:
                return None
            sps = base64_encode(self._sps)
            pps = base64_encode(self._pps)

        lines = [
            "v=0",
            f"o=- {now_id() >> 1} 1 IN IP4 127.0.0.1",
            "s=Pi-KVM uStreamer",
            "t=0 0",
            f"m=video 1 RTP/SAVPF {PAYLOAD}",
            "c=IN IP4 0.0.0.0",
            f"a=rtpmap:{PAYLOAD} H264/90000",
            f"a=fmtp:{PAYLOAD} profile-level-id=42E01F",
            f"a=fmtp:{PAYLOAD} packetization-mode=1",
            f"a=fmtp:{PAYLOAD} sprop-sps={sps}",
            f"a=fmtp:{PAYLOAD} sprop-pps={pps}",
            f"a=rtcp-fb:{PAYLOAD} nack",
            f"a=rtcp-fb:{PAYLOAD} nack pli",
            f"a=rtcp-fb:{PAYLOAD} goog-remb",
            "a=sendonly",
        ]
        return "".join(line + RN for line in lines)

    def wrap_h264(self, frame: Frame, callback: Callable[[bytes], None]) -> None:
        """Split an Annex B H.264 frame into RTP datagrams passed to ``callback``."""
        if frame.format != PixelFormat.H264:
            raise ValueError("Frame is not H264")

        data = bytes(frame.data)
        pts = (now_monotonic_us() * 9 // 100) & 0xFFFFFFFF  # 90 kHz units

        last_offset = -_PRE
        while True:
            offset = find_annexb(data, last_offset + _PRE)
            if offset < 0:
                break
            if last_offset >= 0:
                nalu = data[last_offset + _PRE:offset]
                if nalu.endswith(b"\x00"):  # extra zero of a 4-byte start code
                    nalu = nalu[:-1]
                self._process_nalu(nalu, pts, False, callback)
            last_offset = offset

        if last_offset >= 0:
            self._process_nalu(data[last_offset + _PRE:], pts, True, callback)

    def _process_nalu(self, nalu: bytes, pts: int, marked: bool, callback) -> None:
        if not nalu:
            return
        ref_idc = (nalu[0] >> 5) & 3
        nalu_type = nalu[0] & 0x1F

        if nalu_type == _NALU_SPS:
            with self._lock:
                self._sps = nalu
        elif nalu_type == _NALU_PPS:
            with self._lock:
                self._pps = nalu

        if len(nalu) + HEADER_SIZE <= RTP_DATAGRAM_SIZE:
            callback(self._header(pts, marked) + nalu)
            return

        indicator = bytes([_NALU_FU_A | (ref_idc << 5)])
        body = nalu[1:]
        frag_size = RTP_DATAGRAM_SIZE - FU_OVERHEAD
        for start in range(0, len(body), frag_size):
            first = start == 0
            last = start + frag_size >= len(body)
            fu = nalu_type | (0x80 if first else 0) | (0x40 if last else 0)
            callback(
                self._header(pts, marked and last)
                + indicator
                + bytes([fu])
                + body[start:start + frag_size]
            )

    def _header(self, pts: int, marked: bool) -> bytes:
        word0 = 0x80000000 | ((PAYLOAD & 0x7F) << 16) | self.seq
        if marked:
            word0 |= 1 << 23
        self.seq = (self.seq + 1) & 0xFFFF
        return struct.pack(">III", word0, pts, self.ssrc)