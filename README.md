# ustreamer

A package for video frames that are passed between processes through shared
memory ("memory sinks"). It contains:

- a writer and a reader for the sink format (`ustreamer.memsink`);
- a client that waits for new frames and returns them as dicts
  (`ustreamer.client`);
- an RTP packetizer for H.264 streams that also builds SDP offers
  (`ustreamer.rtp`);
- a JPEG header reader and decoder (`ustreamer.unjpeg`);
- the `ustreamer-dump` command, which copies frames from a sink to a file or
  to stdout (`ustreamer.dump`).

The package needs a POSIX system, because sinks are locked with `flock`.
Sink objects live in `/dev/shm` when that directory exists and in the
temporary directory otherwise.

## Installation

```
pip install .
```

Pillow is used to read and decode JPEG frames. To run the tests:

```
pip install .[test]
pytest
```

## Dumping a sink

```
ustreamer-dump --sink test --output - | ffmpeg -use_wallclock_as_timestamps 1 -i pipe: -c:v libx264 test.mp4
```

Options:

- `-s`, `--sink <name>`: memory sink ID (required)
- `-t`, `--sink-timeout <sec>`: how long to wait for the sink lock, 1 to 60 (default 1)
- `-o`, `--output <filename>`: file to write frames to, `-` for stdout; without
  it the frames are read and dropped
- `-j`, `--output-json`: write one JSON object per line for each frame, with its
  size, geometry, format, stride, online flag, timestamps and base64 data;
  it has no effect without `--output`
- `-c`, `--count <N>`: stop after N frames (default 0, no limit)
- `-i`, `--interval <sec>`: delay between frames, 0 to 60 (default 0)
- `--log-level <N>` (0 info, 1 perf, 2 verbose, 3 debug), `--perf`,
  `--verbose`, `--debug`: how much is logged to stderr
- `--force-log-colors`, `--no-log-colors`: colored logging; by default it is
  colored when stderr is a terminal
- `-h`, `--help`: print the help text; `-v`, `--version`: print the version

The command exits with 0 on success and 1 on a bad command line, an output
file that cannot be opened or a sink error. SIGINT, SIGTERM and SIGPIPE stop
it cleanly.

From Python, `ustreamer.dump.main(argv)` runs the same command and returns
the exit code; `parse_args(argv)` returns the parsed `Options` and
`dump_sink(sink_name, sink_timeout, count, interval, output, stop)` runs the
reading loop, writing to an `OutputFile` until the `stop` event is set.

## Reading frames with the client

```python
from ustreamer.client import Memsink

with Memsink("test", lock_timeout=1.0, wait_timeout=1.0, drop_same_frames=0.5) as sink:
    frame = sink.wait_frame()
    if frame is not None:
        print(frame["width"], frame["height"], len(frame["data"]))
```

`wait_frame()` returns a dict holding `width`, `height`, `format`, `stride`,
`online`, `key`, `grab_ts`, `encode_begin_ts`, `encode_end_ts` and `data`,
or `None` when no new frame arrived within `wait_timeout`. With
`drop_same_frames` above zero, a frame identical to the previous one is
skipped if it arrives within that many seconds. The timeouts must be
positive and `drop_same_frames` must not be negative, or `ValueError` is
raised. After `close()`, `is_opened()` is false and `wait_frame()` raises
`RuntimeError`.

## Writing and reading a sink

```python
from ustreamer.frame import Frame, PixelFormat
from ustreamer.memsink import MemSink

frame = Frame(format=PixelFormat.JPEG, width=640, height=480)
frame.set_data(jpeg_bytes)

with MemSink("output", "test", server=True, mode=0o660, rm=True,
             client_ttl=10, timeout=1) as sink:
    if sink.server_check(frame):
        sink.server_put(frame)
```

`server_check()` tells whether a frame should be written: a client holds the
lock or was seen within `client_ttl` seconds, the sink has not been written
yet, or the frame's metadata changed. `server_put()` returns `False` when the
frame is larger than 32 MiB or the memory stayed busy for a second.

A client opens the same object with `server=False` and calls `client_get()`,
which returns a new `Frame` or `None` when nothing changed or the lock could
not be taken within `timeout`. Failures raise `MemsinkError`.

## Frames

`ustreamer.frame.Frame` is a dataclass holding `data` and the metadata
`width`, `height`, `format`, `stride`, `online`, `key`, `grab_ts`,
`encode_begin_ts` and `encode_end_ts`. It has `used`, `set_data()`,
`append_data()`, `copy()`, `copy_meta_from()`, `same_meta()`,
`same_content()` and `padding()`. `PixelFormat` lists the known fourcc
values; `fourcc()`, `fourcc_to_string()` and `is_jpeg()` convert and test
them.

## RTP packetizing

```python
from ustreamer.rtp import Rtp

rtp = Rtp()
rtp.wrap_h264(h264_frame, lambda datagram: sock.send(datagram))
sdp = rtp.make_sdp()  # None until SPS and PPS have been seen
```

`wrap_h264()` splits an Annex B frame at its `00 00 01` start codes and hands
each datagram to the callback. Datagrams are at most 1200 bytes; NAL units
that do not fit are split into FU-A fragments, and the last packet of the
frame carries the marker bit. A frame whose format is not H.264 raises
`ValueError`.

## JPEG

`ustreamer.unjpeg.unjpeg(frame, decode=True)` returns an RGB24 frame with the
JPEG's width, height and stride and the source's other metadata; its data
holds the decoded pixels only when `decode` is true. A frame that is not
JPEG raises `ValueError`; data that cannot be decoded raises `UnjpegError`.

## Logging

`ustreamer.logs.configure(level, colored)` sends the package's log to stderr
at a `LogLevel` (`INFO`, `PERF`, `VERBOSE`, `DEBUG`); `get_logger()` returns
the package logger.

## What this package does not do

It does not capture from video devices, encode video or serve streams over
HTTP or WebRTC. It only writes and reads memory sinks, packs H.264 frames
into RTP datagrams and dumps sinks; something else has to put frames into a
sink and send the datagrams.