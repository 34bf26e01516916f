"""Command that dumps frames from a shared-memory sink to a file or stdout."""

from __future__ import annotations

import argparse
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass

from .frame import Frame, fourcc_to_string
from .logs import LogLevel, configure, get_logger
from .memsink import MemSink, MemsinkError
from .tools import VERSION, base64_encode, floor_ms, now_monotonic

_LLONG_MAX = 2**63 - 1
_EMPTY_POLLING = 0.001

_C_INT = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


class UsageError(Exception):
    """The command line could not be accepted."""


@dataclass
class Options:
    """Settings taken from the command line."""

    sink: str | None = None
    sink_timeout: int = 1
    output: str | None = None
    output_json: bool = False
    count: int = 0
    interval: float = 0.0
    log_level: LogLevel = LogLevel.INFO
    log_colored: bool | None = None
    action: str | None = None


class OutputFile:
    """Writes frames raw or as JSON lines to a file, or to stdout for ``-``."""

    def __init__(self, path: str, json: bool = False) -> None:
        self.path = path
        self.json = json
        self._log = get_logger()
        if path == "-":
            self._log.info("Using output: <stdout>")
            self._fp = getattr(sys.stdout, "buffer", sys.stdout)
            self._owned = False
        else:
            self._log.info("Using output: %s", path)
            try:
                self._fp = open(path, "wb")
            except OSError as err:
                self._log.error("Can't open output file: %s", err.strerror or err)
                raise
            self._owned = True
        self._closed = False

    def write(self, frame: Frame) -> None:
        """Write one frame and flush."""
        if self._closed:
            raise ValueError("Output file is closed")
        if self.json:
            line = (
                '{"size": %d, "width": %d, "height": %d,'
                ' "format": %d, "stride": %d, "online": %d,'
                ' "grab_ts": %.3f, "encode_begin_ts": %.3f, "encode_end_ts": %.3f,'
                ' "data": "%s"}\n'
                % (
                    frame.used,
                    frame.width,
                    frame.height,
                    frame.format,
                    frame.stride,
                    int(bool(frame.online)),
                    frame.grab_ts,
                    frame.encode_begin_ts,
                    frame.encode_end_ts,
                    base64_encode(frame.data),
                )
            )
            self._fp.write(line.encode("ascii"))
        else:
            self._fp.write(bytes(frame.data))
        self._fp.flush()

    def close(self) -> None:
        """Close the file; stdout is left open."""
        if self._closed:
            return
        self._closed = True
        if self._owned:
            try:
                self._fp.close()
            except OSError as err:
                self._log.error("Can't close output file: %s", err.strerror or err)

    def __enter__(self) -> OutputFile:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _parse_c_int(text: str) -> int:
    if text == "":
        return 0
    match = _C_INT.fullmatch(text)
    if match is None:
        raise ValueError(text)
    sign, body = match.groups()
    if body[:2].lower() == "0x":
        value = int(body, 16)
    elif body.startswith("0") and len(body) > 1:
        value = int(body, 8)
    else:
        value = int(body)
    return -value if sign == "-" else value


def _parse_c_float(text: str) -> float:
    if text == "":
        return 0.0
    if text != text.rstrip() or "_" in text:
        raise ValueError(text)
    value = float(text)
    if value != value:
        raise ValueError(text)
    return value


def _ranged(name: str, convert, low, high, show):
    class _RangedAction(argparse.Action):
        def __call__(self, parser, namespace, values, option_string=None):
            try:
                value = convert(values)
            except ValueError:
                value = None
            if value is None or not low <= value <= high:
                raise UsageError(
                    f"Invalid value for '{name}={values}': min={show(low)}, max={show(high)}"
                )
            setattr(namespace, self.dest, value)

    return _RangedAction


class _EarlyExit(Exception):
    def __init__(self, action: str) -> None:
        super().__init__(action)
        self.action = action


class _EarlyAction(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs) -> None:
        kwargs.pop("nargs", None)
        super().__init__(option_strings, dest, nargs=0, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        raise _EarlyExit(self.dest)


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _build_parser() -> _Parser:
    parser = _Parser(prog="ustreamer-dump", add_help=False)
    parser.add_argument("-s", "--sink", dest="sink")
    parser.add_argument(
        "-t", "--sink-timeout", dest="sink_timeout",
        action=_ranged("--sink-timeout", _parse_c_int, 1, 60, str),
    )
    parser.add_argument("-o", "--output", dest="output")
    parser.add_argument("-j", "--output-json", dest="output_json", action="store_true")
    parser.add_argument(
        "-c", "--count", dest="count",
        action=_ranged("--count", _parse_c_int, 0, _LLONG_MAX, str),
    )
    parser.add_argument(
        "-i", "--interval", dest="interval",
        action=_ranged("--interval", _parse_c_float, 0.0, 60.0, lambda v: f"{v:f}"),
    )
    parser.add_argument(
        "--log-level", dest="log_level",
        action=_ranged(
            "--log-level",
            lambda text: LogLevel(_parse_c_int(text)),
            LogLevel.INFO,
            LogLevel.DEBUG,
            lambda v: str(int(v)),
        ),
    )
    parser.add_argument("--perf", dest="log_level", action="store_const", const=LogLevel.PERF)
    parser.add_argument("--verbose", dest="log_level", action="store_const", const=LogLevel.VERBOSE)
    parser.add_argument("--debug", dest="log_level", action="store_const", const=LogLevel.DEBUG)
    parser.add_argument("--force-log-colors", dest="log_colored", action="store_const", const=True)
    parser.add_argument("--no-log-colors", dest="log_colored", action="store_const", const=False)
    parser.add_argument("-h", "--help", dest="help", action=_EarlyAction)
    parser.add_argument("-v", "--version", dest="version", action=_EarlyAction)
    return parser


def parse_args(argv=None) -> Options:
    """Parse command-line arguments; raises UsageError on a bad command line."""
    if argv is None:
        argv = sys.argv[1:]
    options = Options()
    try:
        _, extras = _build_parser().parse_known_args(list(argv), namespace=options)
    except _EarlyExit as early:
        options.action = early.action
        return options
    for arg in extras:
        if arg.startswith("-") and arg != "-":
            raise UsageError(f"unrecognized option '{arg}'")
    if not options.sink:
        raise UsageError("Missing option --sink. See --help for details.")
    return options


def _help_text(log_level: LogLevel) -> str:
    lines = [
        "\nuStreamer-dump - Dump uStreamer's memory sink to file",
        "═════════════════════════════════════════════════════",
        f"Version: {VERSION}\n",
        "Example:",
        "════════",
        "    ustreamer-dump --sink test --output - \\",
        "        | ffmpeg -use_wallclock_as_timestamps 1 -i pipe: -c:v libx264 test.mp4\n",
        "Sink options:",
        "═════════════",
        "    -s|--sink <name>  ──────── Memory sink ID. No default.\n",
        "    -t|--sink-timeout <sec>  ─ Timeout for the upcoming frame. Default: 1.\n",
        "    -o|--output <filename> ─── Filename to dump output to. Use '-' for stdout. "
        "Default: just consume the sink.\n",
        "    -j|--output-json  ──────── Format output as JSON. Required option --output. "
        "Default: disabled.\n",
        "    -c|--count  <N>  ───────── Limit the number of frames. Default: 0 (infinite).\n",
        "    -i|--interval <sec>  ───── Delay between reading frames (float). Default: 0.\n",
        "Logging options:",
        "════════════════",
        "    --log-level <N>  ──── Verbosity level of messages from 0 (info) to 3 (debug).",
        "                          Enabling debugging messages can slow down the program.",
        "                          Available levels: 0 (info), 1 (performance), 2 (verbose), 3 (debug).",
        f"                          Default: {int(log_level)}.\n",
        "    --perf  ───────────── Enable performance messages (same as --log-level=1). Default: disabled.\n",
        "    --verbose  ────────── Enable verbose messages and lower (same as --log-level=2). "
        "Default: disabled.\n",
        "    --debug  ──────────── Enable debug messages and lower (same as --log-level=3). "
        "Default: disabled.\n",
        "    --force-log-colors  ─ Force color logging. Default: colored if stderr is a TTY.\n",
        "    --no-log-colors  ──── Disable color logging. Default: ditto.\n",
        "Help options:",
        "═════════════",
        "    -h|--help  ─────── Print this text and exit.\n",
        "    -v|--version  ──── Print version and exit.\n",
    ]
    return "\n".join(lines)


def dump_sink(sink_name, sink_timeout=1, count=0, interval=0.0, output=None, stop=None) -> None:
    """Read frames from the sink until stopped or ``count`` frames were read.

    A ``count`` of 0 means no limit. Raises MemsinkError if the sink fails.
    """
    if stop is None:
        stop = threading.Event()
    remaining = count if count > 0 else None
    interval_us = int(interval * 1_000_000)
    log = get_logger()

    fps_accum = 0
    fps_second = 0
    last_ts = 0.0

    try:
        with MemSink("input", sink_name, server=False, mode=0, rm=False, client_ttl=0, timeout=sink_timeout) as sink:
            while not stop.is_set():
                frame = sink.client_get()
                if frame is None:
                    time.sleep(_EMPTY_POLLING)
                    continue

                now = now_monotonic()
                now_second = floor_ms(now)
                log.log(
                    LogLevel.VERBOSE.logging_level,
                    "Frame: size=%d, res=%dx%d, fourcc=%s, stride=%d, online=%d, key=%d, "
                    "latency=%.3f, diff=%.3f",
                    frame.used, frame.width, frame.height, fourcc_to_string(frame.format),
                    frame.stride, int(bool(frame.online)), int(bool(frame.key)),
                    now - frame.grab_ts, (now - last_ts) if last_ts else 0.0,
                )
                last_ts = now
                log.debug(
                    "       grab_ts=%.3f, encode_begin_ts=%.3f, encode_end_ts=%.3f",
                    frame.grab_ts, frame.encode_begin_ts, frame.encode_end_ts,
                )

                if now_second != fps_second:
                    fps = fps_accum
                    fps_accum = 0
                    fps_second = now_second
                    log.log(
                        LogLevel.PERF.logging_level,
                        "A new second has come; captured_fps=%d",
                        fps,
                        extra={"fps": True},
                    )
                fps_accum += 1

                if output is not None:
                    output.write(frame)

                if remaining is not None:
                    remaining -= 1
                    if remaining <= 0:
                        break

                if interval_us > 0:
                    time.sleep(interval_us / 1_000_000)
    finally:
        log.info("Bye-bye")


_SIGNAL_NAMES = {"SIGTERM": "SIGTERM", "SIGINT": "SIGINT", "SIGPIPE": "SIGPIPE"}


def _install_signal_handlers(stop: threading.Event) -> dict:
    log = get_logger()

    def handler(signum, _frame):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = None
        if name in _SIGNAL_NAMES:
            log.info("===== Stopping by %s =====", name)
        else:
            log.info("===== Stopping by %d =====", signum)
        stop.set()

    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for name in _SIGNAL_NAMES:
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        log.debug("Installing %s handler ...", name)
        previous[signum] = signal.signal(signum, handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv=None) -> int:
    """Run the dump command; returns the process exit code."""
    try:
        options = parse_args(argv)
    except UsageError as err:
        print(err)
        return 1

    if options.action == "help":
        print(_help_text(options.log_level))
        return 0
    if options.action == "version":
        print(VERSION)
        return 0

    configure(options.log_level, options.log_colored)

    output = None
    if options.output:
        try:
            output = OutputFile(options.output, options.output_json)
        except OSError:
            return 1

    stop = threading.Event()
    previous = _install_signal_handlers(stop)
    try:
        dump_sink(options.sink, options.sink_timeout, options.count, options.interval, output, stop)
        code = 0
    except MemsinkError:
        code = 1
    finally:
        _restore_signal_handlers(previous)
        if output is not None:
            output.close()
    return code