"""Logging setup with the streamer's level scheme and line format."""

from __future__ import annotations

import enum
import logging
import sys
import threading

from .tools import now_monotonic

COLOR_GRAY = "\x1b[30;1m"
COLOR_RED = "\x1b[31;1m"
COLOR_GREEN = "\x1b[32;1m"
COLOR_YELLOW = "\x1b[33;1m"
COLOR_BLUE = "\x1b[34;1m"
COLOR_CYAN = "\x1b[36;1m"
COLOR_RESET = "\x1b[0m"

MAX_THREAD_NAME = 16
LOGGER_NAME = "ustreamer"

_PERF = 18
_VERBOSE = 15

logging.addLevelName(_PERF, "PERF")
logging.addLevelName(_VERBOSE, "VERBOSE")


class LogLevel(enum.IntEnum):
    """Verbosity levels, from least to most talkative."""

    INFO = 0
    PERF = 1
    VERBOSE = 2
    DEBUG = 3

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.INFO: logging.INFO,
            LogLevel.PERF: _PERF,
            LogLevel.VERBOSE: _VERBOSE,
            LogLevel.DEBUG: logging.DEBUG,
        }[self]


def _style(record: logging.LogRecord) -> tuple[str, str, str]:
    level = record.levelno
    if level >= logging.ERROR:
        return COLOR_RED, "ERROR", COLOR_RED
    if level >= logging.WARNING:
        return COLOR_YELLOW, "WARN ", COLOR_YELLOW
    if level >= logging.INFO:
        return COLOR_GREEN, "INFO ", ""
    if level >= _PERF:
        color = COLOR_YELLOW if getattr(record, "fps", False) else COLOR_CYAN
        return color, "PERF ", color
    if level >= _VERBOSE:
        return COLOR_BLUE, "VERB ", COLOR_BLUE
    return COLOR_GRAY, "DEBUG", COLOR_GRAY


class LogFormatter(logging.Formatter):
    """Formats records as ``-- LABEL [monotonic thread] -- message``."""

    def __init__(self, colored: bool = False) -> None:
        super().__init__()
        self.colored = colored

    def format(self, record: logging.LogRecord) -> str:
        label_color, label, msg_color = _style(record)
        thread_name = (record.threadName or threading.current_thread().name)[: MAX_THREAD_NAME - 1]
        stamp = f"[{now_monotonic():.3f} {thread_name:>9}]"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.colored:
            return (
                f"{COLOR_GRAY}-- {label_color}{label}{COLOR_GRAY} {stamp} -- "
                f"{COLOR_RESET}{msg_color}{message}{COLOR_RESET}"
            )
        return f"-- {label} {stamp} -- {message}"


def get_logger() -> logging.Logger:
    """The package logger."""
    return logging.getLogger(LOGGER_NAME)


def configure(level=LogLevel.INFO, colored: bool | None = None) -> logging.Logger:
    """Send package logs to stderr at ``level``; colour defaults to stderr being a TTY."""
    level = LogLevel(level)
    if colored is None:
        colored = sys.stderr.isatty()
    logger = get_logger()
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LogFormatter(colored))
    logger.addHandler(handler)
    logger.setLevel(level.logging_level)
    logger.propagate = False
    return logger