import logging

import pytest

from ustreamer import logs
from ustreamer.logs import LogFormatter, LogLevel


def _record(level, msg, **extra):
    record = logging.LogRecord("ustreamer", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_plain_info_format():
    record = _record(logging.INFO, "hello")
    record.threadName = "worker"
    text = LogFormatter(colored=False).format(record)
    prefix = "-- INFO  ["
    assert text.startswith(prefix)
    assert text.endswith("] -- hello")
    inner = text[len(prefix):text.index("]")]
    timestamp, name = inner.split()
    whole, fraction = timestamp.split(".")
    assert whole.isdigit()
    assert len(fraction) == 3 and fraction.isdigit()
    assert name == "worker"
    assert inner.endswith("    worker")


@pytest.mark.parametrize(
    "level,label",
    [
        (logging.ERROR, "ERROR"),
        (LogLevel.PERF.logging_level, "PERF "),
        (LogLevel.VERBOSE.logging_level, "VERB "),
        (LogLevel.DEBUG.logging_level, "DEBUG"),
    ],
)
def test_labels(level, label):
    text = LogFormatter(colored=False).format(_record(level, "msg"))
    assert text.startswith(f"-- {label} [")
    assert text.endswith(" -- msg")


def test_colored_error_uses_red_and_reset():
    text = LogFormatter(colored=True).format(_record(logging.ERROR, "boom"))
    assert text.startswith(logs.COLOR_GRAY + "-- " + logs.COLOR_RED + "ERROR")
    assert text.endswith(logs.COLOR_RED + "boom" + logs.COLOR_RESET)


def test_colored_perf_fps_uses_yellow():
    record = _record(LogLevel.PERF.logging_level, "fps", fps=True)
    text = LogFormatter(colored=True).format(record)
    assert (logs.COLOR_YELLOW + "PERF ") in text
    assert logs.COLOR_CYAN not in text


def test_thread_name_is_truncated():
    record = _record(logging.INFO, "x")
    record.threadName = "a-very-long-thread-name-indeed"
    text = LogFormatter(colored=False).format(record)
    assert "a-very-long-thr]" in text
    assert "a-very-long-thre" not in text


@pytest.mark.parametrize("position", range(len(list(LogLevel))))
def test_configured_level_enables_lower_levels_only(position):
    ordered = list(LogLevel)
    logger = logs.configure(ordered[position], colored=False)
    enabled = [logger.isEnabledFor(lvl.logging_level) for lvl in ordered]
    assert enabled == [index <= position for index in range(len(ordered))]


def test_configure_filters_by_level(capsys):
    logger = logs.configure(LogLevel.PERF, colored=False)
    assert logger is logs.get_logger()
    assert logger.isEnabledFor(LogLevel.PERF.logging_level)
    assert not logger.isEnabledFor(LogLevel.VERBOSE.logging_level)
    logger.info("visible")
    logger.log(LogLevel.VERBOSE.logging_level, "hidden")
    err = capsys.readouterr().err
    assert "-- INFO " in err and "visible" in err
    assert "hidden" not in err


def test_configure_twice_does_not_duplicate(capsys):
    logs.configure(LogLevel.INFO, colored=False)
    logger = logs.configure(LogLevel.INFO, colored=False)
    logger.info("once")
    err = capsys.readouterr().err
    assert err.count("once") == 1


def test_configure_rejects_unknown_level():
    with pytest.raises(ValueError):
        logs.configure(7, colored=False)