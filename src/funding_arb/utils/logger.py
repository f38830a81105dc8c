import io
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class DotMsFormatter(logging.Formatter):
    """Timestamps with a dot and three-digit milliseconds: ``12:00:01.042``."""

    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        ms = f"{int(record.msecs):03d}"
        if datefmt:
            return ct.strftime(datefmt.replace("%f", ms))
        return f"{ct.strftime('%Y-%m-%d %H:%M:%S')}.{ms}"


_utf8_streams = {}   # stdout buffer -> wrapper; kept alive so the buffer is never closed on GC


def _console_stream():
    # UTF-8 so exchange error payloads with non-ASCII text never break logging on cp1252 consoles.
    buffer = getattr(sys.stdout, "buffer", None)
    if buffer is None:
        return sys.stdout
    if buffer not in _utf8_streams:
        _utf8_streams[buffer] = io.TextIOWrapper(buffer, encoding="utf-8", errors="replace", line_buffering=True)
    return _utf8_streams[buffer]


def setup_logger(
    name: str,
    log_path: Union[str, Path],
    level: Union[int, str] = logging.INFO,
) -> logging.Logger:
    """
    Configure the named logger with a console handler and a rotating file.

    Component loggers created with ``logging.getLogger(__name__)`` under the
    ``funding_arb`` package propagate to the ``funding_arb`` logger, so one
    call at startup covers the whole engine. Calling it again replaces the
    handlers instead of stacking duplicates.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = DotMsFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    ch = logging.StreamHandler(_console_stream())
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    fh = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    return logger
