import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime

_LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S.%f'

_console_stream = None


def _utf8_console():
    # Force UTF-8 so product names never raise UnicodeEncodeError on
    # consoles that default to cp1252. Built once: a discarded wrapper
    # would close stdout's buffer when collected.
    global _console_stream
    if _console_stream is None:
        if hasattr(sys.stdout, "buffer"):
            _console_stream = io.TextIOWrapper(
                sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True
            )
        else:
            _console_stream = sys.stdout
    return _console_stream


class MillisecondFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        if datefmt:
            s = ct.strftime(datefmt.replace('%f', f'{int(record.msecs):03d}'))
        else:
            s = ct.strftime("%Y-%m-%d %H:%M:%S")
            s += f".{int(record.msecs):03d}"
        return s


def setup_logger(
    name: str,
    log_path: str | Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure *name* with a UTF-8 console handler and a rotating file.

    Calling it again for the same logger replaces the handlers instead of
    stacking duplicates, so every line is written once.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = MillisecondFormatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)

    if console:
        ch = logging.StreamHandler(_utf8_console())
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger
