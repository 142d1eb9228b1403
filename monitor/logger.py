"""
Logging setup for the trading loop. Three sinks:
  - stderr: colored one-line records at the configured level
  - logs/run_YYYYMMDD_HHMMSS.log: everything down to DEBUG
  - optional ndjson file for log shippers
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_MAGENTA + _BOLD, "CRT"),
}

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "py_clob_client", "websockets", "uvicorn", "uvicorn.access")


class ConsoleFormatter(logging.Formatter):
    """`HH:MM:SS TAG logger: message` with the level tag colored."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, ("", record.levelname[:3]))
        name = record.name.rsplit(".", 1)[-1]
        msg = record.getMessage()

        if self._use_color:
            line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {_DIM}{name}:{_RESET} {msg}"
        else:
            line = f"{ts} {tag} {name}: {msg}"

        if record.exc_info and record.exc_info[1]:
            exc = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
            line += f"\n{_RED}     {exc}{_RESET}" if self._use_color else f"\n     {exc}"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = repr(record.exc_info[1])
        return json.dumps(entry, separators=(",", ":"))


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | None = None,
) -> str:
    """Install the three sinks on the root logger. Returns the debug log path."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"run_{stamp}.log")

    debug_file = logging.FileHandler(log_path, mode="a")
    debug_file.setLevel(logging.DEBUG)
    debug_file.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)-8s %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(debug_file)

    if json_log_file:
        fh = logging.FileHandler(json_log_file, mode="a")
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
