import logging
import sys
from typing import Optional, TextIO


COLOR_MAP = {
    "DHT": "cyan",
    "DIRECTORY": "cyan",
    "WIRE": "blue",
    "EXT": "blue",
    "FETCH": "green",
    "PACK": "yellow",
    "HELPER": "magenta",
    "DAEMON": "yellow",
    "TRANSFER": "green",
    "GIT": "red",
}

ANSI_CODES = {
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
}
ANSI_RESET = "\033[0m"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def colorize(msg: str) -> str:
    for key, color in COLOR_MAP.items():
        if f"[{key}" in msg:
            return f"{ANSI_CODES[color]}{msg}{ANSI_RESET}"
    return msg


class ColorFormatter(logging.Formatter):
    """Formatter that colors a record by its [TAG]."""

    def format(self, record: logging.LogRecord) -> str:
        return colorize(super().format(record))


def setup_logging(
    level: str = "INFO",
    color: bool = True,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Send all log output to stderr.

    stdout is reserved for the remote-helper protocol, git reads it.
    Color is on by default because stderr is not a tty under git.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    formatter_cls = ColorFormatter if color else logging.Formatter
    handler.setFormatter(formatter_cls(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return handler
