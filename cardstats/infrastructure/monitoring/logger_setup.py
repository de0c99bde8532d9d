"""Root logger wiring for the cardstats CLI.

Log records go to stderr, so the JSON printed by `cardstats call` on stdout
stays machine-readable, and optionally to a file from `logging.file`.
The HTTP client stack logs every request line; it is held at WARNING unless
the CLI runs with --verbose.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_LEVEL = logging.WARNING
DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
HTTP_LOGGERS = ("httpx", "httpcore")

LevelSpec = Union[int, str, None]

def resolve_level(level: LevelSpec) -> int:
    """Turns a config value into a logging level.

    Accepts logging.INFO, 'info', 'INFO' or '20'. Anything unrecognised
    falls back to DEFAULT_LOG_LEVEL.
    """
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        text = level.strip()
        if text.isdigit():
            return int(text)
        named = logging.getLevelName(text.upper())
        if isinstance(named, int):
            return named
    return DEFAULT_LOG_LEVEL

def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

def _open_log_file(log_file: str) -> Optional[logging.FileHandler]:
    path = Path(log_file).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, encoding='utf-8')
    except OSError as e:
        # stderr logging still works; a bad path must not stop the command
        logging.getLogger(__name__).error(f"Cannot log to {path}: {e}")
        return None

def quiet_http_loggers(level: int) -> None:
    """Lets httpx/httpcore through only when debugging."""
    http_level = level if level <= logging.DEBUG else logging.WARNING
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)

def setup_logging(
    log_level: LevelSpec = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file: Optional[str] = None
) -> int:
    """Replaces the root logger's handlers for one CLI invocation.

    Args:
        log_level: Level as an int or a level name ('debug', 'WARNING').
        log_format: logging.Formatter format string.
        log_file: Optional path; '~' is expanded and parent directories are created.

    Returns:
        The effective level.
    """
    level = resolve_level(log_level)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = logging.Formatter(log_format)
    _attach(root, logging.StreamHandler(sys.stderr), level, formatter)
    if log_file:
        file_handler = _open_log_file(log_file)
        if file_handler is not None:
            _attach(root, file_handler, level, formatter)

    quiet_http_loggers(level)
    root.debug(f"Logging configured: level={logging.getLevelName(level)}, file={log_file or '-'}")
    return level
