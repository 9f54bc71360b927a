"""Logging for the API server and the CLI.

configure() is called once by each entry point (app.py, camera_cli.py); every
other module just does ``log = logging.getLogger(__name__)``.

Handlers:
  console       LOG_LEVEL, one line per record, tagged with the thread name
                (lifestyle slots and per-index calls log from worker threads)
  LOG_DIR/camera.log
                DEBUG, rotating 5 x 5 MB; skipped when LOG_TO_FILE=0
"""

from __future__ import annotations

import logging
import logging.handlers
from typing import Optional

import config

LOG_FILE_NAME = "camera.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  [%(threadName)s] %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s  %(levelname)-7s  [%(threadName)s] %(name)s %(filename)s:%(lineno)d: %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# Provider SDKs and HTTP stacks log every request at INFO
_THIRD_PARTY = (
    "urllib3", "httpx", "httpcore", "werkzeug",
    "google_genai", "google.genai", "openai", "anthropic", "replicate",
)


def _level(name: str) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else logging.INFO


def configure(level: Optional[str] = None, log_file: Optional[bool] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(_level(level or config.LOG_LEVEL))
    console.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(console)

    if config.LOG_TO_FILE if log_file is None else log_file:
        config.LOG_DIR.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            config.LOG_DIR / LOG_FILE_NAME,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        rotating.setLevel(logging.DEBUG)
        rotating.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
        root.addHandler(rotating)

    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(logging.WARNING)
