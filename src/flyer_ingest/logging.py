import logging
import os
import sys
import threading
from typing import List, Optional

ROOT_LOGGER = "flyer_ingest"
LINE_FORMAT = "%(asctime)s [%(name)s] (%(threadName)s) %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_setup_lock = threading.Lock()


def _coerce_level(value: Optional[str]) -> int:
    name = (value or "").strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _build_handlers(level: int) -> List[logging.Handler]:
    formatter = logging.Formatter(fmt=LINE_FORMAT, datefmt=DATE_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            print(f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to stdout only", file=sys.stderr)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    with _setup_lock:
        if getattr(root, "_flyer_ingest_configured", False):
            return root
        level = _coerce_level(os.environ.get("LOG_LEVEL"))
        root.setLevel(level)
        for handler in _build_handlers(level):
            root.addHandler(handler)
        root.propagate = False
        setattr(root, "_flyer_ingest_configured", True)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return the component logger `flyer_ingest.<name>`.

    All component loggers share one set of handlers on the package logger:
    stdout always, plus LOG_FILE (appended) when set. LOG_LEVEL picks the
    level, INFO by default. Jobs run on worker threads, so the thread name
    is part of every line.
    """
    _configure_root()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
