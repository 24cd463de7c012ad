import json
import logging
import os

from vidl.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILENAME = "vidl.log"
_THIRD_PARTY_LOGGERS = ("yt_dlp", "urllib3", "requests", "apscheduler", "uvicorn")


def log_event(level, *, event, **fields):
    payload = {"event": event, **fields}
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def _console_level(verbosity):
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def setup_logging(log_dir, verbosity=0):
    """File log at INFO (DEBUG with -vv) plus a console handler scaled by ``verbosity``.

    Third-party loggers stay at WARNING until -vvv.
    """
    root = logging.getLogger("")
    console_level = _console_level(verbosity)
    root.setLevel(min(logging.INFO, console_level))

    if log_dir:
        ensure_dir(log_dir)
        log_path = os.path.abspath(os.path.join(log_dir, LOG_FILENAME))
        has_file = any(
            isinstance(handler, logging.FileHandler)
            and os.path.abspath(getattr(handler, "baseFilename", "")) == log_path
            for handler in root.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            file_handler.setLevel(min(logging.INFO, console_level))
            root.addHandler(file_handler)

    has_console = any(getattr(handler, "_vidl_console", False) for handler in root.handlers)
    if not has_console:
        console = logging.StreamHandler()
        console._vidl_console = True
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)
    for handler in root.handlers:
        if getattr(handler, "_vidl_console", False):
            handler.setLevel(console_level)

    third_party_level = logging.DEBUG if verbosity >= 3 else logging.WARNING
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)
