import os
from dataclasses import dataclass

DB_FILENAME = "vidl.sqlite3"
CONFIG_FILENAME = "config.json"


def _env_path(environ, name, default):
    value = environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


@dataclass(frozen=True)
class VidlPaths:
    config_dir: str
    db_path: str
    config_path: str
    download_dir: str
    log_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def build_paths(environ=None):
    # Resolved at call time so tests and containers can point VIDL_* elsewhere.
    environ = os.environ if environ is None else environ
    config_dir = _env_path(environ, "VIDL_CONFIG_DIR", os.path.join(os.path.expanduser("~"), ".vidl"))
    download_dir = _env_path(environ, "VIDL_DOWNLOAD_DIR", os.path.join(os.getcwd(), "download"))
    log_dir = _env_path(environ, "VIDL_LOG_DIR", os.path.join(config_dir, "logs"))
    return VidlPaths(
        config_dir=config_dir,
        db_path=os.path.join(config_dir, DB_FILENAME),
        config_path=os.path.join(config_dir, CONFIG_FILENAME),
        download_dir=download_dir,
        log_dir=log_dir,
    )


def is_within(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base
