import json
import os

from vidl.errors import ConfigError

DEFAULT_CONFIG = {
    "num_workers": 4,
    "update_freshness_minutes": 60,
    "crawl_guard_minutes": 30,
    "update_interval_minutes": 60,
    "remote_timeout_seconds": 30,
    "channel_timeout_seconds": 300,
    "store_busy_timeout_seconds": 10,
    "worker_poll_seconds": 1.0,
    "worker_max_poll_seconds": 30.0,
    "youtube_source": "invidious",
    "invidious_url": "https://y.com.sb",
    "rate_limit_requests": 10,
    "rate_limit_period_seconds": 60,
    "ytdlp_page_size": 30,
    "downloader": "subprocess",
    "downloader_command": None,
    "extra_ytdl_args": [
        "--restrict-filenames",
        "--continue",
        "-f",
        "137/22/248/247/best",  # 1080p mp4, 720p mp4, 1080p webm, 720p webm, highest
    ],
    "filename_format": "{channel}__{date}_{title}__{video_id}__{id}.{ext}",
    "web_host": "0.0.0.0",
    "web_port": 8448,
}

_POSITIVE_INTS = (
    "num_workers",
    "remote_timeout_seconds",
    "channel_timeout_seconds",
    "ytdlp_page_size",
    "rate_limit_requests",
    "web_port",
)
_NON_NEGATIVE_NUMBERS = (
    "update_freshness_minutes",
    "crawl_guard_minutes",
    "update_interval_minutes",
    "store_busy_timeout_seconds",
    "worker_poll_seconds",
    "worker_max_poll_seconds",
    "rate_limit_period_seconds",
)
_YOUTUBE_SOURCES = {"invidious", "ytdlp"}
_DOWNLOADERS = {"subprocess", "library"}


def load_config(path=None, environ=None):
    """Defaults, overlaid with ``path`` (JSON object) when it exists, then env overrides."""
    environ = os.environ if environ is None else environ
    config = dict(DEFAULT_CONFIG)
    if path and os.path.exists(path):
        try:
            with open(path, "r") as f:
                raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in config {path}: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"Failed to read config {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {path} must be a JSON object")
        config.update(raw)
    if environ.get("VIDL_INVIDIOUS_URL"):
        config["invidious_url"] = environ["VIDL_INVIDIOUS_URL"]
    errors = validate_config(config)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return config


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    unknown = sorted(set(config) - set(DEFAULT_CONFIG))
    if unknown:
        errors.append(f"unknown keys: {', '.join(unknown)}")

    for key in _POSITIVE_INTS:
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            errors.append(f"{key} must be a positive integer")
    for key in _NON_NEGATIVE_NUMBERS:
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            errors.append(f"{key} must be a non-negative number")

    if config.get("youtube_source") not in _YOUTUBE_SOURCES:
        errors.append(f"youtube_source must be one of {sorted(_YOUTUBE_SOURCES)}")
    if config.get("downloader") not in _DOWNLOADERS:
        errors.append(f"downloader must be one of {sorted(_DOWNLOADERS)}")

    command = config.get("downloader_command")
    if command is not None and (
        not isinstance(command, list) or not command or not all(isinstance(p, str) for p in command)
    ):
        errors.append("downloader_command must be a non-empty list of strings")

    extra = config.get("extra_ytdl_args")
    if not isinstance(extra, list) or not all(isinstance(arg, str) for arg in extra):
        errors.append("extra_ytdl_args must be a list of strings")

    fmt = config.get("filename_format")
    if not isinstance(fmt, str) or "{id}" not in fmt:
        errors.append("filename_format must be a string containing {id}")

    url = config.get("invidious_url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        errors.append("invidious_url must be an http(s) URL")

    if not isinstance(config.get("web_host"), str):
        errors.append("web_host must be a string")
    return errors
