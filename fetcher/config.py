import json
import logging
import os

VALID_FORMATS = ("flac", "mp3", "wav", "aiff", "m4a")

DEFAULT_CONFIG = {
    "default_format": "flac",
    "job_max_attempts": 3,
    "job_retry_base_seconds": 1.0,
    "poll_interval_seconds": 1.0,
    "sync_retry_attempts": 5,
    "sync_retry_base_seconds": 0.1,
    "sse_keepalive_seconds": 15,
    "sse_retry_ms": 1000,
    "reconcile_interval_minutes": 60,
    "ytdlp_command": None,
    "ffmpeg_path": "ffmpeg",
    "recent_bulk_limit": 10,
}

_POSITIVE_INTS = ("job_max_attempts", "sync_retry_attempts", "sse_retry_ms", "recent_bulk_limit")
_NON_NEGATIVE_NUMBERS = (
    "job_retry_base_seconds",
    "poll_interval_seconds",
    "sync_retry_base_seconds",
    "sse_keepalive_seconds",
    "reconcile_interval_minutes",
)


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def normalize_config(config):
    merged = dict(DEFAULT_CONFIG)
    if isinstance(config, dict):
        merged.update({key: value for key, value in config.items() if value is not None})
    return merged


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    fmt = config.get("default_format")
    if fmt is not None and fmt not in VALID_FORMATS:
        errors.append(f"default_format must be one of {', '.join(VALID_FORMATS)}")

    for key in _POSITIVE_INTS:
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            errors.append(f"{key} must be a positive integer")

    for key in _NON_NEGATIVE_NUMBERS:
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            errors.append(f"{key} must be a non-negative number")

    command = config.get("ytdlp_command")
    if command is not None:
        if not isinstance(command, list) or not command or not all(isinstance(part, str) for part in command):
            errors.append("ytdlp_command must be a non-empty list of strings")

    ffmpeg_path = config.get("ffmpeg_path")
    if ffmpeg_path is not None and (not isinstance(ffmpeg_path, str) or not ffmpeg_path.strip()):
        errors.append("ffmpeg_path must be a non-empty string")
    return errors


def load_effective_config(path):
    """Read, validate and merge the config; fall back to defaults when unusable."""
    if not path or not os.path.exists(path):
        logging.info("Config not found at %s; using defaults", path)
        return normalize_config({})
    try:
        config = load_config(path)
    except json.JSONDecodeError as exc:
        logging.error("Invalid JSON in config %s: %s; using defaults", path, exc)
        return normalize_config({})
    except OSError as exc:
        logging.error("Failed to read config %s: %s; using defaults", path, exc)
        return normalize_config({})
    errors = validate_config(config)
    if errors:
        logging.error("Invalid config %s: %s; using defaults", path, errors)
        return normalize_config({})
    return normalize_config(config)
