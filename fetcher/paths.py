import os
import re
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    return os.path.abspath(os.environ.get(name) or default)


# Each root can be redirected through the environment (container mounts).
CONFIG_DIR = _env_path("MUSIC_FETCHER_CONFIG_DIR", PROJECT_ROOT / "config")
DATA_DIR = _env_path("MUSIC_FETCHER_DATA_DIR", PROJECT_ROOT)
DOWNLOADS_DIR = _env_path("MUSIC_FETCHER_DOWNLOADS_DIR", PROJECT_ROOT / "downloads")
LOG_DIR = _env_path("MUSIC_FETCHER_LOG_DIR", PROJECT_ROOT / "logs")

_USER_ID_RE = re.compile(r"[^A-Za-z0-9_.@-]+")


@dataclass(frozen=True)
class FetcherPaths:
    log_dir: str
    jobs_db_path: str
    catalog_db_path: str
    downloads_dir: str
    lock_file: str | None = None

    def user_dir(self, user_id):
        return user_root(self.downloads_dir, user_id)

    def bulk_dir(self, user_id):
        return os.path.join(self.user_dir(user_id), "bulk")


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _inside(path, base_dir):
    base = os.path.realpath(base_dir)
    return os.path.commonpath([os.path.realpath(path), base]) == base


def _join_within(base_dir, path, what):
    # os.path.join keeps an absolute ``path`` as-is; containment is checked after.
    candidate = os.path.abspath(os.path.join(base_dir, path))
    if not _inside(candidate, base_dir):
        raise ValueError(f"{what} must stay inside {base_dir}")
    return candidate


def resolve_config_path(path):
    return _join_within(CONFIG_DIR, path or "config.json", "Config path")


def user_root(downloads_dir, user_id):
    """Per-user download root; ids are reduced to a safe single path segment."""
    cleaned = _USER_ID_RE.sub("_", str(user_id or "")).strip("._")
    if not cleaned:
        raise ValueError("user_id is required")
    return _join_within(downloads_dir, cleaned, "User directory")


def build_fetcher_paths():
    database_dir = os.path.join(DATA_DIR, "database")
    return FetcherPaths(
        log_dir=LOG_DIR,
        jobs_db_path=os.path.join(database_dir, "jobs.sqlite"),
        catalog_db_path=os.path.join(database_dir, "catalog.sqlite"),
        downloads_dir=DOWNLOADS_DIR,
        lock_file=os.path.join(DATA_DIR, "tmp", "worker.lock"),
    )
