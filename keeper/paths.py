import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    value = os.environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


@dataclass(frozen=True)
class KeeperPaths:
    data_dir: str
    config_dir: str
    downloads_dir: str
    log_dir: str
    db_path: str
    archive_path: str
    quota_path: str
    cookies_path: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return base_dir
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        # All writes stay under explicit base dirs (container mounts).
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def build_keeper_paths():
    # Read env at call time so tests and containers can point elsewhere.
    data_dir = _env_path("YT_KEEPER_DATA_DIR", PROJECT_ROOT / "data")
    config_dir = _env_path("YT_KEEPER_CONFIG_DIR", PROJECT_ROOT / "config")
    downloads_dir = _env_path("YT_KEEPER_DOWNLOADS_DIR", PROJECT_ROOT / "downloads")
    log_dir = _env_path("YT_KEEPER_LOG_DIR", PROJECT_ROOT / "logs")
    return KeeperPaths(
        data_dir=data_dir,
        config_dir=config_dir,
        downloads_dir=downloads_dir,
        log_dir=log_dir,
        db_path=os.path.join(data_dir, "database", "keeper.sqlite"),
        archive_path=os.path.join(downloads_dir, ".downloaded"),
        quota_path=os.path.join(data_dir, "youtube_quota.json"),
        cookies_path=os.path.join(config_dir, "cookies.txt"),
    )
