import json
import logging
import os
from dataclasses import dataclass, replace

from keeper.paths import build_keeper_paths, resolve_dir

DEFAULT_CONCURRENCY = 2
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 180
DEFAULT_INTERVAL_DAYS = 7
DEFAULT_MAX_HEIGHT = 1080
DEFAULT_MERGE_FORMAT = "mp4"
DEFAULT_QUOTA_LIMIT = 10000
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TRUE_VALUES = {"1", "true", "yes", "on"}

# Config file key -> (env var, parser)
_ENV_OVERRIDES = {
    "concurrency": ("YT_KEEPER_WORKER_CONCURRENCY", int),
    "shutdown_timeout": ("YT_KEEPER_SHUTDOWN_TIMEOUT", float),
    "scheduler_interval_days": ("YT_KEEPER_SCHEDULER_INTERVAL_DAYS", float),
    "scheduler_autostart": ("YT_KEEPER_SCHEDULER_AUTOSTART", lambda v: v.strip().lower() in _TRUE_VALUES),
    "max_height": ("YT_KEEPER_MAX_HEIGHT", int),
    "merge_format": ("YT_KEEPER_MERGE_FORMAT", str),
    "restrict_filenames": ("YT_KEEPER_RESTRICT_FILENAMES", lambda v: v.strip().lower() in _TRUE_VALUES),
    "log_level": ("YT_KEEPER_LOG_LEVEL", lambda v: v.strip().upper()),
    "youtube_api_key": ("YT_KEEPER_YOUTUBE_API_KEY", str),
    "youtube_quota_limit": ("YT_KEEPER_YOUTUBE_QUOTA_LIMIT", int),
}


@dataclass(frozen=True)
class KeeperSettings:
    db_path: str
    downloads_dir: str
    archive_path: str
    log_dir: str
    quota_path: str
    cookies_path: str | None = None
    concurrency: int = DEFAULT_CONCURRENCY
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
    scheduler_interval_days: float = DEFAULT_INTERVAL_DAYS
    scheduler_autostart: bool = False
    max_height: int = DEFAULT_MAX_HEIGHT
    merge_format: str = DEFAULT_MERGE_FORMAT
    restrict_filenames: bool = False
    log_level: str = "INFO"
    youtube_api_key: str | None = None
    youtube_quota_limit: int = DEFAULT_QUOTA_LIMIT

    def with_overrides(self, **changes):
        return replace(self, **changes)


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for key in ("concurrency", "max_height", "youtube_quota_limit"):
        value = config.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
            errors.append(f"{key} must be a positive integer")

    for key in ("shutdown_timeout", "scheduler_interval_days"):
        value = config.get(key)
        if value is not None and (not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0):
            errors.append(f"{key} must be a positive number")

    for key in ("restrict_filenames", "scheduler_autostart"):
        value = config.get(key)
        if value is not None and not isinstance(value, bool):
            errors.append(f"{key} must be true/false")

    for key in ("merge_format", "youtube_api_key", "cookies"):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string")

    log_level = config.get("log_level")
    if log_level is not None and str(log_level).upper() not in _LOG_LEVELS:
        errors.append(f"log_level must be one of {', '.join(sorted(_LOG_LEVELS))}")

    return errors


def _read_env_overrides(environ):
    values = {}
    for key, (env_name, parser) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[key] = parser(raw)
        except ValueError:
            logging.warning("Ignoring invalid %s=%r", env_name, raw)
    return values


def build_settings(config=None, *, paths=None, environ=None):
    """Merge defaults, the JSON config file and env vars (env wins)."""
    paths = paths or build_keeper_paths()
    environ = os.environ if environ is None else environ
    config = dict(config or {})

    errors = validate_config(config)
    if errors:
        raise ValueError("; ".join(errors))

    values = {key: config[key] for key in _ENV_OVERRIDES if key in config}
    values.update(_read_env_overrides(environ))

    cookies_path = paths.cookies_path
    if config.get("cookies"):
        cookies_path = resolve_dir(config["cookies"], paths.config_dir)

    settings = KeeperSettings(
        db_path=paths.db_path,
        downloads_dir=paths.downloads_dir,
        archive_path=paths.archive_path,
        log_dir=paths.log_dir,
        quota_path=paths.quota_path,
        cookies_path=cookies_path,
    )
    if values.get("concurrency") is not None and values["concurrency"] < 1:
        logging.warning("Worker concurrency must be >= 1; using %s", DEFAULT_CONCURRENCY)
        values.pop("concurrency")
    return settings.with_overrides(**values)


def load_settings(config_path=None, *, paths=None, environ=None):
    paths = paths or build_keeper_paths()
    if not config_path:
        config_path = os.path.join(paths.config_dir, "config.json")
    config = {}
    if os.path.exists(config_path):
        config = load_config(config_path)
    return build_settings(config, paths=paths, environ=environ)
