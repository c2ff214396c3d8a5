import json
import logging
import os

from keeper.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILENAME = "keeper.log"


def setup_logging(log_dir, level="INFO", *, console=True):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    root.setLevel(numeric_level)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(numeric_level)
        root.addHandler(file_handler)
    if console and not has_console:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        stream.setLevel(numeric_level)
        root.addHandler(stream)
    # yt-dlp is chatty at debug level.
    logging.getLogger("yt_dlp").setLevel(max(numeric_level, logging.INFO))
    return log_path


def log_event(level, *, event, **fields):
    payload = {"event": event, **fields}
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)
