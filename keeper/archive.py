"""yt-dlp download archive helpers.

yt-dlp appends ``<extractor> <id>`` lines itself; these helpers read the file
and drop entries so a video can be fetched again.
"""

import contextlib
import logging
import os
import threading

_ARCHIVE_LOCK = threading.Lock()


def _entry_id(line):
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    return stripped.split()[-1]


def load_download_archive(path):
    """Return the set of video ids recorded in the archive file."""
    if not path:
        return set()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return {entry for entry in (_entry_id(line) for line in handle) if entry}
    except FileNotFoundError:
        return set()
    except OSError as exc:
        logging.warning("Failed to read download archive %s: %s", path, exc)
        return set()


def remove_from_download_archive(path, video_ids):
    """Drop archive lines for ``video_ids``; returns how many lines were removed."""
    targets = {str(video_id).strip() for video_id in video_ids if str(video_id).strip()}
    if not path or not targets:
        return 0
    with _ARCHIVE_LOCK:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logging.warning("Failed to read download archive %s: %s", path, exc)
            return 0

        kept = [line for line in lines if _entry_id(line) not in targets]
        removed = len(lines) - len(kept)
        if not removed:
            return 0

        temp_path = f"{path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as handle:
                handle.writelines(kept)
            os.replace(temp_path, path)
        except OSError as exc:
            logging.warning("Failed to rewrite download archive %s: %s", path, exc)
            with contextlib.suppress(OSError):
                os.remove(temp_path)
            return 0
    logging.info("Removed %s entr%s from download archive", removed, "y" if removed == 1 else "ies")
    return removed
