import json
import logging
import os
import re
import time
from dataclasses import dataclass

import yt_dlp
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadCancelled, YoutubeDLError

from keeper.errors import AdapterFailure

_PARTIAL_SUFFIXES = (".part", ".ytdl")
_PARTIAL_MARKERS = (".part-Frag", ".temp.")
_TEMPLATE_FIELD_RE = r"%\(({keys})\)([-#0 +]*\d*)([sd])"
_PLAYLIST_URL = "https://www.youtube.com/playlist?list={}"
_VIDEO_URL = "https://www.youtube.com/watch?v={}"


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float
    timestamp_ms: int


def _now_ms():
    return int(time.time() * 1000)


def fill_template(template, fields):
    """Resolve known fields in an output template to literal text.

    Used for playlist fields when a single video URL is downloaded, since
    yt-dlp only fills them when it walks the playlist itself.
    """
    fields = {key: value for key, value in (fields or {}).items() if value is not None}
    if not fields:
        return template
    pattern = re.compile(_TEMPLATE_FIELD_RE.format(keys="|".join(re.escape(k) for k in fields)))

    def _sub(match):
        value = fields[match.group(1)]
        conversion = "%" + match.group(2) + match.group(3)
        try:
            text = conversion % value
        except (TypeError, ValueError):
            text = str(value)
        text = text.replace("/", "_").replace("\\", "_")
        return text.replace("%", "%%")

    return pattern.sub(_sub, template)


def read_sidecar_metadata(media_path):
    """Resolution/fps/codecs from the ``.info.json`` yt-dlp writes next to the file."""
    base, _ext = os.path.splitext(media_path)
    candidates = [f"{base}.info.json", f"{media_path}.info.json"]
    for path in candidates:
        if not os.path.exists(path):
            continue
        with open(path, "r", encoding="utf-8") as handle:
            info = json.load(handle)
        width = info.get("width")
        height = info.get("height")
        resolution = info.get("resolution")
        if width and height:
            resolution = f"{width}x{height}"
        fps = info.get("fps")
        return {
            "resolution": resolution,
            "fps": float(fps) if fps is not None else None,
            "vcodec": info.get("vcodec"),
            "acodec": info.get("acodec"),
        }
    return {}


def cleanup_partial_files(directory, video_id):
    """Remove in-progress artifacts for ``video_id`` under ``directory``."""
    removed = []
    if not video_id or not directory or not os.path.isdir(directory):
        return removed
    for root, _dirs, files in os.walk(directory):
        for name in files:
            if video_id not in name:
                continue
            if not (name.endswith(_PARTIAL_SUFFIXES) or any(marker in name for marker in _PARTIAL_MARKERS)):
                continue
            path = os.path.join(root, name)
            try:
                os.remove(path)
                removed.append(path)
            except OSError as exc:
                logging.warning("Failed to remove partial file %s: %s", path, exc)
    if removed:
        logging.info("[%s] Removed %s partial file(s)", video_id, len(removed))
    return removed


def _playlists_url(source_url):
    url = source_url.rstrip("/")
    if url.endswith("/playlists") or "list=" in url:
        return url
    return f"{url}/playlists"


def _playlist_id_from_url(url):
    match = re.search(r"[?&]list=([A-Za-z0-9_-]+)", url or "")
    return match.group(1) if match else None


def _downloaded_path(info):
    for item in info.get("requested_downloads") or []:
        path = item.get("filepath") or item.get("_filename")
        if path:
            return path
    for entry in info.get("entries") or []:
        if entry:
            path = _downloaded_path(entry)
            if path:
                return path
    return info.get("filepath") or info.get("_filename")


class YtDlpAdapter:
    """In-process yt-dlp wrapper used by the queue and the channel refresh."""

    def __init__(self, settings, api_client=None):
        self.settings = settings
        self.api_client = api_client

    def _cookiefile(self):
        path = self.settings.cookies_path
        if path and os.path.exists(path):
            return path
        return None

    def _extract_opts(self, **extra):
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "logger": logging.getLogger("yt_dlp"),
        }
        cookiefile = self._cookiefile()
        if cookiefile:
            opts["cookiefile"] = cookiefile
        opts.update(extra)
        return opts

    def _extract(self, url, **extra):
        try:
            with YoutubeDL(self._extract_opts(**extra)) as ydl:
                info = ydl.extract_info(url, download=False)
        except YoutubeDLError as exc:
            raise AdapterFailure(str(exc)) from exc
        if not info:
            raise AdapterFailure(f"yt-dlp returned no metadata for {url}")
        return info

    def enumerate_playlists(self, source_url):
        if self.api_client:
            try:
                return self.api_client.enumerate_playlists(source_url)
            except AdapterFailure as exc:
                logging.warning("YouTube API playlist listing failed (%s); falling back to yt-dlp", exc)

        info = self._extract(_playlists_url(source_url), extract_flat="in_playlist")
        playlists = []
        for entry in info.get("entries") or []:
            if not entry:
                continue
            playlist_id = entry.get("id") or _playlist_id_from_url(entry.get("url"))
            if not playlist_id:
                continue
            playlists.append(
                {
                    "playlist_id": playlist_id,
                    "title": entry.get("title"),
                    "url": entry.get("url") or _PLAYLIST_URL.format(playlist_id),
                    "video_count": entry.get("playlist_count"),
                }
            )
        return {
            "channel_id": info.get("channel_id") or info.get("uploader_id") or info.get("id"),
            "channel_name": info.get("channel") or info.get("uploader") or info.get("title"),
            "playlists": playlists,
        }

    def enumerate_playlist_videos(self, playlist_url):
        playlist_id = _playlist_id_from_url(playlist_url)
        if self.api_client and playlist_id:
            try:
                videos = self.api_client.enumerate_playlist_videos(playlist_id)
                if videos:
                    return videos
            except AdapterFailure as exc:
                logging.warning("YouTube API playlist items failed (%s); falling back to yt-dlp", exc)

        info = self._extract(playlist_url, extract_flat="in_playlist")
        videos = []
        for position, entry in enumerate(info.get("entries") or [], start=1):
            if not entry or not entry.get("id"):
                continue
            videos.append(
                {
                    "id": entry["id"],
                    "title": entry.get("title"),
                    "url": entry.get("url") or _VIDEO_URL.format(entry["id"]),
                    "uploader": entry.get("uploader") or entry.get("channel"),
                    "upload_date": entry.get("upload_date"),
                    "duration": int(entry["duration"]) if entry.get("duration") else None,
                    "index": entry.get("playlist_index") or position,
                }
            )
        return videos

    def get_video_info(self, url):
        info = self._extract(url, noplaylist=True)
        return {
            "id": info.get("id"),
            "title": info.get("title"),
            "url": info.get("webpage_url") or url,
            "uploader": info.get("uploader") or info.get("channel"),
            "upload_date": info.get("upload_date"),
            "duration": int(info["duration"]) if info.get("duration") else None,
            "channel_id": info.get("channel_id"),
        }

    def build_ydl_opts(self, options, *, template_fields=None):
        argv = options.to_argv()
        if template_fields:
            idx = argv.index("--output") + 1
            argv[idx] = fill_template(argv[idx], template_fields)
        cookiefile = self._cookiefile()
        if cookiefile:
            argv += ["--cookies", cookiefile]
        try:
            parsed = yt_dlp.parse_options(argv)
        except SystemExit as exc:
            # optparse exits on unknown flags or bad values.
            raise AdapterFailure(f"yt-dlp rejected options: {' '.join(argv)}") from exc
        ydl_opts = dict(parsed.ydl_opts)
        ydl_opts.update(
            {
                "logger": logging.getLogger("yt_dlp"),
                "quiet": True,
                "noprogress": True,
                "noplaylist": True,
            }
        )
        return ydl_opts

    def download(self, url, options, on_progress=None, *, template_fields=None, cancel_event=None):
        """Download ``url`` and return the final file path.

        Returns None when yt-dlp skips the video because its id is already in
        the download archive.
        """
        ydl_opts = self.build_ydl_opts(options, template_fields=template_fields)

        def progress_hook(data):
            if cancel_event is not None and cancel_event.is_set():
                raise DownloadCancelled("Download cancelled")
            if on_progress is None:
                return
            state = data.get("status")
            if state == "downloading":
                total = data.get("total_bytes") or data.get("total_bytes_estimate")
                downloaded = data.get("downloaded_bytes")
                if total and downloaded is not None:
                    on_progress(ProgressUpdate(round(min(100.0, downloaded * 100.0 / total), 1), _now_ms()))
            elif state == "finished":
                on_progress(ProgressUpdate(100.0, _now_ms()))

        ydl_opts["progress_hooks"] = [progress_hook]
        os.makedirs(options.output_dir, exist_ok=True)
        try:
            with YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(url, download=True)
                path = _downloaded_path(info) if info else None
                if info and not path:
                    path = ydl.prepare_filename(info)
        except DownloadCancelled as exc:
            raise AdapterFailure(str(exc) or "Download cancelled") from exc
        except YoutubeDLError as exc:
            raise AdapterFailure(str(exc)) from exc
        if not path:
            logging.info("Skipped %s: already in download archive", url)
        return path
