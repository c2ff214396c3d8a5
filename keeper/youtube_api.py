import json
import logging
import os
import re
import threading
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from keeper.errors import AdapterFailure, QuotaExceeded

PACIFIC = ZoneInfo("America/Los_Angeles")
_CALL_COSTS = {
    "channels.list": 1,
    "playlists.list": 1,
    "playlistItems.list": 1,
}
_CHANNEL_ID_RE = re.compile(r"/channel/(UC[\w-]+)")
_HANDLE_RE = re.compile(r"/@([\w.-]+)")
_USER_RE = re.compile(r"/(c|user)/([\w.-]+)")


def next_midnight_pacific(now=None):
    now = (now or datetime.now(timezone.utc)).astimezone(PACIFIC)
    tomorrow = (now + timedelta(days=1)).date()
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=PACIFIC)
    return midnight.astimezone(timezone.utc)


class QuotaLedger:
    """Daily YouTube Data API unit counter persisted to a JSON file."""

    def __init__(self, path, limit):
        self.path = path
        self.limit = limit
        self._lock = threading.Lock()

    def _fresh(self, now):
        return {"used": 0, "limit": self.limit, "reset_at": next_midnight_pacific(now).isoformat()}

    def _load(self, now):
        data = None
        if self.path and os.path.exists(self.path):
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logging.error("Failed to read quota file %s: %s", self.path, exc)
        if not isinstance(data, dict) or not data.get("reset_at"):
            return self._fresh(now)
        try:
            reset_at = datetime.fromisoformat(data["reset_at"])
        except ValueError:
            return self._fresh(now)
        if now >= reset_at:
            return self._fresh(now)
        data["limit"] = self.limit
        return data

    def _save(self, data):
        if not self.path:
            return
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as exc:
            logging.error("Failed to save quota file %s: %s", self.path, exc)

    def charge(self, operation, now=None):
        now = now or datetime.now(timezone.utc)
        cost = _CALL_COSTS.get(operation, 1)
        with self._lock:
            data = self._load(now)
            if data["used"] + cost > self.limit:
                raise QuotaExceeded("YouTube API daily quota exceeded; resets at midnight Pacific Time")
            data["used"] += cost
            self._save(data)
        logging.debug("YouTube API quota used: %s unit(s) for %s", cost, operation)

    def status(self, now=None):
        with self._lock:
            data = self._load(now or datetime.now(timezone.utc))
        return {
            "used": data["used"],
            "limit": self.limit,
            "remaining": max(0, self.limit - data["used"]),
            "reset_at": data["reset_at"],
        }


class YouTubeApiClient:
    """Playlist enumeration through the YouTube Data API v3 (API key auth)."""

    def __init__(self, api_key, quota_path, *, quota_limit=10000, service=None):
        self.api_key = api_key
        self.quota = QuotaLedger(quota_path, quota_limit)
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = build("youtube", "v3", developerKey=self.api_key, cache_discovery=False)
        return self._service

    def _execute(self, operation, request):
        self.quota.charge(operation)
        try:
            return request.execute()
        except (HttpError, OSError) as exc:
            raise AdapterFailure(f"YouTube API {operation} failed: {exc}") from exc

    def resolve_channel_id(self, channel_url):
        url = (channel_url or "").strip()
        match = _CHANNEL_ID_RE.search(url)
        if match:
            return match.group(1)
        match = _HANDLE_RE.search(url)
        if match:
            params = {"forHandle": match.group(1)}
        else:
            match = _USER_RE.search(url)
            if not match:
                raise AdapterFailure(f"Could not extract channel id from URL: {channel_url}")
            params = {"forUsername": match.group(2)}
        resp = self._execute("channels.list", self.service.channels().list(part="id", **params))
        items = resp.get("items") or []
        if not items:
            raise AdapterFailure(f"Channel not found: {channel_url}")
        return items[0]["id"]

    def _channel_title(self, channel_id):
        resp = self._execute("channels.list", self.service.channels().list(part="snippet", id=channel_id))
        items = resp.get("items") or []
        if not items:
            return None
        return items[0].get("snippet", {}).get("title")

    def enumerate_playlists(self, channel_url):
        channel_id = self.resolve_channel_id(channel_url)
        playlists = []
        page = None
        while True:
            resp = self._execute(
                "playlists.list",
                self.service.playlists().list(
                    part="snippet,contentDetails",
                    channelId=channel_id,
                    maxResults=50,
                    pageToken=page,
                ),
            )
            for item in resp.get("items", []):
                playlists.append(
                    {
                        "playlist_id": item["id"],
                        "title": item.get("snippet", {}).get("title"),
                        "url": f"https://www.youtube.com/playlist?list={item['id']}",
                        "video_count": item.get("contentDetails", {}).get("itemCount"),
                    }
                )
            page = resp.get("nextPageToken")
            if not page:
                break
        logging.info("YouTube API: enumerated %s playlists for %s", len(playlists), channel_id)
        return {
            "channel_id": channel_id,
            "channel_name": self._channel_title(channel_id),
            "playlists": playlists,
        }

    def enumerate_playlist_videos(self, playlist_id):
        videos = []
        page = None
        while True:
            resp = self._execute(
                "playlistItems.list",
                self.service.playlistItems().list(
                    part="snippet,contentDetails",
                    playlistId=playlist_id,
                    maxResults=50,
                    pageToken=page,
                ),
            )
            for item in resp.get("items", []):
                details = item.get("contentDetails", {})
                snippet = item.get("snippet", {})
                video_id = details.get("videoId")
                if not video_id:
                    continue
                published = details.get("videoPublishedAt")
                videos.append(
                    {
                        "id": video_id,
                        "title": snippet.get("title"),
                        "url": f"https://www.youtube.com/watch?v={video_id}",
                        "uploader": snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle"),
                        "upload_date": published[:10].replace("-", "") if published else None,
                        "duration": None,
                        "index": len(videos) + 1,
                    }
                )
            page = resp.get("nextPageToken")
            if not page:
                break
        logging.info("YouTube API: enumerated %s videos from playlist %s", len(videos), playlist_id)
        return videos
