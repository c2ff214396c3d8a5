import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from keeper.errors import NotFound, PersistenceFailure
from keeper.models import (
    SPONSORBLOCK_CATEGORIES,
    SPONSORBLOCK_MODES,
    Channel,
    Playlist,
    Profile,
    Video,
    VideoStatus,
)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

# Channel columns callers may set, with their coercion.
CHANNEL_FIELDS = {
    "url": str,
    "channel_id": str,
    "channel_name": str,
    "flat_mode": bool,
    "auto_add_new_playlists": bool,
    "rescrape_interval_days": int,
    "enabled": bool,
    "profile_id": int,
    "download_metadata": bool,
    "embed_metadata": bool,
    "download_thumbnail": bool,
    "embed_thumbnail": bool,
    "download_subtitles": bool,
    "embed_subtitles": bool,
    "auto_subtitles": bool,
    "subtitle_languages": str,
    "sponsorblock_enabled": bool,
    "sponsorblock_mode": str,
    "sponsorblock_categories": str,
    "yt_dlp_options": str,
}
PROFILE_FIELDS = ("name", "output_template", "format_selection", "merge_output_format", "additional_args")


def utc_now():
    return datetime.now(timezone.utc).isoformat()


def _add_missing_columns(cur, table, columns):
    existing = {row[1] for row in cur.execute(f"PRAGMA table_info({table})").fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {ddl}")
            logging.warning("Migrated %s: added column %s", table, name)


def ensure_keeper_tables(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            output_template TEXT,
            format_selection TEXT,
            merge_output_format TEXT,
            additional_args TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS channels (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            channel_id TEXT,
            channel_name TEXT,
            flat_mode INTEGER NOT NULL DEFAULT 0,
            auto_add_new_playlists INTEGER NOT NULL DEFAULT 0,
            rescrape_interval_days INTEGER NOT NULL DEFAULT 7,
            last_scraped_at TIMESTAMP,
            enabled INTEGER NOT NULL DEFAULT 1,
            profile_id INTEGER REFERENCES profiles(id) ON DELETE SET NULL,
            download_metadata INTEGER NOT NULL DEFAULT 1,
            embed_metadata INTEGER NOT NULL DEFAULT 0,
            download_thumbnail INTEGER NOT NULL DEFAULT 0,
            embed_thumbnail INTEGER NOT NULL DEFAULT 0,
            download_subtitles INTEGER NOT NULL DEFAULT 0,
            embed_subtitles INTEGER NOT NULL DEFAULT 0,
            auto_subtitles INTEGER NOT NULL DEFAULT 0,
            subtitle_languages TEXT DEFAULT 'en',
            sponsorblock_enabled INTEGER NOT NULL DEFAULT 0,
            sponsorblock_mode TEXT DEFAULT 'mark',
            sponsorblock_categories TEXT DEFAULT 'sponsor',
            yt_dlp_options TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    _add_missing_columns(
        cur,
        "channels",
        {
            "channel_id": "channel_id TEXT",
            "channel_name": "channel_name TEXT",
            "flat_mode": "flat_mode INTEGER DEFAULT 0",
            "auto_add_new_playlists": "auto_add_new_playlists INTEGER DEFAULT 0",
            "rescrape_interval_days": "rescrape_interval_days INTEGER DEFAULT 7",
            "last_scraped_at": "last_scraped_at TIMESTAMP",
            "enabled": "enabled INTEGER DEFAULT 1",
            "profile_id": "profile_id INTEGER",
            "download_metadata": "download_metadata INTEGER DEFAULT 1",
            "embed_metadata": "embed_metadata INTEGER DEFAULT 0",
            "download_thumbnail": "download_thumbnail INTEGER DEFAULT 0",
            "embed_thumbnail": "embed_thumbnail INTEGER DEFAULT 0",
            "download_subtitles": "download_subtitles INTEGER DEFAULT 0",
            "embed_subtitles": "embed_subtitles INTEGER DEFAULT 0",
            "auto_subtitles": "auto_subtitles INTEGER DEFAULT 0",
            "subtitle_languages": "subtitle_languages TEXT DEFAULT 'en'",
            "sponsorblock_enabled": "sponsorblock_enabled INTEGER DEFAULT 0",
            "sponsorblock_mode": "sponsorblock_mode TEXT DEFAULT 'mark'",
            "sponsorblock_categories": "sponsorblock_categories TEXT DEFAULT 'sponsor'",
            "yt_dlp_options": "yt_dlp_options TEXT",
        },
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlists (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id INTEGER NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            playlist_id TEXT NOT NULL,
            title TEXT,
            url TEXT,
            video_count INTEGER,
            enabled INTEGER NOT NULL DEFAULT 0,
            last_scraped_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (channel_id, playlist_id)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS videos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            video_id TEXT NOT NULL UNIQUE,
            channel_id INTEGER REFERENCES channels(id) ON DELETE CASCADE,
            playlist_id INTEGER REFERENCES playlists(id) ON DELETE SET NULL,
            title TEXT,
            url TEXT,
            uploader TEXT,
            upload_date TEXT,
            duration INTEGER,
            playlist_index INTEGER,
            download_status TEXT NOT NULL DEFAULT 'pending',
            downloaded_at TIMESTAMP,
            file_path TEXT,
            file_size INTEGER,
            error_message TEXT,
            resolution TEXT,
            fps REAL,
            vcodec TEXT,
            acodec TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    _add_missing_columns(
        cur,
        "videos",
        {
            "file_size": "file_size INTEGER",
            "error_message": "error_message TEXT",
            "resolution": "resolution TEXT",
            "fps": "fps REAL",
            "vcodec": "vcodec TEXT",
            "acodec": "acodec TEXT",
        },
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_videos_status ON videos (download_status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_videos_playlist ON videos (playlist_id, playlist_index)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_videos_channel ON videos (channel_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_playlists_channel ON playlists (channel_id)")
    conn.commit()


def _coerce(value, kind):
    if value is None:
        return None
    if kind is bool:
        return 1 if value else 0
    return kind(value)


def _normalize_categories(value):
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = str(value).split(",")
    seen = []
    for item in items:
        item = str(item).strip()
        if item and item not in seen:
            seen.append(item)
    return ",".join(seen)


def validate_channel_fields(fields):
    errors = []
    unknown = set(fields) - set(CHANNEL_FIELDS)
    if unknown:
        errors.append(f"unknown channel fields: {', '.join(sorted(unknown))}")
    if "url" in fields and not (fields["url"] or "").strip():
        errors.append("url is required")
    mode = fields.get("sponsorblock_mode")
    if mode is not None and mode not in SPONSORBLOCK_MODES:
        errors.append("sponsorblock_mode must be mark or remove")
    categories = _normalize_categories(fields.get("sponsorblock_categories"))
    if categories:
        invalid = [c for c in categories.split(",") if c not in SPONSORBLOCK_CATEGORIES]
        if invalid:
            errors.append(f"invalid sponsorblock categories: {', '.join(invalid)}")
    interval = fields.get("rescrape_interval_days")
    if interval is not None and int(interval) < 1:
        errors.append("rescrape_interval_days must be >= 1")
    return errors


class KeeperStore:
    """SQLite-backed record store for channels, playlists, profiles and videos.

    Every call opens its own connection so worker threads never share one.
    Status transitions are guarded in SQL (``WHERE download_status=?``) and
    report whether they applied; callers rely on that instead of locks.
    Any ``sqlite3.Error`` is re-raised as :class:`PersistenceFailure`.
    """

    def __init__(self, db_path):
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        with self._session() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            ensure_keeper_tables(conn)

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _session(self):
        conn = None
        try:
            conn = self._connect()
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"database error: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def create_profile(self, name, **fields):
        if not (name or "").strip():
            raise ValueError("profile name is required")
        if self.get_profile_by_name(name):
            raise ValueError(f"profile already exists: {name}")
        now = utc_now()
        values = {key: fields.get(key) for key in PROFILE_FIELDS if key != "name"}
        with self._session() as conn:
            cur = conn.execute(
                """
                INSERT INTO profiles (
                    name, output_template, format_selection, merge_output_format,
                    additional_args, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name.strip(),
                    values["output_template"],
                    values["format_selection"],
                    values["merge_output_format"],
                    values["additional_args"],
                    now,
                    now,
                ),
            )
            profile_id = cur.lastrowid
        return self.get_profile(profile_id)

    def get_profile(self, profile_id):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id=?", (profile_id,)).fetchone()
        return Profile.from_row(row) if row else None

    def get_profile_by_name(self, name):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE name=?", (name.strip(),)).fetchone()
        return Profile.from_row(row) if row else None

    def list_profiles(self):
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM profiles ORDER BY name").fetchall()
        return [Profile.from_row(row) for row in rows]

    def update_profile(self, profile_id, **fields):
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown profile fields: {', '.join(sorted(unknown))}")
        if not self.get_profile(profile_id):
            raise NotFound("profile", profile_id)
        if fields:
            assignments = ", ".join(f"{key}=?" for key in fields)
            with self._session() as conn:
                conn.execute(
                    f"UPDATE profiles SET {assignments}, updated_at=? WHERE id=?",
                    (*fields.values(), utc_now(), profile_id),
                )
        return self.get_profile(profile_id)

    def delete_profile(self, profile_id):
        with self._session() as conn:
            conn.execute("UPDATE channels SET profile_id=NULL WHERE profile_id=?", (profile_id,))
            cur = conn.execute("DELETE FROM profiles WHERE id=?", (profile_id,))
            if cur.rowcount != 1:
                raise NotFound("profile", profile_id)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def create_channel(self, url, **fields):
        fields = dict(fields, url=(url or "").strip())
        errors = validate_channel_fields(fields)
        if errors:
            raise ValueError("; ".join(errors))
        if self.get_channel_by_url(fields["url"]):
            raise ValueError(f"channel already exists: {fields['url']}")
        if "sponsorblock_categories" in fields:
            fields["sponsorblock_categories"] = _normalize_categories(fields["sponsorblock_categories"])
        now = utc_now()
        columns = list(fields.keys()) + ["created_at", "updated_at"]
        values = [_coerce(fields[key], CHANNEL_FIELDS[key]) for key in fields] + [now, now]
        placeholders = ", ".join("?" for _ in columns)
        with self._session() as conn:
            cur = conn.execute(
                f"INSERT INTO channels ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            channel_row_id = cur.lastrowid
        return self.get_channel(channel_row_id)

    def get_channel(self, channel_id):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM channels WHERE id=?", (channel_id,)).fetchone()
        return Channel.from_row(row) if row else None

    def get_channel_by_url(self, url):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM channels WHERE url=?", (url,)).fetchone()
        return Channel.from_row(row) if row else None

    def list_channels(self):
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM channels ORDER BY id").fetchall()
        return [Channel.from_row(row) for row in rows]

    def update_channel(self, channel_id, **fields):
        errors = validate_channel_fields(fields)
        if errors:
            raise ValueError("; ".join(errors))
        if not self.get_channel(channel_id):
            raise NotFound("channel", channel_id)
        if "url" in fields:
            fields["url"] = fields["url"].strip()
            existing = self.get_channel_by_url(fields["url"])
            if existing and existing.id != channel_id:
                raise ValueError(f"channel already exists: {fields['url']}")
        if "sponsorblock_categories" in fields:
            fields["sponsorblock_categories"] = _normalize_categories(fields["sponsorblock_categories"])
        if fields:
            assignments = ", ".join(f"{key}=?" for key in fields)
            values = [_coerce(value, CHANNEL_FIELDS[key]) for key, value in fields.items()]
            with self._session() as conn:
                conn.execute(
                    f"UPDATE channels SET {assignments}, updated_at=? WHERE id=?",
                    (*values, utc_now(), channel_id),
                )
        return self.get_channel(channel_id)

    def delete_channel(self, channel_id):
        with self._session() as conn:
            conn.execute("DELETE FROM videos WHERE channel_id=?", (channel_id,))
            conn.execute("DELETE FROM playlists WHERE channel_id=?", (channel_id,))
            cur = conn.execute("DELETE FROM channels WHERE id=?", (channel_id,))
            if cur.rowcount != 1:
                raise NotFound("channel", channel_id)

    def set_channel_identity(self, channel_id, *, external_id=None, name=None):
        with self._session() as conn:
            conn.execute(
                """
                UPDATE channels
                SET channel_id=COALESCE(?, channel_id), channel_name=COALESCE(?, channel_name), updated_at=?
                WHERE id=?
                """,
                (external_id, name, utc_now(), channel_id),
            )

    def touch_channel_scraped(self, channel_id, when=None):
        when = when or utc_now()
        with self._session() as conn:
            conn.execute(
                "UPDATE channels SET last_scraped_at=?, updated_at=? WHERE id=?",
                (when, utc_now(), channel_id),
            )

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    def upsert_playlist(self, channel_id, playlist_id, *, title=None, url=None, video_count=None, enabled=False):
        """Insert or refresh a playlist; an existing row keeps its enabled flag."""
        now = utc_now()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO playlists (
                    channel_id, playlist_id, title, url, video_count, enabled,
                    last_scraped_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id, playlist_id) DO UPDATE SET
                    title=COALESCE(excluded.title, playlists.title),
                    url=COALESCE(excluded.url, playlists.url),
                    video_count=COALESCE(excluded.video_count, playlists.video_count),
                    last_scraped_at=excluded.last_scraped_at,
                    updated_at=excluded.updated_at
                """,
                (channel_id, playlist_id, title, url, video_count, 1 if enabled else 0, now, now, now),
            )
            row = conn.execute(
                "SELECT * FROM playlists WHERE channel_id=? AND playlist_id=?",
                (channel_id, playlist_id),
            ).fetchone()
        return Playlist.from_row(row)

    def get_playlist(self, playlist_id):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM playlists WHERE id=?", (playlist_id,)).fetchone()
        return Playlist.from_row(row) if row else None

    def list_playlists(self, channel_id, *, enabled_only=False):
        query = "SELECT * FROM playlists WHERE channel_id=?"
        if enabled_only:
            query += " AND enabled=1"
        query += " ORDER BY id"
        with self._session() as conn:
            rows = conn.execute(query, (channel_id,)).fetchall()
        return [Playlist.from_row(row) for row in rows]

    def set_playlist_enabled(self, playlist_id, enabled):
        with self._session() as conn:
            cur = conn.execute(
                "UPDATE playlists SET enabled=?, updated_at=? WHERE id=?",
                (1 if enabled else 0, utc_now(), playlist_id),
            )
            if cur.rowcount != 1:
                raise NotFound("playlist", playlist_id)
        return self.get_playlist(playlist_id)

    def set_playlist_video_count(self, playlist_id, video_count):
        now = utc_now()
        with self._session() as conn:
            conn.execute(
                "UPDATE playlists SET video_count=?, last_scraped_at=?, updated_at=? WHERE id=?",
                (video_count, now, now, playlist_id),
            )

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    def upsert_video(
        self,
        video_id,
        *,
        channel_id=None,
        playlist_id=None,
        title=None,
        url=None,
        uploader=None,
        upload_date=None,
        duration=None,
        playlist_index=None,
    ):
        """Insert a pending video, or refresh the title of an existing one.

        The status of an existing row is never touched here; empty metadata
        columns are backfilled.
        """
        if not video_id:
            raise ValueError("video_id is required")
        now = utc_now()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO videos (
                    video_id, channel_id, playlist_id, title, url, uploader, upload_date,
                    duration, playlist_index, download_status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    title=COALESCE(excluded.title, videos.title),
                    channel_id=COALESCE(videos.channel_id, excluded.channel_id),
                    playlist_id=COALESCE(videos.playlist_id, excluded.playlist_id),
                    url=COALESCE(videos.url, excluded.url),
                    uploader=COALESCE(videos.uploader, excluded.uploader),
                    upload_date=COALESCE(videos.upload_date, excluded.upload_date),
                    duration=COALESCE(videos.duration, excluded.duration),
                    playlist_index=COALESCE(excluded.playlist_index, videos.playlist_index),
                    updated_at=excluded.updated_at
                """,
                (
                    video_id,
                    channel_id,
                    playlist_id,
                    title,
                    url,
                    uploader,
                    upload_date,
                    duration,
                    playlist_index,
                    VideoStatus.PENDING,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM videos WHERE video_id=?", (video_id,)).fetchone()
        return Video.from_row(row)

    def get_video(self, video_id):
        with self._session() as conn:
            row = conn.execute("SELECT * FROM videos WHERE video_id=?", (video_id,)).fetchone()
        return Video.from_row(row) if row else None

    def list_videos_by_playlist(self, playlist_id):
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM videos WHERE playlist_id=?
                ORDER BY playlist_index IS NULL, playlist_index, id
                """,
                (playlist_id,),
            ).fetchall()
        return [Video.from_row(row) for row in rows]

    def list_videos_by_channel(self, channel_id, *, status=None, limit=DEFAULT_PAGE_SIZE, offset=0):
        limit, offset = _page(limit, offset)
        query = "SELECT * FROM videos WHERE channel_id=?"
        params = [channel_id]
        if status:
            query += " AND download_status=?"
            params.append(status)
        query += " ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Video.from_row(row) for row in rows]

    def list_videos_by_status(self, status, *, limit=DEFAULT_PAGE_SIZE, offset=0):
        if status not in VideoStatus.ALL:
            raise ValueError(f"Invalid status: {status}")
        limit, offset = _page(limit, offset)
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM videos WHERE download_status=?
                ORDER BY updated_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (status, limit, offset),
            ).fetchall()
        return [Video.from_row(row) for row in rows]

    def list_pending_videos(self):
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM videos WHERE download_status='pending'
                ORDER BY playlist_id IS NULL, playlist_id, playlist_index IS NULL, playlist_index, id
                """
            ).fetchall()
        return [Video.from_row(row) for row in rows]

    def status_counts(self):
        counts = {status: 0 for status in VideoStatus.ALL}
        with self._session() as conn:
            rows = conn.execute(
                "SELECT download_status, COUNT(*) AS total FROM videos GROUP BY download_status"
            ).fetchall()
        for row in rows:
            counts[row["download_status"]] = row["total"]
        return counts

    def claim_video(self, video_id):
        """pending -> downloading. False when another worker got there first."""
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE videos
                SET download_status='downloading', error_message=NULL, updated_at=?
                WHERE video_id=? AND download_status='pending'
                """,
                (utc_now(), video_id),
            )
            return cur.rowcount == 1

    def mark_completed(self, video_id, *, file_path, file_size=None, resolution=None, fps=None, vcodec=None, acodec=None):
        now = utc_now()
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE videos
                SET download_status='completed', downloaded_at=?, file_path=?, file_size=?,
                    resolution=?, fps=?, vcodec=?, acodec=?, error_message=NULL, updated_at=?
                WHERE video_id=? AND download_status='downloading'
                """,
                (now, file_path, file_size, resolution, fps, vcodec, acodec, now, video_id),
            )
            return cur.rowcount == 1

    def mark_failed(self, video_id, error_message):
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE videos
                SET download_status='failed', error_message=?, updated_at=?
                WHERE video_id=? AND download_status='downloading'
                """,
                (error_message, utc_now(), video_id),
            )
            return cur.rowcount == 1

    def reset_to_pending(self, video_id):
        """completed|failed -> pending (explicit redownload)."""
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE videos
                SET download_status='pending', error_message=NULL, updated_at=?
                WHERE video_id=? AND download_status IN ('completed', 'failed')
                """,
                (utc_now(), video_id),
            )
            return cur.rowcount == 1

    def reset_failed(self):
        """Reset every failed video to pending; returns the reset rows."""
        now = utc_now()
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            rows = cur.execute(
                """
                SELECT * FROM videos WHERE download_status='failed'
                ORDER BY playlist_id IS NULL, playlist_id, playlist_index IS NULL, playlist_index, id
                """
            ).fetchall()
            cur.execute(
                """
                UPDATE videos
                SET download_status='pending', error_message=NULL, updated_at=?
                WHERE download_status='failed'
                """,
                (now,),
            )
        reset = []
        for row in rows:
            data = dict(row)
            data["download_status"] = VideoStatus.PENDING
            data["error_message"] = None
            data["updated_at"] = now
            reset.append(Video.from_row(data))
        return reset


def _page(limit, offset):
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    try:
        offset = int(offset)
    except (TypeError, ValueError):
        offset = 0
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return limit, max(0, offset)
