from dataclasses import dataclass, field


class VideoStatus:
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, DOWNLOADING, COMPLETED, FAILED)


SPONSORBLOCK_MODES = {"mark", "remove"}
SPONSORBLOCK_CATEGORIES = {
    "sponsor",
    "intro",
    "outro",
    "selfpromo",
    "interaction",
    "preview",
    "music_offtopic",
}


def _flag(row, key, default=False):
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    if value is None:
        return default
    return bool(value)


def _value(row, key, default=None):
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    return default if value is None else value


@dataclass(frozen=True)
class Profile:
    id: int | None
    name: str
    output_template: str | None = None
    format_selection: str | None = None
    merge_output_format: str | None = None
    additional_args: str | None = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            name=row["name"],
            output_template=row["output_template"],
            format_selection=row["format_selection"],
            merge_output_format=row["merge_output_format"],
            additional_args=row["additional_args"],
        )


@dataclass(frozen=True)
class Channel:
    id: int | None
    url: str
    channel_id: str | None = None
    channel_name: str | None = None
    flat_mode: bool = False
    auto_add_new_playlists: bool = False
    rescrape_interval_days: int = 7
    last_scraped_at: str | None = None
    enabled: bool = True
    profile_id: int | None = None
    download_metadata: bool = True
    embed_metadata: bool = False
    download_thumbnail: bool = False
    embed_thumbnail: bool = False
    download_subtitles: bool = False
    embed_subtitles: bool = False
    auto_subtitles: bool = False
    subtitle_languages: str = "en"
    sponsorblock_enabled: bool = False
    sponsorblock_mode: str = "mark"
    sponsorblock_categories: str = "sponsor"
    yt_dlp_options: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            url=row["url"],
            channel_id=row["channel_id"],
            channel_name=row["channel_name"],
            flat_mode=_flag(row, "flat_mode"),
            auto_add_new_playlists=_flag(row, "auto_add_new_playlists"),
            rescrape_interval_days=int(_value(row, "rescrape_interval_days", 7)),
            last_scraped_at=_value(row, "last_scraped_at"),
            enabled=_flag(row, "enabled", True),
            profile_id=_value(row, "profile_id"),
            download_metadata=_flag(row, "download_metadata", True),
            embed_metadata=_flag(row, "embed_metadata"),
            download_thumbnail=_flag(row, "download_thumbnail"),
            embed_thumbnail=_flag(row, "embed_thumbnail"),
            download_subtitles=_flag(row, "download_subtitles"),
            embed_subtitles=_flag(row, "embed_subtitles"),
            auto_subtitles=_flag(row, "auto_subtitles"),
            subtitle_languages=_value(row, "subtitle_languages", "en"),
            sponsorblock_enabled=_flag(row, "sponsorblock_enabled"),
            sponsorblock_mode=_value(row, "sponsorblock_mode", "mark"),
            sponsorblock_categories=_value(row, "sponsorblock_categories", ""),
            yt_dlp_options=_value(row, "yt_dlp_options"),
            created_at=_value(row, "created_at"),
            updated_at=_value(row, "updated_at"),
        )


@dataclass(frozen=True)
class Playlist:
    id: int | None
    channel_id: int
    playlist_id: str
    title: str | None = None
    url: str | None = None
    video_count: int | None = None
    enabled: bool = False
    last_scraped_at: str | None = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            channel_id=row["channel_id"],
            playlist_id=row["playlist_id"],
            title=row["title"],
            url=row["url"],
            video_count=row["video_count"],
            enabled=_flag(row, "enabled"),
            last_scraped_at=_value(row, "last_scraped_at"),
        )


@dataclass(frozen=True)
class Video:
    id: int
    video_id: str
    channel_id: int | None
    playlist_id: int | None
    title: str | None
    url: str | None
    uploader: str | None
    upload_date: str | None
    duration: int | None
    playlist_index: int | None
    download_status: str
    downloaded_at: str | None
    file_path: str | None
    file_size: int | None
    error_message: str | None
    resolution: str | None
    fps: float | None
    vcodec: str | None
    acodec: str | None
    created_at: str | None
    updated_at: str | None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            video_id=row["video_id"],
            channel_id=row["channel_id"],
            playlist_id=row["playlist_id"],
            title=row["title"],
            url=row["url"],
            uploader=row["uploader"],
            upload_date=row["upload_date"],
            duration=row["duration"],
            playlist_index=row["playlist_index"],
            download_status=row["download_status"],
            downloaded_at=row["downloaded_at"],
            file_path=row["file_path"],
            file_size=row["file_size"],
            error_message=row["error_message"],
            resolution=row["resolution"],
            fps=row["fps"],
            vcodec=row["vcodec"],
            acodec=row["acodec"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class QueueTask:
    video_id: str
    channel_id: int | None
    url: str
    options: object
    playlist_id: int | None = None
    playlist_index: int | None = None
    template_fields: dict | None = None


@dataclass
class ActiveDownload:
    video_id: str
    started_at: float
    output_dir: str
    progress: float = 0.0
    cancel_event: object = field(default=None, repr=False)
