import logging

from keeper.errors import NotFound
from keeper.log import log_event
from keeper.store import utc_now


class RefreshCancelled(Exception):
    pass


def refresh_channel(store, adapter, channel_id, cancel_event=None, *, stamp=True):
    """Re-scrape a channel's playlists into the store.

    New playlists start enabled only when the channel auto-adds them;
    existing rows keep their enabled flag. With ``stamp=False`` the caller
    owns ``last_scraped_at`` (the scheduler stamps only after a full cycle).
    """
    channel = store.get_channel(channel_id)
    if channel is None:
        raise NotFound("channel", channel_id)

    result = adapter.enumerate_playlists(channel.url)
    store.set_channel_identity(channel.id, external_id=result.get("channel_id"), name=result.get("channel_name"))

    known = {playlist.playlist_id for playlist in store.list_playlists(channel.id)}
    added = 0
    for entry in result.get("playlists") or []:
        if cancel_event is not None and cancel_event.is_set():
            raise RefreshCancelled(f"refresh of channel {channel.id} cancelled")
        store.upsert_playlist(
            channel.id,
            entry["playlist_id"],
            title=entry.get("title"),
            url=entry.get("url"),
            video_count=entry.get("video_count"),
            enabled=channel.auto_add_new_playlists,
        )
        if entry["playlist_id"] not in known:
            added += 1

    if stamp:
        store.touch_channel_scraped(channel.id, utc_now())
    total = len(result.get("playlists") or [])
    log_event("info", event="channel_refreshed", channel_id=channel.id, playlists=total, added=added)
    if added and not channel.auto_add_new_playlists:
        logging.info("Channel %s has %s new playlist(s) waiting to be enabled", channel.id, added)
    return {
        "channel_id": result.get("channel_id"),
        "channel_name": result.get("channel_name"),
        "playlists": total,
        "added": added,
    }
