import os
import sqlite3
import tempfile
import threading
import unittest

from keeper.errors import NotFound, PersistenceFailure
from keeper.models import VideoStatus
from keeper.store import KeeperStore


class KeeperStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "database", "keeper.sqlite")
        self.store = KeeperStore(self.db_path)
        self.channel = self.store.create_channel("https://www.youtube.com/@example")
        self.playlist = self.store.upsert_playlist(self.channel.id, "PL1", title="First", enabled=True)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _video(self, video_id, index=None, title=None):
        return self.store.upsert_video(
            video_id,
            channel_id=self.channel.id,
            playlist_id=self.playlist.id,
            title=title or video_id,
            playlist_index=index,
        )

    def test_channel_defaults(self):
        self.assertTrue(self.channel.enabled)
        self.assertTrue(self.channel.download_metadata)
        self.assertFalse(self.channel.flat_mode)
        self.assertEqual(self.channel.rescrape_interval_days, 7)
        self.assertEqual(self.channel.sponsorblock_mode, "mark")
        self.assertIsNone(self.channel.last_scraped_at)

    def test_channel_validation(self):
        with self.assertRaises(ValueError):
            self.store.create_channel("https://www.youtube.com/@example")
        with self.assertRaises(ValueError):
            self.store.create_channel("https://www.youtube.com/@other", sponsorblock_mode="skip")
        with self.assertRaises(ValueError):
            self.store.create_channel("https://www.youtube.com/@other", sponsorblock_categories="sponsor,bogus")
        with self.assertRaises(ValueError):
            self.store.create_channel("   ")
        with self.assertRaises(NotFound):
            self.store.update_channel(999, enabled=False)

    def test_update_channel_normalizes_categories(self):
        updated = self.store.update_channel(
            self.channel.id,
            sponsorblock_enabled=True,
            sponsorblock_categories="sponsor, intro,sponsor",
        )
        self.assertTrue(updated.sponsorblock_enabled)
        self.assertEqual(updated.sponsorblock_categories, "sponsor,intro")

    def test_delete_channel_removes_children(self):
        self._video("v1", 1)
        self.store.delete_channel(self.channel.id)
        self.assertIsNone(self.store.get_channel(self.channel.id))
        self.assertIsNone(self.store.get_playlist(self.playlist.id))
        self.assertIsNone(self.store.get_video("v1"))
        with self.assertRaises(NotFound):
            self.store.delete_channel(self.channel.id)

    def test_profiles(self):
        profile = self.store.create_profile("hd", format_selection="bv*+ba/b")
        with self.assertRaises(ValueError):
            self.store.create_profile("hd")
        self.store.update_channel(self.channel.id, profile_id=profile.id)
        updated = self.store.update_profile(profile.id, merge_output_format="mkv")
        self.assertEqual(updated.merge_output_format, "mkv")
        self.assertEqual(updated.format_selection, "bv*+ba/b")
        self.store.delete_profile(profile.id)
        self.assertIsNone(self.store.get_profile(profile.id))
        self.assertIsNone(self.store.get_channel(self.channel.id).profile_id)

    def test_upsert_playlist_keeps_enabled_flag(self):
        again = self.store.upsert_playlist(self.channel.id, "PL1", title="Renamed", enabled=False)
        self.assertEqual(again.id, self.playlist.id)
        self.assertTrue(again.enabled)
        self.assertEqual(again.title, "Renamed")

    def test_reenumeration_never_regresses_status(self):
        self._video("v1", 1, title="Old title")
        self.assertTrue(self.store.claim_video("v1"))
        self.assertTrue(self.store.mark_completed("v1", file_path="/downloads/v1.mp4", file_size=10))

        video = self._video("v1", 1, title="New title")
        self.assertEqual(video.download_status, VideoStatus.COMPLETED)
        self.assertEqual(video.title, "New title")
        self.assertEqual(video.file_path, "/downloads/v1.mp4")

    def test_transitions_are_guarded(self):
        self._video("v1", 1)
        self.assertFalse(self.store.mark_completed("v1", file_path="/x"))
        self.assertFalse(self.store.mark_failed("v1", "boom"))
        self.assertFalse(self.store.reset_to_pending("v1"))

        self.assertTrue(self.store.claim_video("v1"))
        self.assertFalse(self.store.claim_video("v1"))
        self.assertFalse(self.store.reset_to_pending("v1"))
        self.assertTrue(self.store.mark_failed("v1", "ERROR: HTTP Error 403"))

        failed = self.store.get_video("v1")
        self.assertEqual(failed.download_status, VideoStatus.FAILED)
        self.assertEqual(failed.error_message, "ERROR: HTTP Error 403")
        self.assertTrue(self.store.reset_to_pending("v1"))
        self.assertIsNone(self.store.get_video("v1").error_message)

    def test_concurrent_claim_has_single_winner(self):
        self._video("v1", 1)
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def _claim():
            barrier.wait()
            won = self.store.claim_video("v1")
            with lock:
                results.append(won)

        threads = [threading.Thread(target=_claim) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(results.count(True), 1)

    def test_reset_failed(self):
        for idx, video_id in enumerate(("v1", "v2", "v3"), start=1):
            self._video(video_id, idx)
            self.store.claim_video(video_id)
        self.store.mark_failed("v1", "boom")
        self.store.mark_failed("v3", "boom")
        self.store.mark_completed("v2", file_path="/x")

        reset = self.store.reset_failed()
        self.assertEqual([video.video_id for video in reset], ["v1", "v3"])
        self.assertTrue(all(video.download_status == VideoStatus.PENDING for video in reset))
        self.assertEqual(self.store.get_video("v2").download_status, VideoStatus.COMPLETED)
        self.assertEqual(self.store.reset_failed(), [])

    def test_listing_and_pagination(self):
        for idx in (3, 1, 2):
            self._video(f"v{idx}", idx)
        self.assertEqual([v.video_id for v in self.store.list_videos_by_playlist(self.playlist.id)], ["v1", "v2", "v3"])
        self.assertEqual([v.video_id for v in self.store.list_pending_videos()], ["v1", "v2", "v3"])

        page = self.store.list_videos_by_status(VideoStatus.PENDING, limit=2, offset=0)
        rest = self.store.list_videos_by_status(VideoStatus.PENDING, limit=2, offset=2)
        self.assertEqual(len(page), 2)
        self.assertEqual(len(rest), 1)
        self.assertEqual(
            {v.video_id for v in page + rest},
            {"v1", "v2", "v3"},
        )
        with self.assertRaises(ValueError):
            self.store.list_videos_by_status("queued")

        counts = self.store.status_counts()
        self.assertEqual(counts[VideoStatus.PENDING], 3)
        self.assertEqual(counts[VideoStatus.FAILED], 0)

    def test_store_errors_surface_as_persistence_failure(self):
        with self.assertRaises(PersistenceFailure):
            self.store.upsert_video("orphan", channel_id=12345)


class KeeperStoreMigrationTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "keeper.sqlite")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_adds_missing_columns(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL UNIQUE,
                    channel_name TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "INSERT INTO channels (url, channel_name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                ("https://www.youtube.com/@legacy", "Legacy", "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
            )
            conn.execute(
                """
                CREATE TABLE videos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    video_id TEXT NOT NULL UNIQUE,
                    channel_id INTEGER,
                    playlist_id INTEGER,
                    title TEXT,
                    url TEXT,
                    uploader TEXT,
                    upload_date TEXT,
                    duration INTEGER,
                    playlist_index INTEGER,
                    download_status TEXT NOT NULL DEFAULT 'pending',
                    downloaded_at TIMESTAMP,
                    file_path TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )

        with self.assertLogs(level="WARNING"):
            store = KeeperStore(self.db_path)

        channel = store.list_channels()[0]
        self.assertEqual(channel.channel_name, "Legacy")
        self.assertTrue(channel.enabled)
        self.assertTrue(channel.download_metadata)
        self.assertEqual(channel.sponsorblock_categories, "sponsor")

        store.upsert_video("v1", channel_id=channel.id, title="t")
        store.claim_video("v1")
        store.mark_completed("v1", file_path="/x", file_size=5, resolution="1920x1080", fps=30.0)
        self.assertEqual(store.get_video("v1").resolution, "1920x1080")


if __name__ == "__main__":
    unittest.main()
