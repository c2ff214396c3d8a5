import json
import os
import tempfile
import threading
import unittest
from unittest import mock

from yt_dlp.utils import DownloadError

from keeper.config import KeeperSettings
from keeper.errors import AdapterFailure
from keeper.models import Channel, Playlist
from keeper.options import PLAYLIST_OUTPUT_TEMPLATE, compile_options
from keeper.ytdlp import YtDlpAdapter, cleanup_partial_files, fill_template, read_sidecar_metadata


class FillTemplateTests(unittest.TestCase):
    def test_playlist_fields_become_literal(self):
        template = fill_template(
            PLAYLIST_OUTPUT_TEMPLATE,
            {"playlist_title": "Talks / 100%", "playlist_id": "PLx", "playlist_index": 7},
        )
        self.assertEqual(
            template,
            "%(uploader)s [%(channel_id)s]/Talks _ 100%% [PLx]/7 - %(title)s [%(id)s].%(ext)s",
        )

    def test_width_spec_is_applied(self):
        self.assertEqual(fill_template("%(playlist_index)03d-%(id)s", {"playlist_index": 4}), "004-%(id)s")

    def test_missing_values_are_left_alone(self):
        self.assertEqual(fill_template("%(playlist_index)s", {"playlist_index": None}), "%(playlist_index)s")


class PartialFileTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = self.tmpdir.name

    def tearDown(self):
        self.tmpdir.cleanup()

    def _touch(self, *parts):
        path = os.path.join(self.root, *parts)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as handle:
            handle.write(b"x")
        return path

    def test_only_partials_for_the_video_are_removed(self):
        part = self._touch("Uploader [UC1]", "Talks [PL1]", "1 - Title [abc123].mp4.part")
        frag = self._touch("Uploader [UC1]", "Title [abc123].f137.mp4.part-Frag12")
        ytdl = self._touch("Title [abc123].mp4.ytdl")
        done = self._touch("Uploader [UC1]", "Other [abc123].mp4")
        other = self._touch("Other [zzz999].mp4.part")

        removed = cleanup_partial_files(self.root, "abc123")
        self.assertEqual(set(removed), {part, frag, ytdl})
        self.assertTrue(os.path.exists(done))
        self.assertTrue(os.path.exists(other))

    def test_missing_directory(self):
        self.assertEqual(cleanup_partial_files(os.path.join(self.root, "nope"), "abc123"), [])

    def test_sidecar_metadata(self):
        media = self._touch("Title [abc123].mp4")
        with open(os.path.join(self.root, "Title [abc123].info.json"), "w", encoding="utf-8") as handle:
            json.dump({"width": 1920, "height": 1080, "fps": 60, "vcodec": "vp9", "acodec": "opus"}, handle)
        self.assertEqual(
            read_sidecar_metadata(media),
            {"resolution": "1920x1080", "fps": 60.0, "vcodec": "vp9", "acodec": "opus"},
        )
        self.assertEqual(read_sidecar_metadata(os.path.join(self.root, "none.mp4")), {})


class YtDlpAdapterTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        root = self.tmpdir.name
        self.settings = KeeperSettings(
            db_path=os.path.join(root, "keeper.sqlite"),
            downloads_dir=os.path.join(root, "downloads"),
            archive_path=os.path.join(root, "downloads", ".downloaded"),
            log_dir=os.path.join(root, "logs"),
            quota_path=os.path.join(root, "quota.json"),
            cookies_path=os.path.join(root, "cookies.txt"),
        )
        self.adapter = YtDlpAdapter(self.settings)
        channel = Channel(id=1, url="https://www.youtube.com/@example", embed_metadata=True)
        playlist = Playlist(id=2, channel_id=1, playlist_id="PLx", title="Talks", enabled=True)
        self.options = compile_options(channel, playlist, settings=self.settings)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_build_ydl_opts(self):
        opts = self.adapter.build_ydl_opts(self.options, template_fields={"playlist_title": "Talks", "playlist_id": "PLx", "playlist_index": 3})
        self.assertEqual(opts["paths"], {"home": self.settings.downloads_dir})
        self.assertEqual(opts["outtmpl"]["default"], "%(uploader)s [%(channel_id)s]/Talks [PLx]/3 - %(title)s [%(id)s].%(ext)s")
        self.assertEqual(opts["download_archive"], self.settings.archive_path)
        self.assertEqual(opts["merge_output_format"], "mp4")
        self.assertTrue(opts["writeinfojson"])
        self.assertTrue(opts["noplaylist"])
        self.assertIsNone(opts.get("cookiefile"))

    def test_rejected_options(self):
        channel = Channel(id=1, url="u", yt_dlp_options="--definitely-not-a-flag")
        options = compile_options(channel, None, settings=self.settings)
        with mock.patch("sys.stderr"):
            with self.assertRaises(AdapterFailure):
                self.adapter.build_ydl_opts(options)

    def test_download_errors_keep_tool_message(self):
        ydl = mock.MagicMock()
        ydl.__enter__.return_value = ydl
        ydl.extract_info.side_effect = DownloadError("ERROR: [youtube] abc: Private video")
        with mock.patch("keeper.ytdlp.YoutubeDL", return_value=ydl):
            with self.assertRaises(AdapterFailure) as ctx:
                self.adapter.download("https://www.youtube.com/watch?v=abc", self.options)
        self.assertIn("Private video", str(ctx.exception))

    def test_archived_video_returns_no_path(self):
        ydl = mock.MagicMock()
        ydl.__enter__.return_value = ydl
        ydl.extract_info.return_value = None
        with mock.patch("keeper.ytdlp.YoutubeDL", return_value=ydl):
            with self.assertLogs(level="INFO"):
                path = self.adapter.download("https://www.youtube.com/watch?v=abc", self.options)
        self.assertIsNone(path)
        ydl.prepare_filename.assert_not_called()

    def test_download_reports_progress_and_path(self):
        captured = {}
        updates = []
        ydl = mock.MagicMock()
        ydl.__enter__.return_value = ydl

        def _extract(url, download):
            hook = captured["opts"]["progress_hooks"][0]
            hook({"status": "downloading", "downloaded_bytes": 50, "total_bytes": 200})
            hook({"status": "finished"})
            return {"id": "abc", "requested_downloads": [{"filepath": "/downloads/abc.mp4"}]}

        ydl.extract_info.side_effect = _extract

        def _factory(opts):
            captured["opts"] = opts
            return ydl

        with mock.patch("keeper.ytdlp.YoutubeDL", side_effect=_factory):
            path = self.adapter.download("https://www.youtube.com/watch?v=abc", self.options, updates.append)
        self.assertEqual(path, "/downloads/abc.mp4")
        self.assertEqual([u.percent for u in updates], [25.0, 100.0])

    def test_cancel_event_aborts_download(self):
        cancel = threading.Event()
        cancel.set()
        captured = {}
        ydl = mock.MagicMock()
        ydl.__enter__.return_value = ydl

        def _extract(url, download):
            captured["opts"]["progress_hooks"][0]({"status": "downloading"})
            return {}

        ydl.extract_info.side_effect = _extract

        def _factory(opts):
            captured["opts"] = opts
            return ydl

        with mock.patch("keeper.ytdlp.YoutubeDL", side_effect=_factory):
            with self.assertRaises(AdapterFailure) as ctx:
                self.adapter.download("https://www.youtube.com/watch?v=abc", self.options, cancel_event=cancel)
        self.assertIn("cancelled", str(ctx.exception))

    def test_enumerate_playlists_falls_back_to_ytdlp(self):
        api_client = mock.MagicMock()
        api_client.enumerate_playlists.side_effect = AdapterFailure("quota")
        adapter = YtDlpAdapter(self.settings, api_client=api_client)
        info = {
            "channel_id": "UCx",
            "channel": "Example",
            "entries": [
                {"id": "PL1", "title": "One", "url": "https://www.youtube.com/playlist?list=PL1"},
                None,
                {"url": "https://www.youtube.com/playlist?list=PL2", "title": "Two"},
            ],
        }
        with mock.patch.object(adapter, "_extract", return_value=info) as extract:
            with self.assertLogs(level="WARNING"):
                result = adapter.enumerate_playlists("https://www.youtube.com/@example")
        extract.assert_called_once_with("https://www.youtube.com/@example/playlists", extract_flat="in_playlist")
        self.assertEqual(result["channel_id"], "UCx")
        self.assertEqual(result["channel_name"], "Example")
        self.assertEqual([p["playlist_id"] for p in result["playlists"]], ["PL1", "PL2"])


if __name__ == "__main__":
    unittest.main()
