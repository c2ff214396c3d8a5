import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

from keeper.errors import AdapterFailure, QuotaExceeded
from keeper.youtube_api import QuotaLedger, YouTubeApiClient, next_midnight_pacific


def _request(response):
    request = mock.MagicMock()
    request.execute.return_value = response
    return request


class QuotaLedgerTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "quota.json")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_reset_is_next_pacific_midnight(self):
        now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)  # 01:00 PST
        self.assertEqual(next_midnight_pacific(now), datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc))

    def test_charge_until_exhausted(self):
        now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        ledger = QuotaLedger(self.path, 2)
        ledger.charge("playlists.list", now=now)
        ledger.charge("playlists.list", now=now)
        with self.assertRaises(QuotaExceeded):
            ledger.charge("playlists.list", now=now)
        with open(self.path, "r") as f:
            self.assertEqual(json.load(f)["used"], 2)
        self.assertEqual(ledger.status(now=now)["remaining"], 0)

        tomorrow = datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc)
        ledger.charge("playlists.list", now=tomorrow)
        self.assertEqual(ledger.status(now=tomorrow)["used"], 1)


class YouTubeApiClientTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.service = mock.MagicMock()
        self.client = YouTubeApiClient(
            "key",
            os.path.join(self.tmpdir.name, "quota.json"),
            service=self.service,
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_resolve_channel_id(self):
        self.assertEqual(self.client.resolve_channel_id("https://www.youtube.com/channel/UCabc_123"), "UCabc_123")
        self.service.channels().list.assert_not_called()

        self.service.channels().list.return_value = _request({"items": [{"id": "UChandle"}]})
        self.assertEqual(self.client.resolve_channel_id("https://www.youtube.com/@someone"), "UChandle")
        self.service.channels().list.assert_called_with(part="id", forHandle="someone")

        self.client.resolve_channel_id("https://www.youtube.com/user/legacyname")
        self.service.channels().list.assert_called_with(part="id", forUsername="legacyname")

        with self.assertRaises(AdapterFailure):
            self.client.resolve_channel_id("https://example.com/nothing")

    def test_enumerate_playlists_pages(self):
        self.service.channels().list.return_value = _request({"items": [{"id": "UCx", "snippet": {"title": "Example"}}]})
        self.service.playlists().list.side_effect = [
            _request(
                {
                    "items": [{"id": "PL1", "snippet": {"title": "One"}, "contentDetails": {"itemCount": 3}}],
                    "nextPageToken": "page2",
                }
            ),
            _request({"items": [{"id": "PL2", "snippet": {"title": "Two"}, "contentDetails": {"itemCount": 5}}]}),
        ]
        result = self.client.enumerate_playlists("https://www.youtube.com/channel/UCx")
        self.assertEqual(result["channel_id"], "UCx")
        self.assertEqual(result["channel_name"], "Example")
        self.assertEqual(
            result["playlists"],
            [
                {"playlist_id": "PL1", "title": "One", "url": "https://www.youtube.com/playlist?list=PL1", "video_count": 3},
                {"playlist_id": "PL2", "title": "Two", "url": "https://www.youtube.com/playlist?list=PL2", "video_count": 5},
            ],
        )
        self.assertEqual(self.client.quota.status()["used"], 3)

    def test_enumerate_playlist_videos(self):
        self.service.playlistItems().list.return_value = _request(
            {
                "items": [
                    {
                        "snippet": {"title": "First", "videoOwnerChannelTitle": "Owner"},
                        "contentDetails": {"videoId": "vid1", "videoPublishedAt": "2023-04-05T10:00:00Z"},
                    },
                    {"snippet": {"title": "Deleted video"}, "contentDetails": {}},
                    {"snippet": {"title": "Second"}, "contentDetails": {"videoId": "vid2"}},
                ]
            }
        )
        videos = self.client.enumerate_playlist_videos("PL1")
        self.assertEqual([v["id"] for v in videos], ["vid1", "vid2"])
        self.assertEqual([v["index"] for v in videos], [1, 2])
        self.assertEqual(videos[0]["upload_date"], "20230405")
        self.assertEqual(videos[0]["uploader"], "Owner")
        self.assertIsNone(videos[1]["upload_date"])

    def test_http_errors_become_adapter_failures(self):
        request = mock.MagicMock()
        request.execute.side_effect = OSError("connection reset")
        self.service.playlistItems().list.return_value = request
        with self.assertRaises(AdapterFailure):
            self.client.enumerate_playlist_videos("PL1")


if __name__ == "__main__":
    unittest.main()
