import random
import unittest

from keeper.config import KeeperSettings
from keeper.models import Channel, Playlist, Profile
from keeper.options import (
    FLAT_OUTPUT_TEMPLATE,
    PLAYLIST_OUTPUT_TEMPLATE,
    compile_options,
    default_format_selector,
    flag_name,
    group_tokens,
    tokenize,
)

_TOGGLE_FIELDS = (
    ("download_metadata", "--write-info-json"),
    ("embed_metadata", "--embed-metadata"),
    ("download_thumbnail", "--write-thumbnail"),
    ("embed_thumbnail", "--embed-thumbnail"),
    ("download_subtitles", "--write-subs"),
    ("embed_subtitles", "--embed-subs"),
    ("auto_subtitles", "--write-auto-subs"),
)


def _settings(**overrides):
    settings = KeeperSettings(
        db_path="/data/keeper.sqlite",
        downloads_dir="/downloads",
        archive_path="/downloads/.downloaded",
        log_dir="/logs",
        quota_path="/data/quota.json",
    )
    return settings.with_overrides(**overrides)


def _playlist(**fields):
    values = {"id": 5, "channel_id": 1, "playlist_id": "PLabc", "title": "Talks", "enabled": True}
    values.update(fields)
    return Playlist(**values)


class FlagTokenTests(unittest.TestCase):
    def test_aliases_share_a_name(self):
        self.assertEqual(flag_name("-f"), "--format")
        self.assertEqual(flag_name("--format=best"), "--format")
        self.assertEqual(flag_name("--sub-lang"), "--sub-langs")
        self.assertIsNone(flag_name("-1"))
        self.assertIsNone(flag_name("best"))

    def test_group_keeps_values_with_flag(self):
        groups = group_tokens(tokenize('--limit-rate 1M -o "%(title)s.%(ext)s" --no-mtime'))
        self.assertEqual([g.name for g in groups], ["--limit-rate", "--output", "--no-mtime"])
        self.assertEqual(groups[1].value(), "%(title)s.%(ext)s")

    def test_unbalanced_quotes_fall_back_to_whitespace(self):
        self.assertEqual(tokenize('--match-title "foo'), ["--match-title", '"foo'])


class CompileOptionsTests(unittest.TestCase):
    def test_sponsorblock_mark_emitted_once(self):
        channel = Channel(
            id=1,
            url="https://www.youtube.com/@example",
            sponsorblock_enabled=True,
            sponsorblock_mode="mark",
            sponsorblock_categories="sponsor,intro",
            yt_dlp_options="",
        )
        argv = compile_options(channel, _playlist(), settings=_settings()).to_argv()
        self.assertEqual(argv.count("--sponsorblock-mark"), 1)
        idx = argv.index("--sponsorblock-mark")
        self.assertEqual(argv[idx + 1], "sponsor,intro")
        self.assertNotIn("--sponsorblock-remove", argv)

    def test_subtitle_toggle_wins_over_custom_args(self):
        channel = Channel(
            id=1,
            url="https://www.youtube.com/@example",
            download_subtitles=True,
            subtitle_languages="en,de",
            yt_dlp_options="--write-subs --sub-langs fr",
        )
        argv = compile_options(channel, _playlist(), settings=_settings()).to_argv()
        self.assertEqual(argv.count("--write-subs"), 1)
        self.assertEqual(argv.count("--sub-langs"), 1)
        self.assertEqual(argv[argv.index("--sub-langs") + 1], "en,de")
        self.assertNotIn("fr", argv)

    def test_sponsorblock_without_categories_emits_nothing(self):
        channel = Channel(id=1, url="u", sponsorblock_enabled=True, sponsorblock_categories=" , ")
        argv = compile_options(channel, _playlist(), settings=_settings()).to_argv()
        self.assertFalse(any(token.startswith("--sponsorblock") for token in argv))

    def test_toggle_claims_negated_custom_flag(self):
        channel = Channel(id=1, url="u", embed_thumbnail=True, yt_dlp_options="--no-embed-thumbnail --no-mtime")
        options = compile_options(channel, _playlist(), settings=_settings())
        self.assertTrue(options.has_flag("--embed-thumbnail"))
        self.assertFalse(options.has_flag("--no-embed-thumbnail"))
        self.assertTrue(options.has_flag("--no-mtime"))

    def test_always_set_values(self):
        channel = Channel(id=1, url="u")
        options = compile_options(channel, _playlist(), settings=_settings(max_height=720))
        argv = options.to_argv()
        self.assertEqual(argv[argv.index("--paths") + 1], "/downloads")
        self.assertEqual(argv[argv.index("--output") + 1], PLAYLIST_OUTPUT_TEMPLATE)
        self.assertEqual(argv[argv.index("--format") + 1], default_format_selector(720))
        self.assertEqual(argv[argv.index("--merge-output-format") + 1], "mp4")
        self.assertIn("--no-restrict-filenames", argv)
        self.assertEqual(argv[argv.index("--download-archive") + 1], "/downloads/.downloaded")

    def test_flat_mode_collapses_template(self):
        flat = Channel(id=1, url="u", flat_mode=True)
        self.assertEqual(compile_options(flat, _playlist(), settings=_settings()).output_template, FLAT_OUTPUT_TEMPLATE)
        single = Channel(id=1, url="u")
        self.assertEqual(compile_options(single, None, settings=_settings()).output_template, FLAT_OUTPUT_TEMPLATE)

    def test_profile_args_take_precedence_over_custom_args(self):
        profile = Profile(
            id=3,
            name="audio",
            format_selection="bestaudio",
            merge_output_format="mkv",
            additional_args="--restrict-filenames --concurrent-fragments 4",
        )
        channel = Channel(id=1, url="u", profile_id=3, yt_dlp_options="-f worst --concurrent-fragments 8")
        options = compile_options(channel, _playlist(), profile=profile, settings=_settings())
        self.assertEqual(options.format, "bestaudio")
        self.assertEqual(options.merge_format, "mkv")
        self.assertTrue(options.restrict_filenames)
        argv = options.to_argv()
        self.assertEqual(argv.count("--concurrent-fragments"), 1)
        self.assertEqual(argv[argv.index("--concurrent-fragments") + 1], "4")
        self.assertEqual(argv.count("--format"), 1)

    def test_reserved_flags_are_dropped(self):
        channel = Channel(
            id=1,
            url="u",
            yt_dlp_options="-P /tmp/elsewhere --download-archive /tmp/other.txt --no-download-archive",
        )
        argv = compile_options(channel, _playlist(), settings=_settings()).to_argv()
        self.assertEqual(argv.count("--paths"), 1)
        self.assertNotIn("-P", argv)
        self.assertNotIn("/tmp/elsewhere", argv)
        self.assertNotIn("/tmp/other.txt", argv)
        self.assertNotIn("--no-download-archive", argv)


class CompileOptionsPropertyTests(unittest.TestCase):
    def _random_channel(self, rng):
        fields = {name: rng.random() < 0.5 for name, _flag in _TOGGLE_FIELDS}
        fields["sponsorblock_enabled"] = rng.random() < 0.5
        fields["sponsorblock_mode"] = rng.choice(["mark", "remove"])
        fields["sponsorblock_categories"] = ",".join(rng.sample(["sponsor", "intro", "outro", "selfpromo"], 2))
        fields["subtitle_languages"] = rng.choice(["en", "en,de", "fr, en"])
        fields["flat_mode"] = rng.random() < 0.3
        custom = [flag for _name, flag in rng.sample(_TOGGLE_FIELDS, 3)]
        custom += rng.choice([[], ["--sub-langs", "es"], ["--sponsorblock-remove", "outro"]])
        fields["yt_dlp_options"] = " ".join(custom + ["--no-mtime"])
        return Channel(id=1, url="https://www.youtube.com/@example", **fields)

    def test_compile_is_idempotent(self):
        rng = random.Random(1234)
        settings = _settings()
        for _ in range(50):
            channel = self._random_channel(rng)
            first = compile_options(channel, _playlist(), settings=settings)
            second = compile_options(Channel(**vars(channel)), _playlist(), settings=settings)
            self.assertEqual(first.to_argv(), second.to_argv())
            self.assertEqual(first, second)

    def test_toggle_flags_never_duplicated(self):
        rng = random.Random(99)
        settings = _settings()
        for _ in range(50):
            channel = self._random_channel(rng)
            argv = compile_options(channel, _playlist(), settings=settings).to_argv()
            for name, flag in _TOGGLE_FIELDS:
                if getattr(channel, name):
                    self.assertEqual(argv.count(flag), 1, (flag, channel.yt_dlp_options))
            if channel.download_subtitles or channel.embed_subtitles or channel.auto_subtitles:
                self.assertEqual(argv.count("--sub-langs"), 1)
                self.assertNotIn("es", argv)
            self.assertLessEqual(argv.count("--no-mtime"), 1)


if __name__ == "__main__":
    unittest.main()
