"""Compile channel/playlist/profile settings into yt-dlp arguments.

Arguments are handled as :class:`FlagToken` groups: a flag plus the value
tokens that follow it. Filtering and dedup work on the canonical flag name,
so ``-f x``, ``--format x`` and ``--format=x`` are the same flag and a
dropped flag always takes its values with it.
"""

import logging
import shlex
from dataclasses import dataclass

FLAT_OUTPUT_TEMPLATE = "%(uploader)s [%(channel_id)s]/%(title)s [%(id)s].%(ext)s"
PLAYLIST_OUTPUT_TEMPLATE = (
    "%(uploader)s [%(channel_id)s]/%(playlist_title)s [%(playlist_id)s]/"
    "%(playlist_index)s - %(title)s [%(id)s].%(ext)s"
)
DEFAULT_SUBTITLE_LANGUAGES = "en"

_FLAG_ALIASES = {
    "-f": "--format",
    "-o": "--output",
    "-P": "--paths",
    "--add-metadata": "--embed-metadata",
    "--no-add-metadata": "--no-embed-metadata",
    "--write-sub": "--write-subs",
    "--no-write-sub": "--no-write-subs",
    "--write-automatic-subs": "--write-auto-subs",
    "--write-auto-sub": "--write-auto-subs",
    "--write-automatic-sub": "--write-auto-subs",
    "--no-write-automatic-subs": "--no-write-auto-subs",
    "--no-write-auto-sub": "--no-write-auto-subs",
    "--sub-lang": "--sub-langs",
    "--srt-lang": "--sub-langs",
}

# Flags the system always owns; copies from profiles or custom args are dropped.
RESERVED_FLAGS = frozenset({"--paths", "--download-archive", "--no-download-archive"})

_SUBTITLE_FLAGS = {"--sub-langs"}
_SPONSORBLOCK_FLAGS = {"--sponsorblock-mark", "--sponsorblock-remove", "--no-sponsorblock"}

# toggle attribute -> (emitted flag, flags the toggle claims when active)
_TOGGLES = (
    ("download_metadata", "--write-info-json", {"--write-info-json", "--no-write-info-json"}),
    ("embed_metadata", "--embed-metadata", {"--embed-metadata", "--no-embed-metadata"}),
    ("download_thumbnail", "--write-thumbnail", {"--write-thumbnail", "--no-write-thumbnail"}),
    ("embed_thumbnail", "--embed-thumbnail", {"--embed-thumbnail", "--no-embed-thumbnail"}),
    ("download_subtitles", "--write-subs", {"--write-subs", "--no-write-subs"}),
    ("embed_subtitles", "--embed-subs", {"--embed-subs", "--no-embed-subs"}),
    ("auto_subtitles", "--write-auto-subs", {"--write-auto-subs", "--no-write-auto-subs"}),
)
_SUBTITLE_TOGGLES = ("download_subtitles", "embed_subtitles", "auto_subtitles")


def default_format_selector(max_height):
    return f"bv*[height<={max_height}][ext=mp4]+ba[ext=m4a]/b[height<={max_height}]/best"


def flag_name(token):
    """Canonical flag name for ``token``, or None for a value token."""
    if not _is_flag(token):
        return None
    name = token.split("=", 1)[0] if token.startswith("--") else token
    return _FLAG_ALIASES.get(name, name)


def _is_flag(token):
    if len(token) < 2 or not token.startswith("-"):
        return False
    # Negative numbers are values (e.g. --playlist-start -1).
    return not token[1].isdigit()


@dataclass(frozen=True)
class FlagToken:
    name: str | None
    tokens: tuple[str, ...]

    def value(self):
        if not self.tokens:
            return None
        head = self.tokens[0]
        if head.startswith("--") and "=" in head:
            return head.split("=", 1)[1]
        if len(self.tokens) > 1:
            return self.tokens[1]
        return None


def tokenize(text):
    if not text or not text.strip():
        return []
    try:
        return shlex.split(text)
    except ValueError as exc:
        logging.warning("Custom yt-dlp args have unbalanced quotes (%s); splitting on whitespace", exc)
        return text.split()


def group_tokens(tokens):
    groups = []
    current = None
    for token in tokens:
        name = flag_name(token)
        if name is not None:
            current = [name, [token]]
            groups.append(current)
        elif current is not None:
            current[1].append(token)
        else:
            groups.append([None, [token]])
    return [FlagToken(name, tuple(parts)) for name, parts in groups]


def dedupe_flags(groups):
    """Keep the first group per flag name; value-only groups always stay."""
    seen = set()
    result = []
    for group in groups:
        if group.name is not None:
            if group.name in seen:
                continue
            seen.add(group.name)
        result.append(group)
    return result


def normalize_languages(value):
    langs = []
    for item in (value or "").split(","):
        item = item.strip()
        if item and item not in langs:
            langs.append(item)
    return ",".join(langs) or DEFAULT_SUBTITLE_LANGUAGES


def normalize_categories(value):
    categories = []
    for item in (value or "").split(","):
        item = item.strip()
        if item and item not in categories:
            categories.append(item)
    return categories


def toggle_flags(channel):
    """Flags implied by the channel's toggles and the set of names they claim."""
    groups = []
    claimed = set()
    for attr, flag, owns in _TOGGLES:
        if getattr(channel, attr, False):
            groups.append(FlagToken(flag, (flag,)))
            claimed |= owns
    if any(getattr(channel, attr, False) for attr in _SUBTITLE_TOGGLES):
        langs = normalize_languages(getattr(channel, "subtitle_languages", None))
        groups.append(FlagToken("--sub-langs", ("--sub-langs", langs)))
        claimed |= _SUBTITLE_FLAGS
    return groups, claimed


def sponsorblock_flags(channel):
    if not getattr(channel, "sponsorblock_enabled", False):
        return [], set()
    categories = normalize_categories(getattr(channel, "sponsorblock_categories", None))
    if not categories:
        return [], set()
    mode = getattr(channel, "sponsorblock_mode", None) or "mark"
    flag = "--sponsorblock-remove" if mode == "remove" else "--sponsorblock-mark"
    return [FlagToken(flag, (flag, ",".join(categories)))], set(_SPONSORBLOCK_FLAGS)


def profile_flags(profile):
    if profile is None:
        return []
    tokens = []
    if profile.format_selection:
        tokens += ["--format", profile.format_selection]
    if profile.merge_output_format:
        tokens += ["--merge-output-format", profile.merge_output_format]
    if profile.output_template:
        tokens += ["--output", profile.output_template]
    tokens += tokenize(profile.additional_args)
    return group_tokens(tokens)


def _filter(groups, claimed, source):
    kept = []
    for group in groups:
        if group.name in RESERVED_FLAGS:
            logging.warning("Ignoring %s from %s: managed by yt-keeper", group.name, source)
            continue
        if group.name in claimed:
            continue
        kept.append(group)
    return kept


@dataclass(frozen=True)
class InvocationOptions:
    output_dir: str
    output_template: str
    format: str
    merge_format: str
    restrict_filenames: bool
    archive_path: str | None
    flags: tuple[FlagToken, ...] = ()

    def args(self):
        argv = []
        for group in self.flags:
            argv.extend(group.tokens)
        return argv

    def to_argv(self):
        argv = self.args()
        argv += ["--paths", self.output_dir, "--output", self.output_template]
        argv += ["--format", self.format, "--merge-output-format", self.merge_format]
        argv.append("--restrict-filenames" if self.restrict_filenames else "--no-restrict-filenames")
        if self.archive_path:
            argv += ["--download-archive", self.archive_path]
        return argv

    def has_flag(self, name):
        return any(group.name == name for group in self.flags)


def compile_options(channel, playlist=None, *, profile=None, settings):
    """Build the yt-dlp invocation for one channel (and optionally a playlist).

    Order: toggles, SponsorBlock, profile, custom args. Toggle and SponsorBlock
    flags claim their names, so matching profile or custom flags (values
    included) are dropped. Output template, format and merge format come from
    the first group that sets them, falling back to the configured defaults.
    """
    toggles, claimed = toggle_flags(channel)
    sponsorblock, sb_claimed = sponsorblock_flags(channel)
    claimed = claimed | sb_claimed

    from_profile = _filter(profile_flags(profile), claimed, "profile")
    custom = _filter(group_tokens(tokenize(getattr(channel, "yt_dlp_options", None))), claimed, "custom args")
    groups = dedupe_flags(toggles + sponsorblock + from_profile + custom)

    flat = bool(getattr(channel, "flat_mode", False)) or playlist is None
    output_template = FLAT_OUTPUT_TEMPLATE if flat else PLAYLIST_OUTPUT_TEMPLATE
    fmt = default_format_selector(settings.max_height)
    merge_format = settings.merge_format
    restrict = bool(settings.restrict_filenames)

    remaining = []
    for group in groups:
        value = group.value()
        if group.name == "--output" and value:
            output_template = value
        elif group.name == "--format" and value:
            fmt = value
        elif group.name == "--merge-output-format" and value:
            merge_format = value
        elif group.name == "--restrict-filenames":
            restrict = True
        elif group.name == "--no-restrict-filenames":
            restrict = False
        elif group.name in ("--output", "--format", "--merge-output-format"):
            logging.warning("Ignoring %s without a value", group.name)
        else:
            remaining.append(group)

    return InvocationOptions(
        output_dir=settings.downloads_dir,
        output_template=output_template,
        format=fmt,
        merge_format=merge_format,
        restrict_filenames=restrict,
        archive_path=settings.archive_path,
        flags=tuple(remaining),
    )


class OptionsCompiler:
    def __init__(self, store, settings):
        self.store = store
        self.settings = settings

    def compile(self, channel, playlist=None):
        profile = None
        if channel.profile_id is not None:
            profile = self.store.get_profile(channel.profile_id)
            if profile is None:
                logging.warning("Channel %s references missing profile %s", channel.id, channel.profile_id)
        return compile_options(channel, playlist, profile=profile, settings=self.settings)
