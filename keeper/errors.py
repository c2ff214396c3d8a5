class KeeperError(Exception):
    """Base class for errors raised by the download core."""


class NotFound(KeeperError):
    def __init__(self, kind, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class NotEnabled(KeeperError):
    def __init__(self, kind, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} is not enabled: {identifier}")


class NoEnabledPlaylists(NotEnabled):
    def __init__(self, channel_id):
        self.kind = "channel"
        self.identifier = channel_id
        KeeperError.__init__(self, f"channel has no enabled playlists: {channel_id}")


class AdapterFailure(KeeperError):
    """yt-dlp (or the metadata API) failed; the message is the tool's own text."""


class QuotaExceeded(AdapterFailure):
    pass


class PersistenceFailure(KeeperError):
    """A write or read against the video record store failed."""


class ShutdownTimeout(KeeperError):
    def __init__(self, timeout):
        self.timeout = timeout
        super().__init__(f"Download cancelled: shutdown timeout after {timeout:g}s")
