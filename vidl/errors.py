"""Exception hierarchy shared by the store, update engine, queue and CLI."""


class VidlError(Exception):
    """Base class for every error vidl raises on purpose."""


class ConfigError(VidlError):
    """Bad configuration, paths or permissions. Fatal at startup."""


# Store


class StoreError(VidlError):
    pass


class StoreBusy(StoreError):
    """Another writer held the database longer than the busy timeout."""


class SchemaVersionError(ConfigError):
    pass


class NotFound(VidlError):
    pass


class ChannelNotFound(NotFound):
    def __init__(self, channel_id):
        super().__init__(f"channel {channel_id} not found")
        self.channel_id = channel_id


class VideoNotFound(NotFound):
    def __init__(self, video_id):
        super().__init__(f"video {video_id} not found")
        self.video_id = video_id


# Invariants


class InvariantViolation(VidlError):
    pass


class IllegalTransition(InvariantViolation):
    def __init__(self, video_id, current, requested):
        super().__init__(
            f"video {video_id}: illegal status transition {current} -> {requested}"
        )
        self.video_id = video_id
        self.current = current
        self.requested = requested


class DuplicateKey(InvariantViolation):
    pass


class UnknownSnapshotVersion(InvariantViolation):
    pass


# Remote metadata


class RemoteError(VidlError):
    """A remote metadata call failed; the channel stays unchecked."""


class RemoteNotFound(RemoteError):
    pass


class RemoteRateLimited(RemoteError):
    pass


class RemoteTransportError(RemoteError):
    pass


class RemoteTimeout(RemoteTransportError):
    pass


# Downloads


class DownloadError(VidlError):
    pass
