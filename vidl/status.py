from enum import Enum

from vidl.errors import IllegalTransition


class VideoStatus(str, Enum):
    NEW = "new"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    ERROR = "error"
    IGNORED = "ignored"

    @property
    def code(self):
        return _CODES[self]

    @classmethod
    def parse(cls, value):
        """Accept a status value ("queued"), name ("QUEUED") or short code ("QU")."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for status in cls:
            if text.lower() == status.value or text.upper() == status.code:
                return status
        raise ValueError(f"Unknown video status: {value!r}")


_CODES = {
    VideoStatus.NEW: "NE",
    VideoStatus.QUEUED: "QU",
    VideoStatus.DOWNLOADING: "DL",
    VideoStatus.DOWNLOADED: "GR",
    VideoStatus.ERROR: "GE",
    VideoStatus.IGNORED: "IG",
}

# downloading -> queued is only taken by startup recovery.
_TRANSITIONS = {
    VideoStatus.NEW: {VideoStatus.QUEUED, VideoStatus.IGNORED},
    VideoStatus.IGNORED: {VideoStatus.NEW, VideoStatus.QUEUED},
    VideoStatus.QUEUED: {VideoStatus.DOWNLOADING},
    VideoStatus.DOWNLOADING: {VideoStatus.DOWNLOADED, VideoStatus.ERROR, VideoStatus.QUEUED},
    VideoStatus.ERROR: {VideoStatus.QUEUED},
    VideoStatus.DOWNLOADED: set(),
}

INITIAL_STATUS = VideoStatus.NEW
IN_QUEUE = frozenset({VideoStatus.QUEUED, VideoStatus.DOWNLOADING})


def can_transition(current, requested):
    current = VideoStatus.parse(current)
    requested = VideoStatus.parse(requested)
    return requested in _TRANSITIONS[current]


def check_transition(video_id, current, requested):
    current = VideoStatus.parse(current)
    requested = VideoStatus.parse(requested)
    if requested not in _TRANSITIONS[current]:
        raise IllegalTransition(video_id, current.value, requested.value)
    return requested


def parse_statuses(value):
    """Parse a comma separated filter such as ``GE,NE`` into a set of statuses."""
    if not value:
        return set()
    if isinstance(value, str):
        value = value.split(",")
    return {VideoStatus.parse(item) for item in value if str(item).strip()}
