from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from vidl.status import VideoStatus


class Service(str, Enum):
    YOUTUBE = "youtube"
    VIMEO = "vimeo"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown service {value!r} (expected one of: {choices})") from None


def utc_now():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_utc_iso(value):
    """Normalise a datetime, unix timestamp or ISO string to an ISO-8601 UTC string."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if len(text) == 8 and text.isdigit():
            # yt-dlp upload_date (YYYYMMDD); noon like the scraper source did
            parsed = datetime.strptime(text, "%Y%m%d").replace(hour=12, minute=0, second=1)
        else:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def parse_timestamp(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ChannelMetadata:
    title: str
    thumbnail: str
    description: str = ""


@dataclass(frozen=True)
class VideoInfo:
    video_id: str
    url: str
    title: str
    description: str
    thumbnail_url: str
    published_at: str
    duration: int = 0
    title_alt: str | None = None
    description_alt: str | None = None


@dataclass(frozen=True)
class Channel:
    id: int
    service: Service
    chanid: str
    title: str
    thumbnail: str
    last_update: str | None = None
    last_seen_video_id: str | None = None
    crawl_started_at: str | None = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            service=Service.parse(row["service"]),
            chanid=row["chanid"],
            title=row["title"],
            thumbnail=row["thumbnail"],
            last_update=row["last_update"],
            last_seen_video_id=row["last_seen_video_id"],
            crawl_started_at=row["crawl_started_at"],
        )

    def as_dict(self):
        return {
            "id": self.id,
            "service": self.service.value,
            "chanid": self.chanid,
            "title": self.title,
            "thumbnail": self.thumbnail,
            "last_update": self.last_update,
            "last_seen_video_id": self.last_seen_video_id,
        }


@dataclass(frozen=True)
class DBVideoInfo:
    id: int
    channel_id: int
    info: VideoInfo
    status: VideoStatus
    date_added: str | None = None
    queued_at: str | None = None
    downloaded_at: str | None = None
    local_file: str | None = None
    error_message: str | None = None

    @classmethod
    def from_row(cls, row):
        info = VideoInfo(
            video_id=row["video_id"],
            url=row["url"],
            title=row["title"],
            description=row["description"],
            thumbnail_url=row["thumbnail"],
            published_at=row["published_at"],
            duration=row["duration"],
            title_alt=row["title_alt"],
            description_alt=row["description_alt"],
        )
        return cls(
            id=row["id"],
            channel_id=row["channel"],
            info=info,
            status=VideoStatus.parse(row["status"]),
            date_added=row["date_added"],
            queued_at=row["queued_at"],
            downloaded_at=row["downloaded_at"],
            local_file=row["local_file"],
            error_message=row["error_message"],
        )

    def as_dict(self):
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "video_id": self.info.video_id,
            "url": self.info.url,
            "title": self.info.title,
            "description": self.info.description,
            "thumbnail_url": self.info.thumbnail_url,
            "published_at": self.info.published_at,
            "duration": self.info.duration,
            "title_alt": self.info.title_alt,
            "description_alt": self.info.description_alt,
            "status": self.status.value,
            "date_added": self.date_added,
            "queued_at": self.queued_at,
            "downloaded_at": self.downloaded_at,
            "local_file": self.local_file,
            "error_message": self.error_message,
        }
