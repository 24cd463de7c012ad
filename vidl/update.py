import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from vidl.errors import ChannelNotFound, DuplicateKey, NotFound, RemoteError, RemoteTimeout
from vidl.logs import log_event
from vidl.models import Service, parse_timestamp
from vidl.sources import build_source


@dataclass
class ChannelResult:
    channel_id: int
    title: str
    new_videos: int = 0
    pages: int = 0
    skipped: str | None = None
    error: str | None = None

    @property
    def ok(self):
        return self.error is None

    def as_dict(self):
        return {
            "channel_id": self.channel_id,
            "title": self.title,
            "new_videos": self.new_videos,
            "pages": self.pages,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class UpdateReport:
    results: list = field(default_factory=list)

    @property
    def total_new(self):
        return sum(result.new_videos for result in self.results)

    @property
    def failures(self):
        return [result for result in self.results if result.error]

    def as_dict(self):
        return {
            "channels": [result.as_dict() for result in self.results],
            "total_new": self.total_new,
            "failures": len(self.failures),
        }


class UpdateEngine:
    """Crawls tracked channels and records newly published videos.

    ``source_factory`` maps a ``Service`` to a ``ChannelSource``; sources are
    built once per service and reused across channels.
    """

    def __init__(
        self,
        store,
        source_factory,
        *,
        freshness_minutes=60,
        crawl_guard_minutes=30,
        channel_timeout_seconds=300,
        clock=time.monotonic,
    ):
        self.store = store
        self.source_factory = source_factory
        self.freshness_minutes = freshness_minutes
        self.crawl_guard_minutes = crawl_guard_minutes
        self.channel_timeout_seconds = channel_timeout_seconds
        self._clock = clock
        self._sources = {}

    @classmethod
    def from_config(cls, store, config):
        return cls(
            store,
            lambda service: build_source(service, config),
            freshness_minutes=config["update_freshness_minutes"],
            crawl_guard_minutes=config["crawl_guard_minutes"],
            channel_timeout_seconds=config["channel_timeout_seconds"],
        )

    def source_for(self, service):
        service = Service.parse(service)
        if service not in self._sources:
            self._sources[service] = self.source_factory(service)
        return self._sources[service]

    def add_channel(self, name, service=Service.YOUTUBE):
        """Resolve ``name`` to a channel id, fetch its metadata and start tracking it."""
        service = Service.parse(service)
        source = self.source_for(service)
        chanid = source.find_channel_id(name)
        existing = self.store.find_channel(service, chanid)
        if existing:
            raise DuplicateKey(f"Channel {service.value}:{chanid} already exists (id {existing.id})")
        meta = source.get_metadata(chanid)
        return self.store.add_channel(service, chanid, meta.title, meta.thumbnail)

    def select_channels(self, selector=None):
        if selector is None or str(selector).strip().lower() in ("", "all"):
            return self.store.list_channels()
        text = str(selector).strip()
        if text.isdigit():
            try:
                return [self.store.get_channel(int(text))]
            except ChannelNotFound:
                return []
        needle = text.lower()
        return [
            channel
            for channel in self.store.list_channels()
            if needle in channel.title.lower() or needle in channel.chanid.lower()
        ]

    def update(self, selector=None, *, force=False, full=False):
        channels = self.select_channels(selector)
        report = UpdateReport()
        log_event("info", event="update_started", channels=len(channels), force=force, full=full)
        for channel in channels:
            report.results.append(self.update_channel(channel, force=force, full=full))
        log_event(
            "info",
            event="update_finished",
            channels=len(report.results),
            new_videos=report.total_new,
            failures=len(report.failures),
        )
        return report

    def is_fresh(self, channel, now=None):
        last_update = parse_timestamp(channel.last_update)
        if last_update is None or not self.freshness_minutes:
            return False
        now = now or datetime.now(timezone.utc)
        return now - last_update < timedelta(minutes=self.freshness_minutes)

    def update_channel(self, channel, *, force=False, full=False):
        result = ChannelResult(channel_id=channel.id, title=channel.title)
        if not force and self.is_fresh(channel):
            result.skipped = "fresh"
            log_event("debug", event="channel_skipped", channel_id=channel.id, reason="fresh")
            return result
        try:
            claimed = self.store.claim_channel_crawl(
                channel.id, stale_after_seconds=self.crawl_guard_minutes * 60
            )
        except ChannelNotFound:
            result.error = f"channel {channel.id} was removed"
            return result
        if not claimed:
            result.skipped = "busy"
            log_event("warning", event="channel_skipped", channel_id=channel.id, reason="busy")
            return result

        try:
            result.new_videos, result.pages = self._crawl(channel, full=full)
        except (RemoteError, NotFound) as exc:
            result.error = str(exc) or exc.__class__.__name__
            log_event(
                "error",
                event="channel_update_failed",
                channel_id=channel.id,
                chanid=channel.chanid,
                error=result.error,
                error_type=exc.__class__.__name__,
            )
        else:
            log_event(
                "info",
                event="channel_updated",
                channel_id=channel.id,
                chanid=channel.chanid,
                new_videos=result.new_videos,
                pages=result.pages,
            )
        finally:
            try:
                self.store.release_channel_crawl(channel.id)
            except NotFound:
                pass
        return result

    def _crawl(self, channel, *, full):
        source = self.source_for(channel.service)
        deadline = self._clock() + self.channel_timeout_seconds
        pending = []
        refreshed = []
        seen = set()
        newest = None
        cursor = None
        pages = 0
        while True:
            if self._clock() > deadline:
                raise RemoteTimeout(
                    f"crawl of {channel.chanid} exceeded {self.channel_timeout_seconds}s"
                )
            videos, cursor = source.fetch_page(channel.chanid, cursor)
            pages += 1
            if newest is None and videos:
                newest = videos[0].video_id
            known = self.store.known_videos(channel.id, [video.video_id for video in videos])
            reached_known = False
            for video in videos:
                if video.video_id in seen:
                    continue
                seen.add(video.video_id)
                existing = known.get(video.video_id)
                if existing is None:
                    pending.append(video)
                    continue
                if not full:
                    # uploads are listed newest first; everything past here is stored
                    reached_known = True
                    break
                if (existing.info.title, existing.info.description) != (video.title, video.description):
                    refreshed.append(video)
            if reached_known or not videos or cursor is None:
                break

        added = self.store.record_crawl(channel.id, pending, newest, refreshed=refreshed)
        return added, pages
