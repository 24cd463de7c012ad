"""Remote channel metadata clients.

Each source pages through a channel's uploads newest first and maps the
service's payloads onto ``VideoInfo``. Failures are raised as ``RemoteError``
subclasses so the update engine can record them per channel.
"""

import logging
import threading
import time
from collections import deque

import requests
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError as YtDlpDownloadError

from vidl.errors import (
    RemoteNotFound,
    RemoteRateLimited,
    RemoteTimeout,
    RemoteTransportError,
)
from vidl.models import ChannelMetadata, Service, VideoInfo, to_utc_iso, utc_now

DEFAULT_INVIDIOUS_URL = "https://y.com.sb"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:78.0) Gecko/20100101 Firefox/78.0"
CHANNEL_FIELDS = "author,authorId,description,authorThumbnails,authorBanners"
_NOT_FOUND_MARKERS = ("404", "does not exist", "not found", "unavailable")
# raised while mapping a payload that lacks or mistypes expected fields
_MALFORMED_PAYLOAD = (KeyError, IndexError, TypeError, ValueError, AttributeError, OverflowError)


class RateLimiter:
    """At most ``max_calls`` per ``period`` seconds; ``wait()`` sleeps when exceeded."""

    def __init__(self, max_calls, period, *, clock=time.monotonic, sleep=time.sleep):
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls = deque()
        self._lock = threading.Lock()

    def wait(self):
        with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                delay = self.period - (now - self._calls[0])
                logging.debug("Waiting %.1fs for rate limit", delay)
                self._sleep(delay)


def choose_best_thumbnail(thumbnails):
    """The ``default`` quality thumbnail, falling back to the first one."""
    thumbnails = thumbnails or []
    for thumb in thumbnails:
        if thumb.get("quality") == "default":
            return thumb.get("url") or ""
    if not thumbnails:
        return ""
    return thumbnails[0].get("url") or ""


class ChannelSource:
    service = None

    def fetch_page(self, chanid, cursor=None):
        """Return ``(videos, next_cursor)``; ``next_cursor`` is None on the last page."""
        raise NotImplementedError

    def get_metadata(self, chanid):
        raise NotImplementedError

    def find_channel_id(self, name):
        return name


class InvidiousSource(ChannelSource):
    service = Service.YOUTUBE

    def __init__(self, base_url=DEFAULT_INVIDIOUS_URL, *, timeout=30, rate_limiter=None, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter(10, 60)
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def _get_json(self, path, params=None):
        url = f"{self.base_url}{path}"
        self.rate_limiter.wait()
        logging.debug("Retrieving URL %s params=%s", url, params)
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteTimeout(f"Timed out requesting {url}") from exc
        except requests.RequestException as exc:
            raise RemoteTransportError(f"Request to {url} failed: {exc}") from exc
        if resp.status_code == 404:
            raise RemoteNotFound(f"Not found: {url}")
        if resp.status_code == 429:
            raise RemoteRateLimited(f"Rate limited by {self.base_url}")
        if resp.status_code >= 400:
            raise RemoteTransportError(f"Error from {url} - status {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteTransportError(f"Failed to parse response from {url}") from exc

    def get_metadata(self, chanid):
        url = f"/api/v1/channels/{chanid}"
        data = self._get_json(url, {"fields": CHANNEL_FIELDS})
        try:
            return ChannelMetadata(
                title=data.get("author") or chanid,
                thumbnail=choose_best_thumbnail(data.get("authorThumbnails")),
                description=data.get("description") or "",
            )
        except _MALFORMED_PAYLOAD as exc:
            raise RemoteTransportError(f"Malformed response from {url}: {exc!r}") from exc

    def fetch_page(self, chanid, cursor=None):
        params = {"continuation": cursor} if cursor else None
        url = f"/api/v1/channels/{chanid}/videos"
        data = self._get_json(url, params)
        try:
            if isinstance(data, list):
                # older instances return a bare list without continuation
                items, next_cursor = data, None
            else:
                items, next_cursor = data.get("videos") or [], data.get("continuation") or None
            videos = [self._video_from_item(item) for item in items]
        except _MALFORMED_PAYLOAD as exc:
            raise RemoteTransportError(f"Malformed response from {url}: {exc!r}") from exc
        if not videos:
            next_cursor = None
        return videos, next_cursor

    def _video_from_item(self, item):
        video_id = item["videoId"]
        return VideoInfo(
            video_id=video_id,
            url=f"http://youtube.com/watch?v={video_id}",
            title=item.get("title") or "",
            description=item.get("description") or "",
            thumbnail_url=choose_best_thumbnail(item.get("videoThumbnails")),
            published_at=to_utc_iso(item.get("published") or 0),
            duration=int(item.get("lengthSeconds") or 0),
        )

    def find_channel_id(self, name):
        """Resolve a handle, user or custom name to a ``UC...`` channel id."""
        name = name.strip()
        if name.startswith("UC"):
            return name
        candidates = [
            f"https://www.youtube.com/@{name}",
            f"https://www.youtube.com/user/{name}",
            f"https://www.youtube.com/c/{name}",
        ]
        for candidate in candidates:
            try:
                data = self._get_json("/api/v1/resolveurl", {"url": candidate})
            except (RemoteNotFound, RemoteTransportError) as exc:
                logging.debug("resolveurl failed for %s: %s", candidate, exc)
                continue
            ucid = data.get("ucid") if isinstance(data, dict) else None
            if ucid:
                return ucid
        raise RemoteNotFound(f"Failed to find any of {candidates}")


def _channel_url(service, chanid):
    if service == Service.VIMEO:
        return f"https://vimeo.com/{chanid}/videos"
    if chanid.startswith("UC"):
        return f"https://www.youtube.com/channel/{chanid}/videos"
    return f"https://www.youtube.com/@{chanid}/videos"


def _map_ytdlp_error(exc, url):
    message = str(exc)
    lowered = message.lower()
    if "timed out" in lowered:
        return RemoteTimeout(f"Timed out listing {url}")
    if "429" in lowered or "too many requests" in lowered:
        return RemoteRateLimited(f"Rate limited while listing {url}")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return RemoteNotFound(f"Not found: {url}")
    return RemoteTransportError(f"yt-dlp failed for {url}: {message}")


class YtDlpChannelSource(ChannelSource):
    """Flat yt-dlp extraction of a channel's uploads listing.

    Cursors are 1-based playlist indexes.
    """

    def __init__(self, service, *, page_size=30, timeout=30, rate_limiter=None):
        self.service = Service.parse(service)
        self.page_size = page_size
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimiter(10, 60)

    def _opts(self, **extra):
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "extract_flat": "in_playlist",
            "socket_timeout": self.timeout,
            "logger": logging.getLogger("yt_dlp"),
        }
        opts.update(extra)
        return opts

    def _extract(self, url, opts):
        self.rate_limiter.wait()
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except YtDlpDownloadError as exc:
            raise _map_ytdlp_error(exc, url) from exc
        if not info:
            raise RemoteNotFound(f"No listing returned for {url}")
        return info

    def fetch_page(self, chanid, cursor=None):
        start = int(cursor or 1)
        end = start + self.page_size - 1
        url = _channel_url(self.service, chanid)
        info = self._extract(url, self._opts(playliststart=start, playlistend=end))
        try:
            entries = [entry for entry in (info.get("entries") or []) if entry and entry.get("id")]
            videos = [self._video_from_entry(entry) for entry in entries]
        except _MALFORMED_PAYLOAD as exc:
            raise RemoteTransportError(f"Malformed listing from {url}: {exc!r}") from exc
        next_cursor = end + 1 if len(entries) >= self.page_size else None
        return videos, next_cursor

    def _video_from_entry(self, entry):
        video_id = entry["id"]
        if self.service == Service.VIMEO:
            default_url = f"https://vimeo.com/{video_id}"
        else:
            default_url = f"http://youtube.com/watch?v={video_id}"
        url = entry.get("webpage_url") or entry.get("url") or default_url
        if not str(url).startswith("http"):
            url = default_url
        thumbs = entry.get("thumbnails") or []
        thumbnail = entry.get("thumbnail") or (thumbs[-1].get("url") if thumbs else "") or ""
        published = entry.get("timestamp") or entry.get("release_timestamp") or entry.get("upload_date")
        return VideoInfo(
            video_id=video_id,
            url=url,
            title=entry.get("title") or "",
            description=entry.get("description") or "",
            thumbnail_url=thumbnail,
            # flat listings often omit dates; discovery time keeps ordering sane
            published_at=to_utc_iso(published) if published else utc_now(),
            duration=int(entry.get("duration") or 0),
        )

    def get_metadata(self, chanid):
        url = _channel_url(self.service, chanid)
        info = self._extract(url, self._opts(playlistend=1))
        try:
            thumbs = info.get("thumbnails") or []
            return ChannelMetadata(
                title=info.get("channel") or info.get("uploader") or info.get("title") or chanid,
                thumbnail=(thumbs[-1].get("url") if thumbs else "") or "",
                description=info.get("description") or "",
            )
        except _MALFORMED_PAYLOAD as exc:
            raise RemoteTransportError(f"Malformed listing from {url}: {exc!r}") from exc

    def find_channel_id(self, name):
        name = name.strip()
        if self.service == Service.YOUTUBE:
            if name.startswith("UC"):
                return name
            info = self._extract(_channel_url(self.service, name), self._opts(playlistend=1))
            chanid = info.get("channel_id")
            if not chanid:
                raise RemoteNotFound(f"Failed to find channel id for {name}")
            return chanid
        return name


def build_source(service, config):
    """Closed mapping from service to its metadata client."""
    service = Service.parse(service)
    timeout = config["remote_timeout_seconds"]
    limiter = RateLimiter(config["rate_limit_requests"], config["rate_limit_period_seconds"])
    if service == Service.YOUTUBE and config["youtube_source"] == "invidious":
        return InvidiousSource(config["invidious_url"], timeout=timeout, rate_limiter=limiter)
    return YtDlpChannelSource(
        service,
        page_size=config["ytdlp_page_size"],
        timeout=timeout,
        rate_limiter=limiter,
    )
