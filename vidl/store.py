import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from vidl.errors import (
    ChannelNotFound,
    ConfigError,
    DuplicateKey,
    StoreBusy,
    StoreError,
    VideoNotFound,
)
from vidl.logs import log_event
from vidl.migrations import Migrator
from vidl.models import Channel, DBVideoInfo, Service, utc_now
from vidl.status import IN_QUEUE, INITIAL_STATUS, VideoStatus, check_transition

_DEFAULT_BUSY_TIMEOUT_SECONDS = 10.0
_CONNECT_TIMEOUT_SECONDS = 0.5
_INITIAL_BACKOFF_SECONDS = 0.05
_MAX_BACKOFF_SECONDS = 1.0
_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")
_ID_CHUNK = 500

CHANNEL_COLUMNS = (
    "id",
    "service",
    "chanid",
    "title",
    "thumbnail",
    "last_update",
    "last_seen_video_id",
    "crawl_started_at",
)
VIDEO_COLUMNS = (
    "id",
    "channel",
    "video_id",
    "status",
    "url",
    "title",
    "description",
    "thumbnail",
    "published_at",
    "duration",
    "date_added",
    "title_alt",
    "description_alt",
    "queued_at",
    "downloaded_at",
    "local_file",
    "error_message",
)
_CHANNEL_SELECT = f"SELECT {', '.join(CHANNEL_COLUMNS)} FROM channel"
_VIDEO_SELECT = f"SELECT {', '.join(VIDEO_COLUMNS)} FROM video"


def _is_busy(exc):
    return isinstance(exc, sqlite3.OperationalError) and any(
        marker in str(exc).lower() for marker in _BUSY_MARKERS
    )


def _fetch_channel(conn, channel_id):
    return conn.execute(f"{_CHANNEL_SELECT} WHERE id=?", (channel_id,)).fetchone()


def _fetch_video(conn, video_id):
    return conn.execute(f"{_VIDEO_SELECT} WHERE id=?", (video_id,)).fetchone()


def _require_channel(conn, channel_id):
    row = _fetch_channel(conn, channel_id)
    if row is None:
        raise ChannelNotFound(channel_id)
    return row


def _video_values(channel_id, info, status, date_added):
    return {
        "channel": channel_id,
        "video_id": info.video_id,
        "status": VideoStatus.parse(status).value,
        "url": info.url,
        "title": info.title,
        "description": info.description or "",
        "thumbnail": info.thumbnail_url or "",
        "published_at": info.published_at,
        "duration": int(info.duration or 0),
        "date_added": date_added,
        "title_alt": info.title_alt,
        "description_alt": info.description_alt,
    }


def _insert(conn, table, values, *, or_ignore=False):
    columns = list(values)
    verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
    return conn.execute(
        f"{verb} INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [values[c] for c in columns],
    )


def _video_filter(channel_id=None, statuses=None, name_contains=None):
    clauses = []
    params = []
    if channel_id is not None:
        clauses.append("channel = ?")
        params.append(channel_id)
    if statuses:
        values = sorted(VideoStatus.parse(s).value for s in statuses)
        clauses.append(f"status IN ({', '.join('?' for _ in values)})")
        params.extend(values)
    if name_contains:
        clauses.append("instr(lower(title), lower(?)) > 0")
        params.append(name_contains)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


@dataclass
class EnqueueResult:
    queued: list = field(default_factory=list)
    unchanged: list = field(default_factory=list)


class Store:
    """SQLite-backed record store for channels and videos.

    Every operation opens its own connection. Writes run in ``BEGIN IMMEDIATE``
    transactions so concurrent writers (CLI, API handlers, workers, the update
    engine) are serialised by SQLite; lock contention is retried with backoff
    until ``busy_timeout`` seconds have passed, then ``StoreBusy`` is raised.
    """

    def __init__(self, db_path, *, busy_timeout=None, migrate=True):
        self.db_path = db_path
        self.busy_timeout = _DEFAULT_BUSY_TIMEOUT_SECONDS if busy_timeout is None else busy_timeout
        db_dir = os.path.dirname(os.path.abspath(db_path))
        try:
            os.makedirs(db_dir, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create database directory {db_dir}: {exc}") from exc
        self._retrying(self._enable_wal, "open")
        if migrate:
            self.migrate()

    # ------------------------------------------------------------------
    # Connection and transaction plumbing
    # ------------------------------------------------------------------

    def _connect(self):
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=_CONNECT_TIMEOUT_SECONDS,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.OperationalError as exc:
            if _is_busy(exc):
                raise
            raise ConfigError(f"Cannot open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _enable_wal(self):
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        finally:
            conn.close()

    def _retrying(self, operation, label):
        deadline = time.monotonic() + self.busy_timeout
        delay = _INITIAL_BACKOFF_SECONDS
        while True:
            try:
                return operation()
            except sqlite3.OperationalError as exc:
                if not _is_busy(exc):
                    raise StoreError(f"{label} failed: {exc}") from exc
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise StoreBusy(
                        f"{label}: database stayed locked for more than {self.busy_timeout}s"
                    ) from exc
                logging.debug("Store busy during %s; retrying in %.2fs", label, min(delay, remaining))
                time.sleep(min(delay, remaining))
                delay = min(delay * 2, _MAX_BACKOFF_SECONDS)

    def _write(self, fn, label):
        def attempt():
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = fn(conn)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return result
            finally:
                conn.close()

        return self._retrying(attempt, label)

    def _read(self, fn, label):
        def attempt():
            conn = self._connect()
            try:
                conn.execute("BEGIN")
                try:
                    return fn(conn)
                finally:
                    conn.execute("COMMIT")
            finally:
                conn.close()

        return self._retrying(attempt, label)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def migrate(self, target=None):
        def attempt():
            conn = self._connect()
            try:
                return Migrator(conn).migrate(target)
            finally:
                conn.close()

        applied = self._retrying(attempt, "migrate")
        if applied:
            log_event("info", event="schema_migrated", versions=applied)
        return applied

    def schema_version(self):
        def attempt():
            conn = self._connect()
            try:
                migrator = Migrator(conn)
                migrator.setup()
                return migrator.db_version()
            finally:
                conn.close()

        return self._retrying(attempt, "schema_version")

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def list_channels(self):
        rows = self._read(lambda conn: conn.execute(f"{_CHANNEL_SELECT} ORDER BY id").fetchall(), "list_channels")
        return [Channel.from_row(row) for row in rows]

    def get_channel(self, channel_id):
        row = self._read(lambda conn: _fetch_channel(conn, channel_id), "get_channel")
        if row is None:
            raise ChannelNotFound(channel_id)
        return Channel.from_row(row)

    def find_channel(self, service, chanid):
        service = Service.parse(service)
        row = self._read(
            lambda conn: conn.execute(
                f"{_CHANNEL_SELECT} WHERE service=? AND chanid=?",
                (service.value, chanid),
            ).fetchone(),
            "find_channel",
        )
        return Channel.from_row(row) if row else None

    def add_channel(self, service, chanid, title, thumbnail=""):
        service = Service.parse(service)

        def op(conn):
            existing = conn.execute(
                "SELECT id FROM channel WHERE service=? AND chanid=?",
                (service.value, chanid),
            ).fetchone()
            if existing:
                raise DuplicateKey(
                    f"Channel {service.value}:{chanid} already exists (id {existing['id']})"
                )
            cur = _insert(
                conn,
                "channel",
                {"chanid": chanid, "service": service.value, "title": title, "thumbnail": thumbnail or ""},
            )
            return _fetch_channel(conn, cur.lastrowid)

        channel = Channel.from_row(self._write(op, "add_channel"))
        log_event(
            "info",
            event="channel_added",
            channel_id=channel.id,
            service=channel.service.value,
            chanid=channel.chanid,
        )
        return channel

    def remove_channel(self, channel_id):
        """Delete a channel and all of its videos. Returns the number of videos removed."""

        def op(conn):
            _require_channel(conn, channel_id)
            removed = conn.execute("DELETE FROM video WHERE channel=?", (channel_id,)).rowcount
            conn.execute("DELETE FROM channel WHERE id=?", (channel_id,))
            return removed

        removed = self._write(op, "remove_channel")
        log_event("info", event="channel_removed", channel_id=channel_id, videos_removed=removed)
        return removed

    def rename_channel(self, channel_id, title, thumbnail=None):
        def op(conn):
            _require_channel(conn, channel_id)
            conn.execute(
                "UPDATE channel SET title=?, thumbnail=COALESCE(?, thumbnail) WHERE id=?",
                (title, thumbnail, channel_id),
            )
            return _fetch_channel(conn, channel_id)

        return Channel.from_row(self._write(op, "rename_channel"))

    def claim_channel_crawl(self, channel_id, *, stale_after_seconds):
        """Mark the channel as being crawled. False if another crawl holds it.

        A claim older than ``stale_after_seconds`` is treated as abandoned.
        """
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=stale_after_seconds)).isoformat(timespec="microseconds")

        def op(conn):
            _require_channel(conn, channel_id)
            cur = conn.execute(
                "UPDATE channel SET crawl_started_at=? "
                "WHERE id=? AND (crawl_started_at IS NULL OR crawl_started_at < ?)",
                (now.isoformat(timespec="microseconds"), channel_id, cutoff),
            )
            return cur.rowcount == 1

        return self._write(op, "claim_channel_crawl")

    def release_channel_crawl(self, channel_id):
        self._write(
            lambda conn: conn.execute("UPDATE channel SET crawl_started_at=NULL WHERE id=?", (channel_id,)),
            "release_channel_crawl",
        )

    def record_crawl(self, channel_id, videos, newest_video_id, *, refreshed=()):
        """Commit one channel's crawl: new rows, cosmetic refreshes and the checked marker.

        Returns the number of rows actually inserted.
        """
        now = utc_now()

        def op(conn):
            _require_channel(conn, channel_id)
            added = 0
            for info in videos:
                values = _video_values(channel_id, info, INITIAL_STATUS, now)
                added += _insert(conn, "video", values, or_ignore=True).rowcount
            for info in refreshed:
                conn.execute(
                    "UPDATE video SET title=?, description=?, thumbnail=? WHERE channel=? AND video_id=?",
                    (info.title, info.description or "", info.thumbnail_url or "", channel_id, info.video_id),
                )
            conn.execute(
                "UPDATE channel SET last_update=?, last_seen_video_id=COALESCE(?, last_seen_video_id) "
                "WHERE id=?",
                (now, newest_video_id, channel_id),
            )
            return added

        return self._write(op, "record_crawl")

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    def add_video(self, channel_id, info, *, status=INITIAL_STATUS):
        def op(conn):
            _require_channel(conn, channel_id)
            try:
                cur = _insert(conn, "video", _video_values(channel_id, info, status, utc_now()))
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey(
                    f"Video {info.video_id} already exists in channel {channel_id}"
                ) from exc
            return _fetch_video(conn, cur.lastrowid)

        return DBVideoInfo.from_row(self._write(op, "add_video"))

    def get_video(self, video_id):
        row = self._read(lambda conn: _fetch_video(conn, video_id), "get_video")
        if row is None:
            raise VideoNotFound(video_id)
        return DBVideoInfo.from_row(row)

    def has_video(self, channel_id, video_id):
        row = self._read(
            lambda conn: conn.execute(
                "SELECT 1 FROM video WHERE channel=? AND video_id=? LIMIT 1",
                (channel_id, video_id),
            ).fetchone(),
            "has_video",
        )
        return row is not None

    def known_videos(self, channel_id, video_ids):
        """Map remote id -> DBVideoInfo for the given ids already stored under ``channel_id``."""
        video_ids = list(dict.fromkeys(video_ids))

        def op(conn):
            rows = []
            for start in range(0, len(video_ids), _ID_CHUNK):
                chunk = video_ids[start:start + _ID_CHUNK]
                rows.extend(
                    conn.execute(
                        f"{_VIDEO_SELECT} WHERE channel=? AND video_id IN ({', '.join('?' for _ in chunk)})",
                        [channel_id, *chunk],
                    ).fetchall()
                )
            return rows

        rows = self._read(op, "known_videos") if video_ids else []
        return {row["video_id"]: DBVideoInfo.from_row(row) for row in rows}

    def list_videos(self, channel_id=None, statuses=None, name_contains=None, limit=50, offset=0):
        where, params = _video_filter(channel_id, statuses, name_contains)
        rows = self._read(
            lambda conn: conn.execute(
                f"{_VIDEO_SELECT}{where} ORDER BY published_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, int(limit), int(offset)],
            ).fetchall(),
            "list_videos",
        )
        return [DBVideoInfo.from_row(row) for row in rows]

    def count_videos(self, channel_id=None, statuses=None, name_contains=None):
        where, params = _video_filter(channel_id, statuses, name_contains)
        row = self._read(
            lambda conn: conn.execute(f"SELECT COUNT(*) FROM video{where}", params).fetchone(),
            "count_videos",
        )
        return row[0]

    def status_counts(self):
        rows = self._read(
            lambda conn: conn.execute("SELECT status, COUNT(*) AS n FROM video GROUP BY status").fetchall(),
            "status_counts",
        )
        counts = {status.value: 0 for status in VideoStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    def _transition(self, video_id, requested, label, **fields):
        requested = VideoStatus.parse(requested)

        def op(conn):
            row = _fetch_video(conn, video_id)
            if row is None:
                raise VideoNotFound(video_id)
            check_transition(video_id, row["status"], requested)
            assignments = ", ".join(["status=?", *(f"{name}=?" for name in fields)])
            conn.execute(
                f"UPDATE video SET {assignments} WHERE id=?",
                [requested.value, *fields.values(), video_id],
            )
            return _fetch_video(conn, video_id)

        return DBVideoInfo.from_row(self._write(op, label))

    def enqueue(self, video_ids):
        """Move videos to ``queued``; those already queued or downloading are left alone.

        All-or-nothing: an unknown id or an illegal transition aborts the whole call.
        """
        video_ids = list(dict.fromkeys(int(v) for v in video_ids))
        now = utc_now()

        def op(conn):
            result = EnqueueResult()
            for video_id in video_ids:
                row = _fetch_video(conn, video_id)
                if row is None:
                    raise VideoNotFound(video_id)
                current = VideoStatus.parse(row["status"])
                if current in IN_QUEUE:
                    result.unchanged.append(video_id)
                    continue
                check_transition(video_id, current, VideoStatus.QUEUED)
                conn.execute(
                    "UPDATE video SET status=?, queued_at=?, error_message=NULL WHERE id=?",
                    (VideoStatus.QUEUED.value, now, video_id),
                )
                result.queued.append(video_id)
            return result

        result = self._write(op, "enqueue")
        for video_id in result.queued:
            log_event("info", event="video_queued", video_id=video_id, status="queued")
        return result

    def ignore(self, video_id):
        return self._transition(video_id, VideoStatus.IGNORED, "ignore")

    def unignore(self, video_id):
        return self._transition(video_id, VideoStatus.NEW, "unignore")

    def claim_next(self):
        """Atomically move the oldest queued video to ``downloading`` and return it."""

        def op(conn):
            row = conn.execute(
                "SELECT id FROM video WHERE status=? "
                "ORDER BY queued_at IS NULL, queued_at ASC, id ASC LIMIT 1",
                (VideoStatus.QUEUED.value,),
            ).fetchone()
            if not row:
                return None
            cur = conn.execute(
                "UPDATE video SET status=? WHERE id=? AND status=?",
                (VideoStatus.DOWNLOADING.value, row["id"], VideoStatus.QUEUED.value),
            )
            if cur.rowcount != 1:
                return None
            return _fetch_video(conn, row["id"])

        row = self._write(op, "claim_next")
        return DBVideoInfo.from_row(row) if row else None

    def mark_downloaded(self, video_id, local_file):
        video = self._transition(
            video_id,
            VideoStatus.DOWNLOADED,
            "mark_downloaded",
            downloaded_at=utc_now(),
            local_file=local_file,
            error_message=None,
        )
        log_event("info", event="video_downloaded", video_id=video_id, status="downloaded", local_file=local_file)
        return video

    def mark_failed(self, video_id, error_message):
        video = self._transition(video_id, VideoStatus.ERROR, "mark_failed", error_message=error_message)
        log_event("error", event="video_failed", video_id=video_id, status="error", error=error_message)
        return video

    def recover_interrupted(self):
        """Requeue videos left in ``downloading`` by a previous process. Returns the count."""

        def op(conn):
            return conn.execute(
                "UPDATE video SET status=?, queued_at=COALESCE(queued_at, ?) WHERE status=?",
                (VideoStatus.QUEUED.value, utc_now(), VideoStatus.DOWNLOADING.value),
            ).rowcount

        count = self._write(op, "recover_interrupted")
        if count:
            log_event("warning", event="videos_recovered", count=count, status="queued")
        return count

    # ------------------------------------------------------------------
    # Backup support
    # ------------------------------------------------------------------

    def dump(self):
        """Consistent copy of every row: ``(schema_version, channels, videos)`` as dicts."""

        def op(conn):
            version = Migrator(conn).db_version()
            channels = [dict(row) for row in conn.execute(f"{_CHANNEL_SELECT} ORDER BY id").fetchall()]
            videos = [dict(row) for row in conn.execute(f"{_VIDEO_SELECT} ORDER BY id").fetchall()]
            return version, channels, videos

        return self._read(op, "dump")

    def restore(self, channels, *, replace=False):
        """Write channel/video dicts back verbatim (statuses and timestamps included).

        ``channels`` items carry a ``videos`` list. With ``replace`` every existing
        row is deleted first and surrogate ids are kept; otherwise rows are merged
        by natural key and existing ones win.
        """

        def op(conn):
            counts = {"channels_added": 0, "channels_existing": 0, "videos_added": 0, "videos_existing": 0}
            if replace:
                conn.execute("DELETE FROM video")
                conn.execute("DELETE FROM channel")
            for chan in channels:
                values = {c: chan.get(c) for c in CHANNEL_COLUMNS if c != "crawl_started_at"}
                existing = None
                if not replace:
                    values.pop("id")
                    existing = conn.execute(
                        "SELECT id FROM channel WHERE service=? AND chanid=?",
                        (values["service"], values["chanid"]),
                    ).fetchone()
                if existing:
                    channel_id = existing["id"]
                    counts["channels_existing"] += 1
                else:
                    try:
                        channel_id = _insert(conn, "channel", values).lastrowid
                    except sqlite3.IntegrityError as exc:
                        raise DuplicateKey(f"Duplicate channel in snapshot: {values['chanid']}") from exc
                    counts["channels_added"] += 1
                for video in chan.get("videos", []):
                    row = {c: video.get(c) for c in VIDEO_COLUMNS}
                    row["channel"] = channel_id
                    if not replace:
                        row.pop("id")
                    try:
                        inserted = _insert(conn, "video", row, or_ignore=not replace).rowcount
                    except sqlite3.IntegrityError as exc:
                        raise DuplicateKey(
                            f"Duplicate video {row['video_id']} in snapshot channel {values['chanid']}"
                        ) from exc
                    counts["videos_added" if inserted else "videos_existing"] += 1
            return counts

        counts = self._write(op, "restore")
        log_event("info", event="store_restored", replace=replace, **counts)
        return counts
