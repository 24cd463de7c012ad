"""Versioned JSON snapshots of the whole store.

Snapshots carry every column of every channel and video row, so a
``replace`` import reproduces the database exactly (surrogate ids, statuses
and timestamps included). Crawl claims are process-local state and are not
exported.
"""

import json
from dataclasses import dataclass

from vidl.errors import UnknownSnapshotVersion
from vidl.logs import log_event
from vidl.models import Service, utc_now
from vidl.status import VideoStatus
from vidl.store import CHANNEL_COLUMNS, VIDEO_COLUMNS

SNAPSHOT_FORMAT = "vidl-backup"
SNAPSHOT_VERSION = 1
_REQUIRED_CHANNEL_KEYS = ("service", "chanid", "title")
_REQUIRED_VIDEO_KEYS = ("video_id", "status", "url", "title", "published_at")


@dataclass(frozen=True)
class ImportSummary:
    replace: bool
    channels_added: int = 0
    channels_existing: int = 0
    videos_added: int = 0
    videos_existing: int = 0

    def as_dict(self):
        return {
            "replace": self.replace,
            "channels_added": self.channels_added,
            "channels_existing": self.channels_existing,
            "videos_added": self.videos_added,
            "videos_existing": self.videos_existing,
        }


def export_snapshot(store):
    schema_version, channels, videos = store.dump()
    by_channel = {}
    for video in videos:
        row = dict(video)
        by_channel.setdefault(row.pop("channel"), []).append(row)
    exported = []
    for channel in channels:
        row = {key: channel[key] for key in CHANNEL_COLUMNS if key != "crawl_started_at"}
        row["videos"] = by_channel.get(channel["id"], [])
        exported.append(row)
    return {
        "format": SNAPSHOT_FORMAT,
        "version": SNAPSHOT_VERSION,
        "schema_version": schema_version,
        "exported_at": utc_now(),
        "channels": exported,
    }


def validate_snapshot(snapshot):
    if not isinstance(snapshot, dict):
        raise UnknownSnapshotVersion("Unrecognised backup: expected a versioned vidl-backup object")
    if snapshot.get("format") != SNAPSHOT_FORMAT:
        raise UnknownSnapshotVersion(f"Unrecognised backup format: {snapshot.get('format')!r}")
    if snapshot.get("version") != SNAPSHOT_VERSION:
        raise UnknownSnapshotVersion(f"Unsupported backup version: {snapshot.get('version')!r}")
    channels = snapshot.get("channels")
    if not isinstance(channels, list):
        raise UnknownSnapshotVersion("Backup is missing its channel list")
    for channel in channels:
        missing = [key for key in _REQUIRED_CHANNEL_KEYS if key not in channel]
        if missing:
            raise UnknownSnapshotVersion(f"Backup channel is missing {', '.join(missing)}")
        for video in channel.get("videos") or []:
            missing = [key for key in _REQUIRED_VIDEO_KEYS if key not in video]
            if missing:
                raise UnknownSnapshotVersion(
                    f"Backup video in {channel['chanid']} is missing {', '.join(missing)}"
                )
    return channels


def _normalise_channel(channel):
    row = {key: channel.get(key) for key in CHANNEL_COLUMNS if key != "crawl_started_at"}
    try:
        row["service"] = Service.parse(row["service"]).value
    except ValueError as exc:
        raise UnknownSnapshotVersion(str(exc)) from exc
    row["thumbnail"] = row["thumbnail"] or ""
    videos = []
    for video in channel.get("videos") or []:
        values = {key: video.get(key) for key in VIDEO_COLUMNS if key != "channel"}
        try:
            values["status"] = VideoStatus.parse(values["status"]).value
        except ValueError as exc:
            raise UnknownSnapshotVersion(f"Backup video {values['video_id']}: {exc}") from exc
        values["description"] = values["description"] or ""
        values["thumbnail"] = values["thumbnail"] or ""
        values["duration"] = values["duration"] or 0
        values["date_added"] = values["date_added"] or utc_now()
        videos.append(values)
    row["videos"] = videos
    return row


def import_snapshot(store, snapshot, *, replace=False):
    """Load ``snapshot`` into ``store`` in one transaction.

    ``replace`` wipes the store first; otherwise rows are merged by natural
    key and existing ones are left untouched.
    """
    channels = [_normalise_channel(channel) for channel in validate_snapshot(snapshot)]
    counts = store.restore(channels, replace=replace)
    summary = ImportSummary(replace=replace, **counts)
    log_event("info", event="backup_imported", **summary.as_dict())
    return summary


def write_snapshot(snapshot, fp):
    json.dump(snapshot, fp, indent=2, sort_keys=True)
    fp.write("\n")


def read_snapshot(fp):
    try:
        return json.load(fp)
    except json.JSONDecodeError as exc:
        raise UnknownSnapshotVersion(f"Backup is not valid JSON: {exc}") from exc
