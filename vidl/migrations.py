"""Upgrade-only schema migrations.

Downgrades are not supported; restore a backup instead. Each migration runs in
its own transaction together with the version marker update, so a crash leaves
the schema at the last fully applied version.
"""

import logging
from dataclasses import dataclass

from vidl.errors import SchemaVersionError

VERSION_TABLE = "vidl_migration"
VERSION_KEY = "current_version"
_VIDEO_V5_COLUMNS = (
    "id, channel, video_id, status, url, title, description, thumbnail, published_at, "
    "duration, date_added, title_alt, description_alt"
)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: tuple


MIGRATIONS = (
    Migration(
        1,
        "create initial channel and video tables",
        (
            """
            CREATE TABLE channel (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                chanid        TEXT NOT NULL,
                service       TEXT NOT NULL,
                title         TEXT NOT NULL,
                thumbnail     TEXT NOT NULL,
                last_update   DATETIME NULL
            )
            """,
            """
            CREATE TABLE video (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                channel       INTEGER NOT NULL,
                video_id      TEXT NOT NULL,
                status        TEXT NOT NULL,
                url           TEXT NOT NULL,
                title         TEXT NOT NULL,
                description   TEXT NOT NULL,
                thumbnail     TEXT NOT NULL,
                published_at  DATETIME NOT NULL,
                FOREIGN KEY(channel) REFERENCES channel(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX idx_video_published_at ON video (published_at)",
            "CREATE INDEX idx_video_channel ON video (channel)",
        ),
    ),
    Migration(
        2,
        "add duration to videos",
        ("ALTER TABLE video ADD COLUMN duration INTEGER NOT NULL DEFAULT 0",),
    ),
    Migration(
        3,
        "add date_added to videos",
        (
            "ALTER TABLE video ADD COLUMN date_added DATETIME",
            "UPDATE video SET date_added = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now') "
            "WHERE date_added IS NULL",
        ),
    ),
    Migration(4, "add title_alt to videos", ("ALTER TABLE video ADD COLUMN title_alt TEXT",)),
    Migration(
        5,
        "add description_alt to videos",
        ("ALTER TABLE video ADD COLUMN description_alt TEXT",),
    ),
    Migration(
        6,
        "enforce natural keys and track channel crawl state",
        (
            # rebuilt so databases that still carry a UNIQUE url column converge
            """
            CREATE TABLE video_rebuild (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                channel         INTEGER NOT NULL,
                video_id        TEXT NOT NULL,
                status          TEXT NOT NULL,
                url             TEXT NOT NULL,
                title           TEXT NOT NULL,
                description     TEXT NOT NULL,
                thumbnail       TEXT NOT NULL,
                published_at    DATETIME NOT NULL,
                duration        INTEGER NOT NULL DEFAULT 0,
                date_added      DATETIME,
                title_alt       TEXT,
                description_alt TEXT,
                FOREIGN KEY(channel) REFERENCES channel(id) ON DELETE CASCADE
            )
            """,
            f"INSERT INTO video_rebuild ({_VIDEO_V5_COLUMNS}) SELECT {_VIDEO_V5_COLUMNS} FROM video "
            "WHERE id IN (SELECT MIN(id) FROM video GROUP BY channel, video_id)",
            "DROP TABLE video",
            "ALTER TABLE video_rebuild RENAME TO video",
            "CREATE INDEX idx_video_published_at ON video (published_at)",
            "CREATE INDEX idx_video_channel ON video (channel)",
            "CREATE UNIQUE INDEX idx_video_channel_video_id ON video (channel, video_id)",
            "CREATE UNIQUE INDEX idx_channel_service_chanid ON channel (service, chanid)",
            "ALTER TABLE channel ADD COLUMN last_seen_video_id TEXT",
            "ALTER TABLE channel ADD COLUMN crawl_started_at DATETIME",
        ),
    ),
    Migration(
        7,
        "add download tracking to videos",
        (
            "ALTER TABLE video ADD COLUMN queued_at DATETIME",
            "ALTER TABLE video ADD COLUMN downloaded_at DATETIME",
            "ALTER TABLE video ADD COLUMN local_file TEXT",
            "ALTER TABLE video ADD COLUMN error_message TEXT",
            "CREATE INDEX idx_video_status_queued ON video (status, queued_at)",
        ),
    ),
)


class Migrator:
    """Applies ``migrations`` to an autocommit (``isolation_level=None``) connection."""

    def __init__(self, conn, migrations=MIGRATIONS):
        self.conn = conn
        self.migrations = sorted(migrations, key=lambda m: m.version)

    def setup(self):
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
                key TEXT PRIMARY KEY,
                value INTEGER
            )
            """
        )

    def db_version(self):
        row = self.conn.execute(
            f"SELECT value FROM {VERSION_TABLE} WHERE key = ? LIMIT 1",
            (VERSION_KEY,),
        ).fetchone()
        return row[0] if row else None

    def latest_version(self):
        return self.migrations[-1].version if self.migrations else 0

    def is_current(self):
        return self.db_version() == self.latest_version()

    def pending(self, target=None):
        current = self.db_version() or 0
        target = self.latest_version() if target is None else target
        return [m for m in self.migrations if current < m.version <= target]

    def migrate(self, target=None):
        """Apply pending migrations up to ``target`` (latest by default).

        Returns the list of versions applied; empty when already current.
        """
        self.setup()
        current = self.db_version()
        latest = self.latest_version()
        if current is not None and current > latest:
            raise SchemaVersionError(
                f"Database schema version ({current}) is newer than this version of vidl supports ({latest})"
            )
        target = latest if target is None else target
        if current is not None and current > target:
            raise SchemaVersionError(f"Cannot migrate backwards from {current} to {target}")

        applied = []
        for migration in self.pending(target):
            if self._apply(migration):
                applied.append(migration.version)
        return applied

    def _apply(self, migration):
        self.conn.execute("BEGIN IMMEDIATE")
        # another process may have applied it between pending() and the lock
        if (self.db_version() or 0) >= migration.version:
            self.conn.execute("ROLLBACK")
            return False
        logging.info("Applying migration %s: %s", migration.version, migration.name)
        try:
            for statement in migration.statements:
                self.conn.execute(statement)
            self.conn.execute(
                f"INSERT OR REPLACE INTO {VERSION_TABLE} (key, value) VALUES (?, ?)",
                (VERSION_KEY, migration.version),
            )
        except Exception:
            self.conn.execute("ROLLBACK")
            logging.error("Migration %s failed; schema left at previous version", migration.version)
            raise
        self.conn.execute("COMMIT")
        return True
