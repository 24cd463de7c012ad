"""vidl command line: track channels, crawl them and download their videos."""

import argparse
import json
import logging
import os
import signal
import sys
import threading

from vidl.backup import export_snapshot, import_snapshot, read_snapshot, write_snapshot
from vidl.config import DEFAULT_CONFIG, load_config
from vidl.downloader import build_downloader
from vidl.errors import ConfigError, VidlError
from vidl.job_queue import DownloadWorkerPool
from vidl.logs import setup_logging
from vidl.models import Service
from vidl.paths import build_paths, ensure_dir
from vidl.status import parse_statuses
from vidl.store import Store
from vidl.update import UpdateEngine

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


class Context:
    """Paths, config and the store for one command invocation."""

    def __init__(self, args, *, environ=None, migrate=True):
        self.paths = build_paths(environ)
        try:
            setup_logging(self.paths.log_dir, args.verbose)
        except OSError as exc:
            raise ConfigError(f"Cannot write logs to {self.paths.log_dir}: {exc}") from exc
        self.config = load_config(self.paths.config_path, environ)
        self.store = Store(
            self.paths.db_path,
            busy_timeout=self.config["store_busy_timeout_seconds"],
            migrate=migrate,
        )

    def engine(self):
        return UpdateEngine.from_config(self.store, self.config)

    def pool(self, *, num_workers=None, stop_event=None):
        pool = DownloadWorkerPool.from_config(
            self.store,
            build_downloader(self.config, self.paths),
            self.config,
            stop_event=stop_event,
        )
        if num_workers:
            pool.num_workers = num_workers
        return pool


def _print_video(video):
    published = (video.info.published_at or "")[:10]
    print(f"{video.id:>6} [{video.status.code}] {published} {video.info.title} ({video.info.video_id})")
    if video.error_message:
        print(f"       error: {video.error_message}")


def cmd_init(args, ctx):
    ensure_dir(ctx.paths.download_dir)
    if not os.path.exists(ctx.paths.config_path):
        with open(ctx.paths.config_path, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2, sort_keys=True)
            f.write("\n")
        print(f"Wrote default config to {ctx.paths.config_path}")
    print(f"Database ready at {ctx.paths.db_path} (schema version {ctx.store.schema_version()})")
    return EXIT_OK


def cmd_migrate(args, ctx):
    applied = ctx.store.migrate(args.target)
    if not applied:
        print(f"Database already at schema version {ctx.store.schema_version()}")
    else:
        print(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    return EXIT_OK


def cmd_add(args, ctx):
    channel = ctx.engine().add_channel(args.name, args.service)
    print(f"Added channel {channel.id}: {channel.title} ({channel.chanid} on {channel.service.value})")
    return EXIT_OK


def cmd_remove(args, ctx):
    removed = ctx.store.remove_channel(args.id)
    print(f"Removed channel {args.id} and {removed} videos")
    return EXIT_OK


def cmd_rename(args, ctx):
    channel = ctx.store.rename_channel(args.id, args.title)
    print(f"Channel {channel.id} is now {channel.title!r}")
    return EXIT_OK


def cmd_list(args, ctx):
    statuses = parse_statuses(args.status)
    if args.id is None and not statuses and not args.search:
        channels = ctx.store.list_channels()
        if not channels:
            print("No channels yet added")
        for channel in channels:
            print(f"{channel.id} - {channel.title} ({channel.chanid} on service {channel.service.value})")
            print(f"Thumbnail: {channel.thumbnail}")
            print(f"Last update: {channel.last_update or 'never'}")
        return EXIT_OK

    if args.id is not None:
        ctx.store.get_channel(args.id)
    videos = ctx.store.list_videos(
        channel_id=args.id,
        statuses=statuses,
        name_contains=args.search,
        limit=args.limit,
        offset=args.offset,
    )
    if not videos:
        print("No matching videos")
    for video in videos:
        _print_video(video)
    return EXIT_OK


def cmd_update(args, ctx):
    report = ctx.engine().update(args.selector, force=args.force, full=args.full)
    if not report.results:
        print("Nothing to update: no matching channels")
        return EXIT_OK
    for result in report.results:
        if result.skipped:
            print(f"{result.channel_id} - {result.title}: skipped ({result.skipped})")
        elif result.error:
            print(f"{result.channel_id} - {result.title}: failed: {result.error}")
        else:
            print(f"{result.channel_id} - {result.title}: {result.new_videos} new ({result.pages} pages)")
    print(f"{report.total_new} new videos")
    return EXIT_FAILURE if report.failures else EXIT_OK


def _per_video(ids, action, verb):
    """Apply ``action`` to each id independently; one failure does not stop the rest."""
    failed = False
    for video_id in ids:
        try:
            message = action(video_id)
        except VidlError as exc:
            print(f"error: {exc}", file=sys.stderr)
            failed = True
            continue
        print(message or f"{verb} {video_id}")
    return EXIT_FAILURE if failed else EXIT_OK


def cmd_download(args, ctx):
    def enqueue(video_id):
        result = ctx.store.enqueue([video_id])
        if result.unchanged:
            return f"Video {video_id} already queued"
        return f"Queued {video_id}"

    code = _per_video(args.ids, enqueue, "Queued")
    if args.now:
        completed, failed = ctx.pool().run_until_idle()
        print(f"Downloaded {completed}, failed {failed}")
        if failed:
            code = EXIT_FAILURE
    return code


def cmd_ignore(args, ctx):
    def ignore(video_id):
        ctx.store.ignore(video_id)

    return _per_video(args.ids, ignore, "Ignored")


def cmd_unignore(args, ctx):
    def unignore(video_id):
        ctx.store.unignore(video_id)

    return _per_video(args.ids, unignore, "Unignored")


def cmd_worker(args, ctx):
    stop_event = threading.Event()
    pool = ctx.pool(num_workers=args.workers, stop_event=stop_event)
    if args.once:
        completed, failed = pool.run_until_idle()
        if not completed and not failed:
            print("Nothing to download")
        else:
            print(f"Downloaded {completed}, failed {failed}")
        return EXIT_FAILURE if failed else EXIT_OK

    def _handle_signal(signum, _frame):
        stop_event.set()
        pool.wake()
        logging.warning("Signal %s received; stopping after current downloads", signum)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    pool.start()
    while not stop_event.wait(1.0):
        pass
    pool.stop()
    return EXIT_OK


def cmd_backup_export(args, ctx):
    snapshot = export_snapshot(ctx.store)
    if args.output in (None, "-"):
        write_snapshot(snapshot, sys.stdout)
    else:
        with open(args.output, "w") as f:
            write_snapshot(snapshot, f)
        print(f"Exported {len(snapshot['channels'])} channels to {args.output}", file=sys.stderr)
    return EXIT_OK


def cmd_backup_import(args, ctx):
    if args.file in (None, "-"):
        snapshot = read_snapshot(sys.stdin)
    else:
        try:
            with open(args.file, "r") as f:
                snapshot = read_snapshot(f)
        except OSError as exc:
            raise ConfigError(f"Cannot read backup {args.file}: {exc}") from exc
    summary = import_snapshot(ctx.store, snapshot, replace=args.replace)
    print(
        f"Imported {summary.channels_added} channels and {summary.videos_added} videos "
        f"({summary.channels_existing} channels and {summary.videos_existing} videos already present)"
    )
    return EXIT_OK


def cmd_web(args, ctx):
    import uvicorn

    from api.main import create_app

    app = create_app(paths=ctx.paths, config=ctx.config, store=ctx.store)
    uvicorn.run(
        app,
        host=args.host or ctx.config["web_host"],
        port=args.port or ctx.config["web_port"],
        log_level="warning" if args.verbose < 2 else "info",
    )
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(prog="vidl", description=__doc__)
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vvv for libraries).")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create config, download directory and database.")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("migrate", help="Apply pending schema migrations.")
    p.add_argument("--target", type=int, default=None, help="Schema version to migrate to.")
    p.set_defaults(func=cmd_migrate, migrate=False)

    p = sub.add_parser("add", help="Track a channel.")
    p.add_argument("name", help="Channel id, handle or user name.")
    p.add_argument("service", nargs="?", default=Service.YOUTUBE.value, choices=[s.value for s in Service])
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("remove", help="Stop tracking a channel and drop its videos.")
    p.add_argument("id", type=int)
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("rename", help="Change a channel's display title.")
    p.add_argument("id", type=int)
    p.add_argument("title")
    p.set_defaults(func=cmd_rename)

    p = sub.add_parser("list", help="List channels, or videos of a channel.")
    p.add_argument("id", type=int, nargs="?", default=None)
    p.add_argument("--status", default=None, help="Comma separated statuses, e.g. NE,GE or new,error.")
    p.add_argument("--search", default=None, help="Only videos whose title contains this text.")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("update", help="Check channels for new videos.")
    p.add_argument("selector", nargs="?", default=None, help="all, a channel id, or part of a title.")
    p.add_argument("--force", action="store_true", help="Ignore the freshness window.")
    p.add_argument("--full", action="store_true", help="Page through the whole channel.")
    p.set_defaults(func=cmd_update)

    p = sub.add_parser("download", help="Queue videos for download.")
    p.add_argument("ids", type=int, nargs="+")
    p.add_argument("--now", action="store_true", help="Drain the queue before exiting.")
    p.set_defaults(func=cmd_download)

    p = sub.add_parser("ignore", help="Mark videos as ignored.")
    p.add_argument("ids", type=int, nargs="+")
    p.set_defaults(func=cmd_ignore)

    p = sub.add_parser("unignore", help="Return ignored videos to new.")
    p.add_argument("ids", type=int, nargs="+")
    p.set_defaults(func=cmd_unignore)

    p = sub.add_parser("worker", help="Run download workers.")
    p.add_argument("--workers", type=int, default=None)
    p.add_argument("--once", action="store_true", help="Exit once the queue is empty.")
    p.set_defaults(func=cmd_worker)

    backup = sub.add_parser("backup", help="Export or import a JSON snapshot.")
    backup_sub = backup.add_subparsers(dest="backup_command", required=True)
    p = backup_sub.add_parser("export")
    p.add_argument("-o", "--output", default=None, help="File to write (default stdout).")
    p.set_defaults(func=cmd_backup_export)
    p = backup_sub.add_parser("import")
    p.add_argument("file", nargs="?", default=None, help="File to read (default stdin).")
    p.add_argument("--replace", action="store_true", help="Wipe the database before importing.")
    p.set_defaults(func=cmd_backup_import)

    p = sub.add_parser("web", help="Serve the HTTP API with background workers.")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_web)
    return parser


def main(argv=None, environ=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        ctx = Context(args, environ=environ, migrate=getattr(args, "migrate", True))
        return args.func(args, ctx)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except VidlError as exc:
        logging.debug("Command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        logging.shutdown()


if __name__ == "__main__":
    sys.exit(main())
