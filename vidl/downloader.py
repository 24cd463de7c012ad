import logging
import os
import re
import shutil
import subprocess
import sys
import unicodedata

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError as YtDlpDownloadError

from vidl.errors import DownloadError
from vidl.paths import ensure_dir, is_within

_PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")
_OUTPUT_LOG_LINES = 5


def sanitize_for_filesystem(name, maxlen=120):
    """Remove characters unsafe for filenames and trim length."""
    if not name:
        return ""
    name = unicodedata.normalize("NFC", str(name))
    name = re.sub(r"[\\/:*?\"<>|\x00-\x1f]+", "", name)
    name = re.sub(r"\s+", "_", name).strip("._")
    if len(name) > maxlen:
        name = name[:maxlen].rstrip("._")
    return name


def build_output_filename(video, ext, filename_format, channel=""):
    """Final file name for ``video``; always carries the surrogate id so names never collide."""
    published = (video.info.published_at or "")[:10].replace("-", "")
    fields = {
        "id": video.id,
        "video_id": sanitize_for_filesystem(video.info.video_id),
        "title": sanitize_for_filesystem(video.info.title) or "untitled",
        "channel": sanitize_for_filesystem(channel) or "unknown",
        "date": published or "00000000",
        "ext": sanitize_for_filesystem(ext) or "bin",
    }
    try:
        name = filename_format.format_map(fields)
    except (KeyError, IndexError, ValueError) as exc:
        raise DownloadError(f"Invalid filename_format {filename_format!r}: {exc}") from exc
    return os.path.basename(name)


def _format_from_args(args):
    args = list(args)
    for flag in ("-f", "--format"):
        if flag in args:
            index = args.index(flag)
            if index + 1 < len(args):
                return args[index + 1]
    return None


def pick_output(staging_dir, video_id):
    """Largest finished file in ``staging_dir``, preferring names starting with ``video_id``."""
    files = [
        name
        for name in os.listdir(staging_dir)
        if os.path.isfile(os.path.join(staging_dir, name)) and not name.endswith(_PARTIAL_SUFFIXES)
    ]
    if not files:
        return None
    preferred = [name for name in files if name.startswith(video_id)] or files
    preferred.sort(key=lambda name: os.path.getsize(os.path.join(staging_dir, name)), reverse=True)
    return os.path.join(staging_dir, preferred[0])


class Downloader:
    """Fetches one video into a private staging directory, then moves it into place."""

    def __init__(self, download_dir, *, filename_format, extra_args=(), timeout=30):
        self.download_dir = download_dir
        self.filename_format = filename_format
        self.extra_args = list(extra_args)
        self.timeout = timeout

    def staging_dir_for(self, video, target_dir=None):
        return os.path.join(target_dir or self.download_dir, ".staging", str(video.id))

    def download(self, video, target_dir=None, *, channel=""):
        target_dir = target_dir or self.download_dir
        staging = self.staging_dir_for(video, target_dir)
        ensure_dir(staging)
        logging.info("[%s] Downloading %s", video.info.video_id, video.info.url)
        self.fetch(video, staging)

        produced = pick_output(staging, video.info.video_id)
        if not produced:
            raise DownloadError(f"download of {video.info.video_id} produced no output")
        ext = os.path.splitext(produced)[1].lstrip(".")
        final_path = os.path.join(target_dir, build_output_filename(video, ext, self.filename_format, channel))
        if not is_within(final_path, target_dir):
            raise DownloadError(f"refusing to write outside {target_dir}: {final_path}")
        try:
            shutil.move(produced, final_path)
        except OSError as exc:
            raise DownloadError(f"failed to move {produced} to {final_path}: {exc}") from exc
        shutil.rmtree(staging, ignore_errors=True)
        logging.info("[%s] Saved %s", video.info.video_id, final_path)
        return final_path

    def fetch(self, video, staging_dir):
        raise NotImplementedError


class SubprocessDownloader(Downloader):
    """Runs yt-dlp out of process (``python -m yt_dlp`` unless a command is configured)."""

    def __init__(self, download_dir, *, command=None, **kwargs):
        super().__init__(download_dir, **kwargs)
        self.command = list(command) if command else [sys.executable, "-m", "yt_dlp"]

    def build_command(self, video, staging_dir):
        return [
            *self.command,
            *self.extra_args,
            "--newline",
            "--no-playlist",
            "--socket-timeout",
            str(self.timeout),
            "-o",
            os.path.join(staging_dir, "%(id)s.%(ext)s"),
            video.info.url,
        ]

    def fetch(self, video, staging_dir):
        cmd = self.build_command(video, staging_dir)
        logging.debug("[%s] Running %s", video.info.video_id, " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise DownloadError(f"failed to run {cmd[0]}: {exc}") from exc
        lines = [line for line in (proc.stdout or "").splitlines() if line.strip()]
        for line in lines:
            logging.debug("[%s] %s", video.info.video_id, line)
        if proc.returncode != 0:
            tail = " | ".join(lines[-_OUTPUT_LOG_LINES:]) or "no output"
            raise DownloadError(f"yt-dlp exited with code {proc.returncode}: {tail}")


class YtDlpDownloader(Downloader):
    """In-process yt-dlp."""

    def build_opts(self, staging_dir):
        opts = {
            "outtmpl": os.path.join(staging_dir, "%(id)s.%(ext)s"),
            "continuedl": True,
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": self.timeout,
            "logger": logging.getLogger("yt_dlp"),
        }
        fmt = _format_from_args(self.extra_args)
        if fmt:
            opts["format"] = fmt
        if "--restrict-filenames" in self.extra_args:
            opts["restrictfilenames"] = True
        return opts

    def fetch(self, video, staging_dir):
        try:
            with YoutubeDL(self.build_opts(staging_dir)) as ydl:
                result = ydl.download([video.info.url])
        except YtDlpDownloadError as exc:
            raise DownloadError(str(exc)) from exc
        if result:
            raise DownloadError(f"yt-dlp reported failures (code={result})")


def build_downloader(config, paths):
    kwargs = {
        "filename_format": config["filename_format"],
        "extra_args": config["extra_ytdl_args"],
        "timeout": config["remote_timeout_seconds"],
    }
    if config["downloader"] == "library":
        return YtDlpDownloader(paths.download_dir, **kwargs)
    return SubprocessDownloader(paths.download_dir, command=config["downloader_command"], **kwargs)
