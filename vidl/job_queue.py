import logging
import threading

from vidl.errors import DownloadError, InvariantViolation, NotFound, StoreError
from vidl.logs import log_event

_DEFAULT_POLL_INTERVAL_SECONDS = 1.0
_DEFAULT_MAX_POLL_INTERVAL_SECONDS = 30.0


def _video_log(level, video, event, **fields):
    log_event(
        level,
        event=event,
        video_id=video.id,
        remote_id=video.info.video_id,
        channel_id=video.channel_id,
        **fields,
    )


class DownloadWorkerPool:
    """Fixed pool of threads draining the ``queued`` videos in the store.

    Claims and completions are separate store transactions; nothing is held
    open while the downloader runs. Failed downloads are recorded on the video
    and never retried automatically.
    """

    def __init__(
        self,
        store,
        downloader,
        *,
        num_workers=4,
        poll_interval=None,
        max_poll_interval=None,
        stop_event=None,
    ):
        self.store = store
        self.downloader = downloader
        self.num_workers = max(1, int(num_workers))
        self.poll_interval = poll_interval or _DEFAULT_POLL_INTERVAL_SECONDS
        self.max_poll_interval = max(max_poll_interval or _DEFAULT_MAX_POLL_INTERVAL_SECONDS, self.poll_interval)
        self.stop_event = stop_event or threading.Event()
        self.completed = 0
        self.failed = 0
        self._wake = threading.Event()
        self._threads = []
        self._threads_lock = threading.Lock()
        self._counts_lock = threading.Lock()

    @classmethod
    def from_config(cls, store, downloader, config, *, stop_event=None):
        return cls(
            store,
            downloader,
            num_workers=config["num_workers"],
            poll_interval=config["worker_poll_seconds"],
            max_poll_interval=config["worker_max_poll_seconds"],
            stop_event=stop_event,
        )

    @property
    def running(self):
        with self._threads_lock:
            return any(thread.is_alive() for thread in self._threads)

    def enqueue(self, video_ids):
        result = self.store.enqueue(video_ids)
        if result.queued:
            self.wake()
        return result

    def wake(self):
        self._wake.set()

    def recover_interrupted(self):
        return self.store.recover_interrupted()

    def start(self):
        """Recover interrupted downloads and start the worker threads."""
        with self._threads_lock:
            if any(thread.is_alive() for thread in self._threads):
                return
        self.recover_interrupted()
        self.stop_event.clear()
        self._spawn(exit_when_idle=False)
        log_event("info", event="workers_started", workers=self.num_workers)

    def stop(self, timeout=None):
        """Stop after in-flight downloads finish."""
        self.stop_event.set()
        self.wake()
        self._join(timeout)
        log_event("info", event="workers_stopped", completed=self.completed, failed=self.failed)

    def run_until_idle(self):
        """Drain the queue with the configured workers and return once it is empty."""
        self.recover_interrupted()
        before = (self.completed, self.failed)
        self._spawn(exit_when_idle=True)
        self._join()
        return self.completed - before[0], self.failed - before[1]

    def _spawn(self, *, exit_when_idle):
        with self._threads_lock:
            self._threads = [
                threading.Thread(
                    target=self._worker_loop,
                    args=(exit_when_idle,),
                    name=f"vidl-worker-{index}",
                    daemon=False,
                )
                for index in range(self.num_workers)
            ]
            for thread in self._threads:
                thread.start()

    def _join(self, timeout=None):
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)

    def _worker_loop(self, exit_when_idle):
        delay = self.poll_interval
        while not self.stop_event.is_set():
            try:
                video = self.store.claim_next()
            except StoreError as exc:
                log_event("error", event="claim_failed", error=str(exc))
                if exit_when_idle:
                    break
                self.stop_event.wait(delay)
                delay = min(delay * 2, self.max_poll_interval)
                continue
            if video is None:
                if exit_when_idle:
                    break
                if self._wake.wait(delay):
                    self._wake.clear()
                    delay = self.poll_interval
                else:
                    delay = min(delay * 2, self.max_poll_interval)
                continue
            delay = self.poll_interval
            self.process(video)

    def _channel_title(self, video):
        # read per video so renames show up in filenames without a restart
        try:
            return self.store.get_channel(video.channel_id).title
        except NotFound:
            return ""
        except StoreError as exc:
            _video_log("warning", video, "channel_lookup_failed", error=str(exc))
            return ""

    def process(self, video):
        """Download one claimed video and record the outcome. Returns True on success."""
        _video_log("info", video, "video_downloading", status="downloading")
        channel = self._channel_title(video)
        try:
            local_file = self.downloader.download(video, channel=channel)
        except DownloadError as exc:
            return self._complete_failed(video, str(exc) or "download failed")
        except Exception as exc:
            logging.exception("[%s] Unexpected downloader failure", video.info.video_id)
            return self._complete_failed(video, f"{exc.__class__.__name__}: {exc}")

        try:
            self.store.mark_downloaded(video.id, local_file)
        except (StoreError, NotFound, InvariantViolation) as exc:
            # row stays downloading; startup recovery requeues it
            _video_log("error", video, "completion_failed", error=str(exc), local_file=local_file)
            return False
        with self._counts_lock:
            self.completed += 1
        return True

    def _complete_failed(self, video, message):
        try:
            self.store.mark_failed(video.id, message)
        except (StoreError, NotFound, InvariantViolation) as exc:
            _video_log("error", video, "completion_failed", error=str(exc), download_error=message)
        with self._counts_lock:
            self.failed += 1
        return False
