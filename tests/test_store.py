import os
import sqlite3
import tempfile
import threading
import unittest

from vidl.errors import (
    ChannelNotFound,
    DuplicateKey,
    IllegalTransition,
    StoreBusy,
    VideoNotFound,
)
from vidl.models import Service, VideoInfo, to_utc_iso
from vidl.status import VideoStatus
from vidl.store import Store


def make_video(n, title=None):
    return VideoInfo(
        video_id=f"vid{n:03d}",
        url=f"http://youtube.com/watch?v=vid{n:03d}",
        title=title or f"Video {n}",
        description=f"Description {n}",
        thumbnail_url=f"https://img.example/{n}.jpg",
        published_at=to_utc_iso(1_600_000_000 + n * 3600),
        duration=60 + n,
    )


class StoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "vidl.sqlite3")
        self.store = Store(self.db_path)
        self.channel = self.store.add_channel(Service.YOUTUBE, "UCUBfKCp83QT19JCUekEdxOQ", "thegreatsd", "")

    def tearDown(self):
        self.tmpdir.cleanup()

    def _add(self, n, **kwargs):
        return self.store.add_video(self.channel.id, make_video(n, **kwargs))

    def test_duplicate_channel_is_rejected(self):
        with self.assertRaises(DuplicateKey):
            self.store.add_channel("youtube", "UCUBfKCp83QT19JCUekEdxOQ", "again", "")
        self.assertEqual(len(self.store.list_channels()), 1)

    def test_duplicate_video_is_rejected(self):
        self._add(1)
        with self.assertRaises(DuplicateKey):
            self._add(1)

    def test_add_video_defaults_to_new(self):
        video = self._add(1)
        self.assertEqual(video.status, VideoStatus.NEW)
        self.assertIsNotNone(video.date_added)
        self.assertEqual(video.info.duration, 61)
        self.assertTrue(self.store.has_video(self.channel.id, "vid001"))
        self.assertFalse(self.store.has_video(self.channel.id, "vid999"))

    def test_list_videos_newest_first_with_filters(self):
        first = self._add(1, title="Climbing day")
        second = self._add(2, title="Bouldering")
        third = self._add(3, title="Another climbing trip")
        self.store.ignore(second.id)

        videos = self.store.list_videos(channel_id=self.channel.id)
        self.assertEqual([v.id for v in videos], [third.id, second.id, first.id])

        climbing = self.store.list_videos(name_contains="CLIMBING")
        self.assertEqual([v.id for v in climbing], [third.id, first.id])

        ignored = self.store.list_videos(statuses={"IG"})
        self.assertEqual([v.id for v in ignored], [second.id])
        self.assertEqual(self.store.count_videos(statuses={"NE"}), 2)

        page = self.store.list_videos(limit=1, offset=1)
        self.assertEqual([v.id for v in page], [second.id])

    def test_enqueue_is_idempotent(self):
        video = self._add(1)
        result = self.store.enqueue([video.id])
        self.assertEqual(result.queued, [video.id])
        queued = self.store.get_video(video.id)
        self.assertEqual(queued.status, VideoStatus.QUEUED)
        self.assertIsNotNone(queued.queued_at)

        again = self.store.enqueue([video.id])
        self.assertEqual(again.queued, [])
        self.assertEqual(again.unchanged, [video.id])
        self.assertEqual(self.store.get_video(video.id).queued_at, queued.queued_at)

    def test_enqueue_downloaded_video_is_rejected(self):
        video = self._add(1)
        self.store.enqueue([video.id])
        claimed = self.store.claim_next()
        self.store.mark_downloaded(claimed.id, "/tmp/file.mp4")

        with self.assertRaises(IllegalTransition):
            self.store.enqueue([video.id])
        unchanged = self.store.get_video(video.id)
        self.assertEqual(unchanged.status, VideoStatus.DOWNLOADED)
        self.assertEqual(unchanged.local_file, "/tmp/file.mp4")

    def test_enqueue_is_all_or_nothing(self):
        ok = self._add(1)
        with self.assertRaises(VideoNotFound):
            self.store.enqueue([ok.id, 4242])
        self.assertEqual(self.store.get_video(ok.id).status, VideoStatus.NEW)

    def test_claim_next_is_fifo_by_queue_time(self):
        a = self._add(1)
        b = self._add(2)
        self.store.enqueue([b.id])
        self.store.enqueue([a.id])

        self.assertEqual(self.store.claim_next().id, b.id)
        claimed = self.store.claim_next()
        self.assertEqual(claimed.id, a.id)
        self.assertEqual(claimed.status, VideoStatus.DOWNLOADING)
        self.assertIsNone(self.store.claim_next())

    def test_claim_is_exclusive_across_threads(self):
        ids = [self._add(n).id for n in range(30)]
        self.store.enqueue(ids)
        claimed = []
        lock = threading.Lock()

        def worker():
            store = Store(self.db_path)
            while True:
                video = store.claim_next()
                if video is None:
                    return
                with lock:
                    claimed.append(video.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(claimed), sorted(ids))
        self.assertEqual(len(claimed), len(set(claimed)))

    def test_failure_and_manual_requeue(self):
        video = self._add(1)
        self.store.enqueue([video.id])
        self.store.claim_next()
        failed = self.store.mark_failed(video.id, "HTTP Error 404")
        self.assertEqual(failed.status, VideoStatus.ERROR)
        self.assertEqual(failed.error_message, "HTTP Error 404")

        self.store.enqueue([video.id])
        requeued = self.store.get_video(video.id)
        self.assertEqual(requeued.status, VideoStatus.QUEUED)
        self.assertIsNone(requeued.error_message)

    def test_mark_downloaded_requires_downloading(self):
        video = self._add(1)
        with self.assertRaises(IllegalTransition):
            self.store.mark_downloaded(video.id, "/tmp/x.mp4")
        self.assertEqual(self.store.get_video(video.id).status, VideoStatus.NEW)

    def test_recover_interrupted_requeues_downloading(self):
        a = self._add(1)
        b = self._add(2)
        self.store.enqueue([a.id, b.id])
        claimed = self.store.claim_next()
        queued_at = claimed.queued_at

        self.assertEqual(self.store.recover_interrupted(), 1)
        recovered = self.store.get_video(claimed.id)
        self.assertEqual(recovered.status, VideoStatus.QUEUED)
        self.assertEqual(recovered.queued_at, queued_at)
        self.assertEqual(self.store.recover_interrupted(), 0)

    def test_ignore_and_unignore(self):
        video = self._add(1)
        self.assertEqual(self.store.ignore(video.id).status, VideoStatus.IGNORED)
        self.assertEqual(self.store.unignore(video.id).status, VideoStatus.NEW)
        with self.assertRaises(IllegalTransition):
            self.store.unignore(video.id)

    def test_remove_channel_drops_its_videos(self):
        self._add(1)
        self._add(2)
        self.assertEqual(self.store.remove_channel(self.channel.id), 2)
        self.assertEqual(self.store.count_videos(), 0)
        with self.assertRaises(ChannelNotFound):
            self.store.get_channel(self.channel.id)
        with self.assertRaises(ChannelNotFound):
            self.store.remove_channel(self.channel.id)

    def test_rename_channel(self):
        renamed = self.store.rename_channel(self.channel.id, "The Great SD")
        self.assertEqual(renamed.title, "The Great SD")
        self.assertEqual(self.store.get_channel(self.channel.id).title, "The Great SD")

    def test_crawl_claim_guards_concurrent_crawls(self):
        self.assertTrue(self.store.claim_channel_crawl(self.channel.id, stale_after_seconds=600))
        self.assertFalse(self.store.claim_channel_crawl(self.channel.id, stale_after_seconds=600))
        self.store.release_channel_crawl(self.channel.id)
        self.assertTrue(self.store.claim_channel_crawl(self.channel.id, stale_after_seconds=600))

    def test_record_crawl_commits_videos_and_marker(self):
        added = self.store.record_crawl(self.channel.id, [make_video(2), make_video(1)], "vid002")
        self.assertEqual(added, 2)
        channel = self.store.get_channel(self.channel.id)
        self.assertEqual(channel.last_seen_video_id, "vid002")
        self.assertIsNotNone(channel.last_update)

        refreshed = make_video(1, title="Renamed")
        self.assertEqual(self.store.record_crawl(self.channel.id, [], None, refreshed=[refreshed]), 0)
        titles = {v.info.video_id: v.info.title for v in self.store.list_videos()}
        self.assertEqual(titles["vid001"], "Renamed")
        self.assertEqual(self.store.get_channel(self.channel.id).last_seen_video_id, "vid002")

    def test_store_busy_after_timeout(self):
        video = self._add(1)
        busy_store = Store(self.db_path, busy_timeout=0.2)
        blocker = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with self.assertRaises(StoreBusy):
                busy_store.enqueue([video.id])
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
        self.assertEqual(self.store.get_video(video.id).status, VideoStatus.NEW)

    def test_reopening_runs_no_migrations(self):
        self.assertEqual(Store(self.db_path).migrate(), [])
        self.assertEqual(self.store.schema_version(), 7)


if __name__ == "__main__":
    unittest.main()
