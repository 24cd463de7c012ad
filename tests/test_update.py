import os
import tempfile
import unittest
from dataclasses import replace
from unittest import mock

from vidl.errors import DuplicateKey, RemoteNotFound, RemoteTransportError
from vidl.models import ChannelMetadata, Service, VideoInfo, to_utc_iso
from vidl.sources import ChannelSource, InvidiousSource, RateLimiter
from vidl.status import VideoStatus
from vidl.store import Store
from vidl.update import UpdateEngine

GREATSD_ID = "UCUBfKCp83QT19JCUekEdxOQ"


def make_video(n, title=None):
    return VideoInfo(
        video_id=f"vid{n:03d}",
        url=f"http://youtube.com/watch?v=vid{n:03d}",
        title=title or f"Video {n}",
        description="",
        thumbnail_url="",
        published_at=to_utc_iso(1_600_000_000 + n * 3600),
    )


class FakeSource(ChannelSource):
    """Serves fixed pages per channel id, newest first."""

    service = Service.YOUTUBE

    def __init__(self, pages=None, *, fail_on_page=None):
        self.pages = pages or {}
        self.fail_on_page = fail_on_page or {}
        self.calls = []

    def fetch_page(self, chanid, cursor=None):
        index = cursor or 0
        self.calls.append((chanid, index))
        if self.fail_on_page.get(chanid) == index:
            raise RemoteTransportError(f"connection reset while listing {chanid}")
        pages = self.pages.get(chanid, [])
        if index >= len(pages):
            return [], None
        next_cursor = index + 1 if index + 1 < len(pages) else None
        return list(pages[index]), next_cursor

    def get_metadata(self, chanid):
        if chanid not in self.pages:
            raise RemoteNotFound(f"Not found: {chanid}")
        return ChannelMetadata(title="thegreatsd", thumbnail="https://img.example/sd.jpg")

    def find_channel_id(self, name):
        return GREATSD_ID if name == "thegreatsd" else name


class FakeClock:
    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


class UpdateEngineTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = Store(os.path.join(self.tmpdir.name, "vidl.sqlite3"))
        self.source = FakeSource({GREATSD_ID: [[make_video(3), make_video(2)], [make_video(1)]]})
        self.engine = UpdateEngine(self.store, lambda service: self.source)
        self.channel = self.engine.add_channel("thegreatsd")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_add_channel_resolves_name_and_metadata(self):
        self.assertEqual(self.channel.chanid, GREATSD_ID)
        self.assertEqual(self.channel.title, "thegreatsd")
        self.assertEqual(self.channel.thumbnail, "https://img.example/sd.jpg")
        with self.assertRaises(DuplicateKey):
            self.engine.add_channel("thegreatsd")

    def test_add_unknown_channel_raises_remote_not_found(self):
        with self.assertRaises(RemoteNotFound):
            self.engine.add_channel("UCmissing")
        self.assertEqual(len(self.store.list_channels()), 1)

    def test_first_update_collects_every_page(self):
        report = self.engine.update()
        self.assertEqual(report.total_new, 3)
        self.assertEqual(report.results[0].pages, 2)
        videos = self.store.list_videos(channel_id=self.channel.id)
        self.assertEqual([v.info.video_id for v in videos], ["vid003", "vid002", "vid001"])
        self.assertTrue(all(v.status == VideoStatus.NEW for v in videos))
        channel = self.store.get_channel(self.channel.id)
        self.assertEqual(channel.last_seen_video_id, "vid003")
        self.assertIsNone(channel.crawl_started_at)

    def test_fresh_channel_is_skipped_unless_forced(self):
        self.engine.update()
        self.source.calls.clear()

        report = self.engine.update()
        self.assertEqual(report.results[0].skipped, "fresh")
        self.assertEqual(self.source.calls, [])

        forced = self.engine.update(force=True)
        self.assertIsNone(forced.results[0].skipped)
        self.assertEqual(forced.total_new, 0)

    def test_known_video_on_first_page_stops_after_one_fetch(self):
        self.engine.update()
        self.source.pages[GREATSD_ID] = [[make_video(4), make_video(3), make_video(2)], [make_video(1)]]
        self.source.calls.clear()

        report = self.engine.update(force=True)
        self.assertEqual(report.total_new, 1)
        self.assertEqual(self.source.calls, [(GREATSD_ID, 0)])
        self.assertEqual(self.store.get_channel(self.channel.id).last_seen_video_id, "vid004")

    def test_full_update_pages_everything_and_refreshes_titles(self):
        self.engine.update()
        self.source.pages[GREATSD_ID] = [
            [make_video(3), make_video(2, title="Video 2 (remastered)")],
            [make_video(1), make_video(0)],
        ]
        self.source.calls.clear()

        report = self.engine.update(force=True, full=True)
        self.assertEqual(report.total_new, 1)
        self.assertEqual(len(self.source.calls), 2)
        titles = {v.info.video_id: v.info.title for v in self.store.list_videos()}
        self.assertEqual(titles["vid002"], "Video 2 (remastered)")
        self.assertIn("vid000", titles)

    def test_failed_crawl_commits_nothing_and_other_channels_continue(self):
        other = self.store.add_channel(Service.YOUTUBE, "UCother", "Other channel", "")
        self.source.pages["UCother"] = [[make_video(10)]]
        self.source.fail_on_page[GREATSD_ID] = 1

        report = self.engine.update()
        self.assertEqual(len(report.failures), 1)
        failed = report.failures[0]
        self.assertEqual(failed.channel_id, self.channel.id)
        self.assertIn("connection reset", failed.error)
        self.assertEqual(self.store.count_videos(channel_id=self.channel.id), 0)
        self.assertIsNone(self.store.get_channel(self.channel.id).last_update)
        self.assertIsNone(self.store.get_channel(self.channel.id).crawl_started_at)
        self.assertEqual(self.store.count_videos(channel_id=other.id), 1)

        del self.source.fail_on_page[GREATSD_ID]
        retry = self.engine.update(GREATSD_ID)
        self.assertEqual(retry.total_new, 3)

    def test_malformed_listing_fails_only_that_channel(self):
        bad = self.store.add_channel(Service.YOUTUBE, "UCbad", "Bad channel", "")
        good = self.store.add_channel(Service.YOUTUBE, "UCgood", "Good channel", "")
        pages = {
            "UCbad": {"videos": [{"title": "no id here"}]},
            "UCgood": {"videos": [{"videoId": "good1", "title": "Fine", "published": 1600000000}]},
        }

        def fake_get(url, params=None, timeout=None):
            resp = mock.Mock()
            chanid = url.split("/channels/")[1].split("/")[0]
            resp.status_code = 200 if chanid in pages else 404
            resp.json.return_value = pages.get(chanid)
            return resp

        session = mock.Mock()
        session.headers = {}
        session.get.side_effect = fake_get
        source = InvidiousSource(rate_limiter=RateLimiter(1000, 60), session=session)
        engine = UpdateEngine(self.store, lambda service: source)

        report = engine.update()
        errors = {result.channel_id: result.error for result in report.results}
        self.assertIn("Malformed response", errors[bad.id])
        self.assertIsNone(errors[good.id])
        self.assertEqual(self.store.count_videos(channel_id=bad.id), 0)
        self.assertEqual(self.store.count_videos(channel_id=good.id), 1)

    def test_selector_matches_id_title_or_nothing(self):
        other = self.store.add_channel(Service.YOUTUBE, "UCother", "Climbing Daily", "")
        self.assertEqual([c.id for c in self.engine.select_channels(str(other.id))], [other.id])
        self.assertEqual([c.id for c in self.engine.select_channels("climbing")], [other.id])
        self.assertEqual(len(self.engine.select_channels("all")), 2)
        self.assertEqual(self.engine.select_channels("999"), [])
        self.assertEqual(self.engine.update("no such channel").results, [])

    def test_channel_being_crawled_is_skipped(self):
        self.store.claim_channel_crawl(self.channel.id, stale_after_seconds=600)
        report = self.engine.update(force=True)
        self.assertEqual(report.results[0].skipped, "busy")
        self.assertEqual(self.source.calls, [])

    def test_channel_timeout_between_pages(self):
        engine = UpdateEngine(
            self.store,
            lambda service: self.source,
            channel_timeout_seconds=10,
            clock=FakeClock(step=6),
        )
        report = engine.update()
        self.assertEqual(len(report.failures), 1)
        self.assertIn("exceeded", report.failures[0].error)
        self.assertEqual(self.store.count_videos(), 0)

    def test_report_as_dict(self):
        report = self.engine.update()
        data = report.as_dict()
        self.assertEqual(data["total_new"], 3)
        self.assertEqual(data["failures"], 0)
        self.assertEqual(data["channels"][0]["channel_id"], self.channel.id)

    def test_existing_rows_keep_their_status(self):
        self.engine.update()
        video = self.store.list_videos()[0]
        self.store.enqueue([video.id])
        changed = replace(make_video(3), title="changed")
        self.source.pages[GREATSD_ID] = [[changed, make_video(2)], [make_video(1)]]
        self.engine.update(force=True, full=True)
        stored = self.store.get_video(video.id)
        self.assertEqual(stored.status, VideoStatus.QUEUED)
        self.assertEqual(stored.info.title, "changed")


if __name__ == "__main__":
    unittest.main()
