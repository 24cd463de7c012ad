import unittest
from unittest import mock

import requests

from vidl.config import DEFAULT_CONFIG
from vidl.errors import RemoteNotFound, RemoteRateLimited, RemoteTimeout, RemoteTransportError
from vidl.models import Service
from vidl.sources import (
    InvidiousSource,
    RateLimiter,
    YtDlpChannelSource,
    build_source,
    choose_best_thumbnail,
)

VIDEO_PAGE = {
    "videos": [
        {
            "title": "Bouldering in the rain",
            "videoId": "abc123",
            "videoThumbnails": [
                {"quality": "maxres", "url": "https://img.example/maxres.jpg", "width": 1280, "height": 720},
                {"quality": "default", "url": "https://img.example/default.jpg", "width": 120, "height": 90},
            ],
            "description": "wet rock",
            "lengthSeconds": 321,
            "published": 1600000000,
        }
    ],
    "continuation": "token-2",
}


def _response(status_code=200, payload=None):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


class InvidiousSourceTests(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.session.headers = {}
        self.source = InvidiousSource(
            "https://invidious.example/",
            timeout=5,
            rate_limiter=RateLimiter(1000, 60),
            session=self.session,
        )

    def test_fetch_page_maps_videos_and_continuation(self):
        self.session.get.return_value = _response(payload=VIDEO_PAGE)
        videos, cursor = self.source.fetch_page("UCabc")

        self.session.get.assert_called_once_with(
            "https://invidious.example/api/v1/channels/UCabc/videos", params=None, timeout=5
        )
        self.assertEqual(cursor, "token-2")
        video = videos[0]
        self.assertEqual(video.video_id, "abc123")
        self.assertEqual(video.url, "http://youtube.com/watch?v=abc123")
        self.assertEqual(video.thumbnail_url, "https://img.example/default.jpg")
        self.assertEqual(video.duration, 321)
        self.assertEqual(video.published_at, "2020-09-13T12:26:40+00:00")

    def test_malformed_payloads_are_transport_errors(self):
        payloads = [
            {"videos": [{"title": "no id here"}]},
            {"videos": [{"videoId": "x", "lengthSeconds": "long"}]},
            "not a dict",
        ]
        for payload in payloads:
            self.session.get.return_value = _response(payload=payload)
            with self.assertRaises(RemoteTransportError):
                self.source.fetch_page("UCabc")

    def test_continuation_is_passed_and_empty_page_ends(self):
        self.session.get.return_value = _response(payload={"videos": [], "continuation": "more"})
        videos, cursor = self.source.fetch_page("UCabc", "token-2")
        self.assertEqual(videos, [])
        self.assertIsNone(cursor)
        self.assertEqual(self.session.get.call_args.kwargs["params"], {"continuation": "token-2"})

    def test_get_metadata(self):
        self.session.get.return_value = _response(
            payload={
                "author": "thegreatsd",
                "authorId": "UCUBfKCp83QT19JCUekEdxOQ",
                "description": "climbing",
                "authorThumbnails": [{"url": "https://img.example/a.jpg", "width": 32, "height": 32}],
            }
        )
        meta = self.source.get_metadata("UCUBfKCp83QT19JCUekEdxOQ")
        self.assertEqual(meta.title, "thegreatsd")
        self.assertEqual(meta.thumbnail, "https://img.example/a.jpg")
        self.assertEqual(self.session.get.call_args.kwargs["params"]["fields"].split(",")[0], "author")

    def test_http_errors_map_to_remote_errors(self):
        self.session.get.return_value = _response(404)
        with self.assertRaises(RemoteNotFound):
            self.source.fetch_page("UCgone")
        self.session.get.return_value = _response(429)
        with self.assertRaises(RemoteRateLimited):
            self.source.fetch_page("UCabc")
        self.session.get.return_value = _response(500)
        with self.assertRaises(RemoteTransportError):
            self.source.fetch_page("UCabc")

    def test_transport_errors_map_to_remote_errors(self):
        self.session.get.side_effect = requests.Timeout("slow")
        with self.assertRaises(RemoteTimeout):
            self.source.fetch_page("UCabc")
        self.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(RemoteTransportError):
            self.source.fetch_page("UCabc")

    def test_invalid_json_is_transport_error(self):
        resp = _response()
        resp.json.side_effect = ValueError("not json")
        self.session.get.return_value = resp
        with self.assertRaises(RemoteTransportError):
            self.source.fetch_page("UCabc")

    def test_find_channel_id_passes_through_uc_ids(self):
        self.assertEqual(self.source.find_channel_id("UCOYYX1Ucvx87A7CSy5M99yw"), "UCOYYX1Ucvx87A7CSy5M99yw")
        self.session.get.assert_not_called()

    def test_find_channel_id_tries_handle_user_and_custom_urls(self):
        self.session.get.side_effect = [
            _response(404),
            _response(payload={"ucid": "UCUBfKCp83QT19JCUekEdxOQ", "pageType": "WEB_PAGE_TYPE_CHANNEL"}),
        ]
        self.assertEqual(self.source.find_channel_id("thegreatsd"), "UCUBfKCp83QT19JCUekEdxOQ")
        urls = [call.kwargs["params"]["url"] for call in self.session.get.call_args_list]
        self.assertEqual(urls, ["https://www.youtube.com/@thegreatsd", "https://www.youtube.com/user/thegreatsd"])

    def test_find_channel_id_not_found(self):
        self.session.get.return_value = _response(404)
        with self.assertRaises(RemoteNotFound):
            self.source.find_channel_id("nobody")
        self.assertEqual(self.session.get.call_count, 3)


class RateLimiterTests(unittest.TestCase):
    def test_sleeps_once_window_is_full(self):
        now = [0.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        limiter = RateLimiter(2, 60, clock=lambda: now[0], sleep=sleep)
        limiter.wait()
        now[0] = 10.0
        limiter.wait()
        limiter.wait()
        self.assertEqual(sleeps, [50.0])


class HelperTests(unittest.TestCase):
    def test_choose_best_thumbnail(self):
        self.assertEqual(choose_best_thumbnail([]), "")
        self.assertEqual(choose_best_thumbnail([{"url": "a"}, {"url": "b", "quality": "default"}]), "b")
        self.assertEqual(choose_best_thumbnail([{"url": "a", "quality": "high"}]), "a")

    def test_build_source_mapping(self):
        config = dict(DEFAULT_CONFIG)
        self.assertIsInstance(build_source("youtube", config), InvidiousSource)
        vimeo = build_source(Service.VIMEO, config)
        self.assertIsInstance(vimeo, YtDlpChannelSource)
        self.assertEqual(vimeo.service, Service.VIMEO)
        config["youtube_source"] = "ytdlp"
        self.assertIsInstance(build_source("youtube", config), YtDlpChannelSource)
        with self.assertRaises(ValueError):
            build_source("dailymotion", config)

    def test_ytdlp_source_pages_by_playlist_index(self):
        source = YtDlpChannelSource("youtube", page_size=2, rate_limiter=RateLimiter(1000, 60))
        entries = [
            {"id": "a1", "title": "A", "url": "https://www.youtube.com/watch?v=a1", "upload_date": "20210304"},
            {"id": "b2", "title": "B", "duration": 12.0},
        ]
        with mock.patch.object(source, "_extract", return_value={"entries": entries}) as extract:
            videos, cursor = source.fetch_page("UCabc", None)
        url, opts = extract.call_args.args
        self.assertEqual(url, "https://www.youtube.com/channel/UCabc/videos")
        self.assertEqual((opts["playliststart"], opts["playlistend"]), (1, 2))
        self.assertEqual(cursor, 3)
        self.assertEqual(videos[0].published_at, "2021-03-04T12:00:01+00:00")
        self.assertEqual(videos[1].url, "http://youtube.com/watch?v=b2")
        self.assertEqual(videos[1].duration, 12)


if __name__ == "__main__":
    unittest.main()
