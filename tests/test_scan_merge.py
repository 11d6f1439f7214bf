#!/usr/bin/env python3
"""
Tests for the feed client, dispatcher, fragment merger and notifier.
HTTP sessions and ffmpeg are replaced with in-process fakes.
"""

import sys
import random
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from archivedv.core.auth import AuthSkipCache
from archivedv.core.constants import DateFormat
from archivedv.core.dispatcher import (
    Dispatcher, date_prefix, folder_title, is_ignored, matches_keywords,
)
from archivedv.core.error_codes import ErrorCode, FeedError
from archivedv.core.feeds import (
    ChannelFeed, Feed404Tracker, FeedClient, FeedDocument, parse_feed,
)
from archivedv.core.merge import FragmentMerger
from archivedv.core.models import Channel, FeedEntry, HistoryEntry, Snapshot
from archivedv.core.notify import PushoverNotifier
from archivedv.core.retry_queue import RetryQueue
from archivedv.core.store import MemoryStore
from archivedv.core.supervisor import ActiveDownload, ActiveTable

MIB = 1024 * 1024
FEED_URL = "https://www.youtube.com/feeds/videos.xml?channel_id=UCabc"

SAMPLE_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015"
      xmlns:media="http://search.yahoo.com/mrss/"
      xmlns="http://www.w3.org/2005/Atom">
 <link rel="self" href="http://www.youtube.com/feeds/videos.xml?channel_id=UCabc"/>
 <id>yt:channel:UCabc</id>
 <yt:channelId>UCabc</yt:channelId>
 <title>Singer Ch.</title>
 <author>
  <name>Singer Ch.</name>
  <uri>https://www.youtube.com/channel/UCabc</uri>
 </author>
 <published>2021-03-01T00:00:00+00:00</published>
 <entry>
  <id>yt:video:vid1</id>
  <yt:videoId>vid1</yt:videoId>
  <yt:channelId>UCabc</yt:channelId>
  <title>Karaoke Night</title>
  <link rel="alternate" href="https://www.youtube.com/watch?v=vid1"/>
  <published>2024-01-02T12:00:00+00:00</published>
  <updated>2024-01-02T13:00:00+00:00</updated>
 </entry>
 <entry>
  <id>yt:video:vid2</id>
  <yt:videoId>vid2</yt:videoId>
  <yt:channelId>UCabc</yt:channelId>
  <title>Morning Chat</title>
  <link rel="alternate" href="https://www.youtube.com/watch?v=vid2"/>
  <published>2024-01-01T08:00:00+00:00</published>
 </entry>
</feed>
"""


def fake_response(status_code=200, text=""):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.text = text
    return resp


def fake_session(*responses):
    session = mock.Mock()
    session.headers = {}
    session.get.side_effect = list(responses)
    return session


class TestFeedParsing(unittest.TestCase):
    """Test Atom feed parsing."""

    def test_entries_and_channel_name(self):
        doc = parse_feed(SAMPLE_FEED, "UCabc")
        self.assertEqual(doc.channel_name, "Singer Ch.")
        self.assertEqual([e.video_id for e in doc.entries], ["vid1", "vid2"])
        first = doc.entries[0]
        self.assertEqual(first.channel_id, "UCabc")
        self.assertEqual(first.title, "Karaoke Night")
        self.assertEqual(first.link, "https://www.youtube.com/watch?v=vid1")
        self.assertEqual(first.published, datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc))

    def test_entries_without_video_id_skipped(self):
        text = SAMPLE_FEED.replace("<yt:videoId>vid2</yt:videoId>", "")
        doc = parse_feed(text, "UCabc")
        self.assertEqual([e.video_id for e in doc.entries], ["vid1"])


class TestFeedClient(unittest.TestCase):
    """Test bounded retries and error mapping."""

    def setUp(self):
        self.sleeps = []

    def client(self, session, **kwargs):
        return FeedClient(session=session, sleep=self.sleeps.append,
                          rng=random.Random(5), **kwargs)

    def test_timeout_retried_then_succeeds(self):
        session = fake_session(requests.exceptions.Timeout("slow"),
                               fake_response(200, SAMPLE_FEED))
        text = self.client(session, retries=3, backoff_sec=1.0).fetch(FEED_URL)
        self.assertEqual(text, SAMPLE_FEED)
        self.assertEqual(session.get.call_count, 2)
        self.assertEqual(len(self.sleeps), 1)
        self.assertTrue(0.9 <= self.sleeps[0] <= 1.1)

    def test_transient_failure_exhausts_retries(self):
        session = mock.Mock()
        session.headers = {}
        session.get.side_effect = requests.exceptions.ConnectionError("reset")
        with self.assertRaises(FeedError) as ctx:
            self.client(session, retries=2, backoff_sec=1.0).fetch(FEED_URL)
        self.assertEqual(ctx.exception.code, ErrorCode.FEED_TRANSIENT)
        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertLess(self.sleeps[0], self.sleeps[1])

    def test_404_not_retried(self):
        session = fake_session(fake_response(404))
        with self.assertRaises(FeedError) as ctx:
            self.client(session).fetch(FEED_URL)
        self.assertEqual(ctx.exception.code, ErrorCode.FEED_NOT_FOUND)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(session.get.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_server_error_not_retried(self):
        session = fake_session(fake_response(500))
        with self.assertRaises(FeedError) as ctx:
            self.client(session).fetch(FEED_URL)
        self.assertEqual(ctx.exception.code, ErrorCode.FEED_HTTP)
        self.assertEqual(ctx.exception.status_code, 500)

    def test_invalid_channel_url_never_fetched(self):
        session = fake_session()
        channel = Channel(id="UCabc", username="singer", link="http://localhost/feed")
        with self.assertRaises(FeedError) as ctx:
            self.client(session).fetch_channel(channel)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)
        session.get.assert_not_called()

    def test_fetch_all_isolates_failures(self):
        session = fake_session(fake_response(404), fake_response(200, SAMPLE_FEED))
        gone = Channel(id="UCgone", username="gone",
                       link="https://www.youtube.com/feeds/videos.xml?channel_id=UCgone")
        live = Channel(id="UCabc", username="singer", link=FEED_URL)
        results = self.client(session, channel_delay_sec=1.5).fetch_all([gone, live])

        self.assertEqual(results[0].error.code, ErrorCode.FEED_NOT_FOUND)
        self.assertIsNone(results[0].document)
        self.assertEqual(len(results[1].document.entries), 2)
        self.assertEqual(self.sleeps, [1.5])

    def test_fetch_all_stops_when_asked(self):
        session = fake_session(fake_response(200, SAMPLE_FEED))
        live = Channel(id="UCabc", username="singer", link=FEED_URL)
        results = self.client(session).fetch_all([live, live], should_stop=lambda: True)
        self.assertEqual(results, [])

    def test_404_logging_suppressed(self):
        now = [0.0]
        tracker = Feed404Tracker(interval_sec=3600, clock=lambda: now[0])
        self.assertTrue(tracker.should_log("UCgone"))
        now[0] = 1800
        self.assertFalse(tracker.should_log("UCgone"))
        now[0] = 3601
        self.assertTrue(tracker.should_log("UCgone"))
        tracker.clear("UCgone")
        self.assertEqual(len(tracker), 0)


class TestDispatcher(unittest.TestCase):
    """Test candidate filtering and working-directory resolution."""

    PUBLISHED = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.download_dir = Path(self.tmp.name) / "download"
        self.channel = Channel(id="UCabc", username="singer", link=FEED_URL)
        self.store = MemoryStore(Snapshot(channels=[self.channel]))
        self.active = ActiveTable()
        self.skip_cache = AuthSkipCache()
        self.queue = RetryQueue(self.store, self.active)
        self.cookies = False
        self.dispatcher = Dispatcher(self.queue, self.active, self.skip_cache,
                                     self.download_dir,
                                     credentials_usable=lambda: self.cookies)

    def tearDown(self):
        self.tmp.cleanup()

    @property
    def channel_dir(self):
        return self.download_dir / "singer"

    def entry(self, title="Karaoke Night", video_id="vid1"):
        return FeedEntry(channel_id="UCabc", video_id=video_id, title=title,
                         link=f"https://www.youtube.com/watch?v={video_id}",
                         published=self.PUBLISHED)

    def offer(self, entry=None, finalized=None, **snapshot_fields):
        snapshot = self.store.load()
        for name, value in snapshot_fields.items():
            setattr(snapshot, name, value)
        return self.dispatcher.offer(entry or self.entry(), self.channel, snapshot, finalized)

    def existing_folder(self, name, files=None):
        folder = self.channel_dir / name
        folder.mkdir(parents=True)
        for file_name, size in (files or {}).items():
            (folder / file_name).write_bytes(b"\0" * size)
        return folder

    def test_queues_with_dated_folder(self):
        self.assertTrue(self.offer())
        job = self.queue.get("UCabc-vid1")
        expected = self.channel_dir / f"{date_prefix(self.PUBLISHED)}Karaoke Night"
        self.assertEqual(job.dir, str(expected))
        self.assertTrue(expected.is_dir())
        self.assertEqual(job.username, "singer")
        self.assertEqual(job.channel_name, "singer")
        self.assertEqual(job.video_link, "https://www.youtube.com/watch?v=vid1")

    def test_ignore_keywords_win(self):
        self.assertFalse(self.offer(ignore_keywords=["KARAOKE"]))
        self.assertIsNone(self.queue.get("UCabc-vid1"))

    def test_keyword_filter(self):
        self.assertFalse(self.offer(keywords=["asmr"]))
        self.assertTrue(self.offer(keywords=["asmr", "karaoke"]))

    def test_complete_folder_not_downloaded_again(self):
        self.existing_folder("[2023-12-31] Karaoke Night", {"Karaoke Night.mp4": 2 * MIB})
        self.assertFalse(self.offer())
        self.assertIsNone(self.queue.get("UCabc-vid1"))

    def test_incomplete_folder_resumed(self):
        folder = self.existing_folder("[12-31-2023] Karaoke Night",
                                      {"Karaoke Night.f299.mp4": 4096})
        self.assertTrue(self.offer())
        self.assertEqual(self.queue.get("UCabc-vid1").dir, str(folder))

    def test_metadata_only_folder_resumed(self):
        folder = self.existing_folder("[2023-12-31] Karaoke Night", {"Karaoke Night.png": 100})
        self.assertTrue(self.offer())
        self.assertEqual(self.queue.get("UCabc-vid1").dir, str(folder))

    def test_empty_folder_replaced(self):
        folder = self.existing_folder("[2023-12-31] Karaoke Night")
        self.assertTrue(self.offer())
        self.assertFalse(folder.exists())
        self.assertNotEqual(self.queue.get("UCabc-vid1").dir, str(folder))

    def test_skip_cache_respected_without_credentials(self):
        self.skip_cache.mark("vid1")
        self.assertFalse(self.offer())
        self.cookies = True
        self.assertTrue(self.offer())

    def test_finalized_video_not_requeued(self):
        self.assertFalse(self.offer(finalized={"vid1"}))

    def test_active_capture_not_requeued(self):
        job = self.queue.upsert("UCabc", "vid1", title="Karaoke Night")
        now = datetime.now(timezone.utc)
        self.active.add(ActiveDownload(id="d1", job=job, proc=mock.Mock(),
                                       dir=self.channel_dir, started_at=now,
                                       last_output_at=now))
        self.assertFalse(self.offer())

    def test_existing_job_keeps_dir_and_attempts(self):
        custom = str(self.channel_dir / "custom")
        self.queue.schedule_retry("UCabc", "vid1", "failed", dir=custom)
        self.assertTrue(self.offer())
        job = self.queue.get("UCabc-vid1")
        self.assertEqual(job.dir, custom)
        self.assertEqual(job.attempts, 1)

    def test_apply_scan(self):
        snapshot = self.store.load()
        snapshot.history.append(HistoryEntry(title="Morning Chat", status="skipped",
                                             reason="auth_failed_members_only",
                                             video_id="vid2", channel_id="UCabc"))
        self.store.save(snapshot)
        doc = FeedDocument("Singer Ch.", [self.entry(), self.entry("Morning Chat", "vid2")])
        failed = ChannelFeed(Channel(id="UCx", username="x", link=FEED_URL),
                             error=FeedError(ErrorCode.FEED_NOT_FOUND, "404", 404))

        offered = self.dispatcher.apply_scan([ChannelFeed(self.channel, doc), failed])
        self.assertEqual(offered, 1)
        self.assertEqual(self.store.load().channels[0].channel_name, "Singer Ch.")
        self.assertEqual(self.queue.get("UCabc-vid1").channel_name, "Singer Ch.")
        self.assertIsNone(self.queue.get("UCabc-vid2"))
        self.assertEqual(self.dispatcher.downloaded_count([self.channel]), 1)

    def test_matching_helpers(self):
        self.assertTrue(is_ignored("Members Only Karaoke", ["members only"]))
        self.assertFalse(is_ignored("Karaoke", ["", "asmr"]))
        self.assertTrue(matches_keywords("anything", []))
        self.assertTrue(matches_keywords("KARAOKE night", ["karaoke"]))

    def test_date_prefix_formats(self):
        moment = datetime(2024, 3, 5, 12, 0).astimezone()
        self.assertEqual(date_prefix(moment, DateFormat.YMD), "[2024-03-05] ")
        self.assertEqual(date_prefix(moment, DateFormat.MDY), "[03-05-2024] ")
        self.assertEqual(folder_title("[2024-03-05] Karaoke Night"), "Karaoke Night")
        self.assertEqual(folder_title("[03-05-2024] Karaoke Night"), "Karaoke Night")
        self.assertEqual(folder_title("Karaoke Night"), "Karaoke Night")


class FakeFfmpeg:
    """Records invocations; writes the output file when told to succeed."""

    def __init__(self, returncode=0, stderr=""):
        self.returncode = returncode
        self.stderr = stderr
        self.calls = []

    def __call__(self, args, timeout=None):
        self.calls.append(args)
        if self.returncode == 0:
            Path(args[-1]).write_bytes(b"\0" * 2048)
        return subprocess.CompletedProcess(args, self.returncode, "", self.stderr)


class TestFragmentMerger(unittest.TestCase):
    """Test fragment pairing, ffmpeg invocation and cleanup."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.folder = self.root / "singer" / "[2024-01-02] Title"
        self.folder.mkdir(parents=True)
        self.sleeps = []

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, size=4096):
        (self.folder / name).write_bytes(b"\0" * size)

    def merger(self, ffmpeg):
        return FragmentMerger(self.root, run=ffmpeg, sleep=self.sleeps.append)

    def test_pair_merged_and_fragments_removed(self):
        self.write("Title.f299.mp4", 8192)
        self.write("Title.f140.mp4", 2048)
        self.write("Title.f299.mp4.ytdl", 10)
        self.write("Title.f299.mp4-Frag12", 10)
        self.write("Title.png", 10)
        ffmpeg = FakeFfmpeg()

        results = self.merger(ffmpeg).merge_folder(self.folder)
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].ok)
        self.assertEqual(results[0].output, "Title.mp4")

        args = ffmpeg.calls[0]
        self.assertEqual(args[args.index("-c") + 1], "copy")
        self.assertEqual(args[-1], str(self.folder / "Title.mp4"))
        self.assertEqual(sorted(p.name for p in self.folder.iterdir()),
                         ["Title.mp4", "Title.png"])

    def test_webm_video_merged_to_mkv(self):
        self.write("Show.f248.webm")
        self.write("Show.f251.webm")
        ffmpeg = FakeFfmpeg()
        results = self.merger(ffmpeg).merge_folder(self.folder)
        self.assertEqual(results[0].output, "Show.mkv")
        self.assertTrue((self.folder / "Show.mkv").exists())

    def test_largest_fragment_chosen(self):
        self.write("Title.f299.mp4", 100_000)
        self.write("Title.f136.mp4", 5_000)
        self.write("Title.f140.mp4", 3_000)
        ffmpeg = FakeFfmpeg()
        self.merger(ffmpeg).merge_folder(self.folder)
        args = ffmpeg.calls[0]
        self.assertEqual(args[args.index("-i") + 1], str(self.folder / "Title.f299.mp4"))

    def test_failed_merge_prunes_only_tiny_fragments(self):
        self.write("Title.f299.mp4", 100)
        self.write("Title.f299.mp4.ytdl", 10)
        self.write("Title.f140.mp4", 4096)
        ffmpeg = FakeFfmpeg(returncode=1, stderr="moov atom not found")

        results = self.merger(ffmpeg).merge_folder(self.folder)
        self.assertFalse(results[0].ok)
        self.assertIn("moov atom", results[0].error)
        self.assertFalse((self.folder / "Title.f299.mp4").exists())
        self.assertFalse((self.folder / "Title.f299.mp4.ytdl").exists())
        self.assertTrue((self.folder / "Title.f140.mp4").exists())

    def test_folder_with_final_video_skipped(self):
        self.write("Title.mp4", 2 * MIB)
        self.write("Title.f299.mp4")
        self.write("Title.f140.mp4")
        ffmpeg = FakeFfmpeg()
        self.assertEqual(self.merger(ffmpeg).merge_folder(self.folder), [])
        self.assertEqual(ffmpeg.calls, [])

    def test_unpaired_fragment_left_alone(self):
        self.write("Title.f299.mp4")
        ffmpeg = FakeFfmpeg()
        self.assertEqual(self.merger(ffmpeg).merge_folder(self.folder), [])
        self.assertTrue((self.folder / "Title.f299.mp4").exists())

    def test_merge_all_walks_download_tree(self):
        self.write("Title.f299.mp4")
        self.write("Title.f140.mp4")
        (self.root / "singer" / "[2024-01-01] Done").mkdir()
        ffmpeg = FakeFfmpeg()
        results = self.merger(ffmpeg).merge_all()
        self.assertEqual([r.folder for r in results], [self.folder])

    def test_busy_fragment_deletion_retried(self):
        self.write("Title.f299.mp4")
        self.write("Title.f140.mp4")
        real_unlink = Path.unlink
        failures = {"Title.f299.mp4": 1}

        def flaky_unlink(path, missing_ok=False):
            if failures.get(path.name):
                failures[path.name] -= 1
                raise PermissionError("file in use")
            return real_unlink(path, missing_ok=missing_ok)

        with mock.patch.object(Path, "unlink", flaky_unlink):
            self.merger(FakeFfmpeg()).merge_folder(self.folder)

        self.assertEqual(self.sleeps, [2.0])
        self.assertFalse((self.folder / "Title.f299.mp4").exists())


class TestPushoverNotifier(unittest.TestCase):
    """Notifications are best effort."""

    def test_disabled_without_tokens(self):
        session = mock.Mock()
        self.assertFalse(PushoverNotifier("", "user", session=session).send("t", "m"))
        session.post.assert_not_called()

    def test_sends_message(self):
        session = mock.Mock()
        session.post.return_value = fake_response(200)
        notifier = PushoverNotifier("app", "user", session=session)
        self.assertTrue(notifier("ArchivedV", "Downloaded: Karaoke Night"))
        data = session.post.call_args.kwargs["data"]
        self.assertEqual(data["message"], "Downloaded: Karaoke Night")
        self.assertEqual(data["token"], "app")

    def test_failure_reported_not_raised(self):
        session = mock.Mock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        self.assertFalse(PushoverNotifier("app", "user", session=session).send("t", "m"))
        session.post.return_value = fake_response(500, "error")
        session.post.side_effect = None
        self.assertFalse(PushoverNotifier("app", "user", session=session).send("t", "m"))


if __name__ == "__main__":
    unittest.main()
