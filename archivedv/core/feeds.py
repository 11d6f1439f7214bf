"""
YouTube channel feed client.
Fetches the Atom feed for each watched channel with bounded retries and
turns it into FeedEntry candidates.
"""

import calendar
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import feedparser
import requests

from archivedv.core.constants import (
    APP_NAME, APP_VERSION,
    FEED_FETCH_RETRIES, FEED_FETCH_BACKOFF_SEC, FEED_TIMEOUT_SEC,
    FEED_CHANNEL_DELAY_SEC, FEED_404_LOG_INTERVAL_SEC, VIDEO_URL_TEMPLATE,
)
from archivedv.core.error_codes import ErrorCode, FeedError
from archivedv.core.models import Channel, FeedEntry
from archivedv.core.security_utils import is_valid_feed_url

logger = logging.getLogger(__name__)


@dataclass
class FeedDocument:
    channel_name: Optional[str] = None
    entries: list[FeedEntry] = field(default_factory=list)


@dataclass
class ChannelFeed:
    """Result of one channel fetch within a scan; `document` is None on failure."""
    channel: Channel
    document: Optional[FeedDocument] = None
    error: Optional[FeedError] = None


def _published(entry) -> Optional[datetime]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)


def parse_feed(text: str, channel_id: str) -> FeedDocument:
    """Read a channel's Atom feed into FeedEntry tuples plus the channel display name."""
    parsed = feedparser.parse(text)
    if parsed.get("bozo") and not parsed.entries and not parsed.feed:
        raise FeedError(ErrorCode.FEED_PARSE,
                        f"Unreadable feed: {parsed.get('bozo_exception')}")

    entries = []
    for entry in parsed.entries:
        video_id = entry.get("yt_videoid")
        title = entry.get("title")
        if not video_id or title is None:
            continue
        entries.append(FeedEntry(
            channel_id=channel_id,
            video_id=video_id,
            title=title,
            link=entry.get("link") or VIDEO_URL_TEMPLATE.format(video_id=video_id),
            published=_published(entry),
        ))

    channel_name = parsed.feed.get("author") or None
    return FeedDocument(channel_name=channel_name, entries=entries)


class Feed404Tracker:
    """Suppresses repeated 404 warnings for the same channel."""

    def __init__(self, interval_sec: float = FEED_404_LOG_INTERVAL_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.interval_sec = interval_sec
        self._clock = clock
        self._last_logged: dict[str, float] = {}

    def __len__(self):
        return len(self._last_logged)

    def should_log(self, channel_id: str) -> bool:
        now = self._clock()
        last = self._last_logged.get(channel_id)
        if last is None or now - last >= self.interval_sec:
            self._last_logged[channel_id] = now
            return True
        return False

    def clear(self, channel_id: str):
        self._last_logged.pop(channel_id, None)


class FeedClient:

    def __init__(self, session: requests.Session | None = None,
                 retries: int = FEED_FETCH_RETRIES,
                 backoff_sec: float = FEED_FETCH_BACKOFF_SEC,
                 timeout_sec: float = FEED_TIMEOUT_SEC,
                 channel_delay_sec: float = FEED_CHANNEL_DELAY_SEC,
                 sleep: Callable[[float], None] = time.sleep,
                 rng=random):
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", f"{APP_NAME}/{APP_VERSION}")
        self.retries = retries
        self.backoff_sec = backoff_sec
        self.timeout_sec = timeout_sec
        self.channel_delay_sec = channel_delay_sec
        self._sleep = sleep
        self._rng = rng
        self.not_found = Feed404Tracker()

    def fetch(self, url: str, label: str = "") -> str:
        """
        GET the feed body.  Timeouts and connection errors are retried with
        jittered exponential backoff; 404 and other HTTP errors are not.
        """
        for attempt in range(self.retries + 1):
            try:
                resp = self.session.get(url, timeout=self.timeout_sec)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt >= self.retries:
                    raise FeedError(ErrorCode.FEED_TRANSIENT,
                                    f"Feed unreachable after {self.retries} retries: {e}")
                delay = self.backoff_sec * (2 ** attempt)
                delay *= 1 + self._rng.uniform(-0.1, 0.1)
                logger.warning("Feed fetch retry %d/%d for %s after %.1fs (%s)",
                               attempt + 1, self.retries, label or url, delay,
                               type(e).__name__)
                self._sleep(delay)
                continue
            except requests.exceptions.RequestException as e:
                raise FeedError(ErrorCode.FEED_HTTP, f"Feed request failed: {e}")

            if resp.status_code == 404:
                raise FeedError(ErrorCode.FEED_NOT_FOUND, "Feed returned 404", status_code=404)
            if not 200 <= resp.status_code < 300:
                raise FeedError(ErrorCode.FEED_HTTP,
                                f"Feed returned {resp.status_code}",
                                status_code=resp.status_code)
            return resp.text

        raise FeedError(ErrorCode.FEED_TRANSIENT, "Feed request exhausted retries")

    def fetch_channel(self, channel: Channel) -> FeedDocument:
        if not is_valid_feed_url(channel.link):
            raise FeedError(ErrorCode.INVALID_URL, f"Invalid channel URL: {channel.link}")
        text = self.fetch(channel.link, channel.username or channel.id)
        self.not_found.clear(channel.id)
        return parse_feed(text, channel.id)

    def fetch_all(self, channels: list[Channel],
                  should_stop: Callable[[], bool] = lambda: False) -> list[ChannelFeed]:
        """Fetch every channel in turn, pausing between requests. Never raises FeedError."""
        results = []
        for i, channel in enumerate(channels):
            if should_stop():
                break
            if i and self.channel_delay_sec:
                self._sleep(self.channel_delay_sec)
            try:
                results.append(ChannelFeed(channel, self.fetch_channel(channel)))
            except FeedError as e:
                self._log_failure(channel, e)
                results.append(ChannelFeed(channel, error=e))

        if len(self.not_found):
            logger.info("Feed check complete. %d channel(s) returning 404 "
                        "(suppressing repeated logs).", len(self.not_found))
        return results

    def _log_failure(self, channel: Channel, error: FeedError):
        name = channel.username or channel.id
        if error.code == ErrorCode.FEED_NOT_FOUND:
            if self.not_found.should_log(channel.id):
                logger.warning("Feed 404 for channel %s (%s). Skipping this cycle "
                               "(will suppress repeated logs for 1h).", name, channel.id)
        elif error.code == ErrorCode.FEED_TRANSIENT:
            logger.warning("Timeout fetching feed for channel %s", name)
        else:
            logger.error("Feed error for channel %s: %s", name, error.message)
