"""
Authentication handling for capture attempts.
- Classifies yt-dlp diagnostics that mean "this needs a signed-in account"
- Decides whether the cookies file is usable
- Keeps a TTL-bounded in-memory skip list for inaccessible videos
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from archivedv.core.constants import (
    AUTH_REQUIRED, AuthReason, AUTH_SKIP_TTL_SEC, AUTH_SKIP_CACHE_MAX,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthFailure:
    kind: str
    reason: str


# Ordered (all substrings must appear, reason). First match wins.
# The private-video message differs with and without cookies; both map
# to the same reason.
AUTH_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("private video", "sign in"), AuthReason.PRIVATE_VIDEO),
    (("video unavailable", "this video is private"), AuthReason.PRIVATE_VIDEO),
    (("this video is available to this channel's members",), AuthReason.MEMBERS_ONLY),
    (("join this channel", "access"), AuthReason.MEMBERS_ONLY),
    (("sign in", "you've been granted access"), AuthReason.PRIVATE_VIDEO),
    (("confirm your age",), AuthReason.AGE_RESTRICTED),
    (("age-restricted",), AuthReason.AGE_RESTRICTED),
)


def classify_auth_failure(text: str | None) -> AuthFailure | None:
    """Map diagnostic text to an auth-required classification, or None."""
    t = str(text or "").lower()
    if not t:
        return None
    for needles, reason in AUTH_RULES:
        if all(n in t for n in needles):
            return AuthFailure(AUTH_REQUIRED, reason)
    return None


class AuthSkipCache:
    """
    video id -> expiry time, in memory only.  Skipped videos never reach
    the persisted history.
    """

    def __init__(self, ttl_sec: float = AUTH_SKIP_TTL_SEC,
                 max_entries: int = AUTH_SKIP_CACHE_MAX,
                 clock: Callable[[], float] = time.time):
        self.ttl_sec = ttl_sec
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, video_id) -> bool:
        return self.is_skipped(video_id)

    def mark(self, video_id: str) -> None:
        if not video_id:
            return
        self._entries.pop(video_id, None)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[video_id] = self._clock() + self.ttl_sec

    def is_skipped(self, video_id: str) -> bool:
        if not video_id:
            return False
        expires_at = self._entries.get(video_id)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            del self._entries[video_id]
            return False
        return True

    def clear(self) -> None:
        self._entries.clear()


def cookies_usable(use_cookies: bool, cookies_path: Path) -> bool:
    """Cookies count only when enabled in the document and the file exists."""
    if not use_cookies:
        return False
    try:
        return cookies_path.is_file()
    except OSError:
        return False


def ytdlp_auth_args(usable: bool, cookies_path: Path) -> list[str]:
    if not usable:
        return []
    return ["--cookies", str(cookies_path)]
