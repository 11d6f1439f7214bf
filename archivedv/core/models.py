"""
Data models (plain dataclasses) for ArchivedV.

Persisted records serialise to the camelCase keys of the db.json document.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional

from archivedv.core.constants import DateFormat


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (a trailing 'Z' is accepted)."""
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def make_retry_key(channel_id: str, video_id: str) -> str:
    return f"{channel_id}-{video_id}"


def _legacy_video_id(download_id: str, channel_id: str | None) -> str | None:
    """Video id from an old "<channel>-<videoId>-<timestamp>" download id."""
    if channel_id and download_id.startswith(f"{channel_id}-"):
        rest = download_id[len(channel_id) + 1:]
        return rest.rsplit("-", 1)[0] if "-" in rest else rest or None
    parts = download_id.split("-")
    return parts[1] if len(parts) > 1 else None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class _Record:
    """camelCase dict round-tripping for the persisted dataclasses."""

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.metadata.get("omit_none"):
                continue
            out[_camel(f.name)] = value
        return out

    @classmethod
    def from_dict(cls, data: dict):
        known = {_camel(f.name): f.name for f in fields(cls)}
        kwargs = {known[k]: v for k, v in (data or {}).items() if k in known}
        return cls(**kwargs)


@dataclass
class RetryJob(_Record):
    key: str
    channel_id: str
    video_id: str
    title: str = ""
    username: str = ""
    channel_name: str = ""
    video_link: str = ""
    dir: str = ""
    attempts: int = 0
    last_error: str = ""
    next_attempt_at: Optional[str] = None
    in_progress: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_attempt_at: Optional[str] = field(default=None, metadata={"omit_none": True})

    @property
    def due_at(self) -> datetime:
        return parse_iso(self.next_attempt_at) or datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class CurrentDownload(_Record):
    """Persisted snapshot of an in-flight capture (the document's currentDownloads)."""
    id: str
    channel: str
    video_id: str
    title: str = ""
    username: str = ""
    channel_name: str = ""
    video_link: str = ""
    dir: str = ""
    start_time: Optional[str] = None

    @property
    def key(self) -> str:
        return make_retry_key(self.channel, self.video_id)


@dataclass
class HistoryEntry(_Record):
    title: str
    time: str = ""
    note: Optional[str] = field(default=None, metadata={"omit_none": True})
    status: Optional[str] = field(default=None, metadata={"omit_none": True})
    reason: Optional[str] = field(default=None, metadata={"omit_none": True})
    video_id: Optional[str] = field(default=None, metadata={"omit_none": True})
    channel_id: Optional[str] = field(default=None, metadata={"omit_none": True})


@dataclass
class Channel(_Record):
    id: str
    username: str
    link: str
    channel_name: Optional[str] = field(default=None, metadata={"omit_none": True})


@dataclass
class FeedEntry:
    """One candidate from a channel feed."""
    channel_id: str
    video_id: str
    title: str
    link: str
    published: Optional[datetime] = None


@dataclass
class Snapshot:
    """The whole persisted document."""
    channels: list[Channel] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    ignore_keywords: list[str] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    current_downloads: list[CurrentDownload] = field(default_factory=list)
    retry_queue: list[RetryJob] = field(default_factory=list)
    date_format: str = DateFormat.YMD
    use_cookies: bool = False
    ytdlp_flags: str = ""

    def find_job(self, key: str) -> RetryJob | None:
        for job in self.retry_queue:
            if job.key == key:
                return job
        return None

    def remove_job(self, key: str) -> bool:
        before = len(self.retry_queue)
        self.retry_queue = [j for j in self.retry_queue if j.key != key]
        return len(self.retry_queue) != before

    def to_dict(self) -> dict:
        return {
            "channels": [c.to_dict() for c in self.channels],
            "keywords": list(self.keywords),
            "ignoreKeywords": list(self.ignore_keywords),
            "history": [h.to_dict() for h in self.history],
            "currentDownloads": [d.to_dict() for d in self.current_downloads],
            "retryQueue": [j.to_dict() for j in self.retry_queue],
            "dateFormat": self.date_format,
            "auth": {"useCookies": self.use_cookies},
            "ytdlpFlags": self.ytdlp_flags,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        data = data or {}
        auth = data.get("auth") or {}
        current = []
        for raw in data.get("currentDownloads") or []:
            raw = dict(raw)
            # Older documents only carried the id "<channel>-<videoId>-<ts>"
            if not raw.get("videoId") and isinstance(raw.get("id"), str):
                raw["videoId"] = _legacy_video_id(raw["id"], raw.get("channel"))
            if raw.get("id") and raw.get("channel") and raw.get("videoId"):
                current.append(CurrentDownload.from_dict(raw))
        return cls(
            channels=[Channel.from_dict(c) for c in data.get("channels") or []],
            keywords=[str(k) for k in data.get("keywords") or []],
            ignore_keywords=[str(k) for k in data.get("ignoreKeywords") or []],
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []
                     if h.get("title") is not None],
            current_downloads=current,
            retry_queue=[RetryJob.from_dict(j) for j in data.get("retryQueue") or []
                         if j.get("key") and j.get("channelId") and j.get("videoId")],
            date_format=data.get("dateFormat") or DateFormat.YMD,
            use_cookies=auth.get("useCookies") is True,
            ytdlp_flags=data.get("ytdlpFlags") if isinstance(data.get("ytdlpFlags"), str) else "",
        )
