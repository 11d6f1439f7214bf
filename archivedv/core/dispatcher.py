"""
Dispatcher: turns feed candidates into retry-queue entries.

Nothing here starts a process; the retry sweep that follows a scan
admits whatever became due.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from archivedv.core.auth import AuthSkipCache
from archivedv.core.cleanup import safe_cleanup_directory
from archivedv.core.constants import DateFormat, FolderState, HistoryStatus
from archivedv.core.feeds import ChannelFeed
from archivedv.core.folder_state import inspect_folder
from archivedv.core.models import Channel, FeedEntry, Snapshot, make_retry_key, utc_now
from archivedv.core.retry_queue import RetryQueue
from archivedv.core.security_utils import sanitize_title

logger = logging.getLogger(__name__)

DATE_PREFIX_RE = re.compile(r"^\[\d{2,4}-\d{2}-\d{2,4}\]\s*")


# ── Matching ──────────────────────────────────────────────────────────

def is_ignored(title: str, ignore_keywords: list[str]) -> bool:
    t = (title or "").lower()
    return any(k.lower() in t for k in ignore_keywords if k)


def matches_keywords(title: str, keywords: list[str]) -> bool:
    """With no keywords configured every title matches."""
    wanted = [k.lower() for k in keywords if k]
    if not wanted:
        return True
    t = (title or "").lower()
    return any(k in t for k in wanted)


# ── Folder naming ─────────────────────────────────────────────────────

def date_prefix(published: datetime | None, date_format: str = DateFormat.YMD) -> str:
    moment = (published or utc_now()).astimezone()
    if date_format == DateFormat.MDY:
        return f"[{moment:%m-%d-%Y}] "
    return f"[{moment:%Y-%m-%d}] "


def folder_title(folder_name: str) -> str:
    """Folder name with its date prefix (either format) removed."""
    return DATE_PREFIX_RE.sub("", folder_name)


@dataclass
class FolderDecision:
    dir: Path | None
    already_downloaded: bool = False
    resumed: bool = False


def resolve_workdir(channel_dir: Path, title: str, published: datetime | None,
                    date_format: str) -> FolderDecision:
    """
    Pick the working directory for a candidate.  An existing folder for the
    same title wins over a fresh one: complete means nothing to do,
    incomplete or metadata-only is resumed, empty is removed.
    """
    safe_title = sanitize_title(title) or "untitled"
    fresh = channel_dir / f"{date_prefix(published, date_format)}{safe_title}"

    try:
        folders = sorted(p for p in channel_dir.iterdir() if p.is_dir())
    except FileNotFoundError:
        folders = []

    for folder in folders:
        if folder_title(folder.name) != safe_title:
            continue
        kind = inspect_folder(folder).kind
        if kind == FolderState.COMPLETE:
            return FolderDecision(None, already_downloaded=True)
        if kind in (FolderState.INCOMPLETE, FolderState.METADATA):
            return FolderDecision(folder, resumed=True)
        if kind == FolderState.EMPTY:
            logger.info("Removing empty folder: %s", folder)
            safe_cleanup_directory(folder, "empty folder for matched title")

    return FolderDecision(fresh)


# ── Dispatcher ────────────────────────────────────────────────────────

class Dispatcher:

    def __init__(self, queue: RetryQueue, active, skip_cache: AuthSkipCache,
                 download_dir: Path,
                 credentials_usable: Callable[[], bool] = lambda: False):
        self.queue = queue
        self.active = active
        self.skip_cache = skip_cache
        self.download_dir = Path(download_dir)
        self.credentials_usable = credentials_usable

    def offer(self, entry: FeedEntry, channel: Channel, snapshot: Snapshot,
              finalized: set[str] | None = None) -> bool:
        """
        Enqueue one feed candidate if it is wanted and not already handled.
        Returns True when a retry job was created or refreshed.
        """
        title = entry.title
        if is_ignored(title, snapshot.ignore_keywords):
            return False
        if not matches_keywords(title, snapshot.keywords):
            return False

        if entry.video_id in (finalized or set()):
            return False
        if entry.video_id in self.skip_cache and not self.credentials_usable():
            return False

        key = make_retry_key(channel.id, entry.video_id)
        if self.active.has_key(key):
            return False

        channel_dir = self.download_dir / sanitize_title(channel.username or channel.id)
        decision = resolve_workdir(channel_dir, title, entry.published, snapshot.date_format)
        if decision.already_downloaded:
            return False
        if decision.resumed:
            logger.info('Resuming "%s" in existing folder %s', title, decision.dir)

        existing = self.queue.get(key)
        workdir = Path(existing.dir) if existing and existing.dir else decision.dir
        workdir.mkdir(parents=True, exist_ok=True)
        self.queue.upsert(
            channel.id, entry.video_id,
            title=title,
            username=channel.username,
            channel_name=channel.channel_name or channel.username,
            video_link=entry.link,
            dir=str(workdir),
        )
        if existing is None:
            logger.info('Queued "%s" from %s', title, channel.username)
        return True

    def apply_scan(self, results: list[ChannelFeed]) -> int:
        """Apply one scan's worth of feed results. Returns the number of jobs offered."""
        self._update_channel_names(results)

        snapshot = self.queue.store.load()
        finalized = {h.video_id for h in snapshot.history
                     if h.status == HistoryStatus.SKIPPED and h.video_id}
        offered = 0
        for result in results:
            if result.document is None:
                continue
            channel = next((c for c in snapshot.channels if c.id == result.channel.id),
                           result.channel)
            for entry in result.document.entries:
                try:
                    if self.offer(entry, channel, snapshot, finalized):
                        offered += 1
                except OSError as e:
                    logger.error('Could not queue "%s": %s', entry.title, e, exc_info=True)
        return offered

    def _update_channel_names(self, results: list[ChannelFeed]):
        snapshot = self.queue.store.load()
        changed = False
        for result in results:
            name = result.document.channel_name if result.document else None
            if not name:
                continue
            for channel in snapshot.channels:
                if channel.id == result.channel.id and channel.channel_name != name:
                    channel.channel_name = name
                    changed = True
        if changed:
            self.queue.store.save(snapshot)

    def downloaded_count(self, channels: list[Channel]) -> int:
        """Number of per-video folders across all channel directories."""
        total = 0
        for channel in channels:
            channel_dir = self.download_dir / sanitize_title(channel.username or channel.id)
            try:
                total += sum(1 for p in channel_dir.iterdir() if p.is_dir())
            except FileNotFoundError:
                continue
        return total
