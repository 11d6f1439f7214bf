"""
Retry queue: the persisted list of capture jobs waiting for their next
attempt, and the single place that decides whether a job is due and
whether another capture may start.

Every mutation loads a fresh snapshot from the store, edits it and saves
it whole.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable

from archivedv.core.constants import (
    RETRY_BASE_DELAY_SEC, RETRY_MAX_DELAY_SEC, RETRY_MAX_EXPONENT,
    RETRY_JITTER_RATIO, RETRY_JITTER_MAX_SEC, MAX_CONCURRENT_DOWNLOADS,
    VIDEO_URL_TEMPLATE,
)
from archivedv.core.error_codes import ErrorCode
from archivedv.core.models import (
    CurrentDownload, HistoryEntry, RetryJob, make_retry_key, parse_iso, to_iso, utc_now,
)
from archivedv.core.store import Store

logger = logging.getLogger(__name__)

_IDENTITY_FIELDS = ("title", "username", "channel_name", "video_link", "dir")


# ── Backoff ──────────────────────────────────────────────────────────

def compute_delay(attempts: int, base_delay: float = RETRY_BASE_DELAY_SEC,
                  max_delay: float = RETRY_MAX_DELAY_SEC) -> float:
    """Exponential delay with a ceiling; the exponent is capped to avoid overflow."""
    exp = min(RETRY_MAX_EXPONENT, max(0, int(attempts)))
    return min(max_delay, base_delay * (2 ** exp))


def jitter(delay: float, rng=random) -> float:
    """Perturb a delay by at most 10% (and never more than the absolute cap)."""
    spread = min(RETRY_JITTER_MAX_SEC, delay * RETRY_JITTER_RATIO)
    return max(0.0, delay + rng.uniform(-spread, spread))


def next_attempt_at(attempts: int, now: datetime,
                    base_delay: float = RETRY_BASE_DELAY_SEC,
                    max_delay: float = RETRY_MAX_DELAY_SEC,
                    rng=random) -> str:
    delay = jitter(compute_delay(attempts, base_delay, max_delay), rng)
    return to_iso(now + timedelta(seconds=delay))


class RetryQueue:
    """
    Owns the backoff schedule and admission.

    `active` is the supervisor's table of live captures; the queue only
    reads it (len() and `has_key`).
    """

    def __init__(self, store: Store, active,
                 max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
                 base_delay: float = RETRY_BASE_DELAY_SEC,
                 max_delay: float = RETRY_MAX_DELAY_SEC,
                 clock: Callable[[], datetime] = utc_now,
                 rng=random):
        self.store = store
        self.active = active
        self.max_concurrent = max_concurrent
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._rng = rng

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, key: str) -> RetryJob | None:
        return self.store.load().find_job(key)

    def all_jobs(self) -> list[RetryJob]:
        return self.store.load().retry_queue

    def due_jobs(self, now: datetime | None = None) -> list[RetryJob]:
        """Jobs not in progress whose nextAttemptAt has passed, oldest-due first."""
        now = now or self._clock()
        jobs = [j for j in self.store.load().retry_queue
                if not j.in_progress and j.due_at <= now]
        return sorted(jobs, key=lambda j: j.due_at)

    def counts(self, now: datetime | None = None) -> dict:
        jobs = self.store.load().retry_queue
        return {"total": len(jobs), "due": len(self.due_jobs(now))}

    def can_start(self) -> bool:
        if not self.max_concurrent:
            return True
        return len(self.active) < self.max_concurrent

    def compute_next_attempt(self, attempts: int) -> str:
        return next_attempt_at(attempts, self._clock(), self.base_delay,
                               self.max_delay, self._rng)

    # ── Mutations ─────────────────────────────────────────────────────

    def upsert(self, channel_id: str, video_id: str, **fields) -> RetryJob:
        """
        Insert a job or merge fields into the existing one (last write wins
        per field).  updatedAt is always refreshed.  A new job is due now
        unless the caller says otherwise.
        """
        now = to_iso(self._clock())
        key = make_retry_key(channel_id, video_id)
        snapshot = self.store.load()
        job = snapshot.find_job(key)

        if job is None:
            job = RetryJob(key=key, channel_id=channel_id, video_id=video_id,
                           next_attempt_at=now, created_at=now)
            snapshot.retry_queue.append(job)

        for name, value in fields.items():
            if not hasattr(job, name) or name in ("key", "channel_id", "video_id"):
                raise TypeError(f"Unknown retry job field: {name}")
            setattr(job, name, value)
        job.updated_at = now

        self.store.save(snapshot)
        return job

    def schedule_retry(self, channel_id: str, video_id: str, reason: str,
                       **identity) -> RetryJob:
        """Count one more failed attempt and push the job out by the backoff delay."""
        existing = self.get(make_retry_key(channel_id, video_id))
        attempts = (existing.attempts if existing else 0) + 1
        identity = {k: v for k, v in identity.items() if k in _IDENTITY_FIELDS and v}
        return self.upsert(
            channel_id, video_id,
            attempts=attempts,
            last_error=reason,
            next_attempt_at=self.compute_next_attempt(attempts),
            in_progress=False,
            **identity,
        )

    def remove(self, key: str) -> bool:
        snapshot = self.store.load()
        removed = snapshot.remove_job(key)
        if removed:
            self.store.save(snapshot)
        return removed

    def finalize(self, key: str, entry: HistoryEntry | None = None) -> None:
        """Drop the job and, when given, record a history entry, in one save."""
        snapshot = self.store.load()
        snapshot.remove_job(key)
        if entry is not None:
            snapshot.history.append(entry)
        self.store.save(snapshot)

    def release(self, download_id: str) -> None:
        """Forget the persisted in-flight marker of a finished capture."""
        snapshot = self.store.load()
        before = len(snapshot.current_downloads)
        snapshot.current_downloads = [d for d in snapshot.current_downloads
                                      if d.id != download_id]
        if len(snapshot.current_downloads) != before:
            self.store.save(snapshot)

    def admit(self, job: RetryJob, launch: Callable[[RetryJob], CurrentDownload]) -> bool:
        """
        Start `job` if the concurrency cap allows and nothing is already
        capturing the same key.  `launch` registers the live process and
        returns its in-flight snapshot; the job's inProgress flag and the
        snapshot are persisted together.
        """
        if not self.can_start():
            return False
        if self.active.has_key(job.key):
            return False

        current = launch(job)

        now = to_iso(self._clock())
        snapshot = self.store.load()
        stored = snapshot.find_job(job.key)
        if stored is None:
            stored = job
            snapshot.retry_queue.append(stored)
        if job.dir and not stored.dir:
            stored.dir = job.dir
        if job.video_link and not stored.video_link:
            stored.video_link = job.video_link
        stored.in_progress = True
        stored.last_attempt_at = now
        stored.updated_at = now
        snapshot.current_downloads = [d for d in snapshot.current_downloads
                                      if d.id != current.id]
        snapshot.current_downloads.append(current)
        self.store.save(snapshot)
        return True

    # ── Sweep ─────────────────────────────────────────────────────────

    def dedupe(self) -> int:
        """Collapse duplicate keys, keeping the most recently updated record."""
        snapshot = self.store.load()
        latest: dict[str, RetryJob] = {}
        for job in snapshot.retry_queue:
            kept = latest.get(job.key)
            if kept is None or (parse_iso(job.updated_at) or job.due_at) > \
                    (parse_iso(kept.updated_at) or kept.due_at):
                latest[job.key] = job
        removed = len(snapshot.retry_queue) - len(latest)
        if removed:
            snapshot.retry_queue = list(latest.values())
            self.store.save(snapshot)
            logger.info("Deduplicated retry queue: %d unique jobs", len(latest))
        return removed

    def repair_stale_flags(self) -> int:
        """Reset inProgress on jobs that no live process is working on."""
        now = to_iso(self._clock())
        snapshot = self.store.load()
        reset = 0
        for job in snapshot.retry_queue:
            if job.in_progress and not self.active.has_key(job.key):
                job.in_progress = False
                job.updated_at = now
                reset += 1
        if reset:
            self.store.save(snapshot)
            logger.info("Reset %d stale inProgress flag(s) in retry queue", reset)
        return reset

    def recover_interrupted(self) -> int:
        """
        Turn persisted in-flight markers left by a previous run into due
        jobs.  Processes never survive a restart, so every marker is stale.
        """
        snapshot = self.store.load()
        stale = list(snapshot.current_downloads)
        if not stale:
            return 0

        now = to_iso(self._clock())
        for dl in stale:
            job = snapshot.find_job(dl.key)
            if job is None:
                job = RetryJob(key=dl.key, channel_id=dl.channel, video_id=dl.video_id,
                               created_at=now)
                snapshot.retry_queue.append(job)
            job.title = dl.title or job.title
            job.username = dl.username or job.username
            job.channel_name = dl.channel_name or dl.username or job.channel_name
            job.video_link = (dl.video_link or job.video_link
                              or VIDEO_URL_TEMPLATE.format(video_id=dl.video_id))
            job.dir = dl.dir or job.dir
            job.last_error = "Recovered after restart"
            job.next_attempt_at = now
            job.in_progress = False
            job.updated_at = now
        snapshot.current_downloads = []
        self.store.save(snapshot)
        logger.info("Recovered %d interrupted download(s) into the retry queue", len(stale))
        return len(stale)

    def sweep(self, launch: Callable[[RetryJob], CurrentDownload],
              is_excluded: Callable[[str], bool] = lambda title: False) -> int:
        """
        One pass over the queue: dedupe, repair stale flags, then start due
        jobs in nextAttemptAt order while capacity allows.  Returns the
        number of captures started.
        """
        self.dedupe()
        self.repair_stale_flags()

        started = 0
        for job in self.due_jobs():
            if is_excluded(job.title):
                self.remove(job.key)
                logger.info('Skipping retry for "%s" - matches ignore keyword', job.title)
                continue

            if not self.can_start():
                break

            if self.active.has_key(job.key):
                self.upsert(job.channel_id, job.video_id, in_progress=True)
                logger.info('Skipping retry queue job for "%s" - already downloading', job.title)
                continue

            try:
                if self.admit(job, launch):
                    started += 1
            except Exception as e:
                logger.error('Could not start capture for "%s": %s', job.title, e, exc_info=True)
                self.schedule_retry(job.channel_id, job.video_id,
                                    f"[{ErrorCode.CAPTURE_LAUNCH}] {e}")
        return started
