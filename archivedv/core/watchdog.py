"""
Stuck-process watchdog.
"""

import logging
from datetime import datetime
from typing import Callable

from archivedv.core.constants import WATCHDOG_NO_OUTPUT_SEC, WATCHDOG_MIN_RUNTIME_SEC
from archivedv.core.error_codes import ErrorCode
from archivedv.core.models import utc_now
from archivedv.core.outcome import TrackerState
from archivedv.core.supervisor import ActiveDownload, ProcessSupervisor

logger = logging.getLogger(__name__)


class Watchdog:
    """
    Periodic sweep over live captures.  A process that has been running
    past the grace period and printed nothing for too long is terminated
    and rescheduled right away, without waiting for its exit handler.
    """

    def __init__(self, supervisor: ProcessSupervisor,
                 no_output_sec: float = WATCHDOG_NO_OUTPUT_SEC,
                 min_runtime_sec: float = WATCHDOG_MIN_RUNTIME_SEC,
                 clock: Callable[[], datetime] = utc_now):
        self.supervisor = supervisor
        self.no_output_sec = no_output_sec
        self.min_runtime_sec = min_runtime_sec
        self._clock = clock

    def is_stuck(self, download: ActiveDownload, now: datetime) -> bool:
        if download.exited or download.state != TrackerState.RUNNING:
            return False
        if (now - download.started_at).total_seconds() < self.min_runtime_sec:
            return False
        return (now - download.last_output_at).total_seconds() >= self.no_output_sec

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Returns the ids of the downloads that were killed."""
        now = now or self._clock()
        killed = []
        for download in self.supervisor.active:
            if not self.is_stuck(download, now):
                continue

            quiet = int((now - download.last_output_at).total_seconds())
            job = download.job
            logger.warning('Watchdog: no output from "%s" for %ds, terminating', job.title, quiet)

            download.state = TrackerState.WATCHDOG_KILLED
            self.supervisor.terminate(download)

            retried = self.supervisor.queue.schedule_retry(
                job.channel_id, job.video_id,
                f"[{ErrorCode.STUCK_PROCESS}] Watchdog killed process (quiet {quiet}s)",
                title=job.title, username=job.username, channel_name=job.channel_name,
                video_link=job.video_link, dir=str(download.dir),
            )
            logger.info('Watchdog rescheduled "%s" (attempt %d) at %s',
                        job.title, retried.attempts, retried.next_attempt_at)
            killed.append(download.id)
        return killed
