"""
Process Supervisor.
Launches one yt-dlp process per job, watches its output for failure
signatures and applies the exit-outcome policy when it terminates.

Reader threads never touch orchestration state: they only post
ProcessEvent messages, which the core thread feeds back into `handle`.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from archivedv.core.auth import (
    AuthSkipCache, classify_auth_failure, cookies_usable, ytdlp_auth_args,
)
from archivedv.core.capture import build_capture_args, user_flag_args
from archivedv.core.cleanup import safe_cleanup_directory
from archivedv.core.constants import (
    YTDLP_BIN, DEFAULT_COOKIES_PATH, FORBIDDEN_LOOP_THRESHOLD,
    DIAGNOSTIC_TEXT_MAX_CHARS, MAX_AUTH_FAILURE_ATTEMPTS, TERMINATE_GRACE_SEC,
    HistoryStatus,
)
from archivedv.core.folder_state import inspect_folder
from archivedv.core.models import CurrentDownload, HistoryEntry, RetryJob, now_iso, to_iso, utc_now
from archivedv.core.outcome import OutcomeKind, TrackerState, decide_exit_outcome
from archivedv.core.retry_queue import RetryQueue
from archivedv.core.security_utils import popen_streaming

logger = logging.getLogger(__name__)

FORBIDDEN_FRAGMENT_RE = re.compile(r"Got error: HTTP Error 403.*Retrying fragment", re.IGNORECASE)


class EventKind:
    OUTPUT = "output"
    EXIT = "exit"


@dataclass
class ProcessEvent:
    download_id: str
    kind: str
    line: str = ""
    stream: str = ""
    code: Optional[int] = None


@dataclass
class ActiveDownload:
    """Runtime record of one supervised process."""
    id: str
    job: RetryJob
    proc: Any
    dir: Path
    started_at: datetime
    last_output_at: datetime
    credentials_usable: bool = False
    diagnostics: str = ""
    state: str = TrackerState.RUNNING
    forbidden_streak: int = 0
    max_diagnostic_chars: int = DIAGNOSTIC_TEXT_MAX_CHARS

    @property
    def key(self) -> str:
        return self.job.key

    @property
    def exited(self) -> bool:
        return self.proc.poll() is not None

    def add_diagnostics(self, text: str):
        self.diagnostics = (self.diagnostics + text)[-self.max_diagnostic_chars:]

    def to_current(self) -> CurrentDownload:
        return CurrentDownload(
            id=self.id,
            channel=self.job.channel_id,
            video_id=self.job.video_id,
            title=self.job.title,
            username=self.job.username,
            channel_name=self.job.channel_name,
            video_link=self.job.video_link,
            dir=str(self.dir),
            start_time=to_iso(self.started_at),
        )


class ActiveTable:
    """download id -> ActiveDownload. Written only by the supervisor."""

    def __init__(self):
        self._items: dict[str, ActiveDownload] = {}

    def __len__(self):
        return len(self._items)

    def __iter__(self) -> Iterator[ActiveDownload]:
        return iter(list(self._items.values()))

    def get(self, download_id: str) -> ActiveDownload | None:
        return self._items.get(download_id)

    def add(self, download: ActiveDownload):
        self._items[download.id] = download

    def remove(self, download_id: str) -> ActiveDownload | None:
        return self._items.pop(download_id, None)

    def has_key(self, key: str) -> bool:
        return any(d.key == key for d in self._items.values())

    def find_by_key(self, key: str) -> ActiveDownload | None:
        for d in self._items.values():
            if d.key == key:
                return d
        return None


class ProcessSupervisor:
    """
    Owns the ActiveTable.  The watchdog and cancellation requests read it
    and ask the supervisor to terminate; only the supervisor mutates it.
    """

    def __init__(self, queue: RetryQueue, active: ActiveTable,
                 skip_cache: AuthSkipCache,
                 post_event: Callable[[ProcessEvent], None],
                 merge: Callable[[Path], Any] = lambda folder: None,
                 notify: Callable[[str, str], Any] | None = None,
                 on_success: Callable[[RetryJob], Any] | None = None,
                 cookies_path: Path = DEFAULT_COOKIES_PATH,
                 ytdlp_bin: str = YTDLP_BIN,
                 popen: Callable = popen_streaming,
                 clock: Callable[[], datetime] = utc_now,
                 forbidden_loop_threshold: int = FORBIDDEN_LOOP_THRESHOLD,
                 max_auth_attempts: int = MAX_AUTH_FAILURE_ATTEMPTS,
                 terminate_grace_sec: float = TERMINATE_GRACE_SEC):
        self.queue = queue
        self.active = active
        self.skip_cache = skip_cache
        self._post = post_event
        self._merge = merge
        self._notify = notify
        self._on_success = on_success
        self.cookies_path = Path(cookies_path)
        self.ytdlp_bin = ytdlp_bin
        self._popen = popen
        self._clock = clock
        self.forbidden_loop_threshold = forbidden_loop_threshold
        self.max_auth_attempts = max_auth_attempts
        self.terminate_grace_sec = terminate_grace_sec

    def credentials_usable(self) -> bool:
        return cookies_usable(self.queue.store.load().use_cookies, self.cookies_path)

    # ── Launch ────────────────────────────────────────────────────────

    def launch(self, job: RetryJob) -> CurrentDownload:
        """Start yt-dlp for `job` and register it. Raises OSError if it cannot start."""
        if not job.dir:
            raise ValueError(f"Job {job.key} has no working directory")
        workdir = Path(job.dir)
        workdir.mkdir(parents=True, exist_ok=True)

        snapshot = self.queue.store.load()
        usable = cookies_usable(snapshot.use_cookies, self.cookies_path)
        args = build_capture_args(
            job.video_link, workdir,
            auth_args=ytdlp_auth_args(usable, self.cookies_path),
            user_flags=user_flag_args(snapshot.ytdlp_flags),
            ytdlp_bin=self.ytdlp_bin,
        )
        logger.debug("Running: %s", " ".join(args))
        proc = self._popen(args)

        now = self._clock()
        download = ActiveDownload(
            id=f"{job.channel_id}-{job.video_id}-{int(now.timestamp() * 1000)}",
            job=job,
            proc=proc,
            dir=workdir,
            started_at=now,
            last_output_at=now,
            credentials_usable=usable,
        )
        self.active.add(download)
        logger.info('Started download for "%s" (%s)', job.title, download.id)

        threading.Thread(target=self._pump, args=(download.id, proc),
                         name=f"capture-{job.video_id}", daemon=True).start()
        return download.to_current()

    def _pump(self, download_id: str, proc):
        """Forward both output streams line by line, then the exit code."""
        readers = [
            threading.Thread(target=self._read_stream, args=(download_id, stream, name),
                             daemon=True)
            for stream, name in ((proc.stdout, "stdout"), (proc.stderr, "stderr"))
            if stream is not None
        ]
        for t in readers:
            t.start()
        for t in readers:
            t.join()
        code = proc.wait()
        self._post(ProcessEvent(download_id, EventKind.EXIT, code=code))

    def _read_stream(self, download_id: str, stream, name: str):
        try:
            for line in stream:
                self._post(ProcessEvent(download_id, EventKind.OUTPUT,
                                        line=line.rstrip("\r\n"), stream=name))
        except (OSError, ValueError) as e:
            logger.debug("Stream %s closed for %s: %s", name, download_id, e)

    # ── Events ────────────────────────────────────────────────────────

    def handle(self, event: ProcessEvent):
        download = self.active.get(event.download_id)
        if download is None:
            # Cancelled or already reaped
            return
        if event.kind == EventKind.OUTPUT:
            self._on_output(download, event.line, event.stream)
        elif event.kind == EventKind.EXIT:
            self._on_exit(download, event.code)

    def _on_output(self, download: ActiveDownload, line: str, stream: str):
        download.last_output_at = self._clock()
        if stream == "stderr":
            download.add_diagnostics(line + "\n")
        if line.strip():
            logger.debug("[yt-dlp] %s", line)

        if download.state != TrackerState.RUNNING:
            return

        if FORBIDDEN_FRAGMENT_RE.search(line):
            download.forbidden_streak += 1
            if download.forbidden_streak >= self.forbidden_loop_threshold:
                logger.warning('Stream ended for "%s": %d consecutive 403 fragment errors, stopping',
                               download.job.title, download.forbidden_streak)
                download.state = TrackerState.STREAM_ENDED_LOOP
                self.terminate(download)
            return
        if line.strip():
            download.forbidden_streak = 0

        if not download.credentials_usable:
            auth = classify_auth_failure(line)
            if auth is not None:
                logger.warning('Auth required (%s) for "%s" and no cookies configured; skipping',
                               auth.reason, download.job.title)
                download.state = TrackerState.AUTH_SKIPPED
                self.queue.remove(download.key)
                self.skip_cache.mark(download.job.video_id)
                self.terminate(download)

    def _on_exit(self, download: ActiveDownload, code: int | None):
        self.active.remove(download.id)
        self.queue.release(download.id)

        folder = inspect_folder(download.dir)
        stored = self.queue.get(download.key)
        prior_attempts = stored.attempts if stored else download.job.attempts

        outcome = decide_exit_outcome(
            download.state, code, download.diagnostics, folder.kind,
            download.credentials_usable, prior_attempts, self.max_auth_attempts,
        )
        logger.info('Download "%s" exited (code %s, state %s, folder %s) -> %s',
                    download.job.title, code, download.state, folder.kind, outcome.kind)
        if download.state == TrackerState.RUNNING:
            download.state = TrackerState.EXITED

        job = download.job
        if outcome.kind == OutcomeKind.SUCCESS:
            if outcome.false_negative:
                logger.info('Exit code %s but "%s" has a complete video; treating as success',
                            code, job.title)
            self.queue.finalize(job.key, HistoryEntry(title=job.title, time=now_iso(),
                                                      note=outcome.note))
            self._submit_merge(download.dir)
            self._send_notification(job.title, ended=outcome.note is not None)
            if self._on_success is not None:
                self._on_success(job)

        elif outcome.kind == OutcomeKind.AUTH_SKIP:
            logger.info('Skipping "%s": %s without cookies', job.title, outcome.reason)
            self.queue.remove(job.key)
            self.skip_cache.mark(job.video_id)

        elif outcome.kind == OutcomeKind.AUTH_FINALIZE:
            logger.warning('Giving up on "%s" after %d attempts: %s',
                           job.title, prior_attempts + 1, outcome.reason)
            self.queue.finalize(job.key, HistoryEntry(
                title=job.title,
                time=now_iso(),
                status=HistoryStatus.SKIPPED,
                reason=outcome.reason,
                video_id=job.video_id,
                channel_id=job.channel_id,
            ))

        elif outcome.kind == OutcomeKind.RETRY:
            if outcome.delete_dir:
                safe_cleanup_directory(download.dir, "empty after failed download")
            retried = self.queue.schedule_retry(
                job.channel_id, job.video_id, outcome.reason,
                title=job.title, username=job.username, channel_name=job.channel_name,
                video_link=job.video_link, dir=str(download.dir),
            )
            logger.info('Retry scheduled for "%s" (attempt %d) at %s: %s',
                        job.title, retried.attempts, retried.next_attempt_at, outcome.reason)

    # ── Termination ───────────────────────────────────────────────────

    def terminate(self, download: ActiveDownload):
        """SIGTERM now, SIGKILL if still alive after the grace period."""
        proc = download.proc
        try:
            proc.terminate()
        except OSError as e:
            logger.debug("terminate() failed for %s: %s", download.id, e)
            return
        if self.terminate_grace_sec > 0:
            timer = threading.Timer(self.terminate_grace_sec, self._kill_if_alive, args=(proc,))
            timer.daemon = True
            timer.start()

    @staticmethod
    def _kill_if_alive(proc):
        if proc.poll() is None:
            try:
                proc.kill()
            except OSError:
                pass

    def cancel(self, download_id: str) -> ActiveDownload | None:
        """
        Operator cancellation: stop the process and forget the job without
        scheduling a retry.  The exit event that follows is ignored.
        """
        download = self.active.remove(download_id)
        if download is None:
            return None
        download.state = TrackerState.CANCELLED
        self.terminate(download)
        self.queue.release(download.id)
        self.queue.remove(download.key)
        logger.info('Cancelled download "%s" (%s)', download.job.title, download_id)
        return download

    def stop_all(self):
        for download in self.active:
            self.terminate(download)

    # ── Helpers ───────────────────────────────────────────────────────

    def _submit_merge(self, folder: Path):
        try:
            self._merge(folder)
        except Exception as e:
            logger.error("Could not start merge for %s: %s", folder, e, exc_info=True)

    def _send_notification(self, title: str, ended: bool = False):
        if self._notify is None:
            return
        label = "Stream ended" if ended else "Downloaded"
        try:
            self._notify("ArchivedV", f"{label}: {title}")
        except Exception as e:
            logger.warning("Notification failed: %s", e)
