"""
Orchestrator: the single-threaded core that ties the lifecycle together.

One core thread consumes an inbox of events.  Process reader threads,
the feed-scan worker and external callers only ever post to the inbox;
every store and ActiveTable mutation happens on the core thread.
Periodic duties (retry sweep, watchdog, feed scan) and deferred tasks
are run from the same loop by deadline.
"""

import heapq
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from archivedv.core.auth import AuthSkipCache
from archivedv.core.cleanup import safe_cleanup_directory
from archivedv.core.config import AppConfig
from archivedv.core.constants import DB_FILENAME, VIDEO_URL_TEMPLATE
from archivedv.core.dispatcher import Dispatcher, is_ignored
from archivedv.core.error_codes import ArchiverError
from archivedv.core.feeds import ChannelFeed, FeedClient
from archivedv.core.merge import FragmentMerger
from archivedv.core.models import RetryJob, now_iso, utc_now
from archivedv.core.notify import PushoverNotifier
from archivedv.core.retry_queue import RetryQueue
from archivedv.core.security_utils import popen_streaming, sanitize_title, validate_user_flags
from archivedv.core.store import JsonStore, Store
from archivedv.core.supervisor import ActiveTable, ProcessEvent, ProcessSupervisor
from archivedv.core.watchdog import Watchdog

logger = logging.getLogger(__name__)

_STOP = object()


class CoalescingGuard:
    """
    Non-reentrant run flag.  A request made while a run is in flight sets a
    single pending flag; `finish` reports whether one replay is owed.
    """

    def __init__(self, name: str):
        self.name = name
        self.running = False
        self.pending = False

    def try_start(self) -> bool:
        if self.running:
            self.pending = True
            return False
        self.running = True
        return True

    def finish(self) -> bool:
        self.running = False
        replay, self.pending = self.pending, False
        return replay


class Orchestrator:
    """
    Wires the retry queue, supervisor, watchdog, dispatcher and merge
    coordinator around one event loop.

    Collaborators are injectable: `popen` for the capture process,
    `spawn` for background work (feed scans), `merge_inline` to run
    merges synchronously, and both clocks.
    """

    def __init__(self, config: AppConfig, store: Store | None = None,
                 feed_client: FeedClient | None = None,
                 merger: FragmentMerger | None = None,
                 notifier: Callable[[str, str], object] | None = None,
                 popen: Callable = popen_streaming,
                 spawn: Callable | None = None,
                 merge_inline: bool = False,
                 clock: Callable = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config = config
        self.store = store or JsonStore(config.data_dir / DB_FILENAME)
        self._clock = clock
        self._monotonic = monotonic

        self.active = ActiveTable()
        self.skip_cache = AuthSkipCache(config.auth_skip_ttl_sec, config.auth_skip_cache_max)
        self.queue = RetryQueue(
            self.store, self.active,
            max_concurrent=config.max_concurrent_downloads,
            base_delay=config.retry_base_delay_sec,
            max_delay=config.retry_max_delay_sec,
            clock=clock,
        )
        self.merger = merger or FragmentMerger(config.download_dir, config.ffmpeg_bin)
        if notifier is None:
            pushover = PushoverNotifier(config.pushover_app_token, config.pushover_user_token)
            notifier = pushover if pushover.enabled else None
        self._notifier = notifier
        self._notify_pool: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify") if notifier else None
        )

        self.supervisor = ProcessSupervisor(
            self.queue, self.active, self.skip_cache,
            post_event=self.post,
            merge=self.submit_merge,
            notify=self.submit_notification if notifier else None,
            on_success=self._on_success,
            cookies_path=config.cookies_path,
            ytdlp_bin=config.ytdlp_bin,
            popen=popen,
            clock=clock,
            forbidden_loop_threshold=config.forbidden_loop_threshold,
            max_auth_attempts=config.max_auth_failure_attempts,
        )
        self.watchdog = Watchdog(
            self.supervisor,
            no_output_sec=config.watchdog_no_output_sec,
            min_runtime_sec=config.watchdog_min_runtime_sec,
            clock=clock,
        )
        self.dispatcher = Dispatcher(
            self.queue, self.active, self.skip_cache, config.download_dir,
            credentials_usable=self.supervisor.credentials_usable,
        )
        self.feeds = feed_client or FeedClient(
            retries=config.feed_fetch_retries,
            backoff_sec=config.feed_fetch_backoff_sec,
            timeout_sec=config.feed_timeout_sec,
            channel_delay_sec=config.feed_channel_delay_sec,
        )

        self._spawn = spawn or self._spawn_thread
        self._merge_pool: Optional[ThreadPoolExecutor] = (
            None if merge_inline else ThreadPoolExecutor(max_workers=1, thread_name_prefix="merge")
        )

        self._inbox: queue.Queue = queue.Queue()
        self._timers: list = []
        self._timer_seq = itertools.count()
        self._stopping = threading.Event()
        self._core_thread: Optional[threading.Thread] = None

        self._scan_guard = CoalescingGuard("scan")
        self._sweep_guard = CoalescingGuard("retry sweep")

        self.last_run: Optional[str] = None
        self.last_completed: Optional[str] = None
        self.downloaded_count = 0

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Start the core thread; startup work runs as its first event."""
        if self._core_thread and self._core_thread.is_alive():
            return
        self._stopping.clear()
        self.post(self.startup)
        self.post(self._schedule_periodic)
        self._core_thread = threading.Thread(target=self._loop, name="archivedv-core", daemon=True)
        self._core_thread.start()

    def stop(self, timeout: float = 10.0):
        """Terminate live captures and stop the core loop."""
        self._stopping.set()
        self.post(_STOP)
        if self._core_thread:
            self._core_thread.join(timeout)
            self._core_thread = None
        if self._merge_pool:
            self._merge_pool.shutdown(wait=False, cancel_futures=True)
        if self._notify_pool:
            self._notify_pool.shutdown(wait=False)

    def is_running(self) -> bool:
        return bool(self._core_thread and self._core_thread.is_alive())

    def startup(self):
        """Recover interrupted work, merge leftovers, warn about bad stored flags."""
        self.queue.recover_interrupted()

        flags = self.store.load().ytdlp_flags
        try:
            validate_user_flags(flags)
        except ArchiverError as e:
            logger.warning("Stored yt-dlp flags will be ignored: %s", e.message)

        if self._merge_pool:
            self._merge_pool.submit(self._merge_all_safely)
        else:
            self._merge_all_safely()

    def _schedule_periodic(self):
        self._every(self.config.retry_sweep_interval_sec, self.retry_sweep)
        self._every(self.config.watchdog_interval_sec, self.watchdog.sweep)
        self._start_scan()
        self._every(self.config.scan_interval_sec, self._start_scan)

    # ── Event loop ────────────────────────────────────────────────────

    def post(self, item):
        """Thread-safe: queue a ProcessEvent or a callable for the core thread."""
        self._inbox.put(item)

    def _loop(self):
        logger.info("Core loop started")
        try:
            while not self._stopping.is_set():
                try:
                    item = self._inbox.get(timeout=self._next_timeout())
                except queue.Empty:
                    item = None
                if item is _STOP:
                    break
                if item is not None:
                    self._dispatch(item)
                self.run_due_timers()
        finally:
            self.supervisor.stop_all()
            logger.info("Core loop stopped")

    def _dispatch(self, item):
        """Run one inbox item; a failure is logged and never escapes the loop."""
        try:
            if isinstance(item, ProcessEvent):
                self.supervisor.handle(item)
            else:
                item()
        except Exception as e:
            logger.error("Error handling %r: %s", item, e, exc_info=True)

    def drain(self, max_items: int = 10000) -> int:
        """
        Test hook: process everything already queued on the calling thread,
        without blocking, then run due timers. Returns the count.
        """
        handled = 0
        while handled < max_items:
            try:
                item = self._inbox.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                break
            self._dispatch(item)
            handled += 1
        self.run_due_timers()
        return handled

    # ── Timers ────────────────────────────────────────────────────────

    def call_later(self, delay: float, fn: Callable, *args):
        heapq.heappush(self._timers, (self._monotonic() + delay, next(self._timer_seq), fn, args))

    def _every(self, interval: float, fn: Callable):
        """Run `fn` every `interval` seconds, first run one interval from now."""
        def tick():
            try:
                fn()
            finally:
                self.call_later(interval, tick)

        self.call_later(interval, tick)

    def _next_timeout(self) -> float:
        if not self._timers:
            return 1.0
        return max(0.0, min(1.0, self._timers[0][0] - self._monotonic()))

    def run_due_timers(self):
        now = self._monotonic()
        while self._timers and self._timers[0][0] <= now:
            _, _, fn, args = heapq.heappop(self._timers)
            self._dispatch(lambda: fn(*args))

    # ── Retry sweep ───────────────────────────────────────────────────

    def retry_sweep(self) -> int:
        if not self._sweep_guard.try_start():
            logger.debug("Retry sweep already running; coalesced")
            return 0
        try:
            ignore = self.store.load().ignore_keywords
            started = self.queue.sweep(self._launch, lambda title: is_ignored(title, ignore))
        finally:
            replay = self._sweep_guard.finish()
        if replay:
            started += self.retry_sweep()
        return started

    def _launch(self, job: RetryJob):
        if not job.dir:
            owner = sanitize_title(job.username or job.channel_id) or job.channel_id
            job.dir = str(self.config.download_dir / owner /
                          (sanitize_title(job.title) or job.video_id))
        if not job.video_link:
            job.video_link = VIDEO_URL_TEMPLATE.format(video_id=job.video_id)
        return self.supervisor.launch(job)

    # ── Feed scan ─────────────────────────────────────────────────────

    def request_scan(self):
        """Thread-safe: ask for a feed scan (coalesced with one in flight)."""
        self.post(self._start_scan)

    def _start_scan(self):
        if not self._scan_guard.try_start():
            logger.info("Scan already running; another pass will follow")
            return
        try:
            self.retry_sweep()
            channels = self.store.load().channels
        except Exception:
            self._finish_guard()
            raise
        self._spawn(self._scan_worker, channels)

    def _scan_worker(self, channels):
        try:
            results = self.feeds.fetch_all(channels, should_stop=self._stopping.is_set)
        except Exception as e:
            logger.error("Feed scan failed: %s", e, exc_info=True)
            results = []
        self.post(lambda: self._finish_scan(results))

    def _finish_scan(self, results: list[ChannelFeed]):
        try:
            offered = self.dispatcher.apply_scan(results)
            logger.info("Scan complete: %d channel(s), %d candidate(s) queued",
                        len(results), offered)
            self.last_run = now_iso()
            self.retry_sweep()
            self.downloaded_count = self.dispatcher.downloaded_count(self.store.load().channels)
        finally:
            self._finish_guard()

    def _finish_guard(self):
        if self._scan_guard.finish():
            self.post(self._start_scan)

    @staticmethod
    def _spawn_thread(fn, *args):
        threading.Thread(target=fn, args=args, name="feed-scan", daemon=True).start()

    # ── Merging ───────────────────────────────────────────────────────

    def submit_merge(self, folder: Path):
        if self._merge_pool:
            return self._merge_pool.submit(self._merge_folder_safely, Path(folder))
        return self._merge_folder_safely(Path(folder))

    def _merge_folder_safely(self, folder: Path):
        try:
            return self.merger.merge_folder(folder)
        except Exception as e:
            logger.error("Merge failed in %s: %s", folder, e, exc_info=True)
            return []

    def _merge_all_safely(self):
        try:
            return self.merger.merge_all(self.config.download_dir)
        except Exception as e:
            logger.error("Startup merge failed: %s", e, exc_info=True)
            return []

    # ── Notifications ────────────────────────────────────────────────

    def submit_notification(self, title: str, message: str):
        """Send a push off the core thread. Returns the Future."""
        return self._notify_pool.submit(self._notify_safely, title, message)

    def _notify_safely(self, title: str, message: str):
        try:
            return self._notifier(title, message)
        except Exception as e:
            logger.warning("Notification failed: %s", e)
            return None

    def _on_success(self, job: RetryJob):
        self.last_completed = job.title

    # ── Controls ──────────────────────────────────────────────────────

    def _call(self, fn: Callable, *args) -> Future:
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self.post(run)
        return future

    def cancel(self, download_id: str) -> Future:
        """Thread-safe: stop a capture for good. Resolves to True if it was live."""
        return self._call(self._cancel, download_id)

    def _cancel(self, download_id: str) -> bool:
        download = self.supervisor.cancel(download_id)
        if download is None:
            logger.warning("Cancel requested for unknown download %s", download_id)
            return False

        title = download.job.title
        if title:
            snapshot = self.store.load()
            if title not in snapshot.ignore_keywords:
                snapshot.ignore_keywords.append(title)
                self.store.save(snapshot)
                logger.info('Added "%s" to ignore keywords', title)

        self.call_later(self.config.cancel_cleanup_delay_sec, self._cleanup_cancelled, download.dir)
        return True

    def _cleanup_cancelled(self, folder: Path):
        result = safe_cleanup_directory(folder, "cancelled download")
        if not result.cleaned:
            self.submit_merge(folder)

    def set_user_flags(self, text: str) -> Future:
        """Validate now (raises ArchiverError), persist on the core thread."""
        flags = validate_user_flags(text)
        return self._call(self._store_user_flags, flags)

    def _store_user_flags(self, flags: str) -> str:
        snapshot = self.store.load()
        snapshot.ytdlp_flags = flags
        self.store.save(snapshot)
        logger.info("Updated yt-dlp flags: %s", flags or "(none)")
        return flags

    def set_use_cookies(self, enabled: bool) -> Future:
        return self._call(self._store_use_cookies, bool(enabled))

    def _store_use_cookies(self, enabled: bool) -> bool:
        snapshot = self.store.load()
        snapshot.use_cookies = enabled
        self.store.save(snapshot)
        if enabled:
            # Previously skipped videos get another chance with credentials
            self.skip_cache.clear()
        return enabled

    def status(self) -> dict:
        """Snapshot of scheduler state; safe from any thread."""
        snapshot = self.store.load()
        return {
            "lastRun": self.last_run,
            "lastCompleted": self.last_completed,
            "downloadedCount": self.downloaded_count,
            "currentDownloads": [d.to_dict() for d in snapshot.current_downloads],
            "retryQueue": self.queue.counts(),
        }
