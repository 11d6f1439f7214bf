"""
Application configuration manager.
Stores settings in a JSON file under the data directory; ARCHIVEDV_*
environment variables override the file.
"""

import json
import logging
import os
from pathlib import Path

from archivedv.core.constants import (
    CONFIG_FILENAME, DEFAULT_DATA_DIR, DEFAULT_DOWNLOAD_DIR, DEFAULT_COOKIES_PATH,
    YTDLP_BIN, FFMPEG_BIN,
    MAX_CONCURRENT_DOWNLOADS, MAX_AUTH_FAILURE_ATTEMPTS,
    RETRY_BASE_DELAY_SEC, RETRY_MAX_DELAY_SEC,
    WATCHDOG_INTERVAL_SEC, WATCHDOG_NO_OUTPUT_SEC, WATCHDOG_MIN_RUNTIME_SEC,
    AUTH_SKIP_TTL_SEC, AUTH_SKIP_CACHE_MAX,
    FEED_FETCH_RETRIES, FEED_FETCH_BACKOFF_SEC, FEED_TIMEOUT_SEC, FEED_CHANNEL_DELAY_SEC,
    SCAN_INTERVAL_SEC, RETRY_SWEEP_INTERVAL_SEC,
    FORBIDDEN_LOOP_THRESHOLD, CANCEL_CLEANUP_DELAY_SEC,
)

ENV_PREFIX = "ARCHIVEDV_"

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'data_dir': str(DEFAULT_DATA_DIR),
    'download_dir': str(DEFAULT_DOWNLOAD_DIR),
    'cookies_path': str(DEFAULT_COOKIES_PATH),
    'ytdlp_bin': YTDLP_BIN,
    'ffmpeg_bin': FFMPEG_BIN,
    'max_concurrent_downloads': MAX_CONCURRENT_DOWNLOADS,
    'max_auth_failure_attempts': MAX_AUTH_FAILURE_ATTEMPTS,
    'retry_base_delay_sec': RETRY_BASE_DELAY_SEC,
    'retry_max_delay_sec': RETRY_MAX_DELAY_SEC,
    'watchdog_interval_sec': WATCHDOG_INTERVAL_SEC,
    'watchdog_no_output_sec': WATCHDOG_NO_OUTPUT_SEC,
    'watchdog_min_runtime_sec': WATCHDOG_MIN_RUNTIME_SEC,
    'auth_skip_ttl_sec': AUTH_SKIP_TTL_SEC,
    'auth_skip_cache_max': AUTH_SKIP_CACHE_MAX,
    'feed_fetch_retries': FEED_FETCH_RETRIES,
    'feed_fetch_backoff_sec': FEED_FETCH_BACKOFF_SEC,
    'feed_timeout_sec': FEED_TIMEOUT_SEC,
    'feed_channel_delay_sec': FEED_CHANNEL_DELAY_SEC,
    'scan_interval_sec': SCAN_INTERVAL_SEC,
    'retry_sweep_interval_sec': RETRY_SWEEP_INTERVAL_SEC,
    'forbidden_loop_threshold': FORBIDDEN_LOOP_THRESHOLD,
    'cancel_cleanup_delay_sec': CANCEL_CLEANUP_DELAY_SEC,
    'pushover_app_token': "",
    'pushover_user_token': "",
}

# key -> (type, min, max)
_BOUNDS = {
    'max_concurrent_downloads': (int, 0, 64),
    'max_auth_failure_attempts': (int, 1, 100),
    'retry_base_delay_sec': (float, 1, 24 * 3600),
    'retry_max_delay_sec': (float, 1, 7 * 24 * 3600),
    'watchdog_interval_sec': (float, 1, 3600),
    'watchdog_no_output_sec': (float, 10, 7 * 24 * 3600),
    'watchdog_min_runtime_sec': (float, 0, 24 * 3600),
    'auth_skip_ttl_sec': (float, 60, 365 * 24 * 3600),
    'auth_skip_cache_max': (int, 1, 1_000_000),
    'feed_fetch_retries': (int, 0, 10),
    'feed_fetch_backoff_sec': (float, 0, 60),
    'feed_timeout_sec': (float, 1, 300),
    'feed_channel_delay_sec': (float, 0, 60),
    'scan_interval_sec': (float, 10, 24 * 3600),
    'retry_sweep_interval_sec': (float, 1, 3600),
    'forbidden_loop_threshold': (int, 1, 100_000),
    'cancel_cleanup_delay_sec': (float, 0, 600),
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, environ: dict | None = None,
                 overrides: dict | None = None):
        self.path = config_path or (DEFAULT_DATA_DIR / CONFIG_FILENAME)
        self._environ = os.environ if environ is None else environ
        self._overrides = overrides or {}
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults and environment."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

        for key in _DEFAULTS:
            raw = self._environ.get(ENV_PREFIX + key.upper())
            if raw not in (None, ""):
                self._data[key] = self._validate(key, raw)

        for key, value in self._overrides.items():
            self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDS:
            kind, low, high = _BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(low, min(high, value))

        if key in ('pushover_app_token', 'pushover_user_token'):
            return str(value or "")

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def data_dir(self) -> Path:
        return Path(self._data['data_dir'])

    @property
    def download_dir(self) -> Path:
        return Path(self._data['download_dir'])

    @property
    def cookies_path(self) -> Path:
        return Path(self._data['cookies_path'])

    @property
    def ytdlp_bin(self) -> str:
        return self._data['ytdlp_bin']

    @property
    def ffmpeg_bin(self) -> str:
        return self._data['ffmpeg_bin']

    @property
    def max_concurrent_downloads(self) -> int:
        return self._data['max_concurrent_downloads']

    @property
    def max_auth_failure_attempts(self) -> int:
        return self._data['max_auth_failure_attempts']

    @property
    def retry_base_delay_sec(self) -> float:
        return self._data['retry_base_delay_sec']

    @property
    def retry_max_delay_sec(self) -> float:
        return self._data['retry_max_delay_sec']

    @property
    def watchdog_interval_sec(self) -> float:
        return self._data['watchdog_interval_sec']

    @property
    def watchdog_no_output_sec(self) -> float:
        return self._data['watchdog_no_output_sec']

    @property
    def watchdog_min_runtime_sec(self) -> float:
        return self._data['watchdog_min_runtime_sec']

    @property
    def auth_skip_ttl_sec(self) -> float:
        return self._data['auth_skip_ttl_sec']

    @property
    def auth_skip_cache_max(self) -> int:
        return self._data['auth_skip_cache_max']

    @property
    def feed_fetch_retries(self) -> int:
        return self._data['feed_fetch_retries']

    @property
    def feed_fetch_backoff_sec(self) -> float:
        return self._data['feed_fetch_backoff_sec']

    @property
    def feed_timeout_sec(self) -> float:
        return self._data['feed_timeout_sec']

    @property
    def feed_channel_delay_sec(self) -> float:
        return self._data['feed_channel_delay_sec']

    @property
    def scan_interval_sec(self) -> float:
        return self._data['scan_interval_sec']

    @property
    def retry_sweep_interval_sec(self) -> float:
        return self._data['retry_sweep_interval_sec']

    @property
    def forbidden_loop_threshold(self) -> int:
        return self._data['forbidden_loop_threshold']

    @property
    def cancel_cleanup_delay_sec(self) -> float:
        return self._data['cancel_cleanup_delay_sec']

    @property
    def pushover_app_token(self) -> str:
        return self._data['pushover_app_token']

    @property
    def pushover_user_token(self) -> str:
        return self._data['pushover_user_token']
