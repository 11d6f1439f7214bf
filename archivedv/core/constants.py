"""
Shared constants for ArchivedV.
Defaults, thresholds and pattern tables shared by every module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ArchivedV"
APP_VERSION = "2.1.0"

# ── Filesystem paths ─────────────────────────────────────────────────
CWD = pathlib.Path(os.getcwd())

DEFAULT_DATA_DIR = CWD / "data"
DEFAULT_DOWNLOAD_DIR = CWD / "download"
DB_FILENAME = "db.json"
CONFIG_FILENAME = "config.json"
LOG_DIRNAME = "logs"

# Cookies
DEFAULT_COOKIES_PATH = DEFAULT_DATA_DIR / "youtube_cookies.txt"

# ── External tools ───────────────────────────────────────────────────
YTDLP_BIN = "yt-dlp"
FFMPEG_BIN = "ffmpeg"

# ── Folder states ─────────────────────────────────────────────────────
class FolderState:
    MISSING = "missing"
    EMPTY = "empty"
    METADATA = "metadata"
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"

# ── Auth failure reasons ──────────────────────────────────────────────
class AuthReason:
    PRIVATE_VIDEO = "private_video"
    MEMBERS_ONLY = "members_only"
    AGE_RESTRICTED = "age_restricted"

AUTH_REQUIRED = "auth_required"

# ── History entry values ──────────────────────────────────────────────
class HistoryStatus:
    SKIPPED = "skipped"

NOTE_STREAM_ENDED = "stream ended"

# ── Date prefix formats for working directories ──────────────────────
class DateFormat:
    YMD = "YYYY-MM-DD"
    MDY = "MM-DD-YYYY"

# ── Retry queue defaults ──────────────────────────────────────────────
RETRY_BASE_DELAY_SEC = 2 * 60
RETRY_MAX_DELAY_SEC = 60 * 60
RETRY_MAX_EXPONENT = 10
RETRY_JITTER_RATIO = 0.1
RETRY_JITTER_MAX_SEC = 30.0

MAX_CONCURRENT_DOWNLOADS = 0           # 0 = unbounded
MAX_AUTH_FAILURE_ATTEMPTS = 3

# ── Auth skip cache ───────────────────────────────────────────────────
AUTH_SKIP_TTL_SEC = 7 * 24 * 60 * 60
AUTH_SKIP_CACHE_MAX = 2000

# ── Watchdog ─────────────────────────────────────────────────────────
WATCHDOG_INTERVAL_SEC = 60
WATCHDOG_NO_OUTPUT_SEC = 2 * 60 * 60   # live streams can idle for a long time
WATCHDOG_MIN_RUNTIME_SEC = 10 * 60

# ── Supervisor ────────────────────────────────────────────────────────
FORBIDDEN_LOOP_THRESHOLD = 100
DIAGNOSTIC_TEXT_MAX_CHARS = 64 * 1024
TERMINATE_GRACE_SEC = 5

# ── Scheduling ────────────────────────────────────────────────────────
SCAN_INTERVAL_SEC = 10 * 60
RETRY_SWEEP_INTERVAL_SEC = 60
CANCEL_CLEANUP_DELAY_SEC = 10

# ── Feeds ─────────────────────────────────────────────────────────────
FEED_FETCH_RETRIES = 3
FEED_FETCH_BACKOFF_SEC = 1.0
FEED_TIMEOUT_SEC = 20
FEED_CHANNEL_DELAY_SEC = 1.5
FEED_404_LOG_INTERVAL_SEC = 60 * 60

ALLOWED_FEED_HOSTS = {"youtube.com", "www.youtube.com", "youtu.be"}
VIDEO_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"

# ── Folder classification ─────────────────────────────────────────────
COMPLETE_MIN_BYTES = 1024 * 1024       # smaller final files are failed merges
CORRUPT_FRAGMENT_MAX_BYTES = 1024

VIDEO_EXTENSIONS = ("mp4", "mkv", "webm", "avi", "mov", "flv", "wmv")
FRAGMENT_EXTENSIONS = ("mp4", "webm", "mkv", "m4a", "opus", "ogg")
AUDIO_EXTENSIONS = ("m4a", "opus", "ogg")
PARTIAL_SUFFIXES = ("part", "ytdl")
AUXILIARY_EXTENSIONS = (
    "jpg", "jpeg", "png", "webp", "json", "description", "txt",
    "vtt", "srt", "ass", "lrc", "m4a", "aac", "opus", "ogg",
)

# Format ids as reported by YouTube for adaptive streams
VIDEO_FORMAT_IDS = frozenset({
    "299", "298", "303", "302", "308", "315", "313", "271",
    "137", "136", "135", "134", "133", "160",
    "248", "247", "244", "243", "242", "278",
    "616", "614", "612", "610", "608", "606", "604", "602", "600",
    "598", "596", "594", "571",
    "337", "336", "335", "334", "333", "332", "331", "330", "329",
    "400", "401", "402",
    "699", "698", "697", "696", "695", "694",
})
AUDIO_FORMAT_IDS = frozenset({
    "140", "141", "139", "251", "250", "249", "258", "256", "327", "328",
})

# ── Merge cleanup ─────────────────────────────────────────────────────
MERGE_CLEANUP_ATTEMPTS = 5
MERGE_CLEANUP_BASE_DELAY_SEC = 1.0
MERGE_TIMEOUT_SEC = 6 * 60 * 60

# ── User supplied capture flags ───────────────────────────────────────
DENIED_YTDLP_FLAGS = ("--exec", "--config-location", "--batch-file")

# ── Notifications ─────────────────────────────────────────────────────
PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"
PUSHOVER_TIMEOUT_SEC = 10

# Characters forbidden in folder names
UNSAFE_FILENAME_CHARS = r'[/\\:*?"<>|]'
MAX_FOLDER_NAME_LEN = 200
