"""
Security utilities for ArchivedV.
- Filename sanitization and path traversal protection
- Safe subprocess execution (argument arrays only)
- Feed URL validation (SSRF guard)
- User supplied yt-dlp flag parsing and denylist
"""

import ipaddress
import re
import shlex
import subprocess
import logging
from urllib.parse import urlparse

from archivedv.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FOLDER_NAME_LEN,
    ALLOWED_FEED_HOSTS,
    DENIED_YTDLP_FLAGS,
)
from archivedv.core.error_codes import ArchiverError, ErrorCode

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Sanitize a video title for use as a folder or file name."""
    if not title:
        return ""
    safe = re.sub(UNSAFE_FILENAME_CHARS, '', title)
    # Control characters never belong in a path component
    safe = re.sub(r'[\x00-\x1f]', '', safe)
    safe = safe.replace('..', '')
    safe = safe.strip()
    if len(safe) > MAX_FOLDER_NAME_LEN:
        safe = safe[:MAX_FOLDER_NAME_LEN].rstrip()
    safe = safe.strip('.')
    return safe


# ── Subprocess safety ─────────────────────────────────────────────────

def _check_args(args) -> None:
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    _check_args(args)

    # Never honour a caller-supplied shell flag
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int | float = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def popen_streaming(args: list[str], **kwargs) -> subprocess.Popen:
    """
    Start a long-running subprocess with line-buffered text pipes for
    stdout and stderr.  Same argument-array rule as run_subprocess.
    """
    _check_args(args)
    kwargs.pop('shell', None)

    logger.debug("Starting subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.Popen(
        args,
        shell=False,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        **kwargs,
    )


# ── Feed URL validation ───────────────────────────────────────────────

def is_valid_feed_url(url: str) -> bool:
    """https only, YouTube hosts only, never loopback or private ranges."""
    try:
        parsed = urlparse(url)
    except (TypeError, ValueError):
        return False

    if parsed.scheme != "https":
        return False

    host = (parsed.hostname or "").lower()
    if host not in ALLOWED_FEED_HOSTS:
        return False

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host != "localhost"
    return not (ip.is_loopback or ip.is_private)


# ── User supplied yt-dlp flags ────────────────────────────────────────

def validate_user_flags(text: str) -> str:
    """
    Return the trimmed flag string, or raise ArchiverError if it contains a
    flag that can run commands or redirect configuration.
    """
    if not isinstance(text, str):
        raise ArchiverError(ErrorCode.INVALID_FLAGS, "ytdlpFlags must be a string")

    lowered = text.lower()
    for denied in DENIED_YTDLP_FLAGS:
        if denied in lowered:
            raise ArchiverError(ErrorCode.INVALID_FLAGS,
                                f'Flag "{denied}" is not allowed for security reasons')
    return text.strip()


def parse_user_flags(text: str) -> list[str]:
    """Split a user flag string into arguments, honouring quotes."""
    if not text or not text.strip():
        return []
    try:
        return shlex.split(text)
    except ValueError as e:
        logger.warning("Could not parse user yt-dlp flags %r: %s", text, e)
        return []
