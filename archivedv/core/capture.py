"""
Live capture via yt-dlp.
"""

import logging
from pathlib import Path

from archivedv.core.constants import YTDLP_BIN
from archivedv.core.security_utils import parse_user_flags, validate_user_flags
from archivedv.core.error_codes import ArchiverError

logger = logging.getLogger(__name__)

OUTPUT_TEMPLATE = "%(title)s.%(ext)s"


def user_flag_args(flags_text: str) -> list[str]:
    """Parse the stored user flags; a string that fails validation is ignored."""
    try:
        flags_text = validate_user_flags(flags_text or "")
    except ArchiverError as e:
        logger.warning("Ignoring user yt-dlp flags: %s", e.message)
        return []
    return parse_user_flags(flags_text)


def build_capture_args(video_link: str, workdir: Path,
                       auth_args: list[str] | None = None,
                       user_flags: list[str] | None = None,
                       ytdlp_bin: str = YTDLP_BIN) -> list[str]:
    """
    Argument list for one capture: live-from-start, bounded socket and
    fragment retries, keep going past broken fragments, embed thumbnail
    and metadata.  User flags come last so they can override defaults.
    """
    return [
        ytdlp_bin,
        *(auth_args or []),
        "--live-from-start",
        "-ciw",
        "--no-part",
        "--no-progress",
        "--no-cache-dir",
        "--socket-timeout", "30",
        "--retries", "20",
        "--fragment-retries", "50",
        "--skip-unavailable-fragments",
        "--no-abort-on-error",
        "--js-runtimes", "node",
        "--remote-components", "ejs:npm",
        "-o", str(Path(workdir) / OUTPUT_TEMPLATE),
        "--write-thumbnail",
        "--convert-thumbnails", "png",
        "--embed-thumbnail",
        "--add-metadata",
        "-f", "bestvideo+bestaudio/best",
        "--merge-output-format", "mp4",
        *(user_flags or []),
        video_link,
    ]
