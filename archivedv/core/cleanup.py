"""
Cleanup: remove working directories only when they are provably empty.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from archivedv.core.constants import FolderState
from archivedv.core.folder_state import inspect_folder

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    cleaned: bool
    reason: str
    files: list[str] = field(default_factory=list)


def safe_cleanup_directory(folder: Path | str, reason: str = "") -> CleanupResult:
    """
    Remove a working directory if, and only if, it has no entries at all.

    Anything else (final videos, fragments, thumbnails, metadata) is left
    in place; a cancelled or failed capture must never lose a file.
    """
    folder = Path(folder)
    state = inspect_folder(folder)

    if state.kind == FolderState.MISSING:
        return CleanupResult(False, "Directory does not exist")

    if state.kind != FolderState.EMPTY:
        kept = state.final_videos + state.partials + state.others
        logger.info("NOT deleting %s - folder is %s (%s)", folder, state.kind,
                    ", ".join(kept[:3]) + ("..." if len(kept) > 3 else ""))
        return CleanupResult(False, f"Folder is {state.kind}", kept)

    try:
        folder.rmdir()
    except OSError as e:
        # rmdir refuses non-empty directories, so a file that appeared
        # after the inspection is still protected
        logger.warning("Failed to remove %s: %s", folder, e)
        return CleanupResult(False, str(e))

    logger.info("Cleaned up empty directory: %s%s", folder, f" ({reason})" if reason else "")
    return CleanupResult(True, "Empty directory removed")
