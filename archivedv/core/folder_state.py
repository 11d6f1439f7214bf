"""
Folder state classification: decides from file names and sizes alone
whether a working directory holds a finished capture, resumable partial
data, only sidecar files, or nothing at all.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from archivedv.core.constants import (
    FolderState,
    VIDEO_EXTENSIONS,
    FRAGMENT_EXTENSIONS,
    PARTIAL_SUFFIXES,
    AUXILIARY_EXTENSIONS,
    COMPLETE_MIN_BYTES,
)

logger = logging.getLogger(__name__)


def _ext_group(exts) -> str:
    return "|".join(re.escape(e) for e in exts)


_FINAL_VIDEO_RE = re.compile(rf"\.({_ext_group(VIDEO_EXTENSIONS)})$", re.IGNORECASE)
_FRAGMENT_RE = re.compile(rf"\.f\d+\.({_ext_group(FRAGMENT_EXTENSIONS)})$", re.IGNORECASE)
_PARTIAL_RE = re.compile(rf"\.({_ext_group(PARTIAL_SUFFIXES)})$", re.IGNORECASE)
_AUXILIARY_RE = re.compile(rf"\.({_ext_group(AUXILIARY_EXTENSIONS)})$", re.IGNORECASE)


def is_fragment_file(name: str) -> bool:
    return bool(_FRAGMENT_RE.search(name))


def is_final_video_file(name: str) -> bool:
    return bool(_FINAL_VIDEO_RE.search(name)) and not is_fragment_file(name)


def is_partial_file(name: str) -> bool:
    return bool(_PARTIAL_RE.search(name)) or is_fragment_file(name)


def is_auxiliary_file(name: str) -> bool:
    return bool(_AUXILIARY_RE.search(name))


@dataclass
class FolderInspection:
    kind: str
    final_videos: list[str] = field(default_factory=list)
    partials: list[str] = field(default_factory=list)
    others: list[str] = field(default_factory=list)


def classify_entries(entries: dict[str, int],
                     min_complete_bytes: int = COMPLETE_MIN_BYTES) -> FolderInspection:
    """
    Classify a directory listing given as {file name: size in bytes}.
    Pure: the same listing always yields the same result.
    """
    if not entries:
        return FolderInspection(FolderState.EMPTY)

    names = sorted(entries)
    final_videos = [n for n in names if is_final_video_file(n)]
    partials = [n for n in names if is_partial_file(n)]
    others = [n for n in names
              if not is_final_video_file(n) and not is_partial_file(n)
              and not is_auxiliary_file(n)]

    if final_videos:
        if any(entries[n] > min_complete_bytes for n in final_videos):
            return FolderInspection(FolderState.COMPLETE, final_videos, partials, others)
        # A tiny final file is a failed merge, not a real artifact
        return FolderInspection(FolderState.INCOMPLETE, final_videos, partials, others)

    if partials or others:
        return FolderInspection(FolderState.INCOMPLETE, final_videos, partials, others)

    return FolderInspection(FolderState.METADATA)


def read_entries(folder: Path) -> dict[str, int] | None:
    """Return {name: size} for a directory, or None if it does not exist."""
    if not folder.is_dir():
        return None
    entries = {}
    with os.scandir(folder) as it:
        for entry in it:
            try:
                entries[entry.name] = entry.stat().st_size
            except OSError:
                entries[entry.name] = 0
    return entries


def inspect_folder(folder: Path | str,
                   min_complete_bytes: int = COMPLETE_MIN_BYTES) -> FolderInspection:
    """Snapshot read of a working directory; never raises."""
    folder = Path(folder)
    try:
        entries = read_entries(folder)
    except OSError as e:
        # Unreadable: report the state that never permits deletion
        logger.warning("Could not read folder %s: %s", folder, e)
        return FolderInspection(FolderState.INCOMPLETE)

    if entries is None:
        return FolderInspection(FolderState.MISSING)
    return classify_entries(entries, min_complete_bytes)
