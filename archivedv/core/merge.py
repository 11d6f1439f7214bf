"""
Merge leftover audio/video fragments into a single container.

yt-dlp leaves "<title>.f<format id>.<ext>" files behind when a capture
stops before its own merge step.  Fragments are grouped by title, split
into audio and video, and each complete pair is stream-copied by ffmpeg
into "<title>.mp4" (or ".mkv" for webm video).
"""

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from archivedv.core.constants import (
    FFMPEG_BIN,
    FRAGMENT_EXTENSIONS,
    AUDIO_EXTENSIONS,
    VIDEO_FORMAT_IDS,
    AUDIO_FORMAT_IDS,
    CORRUPT_FRAGMENT_MAX_BYTES,
    MERGE_CLEANUP_ATTEMPTS,
    MERGE_CLEANUP_BASE_DELAY_SEC,
    MERGE_TIMEOUT_SEC,
)
from archivedv.core.folder_state import is_final_video_file, is_fragment_file
from archivedv.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

_FRAGMENT_NAME_RE = re.compile(
    r"^(?P<title>.+)\.f(?P<format_id>\d+)\.(?P<ext>"
    + "|".join(FRAGMENT_EXTENSIONS) + r")$",
    re.IGNORECASE,
)

_MAX_SCAN_DEPTH = 4


def fragment_title(name: str) -> str | None:
    m = _FRAGMENT_NAME_RE.match(name)
    return m.group("title") if m else None


def fragment_format_id(name: str) -> str | None:
    m = _FRAGMENT_NAME_RE.match(name)
    return m.group("format_id") if m else None


def _has_audio_ext(name: str) -> bool:
    return name.lower().rsplit(".", 1)[-1] in AUDIO_EXTENSIONS


def is_audio_fragment(name: str) -> bool:
    """Known audio format id, or an audio-only container."""
    format_id = fragment_format_id(name)
    if format_id is None:
        return False
    if format_id in AUDIO_FORMAT_IDS:
        return True
    return _has_audio_ext(name)


def is_video_fragment(name: str, names: list[str]) -> bool:
    """
    Known video format id; otherwise a video container counts as video
    only when a same-titled audio-container fragment sits next to it.
    """
    format_id = fragment_format_id(name)
    if format_id is None:
        return False
    if format_id in VIDEO_FORMAT_IDS:
        return True
    if _has_audio_ext(name):
        return False

    title = fragment_title(name)
    return any(
        other != name and fragment_title(other) == title and _has_audio_ext(other)
        for other in names
    )


@dataclass
class FragmentGroup:
    title: str
    videos: list[str] = field(default_factory=list)
    audios: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return bool(self.videos and self.audios)

    @property
    def files(self) -> list[str]:
        return self.videos + self.audios


def group_fragments(names: list[str]) -> dict[str, FragmentGroup]:
    groups: dict[str, FragmentGroup] = {}
    for name in sorted(names):
        if not is_fragment_file(name):
            continue
        title = fragment_title(name)
        if not title:
            continue
        group = groups.setdefault(title, FragmentGroup(title))
        if is_audio_fragment(name):
            group.audios.append(name)
        elif is_video_fragment(name, names):
            group.videos.append(name)
    return groups


def merged_output_name(title: str, video_file: str) -> str:
    ext = ".mkv" if video_file.lower().endswith(".webm") else ".mp4"
    return f"{title}{ext}"


@dataclass
class MergeResult:
    folder: Path
    title: str
    output: str
    ok: bool
    skipped: bool = False
    error: str = ""


class FragmentMerger:
    """Pairs fragments and drives ffmpeg; safe to run repeatedly on the same folder."""

    def __init__(self, download_dir: Path | None = None,
                 ffmpeg_bin: str = FFMPEG_BIN,
                 run: Callable = run_subprocess_capture,
                 sleep: Callable[[float], None] = time.sleep,
                 corrupt_max_bytes: int = CORRUPT_FRAGMENT_MAX_BYTES,
                 cleanup_attempts: int = MERGE_CLEANUP_ATTEMPTS):
        self.download_dir = download_dir
        self.ffmpeg_bin = ffmpeg_bin
        self._run = run
        self._sleep = sleep
        self.corrupt_max_bytes = corrupt_max_bytes
        self.cleanup_attempts = cleanup_attempts

    # ── Entry points ──────────────────────────────────────────────────

    def merge_all(self, root: Path | None = None) -> list[MergeResult]:
        """Merge fragments in every folder below the download root."""
        root = Path(root or self.download_dir)
        logger.info("Starting auto merge of audio and video in all folders under %s", root)
        results = []
        for folder in self.find_fragment_folders(root):
            results.extend(self.merge_folder(folder))
        logger.info("Auto merge completed for all folders")
        return results

    def merge_folder(self, folder: Path | str) -> list[MergeResult]:
        folder = Path(folder)
        try:
            names = os.listdir(folder)
        except OSError as e:
            logger.warning("Cannot merge in %s: %s", folder, e)
            return []

        if any(is_final_video_file(n) for n in names):
            logger.info("Skipping merge in folder %s - already has final video", folder)
            return []

        pairs = [g for g in group_fragments(names).values() if g.complete]
        if not pairs:
            return []

        logger.info("Starting auto merge of audio and video in folder: %s", folder)
        results = [self._merge_group(folder, group) for group in pairs]
        logger.info("Auto merge completed for folder: %s", folder)
        return results

    def find_fragment_folders(self, root: Path) -> list[Path]:
        found = []

        def walk(path: Path, depth: int):
            if depth > _MAX_SCAN_DEPTH:
                return
            try:
                entries = list(os.scandir(path))
            except OSError:
                return
            if any(e.is_file() and is_fragment_file(e.name) for e in entries):
                found.append(path)
            for e in entries:
                if e.is_dir(follow_symlinks=False):
                    walk(Path(e.path), depth + 1)

        if root.is_dir():
            walk(root, 0)
        return found

    # ── Internals ─────────────────────────────────────────────────────

    def _largest(self, folder: Path, names: list[str]) -> str:
        def size(n):
            try:
                return (folder / n).stat().st_size
            except OSError:
                return -1
        return max(names, key=size)

    def _merge_group(self, folder: Path, group: FragmentGroup) -> MergeResult:
        video_file = self._largest(folder, group.videos)
        audio_file = self._largest(folder, group.audios)
        output = merged_output_name(group.title, video_file)
        output_path = folder / output

        if output_path.exists():
            logger.info('Merged file already exists for "%s", skipping.', group.title)
            return MergeResult(folder, group.title, output, ok=True, skipped=True)

        logger.info('Merging video "%s" + audio "%s" -> "%s"', video_file, audio_file, output)
        args = [
            self.ffmpeg_bin,
            "-loglevel", "error",
            "-y",
            "-i", str(folder / video_file),
            "-i", str(folder / audio_file),
            "-c", "copy",
            str(output_path),
        ]
        try:
            result = self._run(args, timeout=MERGE_TIMEOUT_SEC)
            code, stderr = result.returncode, (result.stderr or "")
        except (OSError, subprocess.SubprocessError) as e:
            code, stderr = None, str(e)

        if code == 0:
            logger.info('Successfully merged "%s"', group.title)
            self._remove_fragments(folder, group)
            return MergeResult(folder, group.title, output, ok=True)

        logger.error('Failed to merge "%s", ffmpeg exit code %s', group.title, code)
        if stderr.strip():
            logger.error("ffmpeg error: %s", stderr.strip()[:2000])
        self._prune_corrupt(folder, group)
        return MergeResult(folder, group.title, output, ok=False, error=stderr.strip()[:2000])

    def _remove_fragments(self, folder: Path, group: FragmentGroup):
        """Delete consumed fragments with their .ytdl and -Frag leftovers."""
        try:
            names = os.listdir(folder)
        except OSError as e:
            logger.warning("Failed to read folder for cleanup: %s", e)
            names = []

        targets = []
        for frag in group.files:
            targets.append(folder / frag)
            targets.append(folder / f"{frag}.ytdl")
            targets.extend(folder / n for n in names if n.startswith(f"{frag}-Frag"))

        pending = targets
        for attempt in range(1, self.cleanup_attempts + 1):
            busy = []
            for path in pending:
                try:
                    path.unlink(missing_ok=True)
                except PermissionError:
                    busy.append(path)
                except OSError as e:
                    logger.warning('Failed to delete "%s": %s', path.name, e)
            if not busy:
                logger.info('Successfully cleaned up fragment files for "%s"', group.title)
                return
            pending = busy
            if attempt < self.cleanup_attempts:
                delay = MERGE_CLEANUP_BASE_DELAY_SEC * (2 ** attempt)
                logger.info('Retrying cleanup for "%s" in %.0fs (attempt %d/%d)',
                            group.title, delay, attempt + 1, self.cleanup_attempts)
                self._sleep(delay)

        logger.warning('Could not delete %d file(s) for "%s" after %d attempts: %s',
                       len(pending), group.title, self.cleanup_attempts,
                       ", ".join(p.name for p in pending))

    def _prune_corrupt(self, folder: Path, group: FragmentGroup):
        """
        After a failed merge, delete only fragments small enough to be
        truncated so yt-dlp fetches them again; larger ones stay for
        manual recovery.
        """
        for frag in group.files:
            path = folder / frag
            try:
                size = path.stat().st_size
            except OSError:
                continue
            if size >= self.corrupt_max_bytes:
                continue
            try:
                path.unlink()
                logger.info('Deleted corrupt fragment "%s" (%d bytes) to allow re-download',
                            frag, size)
                (folder / f"{frag}.ytdl").unlink(missing_ok=True)
            except OSError as e:
                logger.warning('Failed to delete corrupt fragment "%s": %s', frag, e)
