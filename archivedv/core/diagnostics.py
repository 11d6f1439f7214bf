"""
Diagnostics: external tool probes and environment checks for --diagnostics
and the startup prerequisite check.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from archivedv.core.auth import cookies_usable
from archivedv.core.config import AppConfig
from archivedv.core.security_utils import run_subprocess_capture
from archivedv.core.store import Store

logger = logging.getLogger(__name__)

# executable -> flag that prints its version
_VERSION_FLAGS = {"ffmpeg": "-version"}


@dataclass
class ToolStatus:
    name: str
    path: str | None
    version: str

    @property
    def found(self) -> bool:
        return self.path is not None


def probe_tool(binary: str) -> ToolStatus:
    """Locate `binary` on PATH and ask it for its version (first output line)."""
    path = shutil.which(binary)
    if path is None:
        return ToolStatus(binary, None, "Not installed")

    flag = _VERSION_FLAGS.get(Path(binary).name, "--version")
    try:
        result = run_subprocess_capture([binary, flag], timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Could not run %s %s: %s", binary, flag, e)
        return ToolStatus(binary, path, f"Error: {e}")

    if result.returncode != 0:
        return ToolStatus(binary, path, f"Error (rc={result.returncode})")
    lines = (result.stdout or "").strip().splitlines()
    return ToolStatus(binary, path, lines[0] if lines else "unknown")


def missing_tools(*binaries: str) -> list[str]:
    """Names of required executables that are not on PATH."""
    return [name for name in binaries if not shutil.which(name)]


def cookies_state(cookies_path: Path, use_cookies: bool) -> dict:
    info = {
        "path": str(cookies_path),
        "enabled": use_cookies,
        "present": cookies_path.is_file(),
        "usable": cookies_usable(use_cookies, cookies_path),
        "last_modified": None,
    }
    if info["present"]:
        info["last_modified"] = datetime.fromtimestamp(
            cookies_path.stat().st_mtime, tz=timezone.utc
        ).isoformat()
    return info


def _dir_state(path: Path) -> dict:
    return {
        "path": str(path),
        "exists": path.is_dir(),
        "writable": path.is_dir() and os.access(path, os.W_OK),
    }


def get_diagnostics(config: AppConfig, store: Store | None = None) -> dict:
    """Tool versions, cookies, directories and (when a store is given) queue sizes."""
    snapshot = store.load() if store is not None else None
    report = {
        "tools": [asdict(probe_tool(b)) for b in (config.ytdlp_bin, config.ffmpeg_bin)],
        "cookies": cookies_state(config.cookies_path,
                                 snapshot.use_cookies if snapshot else False),
        "data_dir": _dir_state(config.data_dir),
        "download_dir": _dir_state(config.download_dir),
    }
    if snapshot is not None:
        report["channels"] = len(snapshot.channels)
        report["retry_queue"] = len(snapshot.retry_queue)
        report["current_downloads"] = len(snapshot.current_downloads)
    return report
