#!/usr/bin/env python3
"""
ArchivedV main entry point.
Runs the capture orchestrator headless until interrupted.
"""

import argparse
import json
import logging
import os
import shutil
import signal
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from archivedv.core.config import AppConfig
from archivedv.core.constants import APP_NAME, APP_VERSION, DB_FILENAME, LOG_DIRNAME
from archivedv.core.diagnostics import get_diagnostics, missing_tools
from archivedv.core.store import JsonStore

logger = logging.getLogger("archivedv")


def setup_logging(log_dir: Path, verbose: bool = False) -> Path:
    """File log under the data directory plus stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "app.log"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # urllib3 is chatty at debug level
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return log_file


def check_prerequisites(config: AppConfig):
    """Check that yt-dlp and ffmpeg are available; exit if not."""
    missing = missing_tools(config.ytdlp_bin, config.ffmpeg_bin)
    if missing:
        logger.error("Missing required tools: %s. PATH = %s",
                     ", ".join(missing), os.environ.get("PATH", ""))
        sys.exit(1)

    logger.info("yt-dlp found at: %s", shutil.which(config.ytdlp_bin))
    logger.info("ffmpeg found at: %s", shutil.which(config.ffmpeg_bin))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="archivedv",
                                     description="Archive YouTube live streams with yt-dlp.")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.json (default: data/config.json)")
    parser.add_argument("--verbose", action="store_true",
                        help="Log raw yt-dlp output at debug level")
    parser.add_argument("--diagnostics", action="store_true",
                        help="Print tool versions and cookies state, then exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = AppConfig(args.config)
    log_file = setup_logging(config.data_dir / LOG_DIRNAME, args.verbose)

    if args.diagnostics:
        db_path = config.data_dir / DB_FILENAME
        store = JsonStore(db_path) if db_path.exists() else None
        print(json.dumps(get_diagnostics(config, store), indent=2))
        return 0

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Data dir: %s", config.data_dir)
    logger.info("Download dir: %s", config.download_dir)
    logger.info("Log file: %s", log_file)
    logger.info("=" * 60)

    check_prerequisites(config)

    from archivedv.core.orchestrator import Orchestrator

    stop = threading.Event()

    def _request_stop(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        config.download_dir.mkdir(parents=True, exist_ok=True)
        orchestrator = Orchestrator(config)
        orchestrator.start()
        while not stop.wait(1.0):
            if not orchestrator.is_running():
                logger.error("Core loop exited unexpectedly")
                break
        orchestrator.stop()
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
