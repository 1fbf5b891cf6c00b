"""Shared constants, paths, logging setup and small utilities."""

from __future__ import annotations

import datetime as dt
import logging
import os
import subprocess
import tempfile
import time
from pathlib import Path

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "devclean"
DEFAULT_MODEL = "gemini-2.5-flash-lite"
CACHE_FILE_NAME = ".devclean-cache.json"
MANIFEST_NAME = "package.json"

SECONDS_PER_DAY = 86400


def data_dir() -> Path:
    """Per-user application data directory (``DEVCLEAN_DATA_DIR`` overrides)."""
    override = os.environ.get("DEVCLEAN_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / APP_NAME


def default_quarantine_dir() -> Path:
    override = os.environ.get("DEVCLEAN_QUARANTINE_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return data_dir() / "quarantine"


def default_log_file() -> Path:
    override = os.environ.get("DEVCLEAN_LOG", "").strip()
    if override:
        return Path(override).expanduser()
    return data_dir() / "actions.log"


def default_max_workers() -> int:
    raw = os.environ.get("DEVCLEAN_MAX_WORKERS", "").strip()
    if raw.isdigit() and int(raw) > 0:
        return int(raw)
    return max(2, min(8, os.cpu_count() or 4))


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def days_since(epoch: float, now_ts: float | None = None) -> int:
    ref = now_ts if now_ts is not None else time.time()
    return max(0, int((ref - epoch) // SECONDS_PER_DAY))


def run_command(command: list[str], timeout: int = 120) -> tuple[int, str, str]:
    try:
        cp = subprocess.run(
            command,
            text=True,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
        return cp.returncode, cp.stdout, cp.stderr
    except Exception as exc:  # pylint: disable=broad-except
        return 1, "", str(exc)


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in the temp dir."""
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        probe = preferred.parent / ".write_probe"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback


def get_logger() -> logging.Logger:
    return logging.getLogger(APP_NAME)


def setup_logger(log_file: Path | None = None, stream: bool = False) -> logging.Logger:
    logger = get_logger()
    if logger.handlers:
        return logger

    chosen = resolve_writable_path(log_file or default_log_file(), "actions.log")

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if stream:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger
