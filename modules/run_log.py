"""Transcript logging, log pruning and the status flag file for cron jobs.

Each run writes `<log_dir>/<script>_<YYYYmmdd_HHMMSS>.log`. Old transcripts
for the same script are pruned at the end of the run, and a one-character
status file (`0` / `1`) is overwritten so monitoring can pick it up.
"""
import contextlib
import glob
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from modules.run_report import RunStatus

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
TRANSCRIPT_TIME_FORMAT = "%Y%m%d_%H%M%S"


def transcript_path(log_dir: Path, script_name: str, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now()
    return Path(log_dir) / f"{script_name}_{now.strftime(TRANSCRIPT_TIME_FORMAT)}.log"


@contextlib.contextmanager
def transcript(log_dir: Path, script_name: str, level: int = logging.INFO) -> Iterator[Path]:
    """Attach a file handler to the root logger for the duration of a run.

    Creates `log_dir` if needed; an OSError from that propagates to the
    caller as a setup failure. The handler is always detached and closed.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    path = transcript_path(log_dir, script_name)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)
    try:
        yield path
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()


def prune_logs(log_dir: Path, script_name: str, max_age_days: int = 7, now: Optional[float] = None) -> List[Path]:
    """Delete this script's transcripts older than `max_age_days`.

    Returns the deleted paths. A file that cannot be removed is logged and
    left for the next run.
    """
    now = time.time() if now is None else now
    cutoff = now - max_age_days * 86400
    pattern = os.path.join(str(log_dir), f"{glob.escape(script_name)}_*.log")

    removed: List[Path] = []
    for f in sorted(glob.glob(pattern)):
        try:
            if os.path.getmtime(f) < cutoff:
                os.remove(f)
                removed.append(Path(f))
        except OSError as e:
            logger.warning(f"Could not prune {f}: {e}")
    if removed:
        logger.info(f"Pruned {len(removed)} transcript(s) older than {max_age_days} days")
    return removed


def write_status(path: Path, status: RunStatus) -> None:
    """Overwrite the status flag file with `0` (success) or `1` (failure)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(status.value, encoding="ascii")
    logger.info(f"Wrote run status {status.name} ({status.value}) to {path}")
