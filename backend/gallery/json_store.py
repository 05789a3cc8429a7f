"""
JSON Document Store

Safe read and locked atomic write for small JSON documents such as the
image manifest.

Write protocol:
1. Create ``<file>.lock`` exclusively (O_EXCL); back off and retry if it exists
2. Write ``<file>.tmp``
3. ``os.replace`` the temp file over the target
4. Remove the lock
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

from .errors import ManifestWriteConflict

logger = logging.getLogger(__name__)


def dumps_document(data: Any) -> str:
    """Deterministic serialization: sorted keys, 2-space indent, trailing newline."""
    return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True) + "\n"


def safe_read_json(file_path: Path, default: Any = None) -> Any:
    """
    Read a JSON document.

    Returns:
        Parsed data, or ``default`` if the file is missing, empty or invalid.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        logger.debug(f"[JsonStore] File does not exist: {file_path}")
        return default
    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"[JsonStore] Failed to read {file_path}: {e}")
        return default
    if not content.strip():
        logger.warning(f"[JsonStore] File is empty: {file_path}")
        return default
    try:
        return json.loads(content)
    except ValueError as e:
        logger.error(f"[JsonStore] Invalid JSON in {file_path}: {e}")
        return default


async def safe_write_json(
    file_path: Path,
    data: Any,
    max_retries: int = 5,
    retry_delay: float = 0.1,
    stale_lock_seconds: float = 30.0,
) -> None:
    """
    Write ``data`` atomically under a lock file.

    Raises:
        ManifestWriteConflict: if the lock could not be taken or the write
            kept failing after ``max_retries`` attempts.
    """
    file_path = Path(file_path)
    lock_file = file_path.with_name(file_path.name + ".lock")
    temp_file = file_path.with_name(file_path.name + ".tmp")
    payload = dumps_document(data)
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        delay = retry_delay * (2 ** (attempt - 1))

        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            last_error = e
            if _break_stale_lock(lock_file, stale_lock_seconds):
                continue
            logger.debug(f"[JsonStore] {file_path.name} is locked, waiting (attempt {attempt})")
            await asyncio.sleep(delay)
            continue
        except OSError as e:
            last_error = e
            logger.error(f"[JsonStore] Cannot create lock for {file_path} (attempt {attempt}): {e}")
            await asyncio.sleep(delay)
            continue

        try:
            with os.fdopen(fd, "w") as lock:
                lock.write(str(os.getpid()))
            temp_file.write_text(payload, encoding="utf-8")
            os.replace(temp_file, file_path)
            logger.debug(f"[JsonStore] Wrote {file_path}")
            return
        except OSError as e:
            last_error = e
            logger.error(f"[JsonStore] Error writing {file_path} (attempt {attempt}): {e}")
            temp_file.unlink(missing_ok=True)
        finally:
            lock_file.unlink(missing_ok=True)

        await asyncio.sleep(delay)

    raise ManifestWriteConflict(
        f"Could not write {file_path.name} after {max_retries} attempts: {last_error}"
    )


def _break_stale_lock(lock_file: Path, max_age: float) -> bool:
    """Remove a lock left behind by a crashed writer."""
    try:
        age = time.time() - lock_file.stat().st_mtime
    except FileNotFoundError:
        # Released between our open and stat; retry immediately
        return True
    if age < max_age:
        return False
    logger.warning(f"[JsonStore] Breaking stale lock {lock_file} ({age:.0f}s old)")
    lock_file.unlink(missing_ok=True)
    return True
