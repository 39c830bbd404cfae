"""Host-wide advisory lock keyed by image path.

Attach+mount and unmount+detach each run while holding this lock, so that
two invocations on the same image cannot interleave their mount table checks
and mount calls. The lock is advisory: it only orders mount-partition
processes, never other tools.

Usage:
    from mount_partition.storage.image_lock import image_lock

    with image_lock(Path("/srv/images/disk.raw")):
        device = loop.attach(image, geometry)
        ...
"""

from __future__ import annotations

import fcntl
import hashlib
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from mount_partition.config import settings
from mount_partition.logging import LoggerFactory

from .exceptions import LockTimeoutError, StorageError


log = LoggerFactory.for_records()

POLL_INTERVAL_SECONDS = 0.1


def lock_path_for(image: Path) -> Path:
    lock_dir = Path(settings.get_setting("lock_dir") or settings.DEFAULT_LOCK_DIR)
    digest = hashlib.sha256(str(image).encode("utf-8")).hexdigest()[:32]
    return lock_dir / f"{digest}.lock"


@contextmanager
def image_lock(image: Path, *, timeout: Optional[float] = None) -> Generator[Path, None, None]:
    """Hold an exclusive flock for ``image`` for the duration of the block.

    Args:
        image: Resolved image path; the lock file name is derived from it
        timeout: Seconds to wait (defaults to the ``lock_timeout_seconds`` setting)

    Raises:
        LockTimeoutError: If another process holds the lock for too long
        StorageError: If the lock file cannot be opened
    """
    if timeout is None:
        timeout = settings.get_int(
            "lock_timeout_seconds", settings.DEFAULT_LOCK_TIMEOUT_SECONDS
        )
    lock_path = lock_path_for(image)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(lock_path, "a+")
    except OSError as error:
        raise StorageError(f"Cannot open lock file {lock_path} for {image}: {error}") from error

    with handle:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(str(image), str(lock_path), timeout) from None
                time.sleep(POLL_INTERVAL_SECONDS)
        log.debug(f"Acquired lock {lock_path} for {image}")
        try:
            yield lock_path
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
            log.debug(f"Released lock {lock_path} for {image}")
