"""Live mount table queries and mount/umount calls.

The kernel mount table is re-read on every query. Nothing is cached because
other processes may mount or unmount the same loop device at any time.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

from mount_partition.domain.models import MountEntry
from mount_partition.logging import LoggerFactory

from .commands import run_command
from .exceptions import MountError, MountFailedError, UnmountFailedError


log = LoggerFactory.for_mount()

MOUNTS_PATH = Path("/proc/mounts")

_OCTAL_ESCAPE_RE = re.compile(r"\\([0-7]{3})")


def _unescape(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as \ooo
    return _OCTAL_ESCAPE_RE.sub(lambda match: chr(int(match.group(1), 8)), field)


def _normalize_path(path: str) -> str:
    return os.path.realpath(path)


def parse_mount_table(text: str) -> list[MountEntry]:
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        entries.append(
            MountEntry(
                source=_unescape(parts[0]),
                target=_unescape(parts[1]),
                fstype=parts[2] if len(parts) > 2 else "",
                options=parts[3] if len(parts) > 3 else "",
            )
        )
    return entries


def read_mount_table() -> list[MountEntry]:
    """Return every active mount.

    Raises:
        MountError: If the mount table cannot be read
    """
    try:
        text = MOUNTS_PATH.read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        raise MountError(f"Cannot read mount table {MOUNTS_PATH}: {error}") from error
    return parse_mount_table(text)


def mounts_for_device(device: str) -> list[MountEntry]:
    """Return all mounts whose source is ``device``."""
    wanted = _normalize_path(device)
    return [
        entry
        for entry in read_mount_table()
        if entry.source == device or _normalize_path(entry.source) == wanted
    ]


def mount_at(mount_point) -> Optional[MountEntry]:
    """Return the top-most mount at ``mount_point``, if any."""
    wanted = _normalize_path(str(mount_point))
    found = None
    for entry in read_mount_table():
        if entry.target == wanted or _normalize_path(entry.target) == wanted:
            found = entry
    return found


def mount_device(
    device: str,
    mount_point,
    *,
    options: Optional[str] = None,
    fstype: Optional[str] = None,
) -> None:
    """Mount ``device`` at ``mount_point``.

    Raises:
        MountFailedError: If mount exits non-zero
    """
    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    if options:
        command.extend(["-o", options])
    command.extend([device, str(mount_point)])

    result = run_command(command)
    if not result.ok:
        raise MountFailedError(
            device,
            str(mount_point),
            result.command,
            result.returncode,
            result.output or "no output",
        )
    log.info(f"Mounted {device} at {mount_point}")


def unmount_target(mount_point) -> None:
    """Unmount whatever is mounted at ``mount_point``.

    Raises:
        UnmountFailedError: If umount exits non-zero
    """
    command = ["umount", str(mount_point)]
    result = run_command(command)
    if not result.ok:
        raise UnmountFailedError(
            str(mount_point),
            result.command,
            result.returncode,
            result.output or "no output",
        )
    log.info(f"Unmounted {mount_point}")
