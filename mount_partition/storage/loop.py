"""Loop device queries, attachment and detachment via losetup.

Loop devices are host-global and may be shared with other invocations, so
nothing here trusts a device name it did not just read back from the kernel:

    losetup -j <image> -o <offset>
        /dev/loop3: [66306]:1181425 (/srv/images/win-2012.raw), offset 1048576, sizelimit 367001600

An existing mapping of exactly the requested byte range is reused, which makes
``attach`` idempotent and lets concurrent callers converge on one device.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from mount_partition.config import settings
from mount_partition.domain.models import LoopDevice, PartitionGeometry
from mount_partition.logging import LoggerFactory

from .commands import run_command
from .exceptions import AttachFailedError, DetachFailedError, ToolFailedError, ToolOutputError


log = LoggerFactory.for_loop()

LOOP_DEVICE_RE = re.compile(r"^/dev/loop/?\d+$")
_LOSETUP_LINE_RE = re.compile(r"^(?P<device>/dev/\S+?):\s*(?P<meta>.*)$")
_BACKING_FILE_RE = re.compile(r"\((?P<file>.*)\)")
_OFFSET_RE = re.compile(r"\boffset\s+(\d+)")
_SIZELIMIT_RE = re.compile(r"\bsizelimit\s+(\d+)")


def is_loop_device_path(path: str) -> bool:
    return bool(LOOP_DEVICE_RE.match(path or ""))


def parse_losetup_associations(output: str) -> list[LoopDevice]:
    """Parse ``losetup -j`` output into LoopDevice objects.

    Raises:
        ValueError: If a non-empty line is not a ``device: metadata`` line
    """
    devices = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        match = _LOSETUP_LINE_RE.match(line)
        if not match:
            raise ValueError(f"unrecognized losetup line: {line!r}")
        meta = match.group("meta")
        backing = _BACKING_FILE_RE.search(meta)
        offset = _OFFSET_RE.search(meta)
        sizelimit = _SIZELIMIT_RE.search(meta)
        devices.append(
            LoopDevice(
                path=match.group("device"),
                backing_file=backing.group("file") if backing else None,
                offset_bytes=int(offset.group(1)) if offset else 0,
                size_limit_bytes=int(sizelimit.group(1)) if sizelimit else 0,
            )
        )
    return devices


def find_loop_devices(image: Path, offset_bytes: int) -> list[LoopDevice]:
    """Return every loop device already associated with (image, offset).

    Raises:
        ToolFailedError: If losetup exits non-zero
        ToolOutputError: If losetup's output cannot be parsed
    """
    command = ["losetup", "-j", str(image), "-o", str(offset_bytes)]
    result = run_command(command)
    if not result.ok:
        raise ToolFailedError(
            result.command,
            result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            context=f"Querying loop devices for {image} at offset {offset_bytes}",
        )
    try:
        devices = parse_losetup_associations(result.stdout)
    except ValueError as error:
        raise ToolOutputError(command, str(error)) from error
    # losetup -o filters already; keep the check in case an older losetup ignores it
    return [device for device in devices if device.offset_bytes == offset_bytes]


def find_matching_loop_devices(image: Path, geometry: PartitionGeometry) -> list[LoopDevice]:
    """Return loop devices exposing exactly ``geometry`` of ``image``."""
    return [
        device
        for device in find_loop_devices(image, geometry.offset_bytes)
        if device.matches(geometry)
    ]


def attach(image: Path, geometry: PartitionGeometry, *, read_only: Optional[bool] = None) -> LoopDevice:
    """Ensure a loop device maps exactly ``geometry`` of ``image``.

    Reuses an existing mapping with the same offset and size limit, otherwise
    creates one with an explicit size limit so the device never exposes bytes
    past the end of the partition.

    Raises:
        AttachFailedError: If a mapping at this offset has a different size
            limit, or losetup fails or prints something that is not a loop
            device path
    """
    existing = find_loop_devices(image, geometry.offset_bytes)
    for device in existing:
        if device.matches(geometry):
            log.info(
                f"Reusing existing loop device {device.path} for {image} "
                f"(offset={geometry.offset_bytes} length={geometry.length_bytes})"
            )
            return device
    if existing:
        mismatched = ", ".join(
            f"{device.path} sizelimit={device.size_limit_bytes or 'unbounded'}"
            for device in existing
        )
        raise AttachFailedError(
            str(image),
            f"existing mapping at offset {geometry.offset_bytes} does not match "
            f"length {geometry.length_bytes} ({mismatched})",
        )

    if read_only is None:
        read_only = settings.get_bool("read_only")
    command = [
        "losetup",
        "--find",
        "--show",
        "--offset",
        str(geometry.offset_bytes),
        "--sizelimit",
        str(geometry.length_bytes),
    ]
    if read_only:
        command.append("--read-only")
    command.append(str(image))

    result = run_command(command)
    if not result.ok:
        raise AttachFailedError(
            str(image),
            f"exit={result.returncode}: {result.output or 'no output'}",
            command=result.command,
        )
    device_path = result.stdout.strip()
    if not is_loop_device_path(device_path):
        raise AttachFailedError(
            str(image),
            f"unexpected device path {device_path!r}",
            command=result.command,
        )

    log.info(
        f"Attached {image} to {device_path} "
        f"(offset={geometry.offset_bytes} length={geometry.length_bytes})"
    )
    return LoopDevice(
        path=device_path,
        backing_file=str(image),
        offset_bytes=geometry.offset_bytes,
        size_limit_bytes=geometry.length_bytes,
    )


def detach_loop_device(device: str) -> None:
    """Detach a loop device.

    Raises:
        DetachFailedError: If the path is not a loop device or losetup fails
    """
    if not is_loop_device_path(device):
        raise DetachFailedError(device, "not a loop device path")
    command = ["losetup", "-d", device]
    result = run_command(command)
    if not result.ok:
        raise DetachFailedError(
            device,
            f"exit={result.returncode}: {result.output or 'no output'}",
            command=result.command,
        )
    log.info(f"Detached loop device {device}")
