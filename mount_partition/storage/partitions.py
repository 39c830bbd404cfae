"""Partition geometry resolution from parted and sfdisk.

Two independent tools are asked where a partition lives:

    parted -s -m <image> unit B print
        BYT;
        /srv/images/win-2012.raw:32212254720B:file:512:512:msdos::;
        1:1048576B:368050175B:367001600B:ntfs::boot;
        2:368050176B:32211206143B:31843155968B:ntfs::;

    sfdisk -d <image>
        label: dos
        label-id: 0x0188d0f2
        device: /srv/images/win-2012.raw
        unit: sectors

        /srv/images/win-2012.raw1 : start=        2048, size=      716800, type=7, bootable
        /srv/images/win-2012.raw2 : start=      718848, size=    62193664, type=7

parted already reports bytes; sfdisk reports 512-byte sectors. Both are
normalized to a PartitionGeometry and must agree exactly. A partition that only
one tool lists, or that the tools place differently, is never mounted.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterator, Optional

from mount_partition.domain.models import SECTOR_SIZE, PartitionEntry, PartitionGeometry
from mount_partition.logging import LoggerFactory

from .commands import run_command
from .exceptions import (
    GeometryDisagreementError,
    PartitionNotFoundError,
    ToolFailedError,
    ToolOutputError,
)
from .validation import validate_image, validate_partition_index


log = LoggerFactory.for_locator()

_SFDISK_PARTITION_RE = re.compile(
    r"^(?P<device>\S.*?)\s*:\s*start=\s*(?P<start>\d+)\s*,\s*size=\s*(?P<size>\d+)"
)
_SFDISK_DEVICE_RE = re.compile(r"^device:\s*(?P<device>.+?)\s*$")


def parted_command(image: Path) -> list[str]:
    return ["parted", "-s", "-m", str(image), "unit", "B", "print"]


def sfdisk_command(image: Path) -> list[str]:
    return ["sfdisk", "-d", str(image)]


def _parse_bytes(value: str) -> int:
    value = value.strip()
    if not value.endswith("B"):
        raise ValueError(f"expected a byte value, got {value!r}")
    return int(value[:-1])


def iter_parted_partitions(output: str) -> Iterator[PartitionEntry]:
    """Yield partitions from ``parted -m ... unit B print`` output.

    Raises:
        ValueError: If the output has no BYT header or a malformed partition line
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    try:
        header_index = lines.index("BYT;")
    except ValueError:
        raise ValueError("missing 'BYT;' header") from None

    # The line after the header describes the whole device.
    for line in lines[header_index + 2 :]:
        fields = line.rstrip(";").split(":")
        if not fields[0].isdigit():
            continue
        if len(fields) < 4:
            raise ValueError(f"malformed partition line: {line!r}")
        fields += [""] * (7 - len(fields))
        yield PartitionEntry(
            number=int(fields[0]),
            start_bytes=_parse_bytes(fields[1]),
            end_bytes=_parse_bytes(fields[2]),
            size_bytes=_parse_bytes(fields[3]),
            filesystem=fields[4],
            name=fields[5],
            flags=":".join(fields[6:]).strip(),
        )


def _sfdisk_partition_number(device: str, device_header: Optional[str]) -> Optional[int]:
    # sfdisk names partitions <device>N, or <device>pN when <device> ends in a digit.
    if not device_header or not device.startswith(device_header):
        return None
    suffix = device[len(device_header) :]
    if suffix.startswith("p"):
        suffix = suffix[1:]
    if suffix.isdigit():
        return int(suffix)
    return None


def iter_sfdisk_partitions(
    output: str, sector_size: int = SECTOR_SIZE
) -> Iterator[tuple[int, PartitionGeometry]]:
    """Yield ``(number, geometry)`` pairs from ``sfdisk -d`` output."""
    device_header = None
    position = 0
    for line in output.splitlines():
        line = line.strip()
        header = _SFDISK_DEVICE_RE.match(line)
        if header:
            device_header = header.group("device")
            continue
        match = _SFDISK_PARTITION_RE.match(line)
        if not match:
            continue
        position += 1
        number = _sfdisk_partition_number(match.group("device"), device_header)
        if number is None:
            number = position
        size = int(match.group("size"))
        if size == 0:
            # empty slot in a dos table
            continue
        yield number, PartitionGeometry.from_sectors(
            int(match.group("start")), size, sector_size
        )


def _read_table(command: list[str], image: Path) -> str:
    result = run_command(command)
    if not result.ok:
        raise ToolFailedError(
            result.command,
            result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            context=f"Reading partition table of {image}",
        )
    return result.stdout


def geometry_from_parted(image: Path, partition_index: int) -> Optional[PartitionGeometry]:
    command = parted_command(image)
    output = _read_table(command, image)
    try:
        for entry in iter_parted_partitions(output):
            if entry.number == partition_index:
                log.debug(
                    f"parted: partition {partition_index} of {image} at "
                    f"offset={entry.start_bytes} length={entry.size_bytes}"
                )
                return entry.geometry
    except ValueError as error:
        raise ToolOutputError(command, str(error)) from error
    log.debug(f"parted: partition {partition_index} not listed for {image}")
    return None


def geometry_from_sfdisk(image: Path, partition_index: int) -> Optional[PartitionGeometry]:
    command = sfdisk_command(image)
    output = _read_table(command, image)
    try:
        for number, geometry in iter_sfdisk_partitions(output):
            if number == partition_index:
                log.debug(
                    f"sfdisk: partition {partition_index} of {image} at "
                    f"offset={geometry.offset_bytes} length={geometry.length_bytes}"
                )
                return geometry
    except ValueError as error:
        raise ToolOutputError(command, str(error)) from error
    log.debug(f"sfdisk: partition {partition_index} not listed for {image}")
    return None


def locate(image, partition_index) -> PartitionGeometry:
    """Return the byte geometry of a partition, cross-checked by two tools.

    Args:
        image: Path to a partitioned disk image
        partition_index: 1-based partition number

    Raises:
        InvalidInputError: If the image or index is unusable
        PartitionNotFoundError: If neither tool lists the partition
        GeometryDisagreementError: If the tools disagree, or only one lists it
        ToolFailedError: If parted or sfdisk exits non-zero
    """
    image_path = validate_image(image)
    index = validate_partition_index(partition_index)

    parted_geometry = geometry_from_parted(image_path, index)
    sfdisk_geometry = geometry_from_sfdisk(image_path, index)

    if parted_geometry is None and sfdisk_geometry is None:
        raise PartitionNotFoundError(str(image_path), index)
    if parted_geometry != sfdisk_geometry:
        log.error(
            f"Partition {index} of {image_path}: parted={parted_geometry} "
            f"sfdisk={sfdisk_geometry}"
        )
        raise GeometryDisagreementError(
            str(image_path), index, parted_geometry, sfdisk_geometry
        )

    log.info(
        f"Partition {index} of {image_path}: offset={parted_geometry.offset_bytes} "
        f"length={parted_geometry.length_bytes}"
    )
    return parted_geometry


def list_partitions(image) -> list[PartitionEntry]:
    """List every partition parted reports for ``image``.

    Raises:
        InvalidInputError: If the image is unusable
        ToolFailedError: If parted exits non-zero
        ToolOutputError: If parted's output cannot be parsed
    """
    image_path = validate_image(image)
    command = parted_command(image_path)
    output = _read_table(command, image_path)
    try:
        return list(iter_parted_partitions(output))
    except ValueError as error:
        raise ToolOutputError(command, str(error)) from error
