"""Domain model for partition attach and mount operations.

These objects replace the raw strings and tuples that flow between the
partition locator, loop device and mount table helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


SECTOR_SIZE = 512


# ==============================================================================
# Partition Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionGeometry:
    """Byte range of one partition inside an image file."""

    offset_bytes: int
    length_bytes: int

    def __post_init__(self) -> None:
        if self.offset_bytes < 0:
            raise ValueError(f"offset_bytes must be >= 0, got {self.offset_bytes}")
        if self.length_bytes <= 0:
            raise ValueError(f"length_bytes must be > 0, got {self.length_bytes}")

    @property
    def end_bytes(self) -> int:
        """Last byte of the partition (inclusive)."""
        return self.offset_bytes + self.length_bytes - 1

    @classmethod
    def from_sectors(cls, start: int, size: int, sector_size: int = SECTOR_SIZE) -> PartitionGeometry:
        return cls(offset_bytes=start * sector_size, length_bytes=size * sector_size)


@dataclass(frozen=True)
class PartitionEntry:
    """One partition as listed by parted in machine-readable byte units."""

    number: int
    start_bytes: int
    end_bytes: int
    size_bytes: int
    filesystem: str = ""
    name: str = ""
    flags: str = ""

    @property
    def geometry(self) -> PartitionGeometry:
        return PartitionGeometry(offset_bytes=self.start_bytes, length_bytes=self.size_bytes)

    def format_row(self) -> str:
        return (
            f"{self.number:>3}  {self.start_bytes:>14}  {self.end_bytes:>14}  "
            f"{self.size_bytes:>14}  {self.filesystem or '-':<10} "
            f"{self.name or '-':<12} {self.flags or '-'}"
        )


# ==============================================================================
# Loop Device Domain
# ==============================================================================


@dataclass(frozen=True)
class LoopDevice:
    """A kernel loop device mapping a byte range of a backing file."""

    path: str  # e.g., "/dev/loop3"
    backing_file: str | None = None
    offset_bytes: int = 0
    size_limit_bytes: int = 0  # 0 means unbounded

    @property
    def name(self) -> str:
        """Device name without the /dev/ prefix (e.g., loop3)."""
        return self.path.rsplit("/", 1)[-1]

    def matches(self, geometry: PartitionGeometry) -> bool:
        """True when this mapping exposes exactly ``geometry``."""
        return (
            self.offset_bytes == geometry.offset_bytes
            and self.size_limit_bytes == geometry.length_bytes
        )


# ==============================================================================
# Mount Table Domain
# ==============================================================================


@dataclass(frozen=True)
class MountEntry:
    """One line of the kernel mount table."""

    source: str
    target: str
    fstype: str = ""
    options: str = ""

    @property
    def is_read_only(self) -> bool:
        return "ro" in self.options.split(",")


@dataclass(frozen=True)
class MountRecord:
    """Persisted bookkeeping for one attached (and possibly mounted) partition.

    Records are a cross-check only. Device identifiers are always re-derived
    from the kernel before anything is unmounted or detached.
    """

    image: str
    partition_index: int
    offset_bytes: int
    length_bytes: int
    loop_device: str
    mount_point: str | None = None
    created_at: str = ""

    @property
    def geometry(self) -> PartitionGeometry:
        return PartitionGeometry(offset_bytes=self.offset_bytes, length_bytes=self.length_bytes)

    def with_mount_point(self, mount_point: str | None) -> MountRecord:
        return MountRecord(
            image=self.image,
            partition_index=self.partition_index,
            offset_bytes=self.offset_bytes,
            length_bytes=self.length_bytes,
            loop_device=self.loop_device,
            mount_point=mount_point,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "partition_index": self.partition_index,
            "offset_bytes": self.offset_bytes,
            "length_bytes": self.length_bytes,
            "loop_device": self.loop_device,
            "mount_point": self.mount_point,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MountRecord:
        """Build a record from its JSON form.

        Raises:
            KeyError: If a required key is missing
            ValueError: If a numeric field cannot be converted to int
        """
        return cls(
            image=str(data["image"]),
            partition_index=int(data["partition_index"]),
            offset_bytes=int(data["offset_bytes"]),
            length_bytes=int(data["length_bytes"]),
            loop_device=str(data["loop_device"]),
            mount_point=data.get("mount_point"),
            created_at=str(data.get("created_at") or ""),
        )

    @classmethod
    def create(
        cls,
        image: str,
        partition_index: int,
        geometry: PartitionGeometry,
        loop_device: LoopDevice,
        mount_point: str | None = None,
    ) -> MountRecord:
        return cls(
            image=image,
            partition_index=partition_index,
            offset_bytes=geometry.offset_bytes,
            length_bytes=geometry.length_bytes,
            loop_device=loop_device.path,
            mount_point=mount_point,
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )


@dataclass(frozen=True)
class DetachOutcome:
    """What a detach call actually did."""

    loop_device: str | None
    unmounted: tuple[str, ...] = ()
    detached: bool = False
