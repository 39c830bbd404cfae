"""Domain models for partition attach and mount operations.

This package contains the value objects passed between the partition
locator, loop device, mount table and record helpers.
"""

from __future__ import annotations

from .models import (
    SECTOR_SIZE,
    DetachOutcome,
    LoopDevice,
    MountEntry,
    MountRecord,
    PartitionEntry,
    PartitionGeometry,
)


__all__ = [
    "SECTOR_SIZE",
    "DetachOutcome",
    "LoopDevice",
    "MountEntry",
    "MountRecord",
    "PartitionEntry",
    "PartitionGeometry",
]
