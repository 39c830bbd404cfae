"""Attach, mount, unmount and detach a partition of a disk image.

Lifecycle of one (image, partition) binding:

    Unattached --attach--> Attached --mount--> Mounted
    Mounted --unmount--> Attached --detach--> Unattached

``attach_partition`` and ``mount`` walk forward, ``unmount`` and ``detach``
walk back. Every step re-reads the kernel state it depends on (partition
tables, losetup associations, the mount table); the persisted records are only
a cross-check. A failed mount leaves the loop device attached: detaching is a
separate, explicit step.
"""

from __future__ import annotations

from contextlib import nullcontext
from pathlib import Path
from typing import Optional

from mount_partition.config import settings
from mount_partition.domain.models import (
    DetachOutcome,
    LoopDevice,
    MountEntry,
    MountRecord,
    PartitionGeometry,
)
from mount_partition.logging import LoggerFactory, operation_context

from . import loop, mounts, partitions, records
from .exceptions import (
    AlreadyMountedError,
    InvalidInputError,
    MismatchError,
    NotMountedError,
    RecordError,
    StillInUseError,
)
from .image_lock import image_lock
from .validation import validate_image, validate_mount_target, validate_partition_index


log = LoggerFactory.for_mount()


def _resolve_mount_point(mount_point) -> Path:
    if mount_point is None or str(mount_point).strip() == "":
        raise InvalidInputError("Mount point is empty", mount_point)
    path = Path(mount_point).expanduser().resolve()
    if not path.name:
        raise InvalidInputError(f"{path} cannot be used as a mount point", str(mount_point))
    return path


def _update_records(update, *args, **kwargs) -> None:
    # Records are a cross-check; a read-only image directory must not fail the operation.
    try:
        update(*args, **kwargs)
    except RecordError as error:
        log.warning(f"Mount records not updated: {error}")


def _mount_options(options: Optional[str], read_only: bool) -> Optional[str]:
    parts = [part for part in (options or "").split(",") if part]
    if read_only and "ro" not in parts:
        parts = [part for part in parts if part != "rw"]
        parts.insert(0, "ro")
    return ",".join(parts) or None


def _ensure_not_mounted(device: str) -> None:
    active = mounts.mounts_for_device(device)
    if active:
        raise AlreadyMountedError(device, [entry.target for entry in active])


def _is_mounted_at(device: str, mount_point: Optional[str]) -> bool:
    if not mount_point:
        return False
    entry = mounts.mount_at(mount_point)
    return entry is not None and entry.source == device


def _record_attachment(
    image: Path, partition_index: int, geometry: PartitionGeometry, device: LoopDevice
) -> MountRecord:
    existing = records.get_image_record(image, partition_index)
    mount_point = None
    if existing and existing.loop_device == device.path and _is_mounted_at(
        device.path, existing.mount_point
    ):
        mount_point = existing.mount_point
    record = MountRecord.create(str(image), partition_index, geometry, device, mount_point)
    _update_records(records.save_record, record)
    return record


def attach_partition(image, partition_index, *, read_only: Optional[bool] = None) -> LoopDevice:
    """Make sure a loop device exposes exactly one partition of ``image``.

    Idempotent: a second call for the same partition returns the same device.

    Raises:
        InvalidInputError, PartitionNotFoundError, GeometryDisagreementError,
        AttachFailedError, ToolError, LockTimeoutError
    """
    image_path = validate_image(image)
    index = validate_partition_index(partition_index)

    with operation_context("attach", image=str(image_path), partition=index) as op_log:
        with image_lock(image_path):
            geometry = partitions.locate(image_path, index)
            device = loop.attach(image_path, geometry, read_only=read_only)
            _record_attachment(image_path, index, geometry, device)
        op_log.info(f"Partition {index} of {image_path} is available as {device.path}")
    return device


def mount(
    image,
    partition_index,
    mount_point,
    *,
    options: Optional[str] = None,
    fstype: Optional[str] = None,
    read_only: Optional[bool] = None,
) -> MountRecord:
    """Attach a partition of ``image`` and mount it at an empty directory.

    Args:
        image: Path to a partitioned disk image
        partition_index: 1-based partition number
        mount_point: Existing, empty directory
        options: Extra mount options (comma separated)
        fstype: Filesystem type passed to mount -t (autodetected if omitted)
        read_only: Attach and mount read-only (defaults to the read_only setting)

    Returns:
        The record describing the new mount

    Raises:
        TargetNotEmptyError: If the mount point is not an existing empty directory
        AlreadyMountedError: If the partition's loop device is already mounted
        MountFailedError: If mount fails; the loop device stays attached
        plus every error ``attach_partition`` can raise
    """
    image_path = validate_image(image)
    index = validate_partition_index(partition_index)
    target = validate_mount_target(mount_point)
    if read_only is None:
        read_only = settings.get_bool("read_only")
    if options is None:
        options = settings.get_setting("default_mount_options")
    mount_options = _mount_options(options, read_only)

    with operation_context(
        "mount", image=str(image_path), partition=index, mount_point=str(target)
    ) as op_log:
        with image_lock(image_path):
            geometry = partitions.locate(image_path, index)

            for existing in loop.find_matching_loop_devices(image_path, geometry):
                _ensure_not_mounted(existing.path)

            device = loop.attach(image_path, geometry, read_only=read_only)
            record = _record_attachment(image_path, index, geometry, device)

            # Re-check right before mounting to narrow the window for a racing mount.
            _ensure_not_mounted(device.path)
            mounts.mount_device(device.path, target, options=mount_options, fstype=fstype)

            record = record.with_mount_point(str(target))
            _update_records(records.save_record, record)
        op_log.info(f"Partition {index} of {image_path} mounted at {target} via {device.path}")
    return record


def unmount(mount_point) -> MountEntry:
    """Unmount ``mount_point`` but keep its loop device attached.

    Raises:
        NotMountedError: If nothing is mounted there
        InvalidInputError: If the mount is not backed by a loop device
        MismatchError: If the mount record names a different loop device
        UnmountFailedError: If umount fails
    """
    target = _resolve_mount_point(mount_point)
    entry = mounts.mount_at(target)
    if entry is None:
        raise NotMountedError(str(target))
    if not loop.is_loop_device_path(entry.source):
        raise InvalidInputError(
            f"{target} is mounted from {entry.source}, not a loop device", str(target)
        )
    record = records.load_mount_point_record(target)
    if record is not None and record.loop_device != entry.source:
        raise MismatchError(
            f"{target} is mounted from {entry.source}, but its mount record "
            f"names {record.loop_device}"
        )
    lock = image_lock(Path(record.image)) if record else nullcontext()

    with operation_context("unmount", mount_point=str(target), device=entry.source):
        with lock:
            mounts.unmount_target(target)
            if record:
                _update_records(
                    records.clear_mount_point, Path(record.image), record.partition_index
                )
            else:
                _update_records(records.remove_mount_point_record, target)
    return entry


def _resolve_partition_index(image: Path) -> int:
    recorded = records.load_image_records(image)
    if len(recorded) == 1:
        return next(iter(recorded))
    if not recorded:
        raise InvalidInputError(
            f"No partition index given and no attachment recorded for {image}", str(image)
        )
    indexes = ", ".join(str(index) for index in sorted(recorded))
    raise InvalidInputError(
        f"No partition index given and {image} has several recorded attachments ({indexes})",
        str(image),
    )


def _device_for_geometry(
    image: Path, partition_index: int, geometry: PartitionGeometry, record: Optional[MountRecord]
) -> Optional[str]:
    candidates = loop.find_matching_loop_devices(image, geometry)
    if len(candidates) > 1:
        recorded = [
            device for device in candidates if record and device.path == record.loop_device
        ]
        if len(recorded) != 1:
            paths = ", ".join(device.path for device in candidates)
            raise MismatchError(
                f"Partition {partition_index} of {image} is mapped by several loop "
                f"devices ({paths}) and no record says which one to detach"
            )
        candidates = recorded
    if not candidates:
        return None
    device = candidates[0].path
    if record and record.loop_device != device:
        log.warning(
            f"Record for partition {partition_index} of {image} names "
            f"{record.loop_device}, kernel reports {device}; using {device}"
        )
    return device


def detach(image=None, partition_index=None, mount_point=None) -> DetachOutcome:
    """Unmount (if we mounted it) and detach a partition's loop device.

    Resolution:
        - ``mount_point``: the device mounted there, per the live mount table;
          when nothing is mounted, the mount-point record supplies image/partition
        - ``image`` + ``partition_index``: re-located geometry plus losetup -j
        - ``image`` alone: the partition index comes from the image record

    The loop device is only detached when no mount references it any more.
    Detaching a partition that has no loop device is a no-op.

    Raises:
        InvalidInputError: If neither an image nor a mount point is given
        MismatchError: If the inputs or records resolve to different devices
        StillInUseError: If other mounts still use the loop device
        NotMountedError: If only an unmounted, unrecorded mount point is given
        UnmountFailedError, DetachFailedError, ToolError, LockTimeoutError
    """
    if image is None and mount_point is None:
        raise InvalidInputError("Either an image or a mount point is required")
    if partition_index is not None and image is None:
        raise InvalidInputError("A partition index needs an image path", partition_index)

    target = _resolve_mount_point(mount_point) if mount_point is not None else None
    image_path = validate_image(image) if image is not None else None
    index = validate_partition_index(partition_index) if partition_index is not None else None

    image_from_target = False
    if image_path is None:
        target_record = records.load_mount_point_record(target)
        if target_record is not None:
            image_path = validate_image(target_record.image)
            index = target_record.partition_index
            image_from_target = True
    elif index is None:
        index = _resolve_partition_index(image_path)

    details = {"image": str(image_path) if image_path else None, "partition": index}
    if target is not None:
        details["mount_point"] = str(target)
    lock = image_lock(image_path) if image_path is not None else nullcontext()

    with operation_context("detach", **details) as op_log:
        with lock:
            outcome = _detach_locked(image_path, index, target, image_from_target, op_log)
    return outcome


def _detach_locked(
    image: Optional[Path],
    partition_index: Optional[int],
    target: Optional[Path],
    image_from_target: bool,
    op_log,
) -> DetachOutcome:
    target_entry = mounts.mount_at(target) if target is not None else None
    record = None
    geometry = None
    device = None

    if image is not None:
        geometry = partitions.locate(image, partition_index)
        record = records.get_image_record(image, partition_index)
        if record is not None and record.geometry != geometry:
            raise MismatchError(
                f"Partition {partition_index} of {image} was recorded at "
                f"offset={record.offset_bytes} length={record.length_bytes} but is now at "
                f"offset={geometry.offset_bytes} length={geometry.length_bytes}; "
                f"refusing to detach {record.loop_device}"
            )
        device = _device_for_geometry(image, partition_index, geometry, record)

    if target_entry is not None:
        if device is not None and target_entry.source != device:
            raise MismatchError(
                f"{target} is mounted from {target_entry.source}, but partition "
                f"{partition_index} of {image} is attached as {device}"
            )
        if device is None and image is not None:
            raise MismatchError(
                f"{target} is mounted from {target_entry.source}, but partition "
                f"{partition_index} of {image} has no loop device"
            )
        if device is None:
            if not loop.is_loop_device_path(target_entry.source):
                raise InvalidInputError(
                    f"{target} is mounted from {target_entry.source}, not a loop device",
                    str(target),
                )
            device = target_entry.source
    elif target is not None:
        if image is None:
            raise NotMountedError(str(target))
        recorded_at = record.mount_point if record else None
        if not image_from_target and recorded_at != str(target):
            raise MismatchError(
                f"Nothing is mounted at {target} and partition {partition_index} of "
                f"{image} is not recorded there (recorded mount point: {recorded_at or 'none'})"
            )

    if device is None:
        op_log.info(f"Partition {partition_index} of {image} has no loop device; nothing to detach")
        _forget(image, partition_index, target)
        return DetachOutcome(loop_device=None)

    owned = []
    if target_entry is not None:
        owned.append(str(target))
    elif target is None and record is not None and _is_mounted_at(device, record.mount_point):
        owned.append(record.mount_point)

    foreign = [entry.target for entry in mounts.mounts_for_device(device) if entry.target not in owned]
    if foreign:
        raise StillInUseError(device, foreign)

    for mount_target in owned:
        mounts.unmount_target(mount_target)
    if owned and image is not None:
        _update_records(records.clear_mount_point, image, partition_index)

    remaining = [entry.target for entry in mounts.mounts_for_device(device)]
    if remaining:
        raise StillInUseError(device, remaining)

    loop.detach_loop_device(device)
    _forget(image, partition_index, target)

    if image is not None and geometry is not None:
        leftover = [
            found.path
            for found in loop.find_loop_devices(image, geometry.offset_bytes)
            if found.path == device
        ]
        if leftover:
            op_log.warning(
                f"{device} is still listed for {image} after detach; "
                f"the kernel will release it once it is no longer busy"
            )
    return DetachOutcome(loop_device=device, unmounted=tuple(owned), detached=True)


def _forget(image: Optional[Path], partition_index: Optional[int], target: Optional[Path]) -> None:
    _update_records(_remove_records, image, partition_index, target)


def _remove_records(
    image: Optional[Path], partition_index: Optional[int], target: Optional[Path]
) -> None:
    if image is not None and partition_index is not None:
        records.remove_record(image, partition_index)
        if target is not None:
            records.remove_mount_point_record(
                target, image=image, partition_index=partition_index
            )
    elif target is not None:
        records.remove_mount_point_record(target)
