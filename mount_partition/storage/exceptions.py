"""Custom exceptions for partition attach, mount and detach operations.

Every failure that can reach the command line is a ``StorageError`` subclass
whose message names the resources involved (image path, partition index,
loop device, mount point) and, for external commands, the exact command line
together with its exit status and output.

Exception Hierarchy:
    StorageError (base)
        ├── InvalidInputError
        ├── LocatorError
        │   ├── PartitionNotFoundError
        │   └── GeometryDisagreementError
        ├── LoopDeviceError
        │   ├── AttachFailedError
        │   └── DetachFailedError
        ├── MountError
        │   ├── TargetNotEmptyError
        │   ├── AlreadyMountedError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   └── NotMountedError
        ├── DetachError
        │   ├── MismatchError
        │   └── StillInUseError
        ├── ToolError
        │   ├── ToolTimeoutError
        │   ├── ToolUnavailableError
        │   ├── ToolFailedError
        │   └── ToolOutputError
        ├── RecordError
        └── LockTimeoutError

Usage:
    from mount_partition.storage.exceptions import AlreadyMountedError

    if mounts_for_device(device.path):
        raise AlreadyMountedError(device.path, [m.target for m in mounts])
"""

from __future__ import annotations

from typing import Sequence


def _format_command(command: Sequence[str]) -> str:
    return " ".join(str(part) for part in command)


def _format_output(stdout: str | None, stderr: str | None) -> str:
    message = (stderr or "").strip() or (stdout or "").strip()
    return message or "no output"


class StorageError(Exception):
    """Base exception for all partition mounting operations."""


class InvalidInputError(StorageError):
    """Caller supplied an unusable image path, partition index or mount point."""

    def __init__(self, message: str, value: object = None):
        self.value = value
        super().__init__(message)


class LocatorError(StorageError):
    """Base exception for partition table resolution errors."""


class PartitionNotFoundError(LocatorError):
    """Partition index does not appear in either partition table listing."""

    def __init__(self, image: str, partition_index: int):
        self.image = image
        self.partition_index = partition_index
        super().__init__(f"Partition {partition_index} not found in {image}")


class GeometryDisagreementError(LocatorError):
    """parted and sfdisk report different geometry for the same partition."""

    def __init__(self, image: str, partition_index: int, parted_geometry, sfdisk_geometry):
        self.image = image
        self.partition_index = partition_index
        self.parted_geometry = parted_geometry
        self.sfdisk_geometry = sfdisk_geometry
        super().__init__(
            f"Partition {partition_index} of {image}: parted and sfdisk disagree "
            f"(parted: {_describe_geometry(parted_geometry)}, "
            f"sfdisk: {_describe_geometry(sfdisk_geometry)})"
        )


def _describe_geometry(geometry) -> str:
    if geometry is None:
        return "not listed"
    return f"offset={geometry.offset_bytes} length={geometry.length_bytes}"


class LoopDeviceError(StorageError):
    """Base exception for loop device errors."""


class AttachFailedError(LoopDeviceError):
    """Loop device could not be created or an existing one cannot be reused."""

    def __init__(self, image: str, reason: str, command: Sequence[str] | None = None):
        self.image = image
        self.reason = reason
        self.command = list(command) if command else None
        msg = f"Failed to attach loop device for {image}: {reason}"
        if command:
            msg += f" (command: {_format_command(command)})"
        super().__init__(msg)


class DetachFailedError(LoopDeviceError):
    """losetup -d reported failure."""

    def __init__(self, device: str, reason: str, command: Sequence[str] | None = None):
        self.device = device
        self.reason = reason
        self.command = list(command) if command else None
        msg = f"Failed to detach loop device {device}: {reason}"
        if command:
            msg += f" (command: {_format_command(command)})"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class TargetNotEmptyError(MountError):
    """Mount point is missing, not a directory, not empty or already a mount."""

    def __init__(self, mount_point: str, reason: str):
        self.mount_point = mount_point
        self.reason = reason
        super().__init__(f"Mount point {mount_point} is not usable: {reason}")


class AlreadyMountedError(MountError):
    """Loop device already appears in the live mount table."""

    def __init__(self, device: str, mountpoints: list[str]):
        self.device = device
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(f"Device {device} is already mounted at {mounts_str}")


class MountFailedError(MountError):
    """mount reported failure. The loop device is left attached."""

    def __init__(
        self,
        device: str,
        mount_point: str,
        command: Sequence[str],
        returncode: int,
        output: str,
    ):
        self.device = device
        self.mount_point = mount_point
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Failed to mount {device} at {mount_point} "
            f"(command: {_format_command(command)}, exit={returncode}): {output}. "
            f"{device} remains attached"
        )


class UnmountFailedError(MountError):
    """umount reported failure."""

    def __init__(self, mount_point: str, command: Sequence[str], returncode: int, output: str):
        self.mount_point = mount_point
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Failed to unmount {mount_point} "
            f"(command: {_format_command(command)}, exit={returncode}): {output}"
        )


class NotMountedError(MountError):
    """Nothing is mounted at the mount point and no record explains it."""

    def __init__(self, mount_point: str):
        self.mount_point = mount_point
        super().__init__(f"Nothing is mounted at {mount_point} and no mount record exists")


class DetachError(StorageError):
    """Base exception for detach resolution errors."""


class MismatchError(DetachError):
    """Detach inputs or records resolve to different resources."""

    def __init__(self, message: str):
        super().__init__(message)


class StillInUseError(DetachError):
    """Loop device is still referenced by mounts this call does not own."""

    def __init__(self, device: str, mountpoints: list[str]):
        self.device = device
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Loop device {device} is still mounted at {mounts_str}; not detaching"
        )


class ToolError(StorageError):
    """Base exception for external command errors."""

    def __init__(self, message: str, command: Sequence[str]):
        self.command = list(command)
        super().__init__(message)


class ToolTimeoutError(ToolError):
    """External command did not finish within the configured timeout."""

    def __init__(self, command: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Command timed out after {timeout:g}s: {_format_command(command)}",
            command,
        )


class ToolUnavailableError(ToolError):
    """Required external command is not installed."""

    def __init__(self, command: Sequence[str]):
        super().__init__(f"Required command not found: {command[0]}", command)


class ToolFailedError(ToolError):
    """External command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str | None = None,
        stderr: str | None = None,
        context: str = "",
    ):
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        prefix = f"{context}: " if context else ""
        super().__init__(
            f"{prefix}Command failed ({_format_command(command)}, exit={returncode}): "
            f"{_format_output(stdout, stderr)}",
            command,
        )


class ToolOutputError(ToolError):
    """External command succeeded but its output could not be understood."""

    def __init__(self, command: Sequence[str], reason: str):
        self.reason = reason
        super().__init__(
            f"Unexpected output from {_format_command(command)}: {reason}", command
        )


class RecordError(StorageError):
    """Mount record could not be written or removed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Mount record {path}: {reason}")


class LockTimeoutError(StorageError):
    """Another invocation held the image lock for too long."""

    def __init__(self, image: str, lock_path: str, timeout: float):
        self.image = image
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock {lock_path} on {image}"
        )
