"""Safety validation functions for partition operations.

This module provides validation functions that run before any external
command is invoked:
- Validates the image file exists, is a regular file and is readable
- Validates partition indexes are positive integers
- Verifies a mount target is an existing, empty directory that is not
  already a mount point

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from mount_partition.storage.validation import validate_mount_target

    try:
        target = validate_mount_target("/mnt/boot")
    except TargetNotEmptyError as error:
        print(error.reason)
"""

from __future__ import annotations

import os
from pathlib import Path

from .exceptions import InvalidInputError, TargetNotEmptyError


def validate_image(image) -> Path:
    """Validate an image path and return it in absolute form.

    Raises:
        InvalidInputError: If the image is missing, not a regular file or unreadable
    """
    if image is None or str(image).strip() == "":
        raise InvalidInputError("Image path is empty", image)

    path = Path(image).expanduser()
    if not path.exists():
        raise InvalidInputError(f"Image file does not exist: {path}", image)
    if not path.is_file():
        raise InvalidInputError(f"Image path is not a regular file: {path}", image)
    if not os.access(path, os.R_OK):
        raise InvalidInputError(f"Image file is not readable: {path}", image)
    return path.resolve()


def validate_partition_index(partition_index) -> int:
    """Validate a 1-based partition index.

    Strings of digits are accepted so that command line values can be passed
    straight through.

    Raises:
        InvalidInputError: If the index is not a positive integer
    """
    # bool is an int subclass; True is not partition 1
    number = None
    if isinstance(partition_index, str):
        text = partition_index.strip()
        if text.isdigit():
            number = int(text)
    elif isinstance(partition_index, int) and not isinstance(partition_index, bool):
        number = partition_index
    if number is None or number < 1:
        raise InvalidInputError(
            f"Partition index must be a positive integer, got {partition_index!r}",
            partition_index,
        )
    return number


def validate_mount_target(mount_point) -> Path:
    """Validate that a mount point is an existing, empty, unmounted directory.

    Raises:
        InvalidInputError: If no mount point was given
        TargetNotEmptyError: If the directory is missing, not a directory,
            already a mount point or not empty
    """
    if mount_point is None or str(mount_point).strip() == "":
        raise InvalidInputError("Mount point is empty", mount_point)

    path = Path(mount_point).expanduser()
    if not path.exists():
        raise TargetNotEmptyError(str(path), "directory does not exist")
    if not path.is_dir():
        raise TargetNotEmptyError(str(path), "not a directory")
    path = path.resolve()
    if os.path.ismount(path):
        raise TargetNotEmptyError(str(path), "already a mount point")
    try:
        with os.scandir(path) as entries:
            has_entries = any(True for _ in entries)
    except PermissionError as error:
        raise TargetNotEmptyError(str(path), f"cannot list directory: {error}") from error
    if has_entries:
        raise TargetNotEmptyError(str(path), "directory is not empty")
    return path
