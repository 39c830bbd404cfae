"""Persisted mount records for later sanity checks.

Two kinds of record file are kept, both JSON:

    <image>.mount-info         {"image": ..., "attachments": {"<index>": {...}}}
    <mount point>.mount-info   {...} (one MountRecord, next to the directory)

With the ``record_dir`` setting both live in that directory instead, named
after a digest of the full path. Files are replaced atomically (temp file in
the same directory, fsync, rename) because a concurrent detach may be reading
them.

Records are never the source of truth for a device name. They only let detach
recover which partition a mount point belonged to and notice an image that was
repartitioned after it was attached.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from mount_partition.config import settings
from mount_partition.domain.models import MountRecord
from mount_partition.logging import LoggerFactory

from .exceptions import RecordError


log = LoggerFactory.for_records()

RECORD_SUFFIX = ".mount-info"


def _digest(path: Path) -> str:
    return hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:16]


def _record_dir() -> Optional[Path]:
    record_dir = settings.get_setting("record_dir")
    return Path(record_dir) if record_dir else None


def _records_enabled() -> bool:
    return settings.get_bool("write_records", True)


def image_record_path(image: Path) -> Path:
    record_dir = _record_dir()
    if record_dir is not None:
        return record_dir / f"{image.name}-{_digest(image)}{RECORD_SUFFIX}"
    return image.with_name(image.name + RECORD_SUFFIX)


def mount_point_record_path(mount_point: Path) -> Path:
    record_dir = _record_dir()
    if record_dir is not None:
        return record_dir / f"mnt-{mount_point.name}-{_digest(mount_point)}{RECORD_SUFFIX}"
    return mount_point.with_name(mount_point.name + RECORD_SUFFIX)


def _read_json(path: Path) -> Optional[dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable mount record {path}: {error}")
        return None
    if not isinstance(data, dict):
        log.warning(f"Ignoring malformed mount record {path}")
        return None
    return data


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as handle:
            tmp_name = handle.name
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as error:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise RecordError(str(path), f"write failed: {error}") from error
    log.debug(f"Wrote mount record {path}")


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as error:
        raise RecordError(str(path), f"remove failed: {error}") from error
    log.debug(f"Removed mount record {path}")


def _parse_record(data: dict[str, Any], path: Path) -> Optional[MountRecord]:
    try:
        return MountRecord.from_dict(data)
    except (KeyError, TypeError, ValueError) as error:
        log.warning(f"Ignoring malformed entry in mount record {path}: {error}")
        return None


def load_image_records(image: Path) -> dict[int, MountRecord]:
    """Return recorded attachments for ``image`` keyed by partition index."""
    path = image_record_path(image)
    data = _read_json(path)
    if not data:
        return {}
    records = {}
    attachments = data.get("attachments") or {}
    if not isinstance(attachments, dict):
        log.warning(f"Ignoring malformed mount record {path}")
        return {}
    for entry in attachments.values():
        if not isinstance(entry, dict):
            continue
        record = _parse_record(entry, path)
        if record is not None and record.image == str(image):
            records[record.partition_index] = record
    return records


def get_image_record(image: Path, partition_index: int) -> Optional[MountRecord]:
    return load_image_records(image).get(partition_index)


def load_mount_point_record(mount_point: Path) -> Optional[MountRecord]:
    path = mount_point_record_path(mount_point)
    data = _read_json(path)
    if not data:
        return None
    record = _parse_record(data, path)
    if record is not None and record.mount_point not in (None, str(mount_point)):
        log.warning(
            f"Mount record {path} belongs to {record.mount_point}, not {mount_point}"
        )
        return None
    return record


def _write_image_records(image: Path, records: dict[int, MountRecord]) -> None:
    path = image_record_path(image)
    if not records:
        _remove_file(path)
        return
    _write_json_atomic(
        path,
        {
            "image": str(image),
            "attachments": {
                str(index): record.to_dict() for index, record in sorted(records.items())
            },
        },
    )


def save_record(record: MountRecord) -> None:
    """Store ``record`` in the image record and, if mounted, the mount-point record.

    Raises:
        RecordError: If a record file cannot be written
    """
    if not _records_enabled():
        return
    image = Path(record.image)
    records = load_image_records(image)
    previous = records.get(record.partition_index)
    records[record.partition_index] = record
    _write_image_records(image, records)

    if previous and previous.mount_point and previous.mount_point != record.mount_point:
        _remove_file(mount_point_record_path(Path(previous.mount_point)))
    if record.mount_point:
        _write_json_atomic(mount_point_record_path(Path(record.mount_point)), record.to_dict())


def remove_record(image: Path, partition_index: int) -> None:
    """Forget an attachment, including its mount-point record.

    Raises:
        RecordError: If a record file cannot be rewritten or removed
    """
    if not _records_enabled():
        return
    records = load_image_records(image)
    record = records.pop(partition_index, None)
    if record is None:
        return
    _write_image_records(image, records)
    if record.mount_point:
        remove_mount_point_record(Path(record.mount_point), image=image, partition_index=partition_index)


def clear_mount_point(image: Path, partition_index: int) -> None:
    """Mark an attachment as no longer mounted."""
    if not _records_enabled():
        return
    record = get_image_record(image, partition_index)
    if record is None or record.mount_point is None:
        return
    save_record(record.with_mount_point(None))


def remove_mount_point_record(
    mount_point: Path,
    *,
    image: Optional[Path] = None,
    partition_index: Optional[int] = None,
) -> None:
    """Remove a mount-point record, optionally only if it names image/partition."""
    if not _records_enabled():
        return
    path = mount_point_record_path(mount_point)
    if image is not None:
        data = _read_json(path)
        record = _parse_record(data, path) if data else None
        if record is not None and (
            record.image != str(image) or record.partition_index != partition_index
        ):
            return
    _remove_file(path)
