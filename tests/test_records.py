"""Tests for persisted mount records."""

import json

import pytest

from mount_partition.domain.models import LoopDevice, MountRecord, PartitionGeometry
from mount_partition.storage import records
from mount_partition.storage.exceptions import RecordError


@pytest.fixture
def record(disk_image):
    return MountRecord.create(
        str(disk_image),
        1,
        PartitionGeometry(1048576, 367001600),
        LoopDevice("/dev/loop0"),
    )


class TestRecordPaths:
    def test_next_to_image(self, disk_image):
        assert records.image_record_path(disk_image) == disk_image.with_name("disk.raw.mount-info")

    def test_next_to_mount_point(self, mount_dir):
        assert records.mount_point_record_path(mount_dir) == mount_dir.parent / "part1.mount-info"

    def test_record_dir(self, disk_image, mount_dir, tmp_path, isolated_settings):
        isolated_settings["record_dir"] = str(tmp_path / "records")

        image_path = records.image_record_path(disk_image)
        mount_path = records.mount_point_record_path(mount_dir)

        assert image_path.parent == tmp_path / "records"
        assert image_path.name.startswith("disk.raw-")
        assert mount_path.name.startswith("mnt-part1-")
        assert image_path != mount_path


class TestSaveAndLoad:
    def test_save_attached(self, record, disk_image, mount_dir):
        records.save_record(record)

        assert records.load_image_records(disk_image) == {1: record}
        assert records.get_image_record(disk_image, 2) is None
        assert not records.mount_point_record_path(mount_dir).exists()

    def test_file_layout(self, record, disk_image):
        records.save_record(record)

        data = json.loads(records.image_record_path(disk_image).read_text())
        assert data["image"] == str(disk_image)
        assert data["attachments"]["1"]["loop_device"] == "/dev/loop0"
        assert data["attachments"]["1"]["offset_bytes"] == 1048576

    def test_save_mounted(self, record, mount_dir):
        mounted = record.with_mount_point(str(mount_dir))

        records.save_record(mounted)

        assert records.load_mount_point_record(mount_dir) == mounted

    def test_moving_mount_point_removes_old_record(self, record, mount_dir, other_mount_dir):
        records.save_record(record.with_mount_point(str(mount_dir)))
        records.save_record(record.with_mount_point(str(other_mount_dir)))

        assert not records.mount_point_record_path(mount_dir).exists()
        assert records.load_mount_point_record(other_mount_dir).mount_point == str(other_mount_dir)

    def test_no_temp_files_left(self, record, disk_image):
        records.save_record(record)

        leftovers = [p.name for p in disk_image.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_records_disabled(self, record, disk_image, isolated_settings):
        isolated_settings["write_records"] = False

        records.save_record(record)

        assert not records.image_record_path(disk_image).exists()

    def test_write_failure(self, record, disk_image, monkeypatch):
        def fail(*args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(records.tempfile, "NamedTemporaryFile", fail)

        with pytest.raises(RecordError, match="write failed"):
            records.save_record(record)


class TestCorruptRecords:
    def test_invalid_json_is_ignored(self, disk_image):
        records.image_record_path(disk_image).write_text("{not json")

        assert records.load_image_records(disk_image) == {}

    def test_non_dict_is_ignored(self, disk_image):
        records.image_record_path(disk_image).write_text("[1, 2]")

        assert records.load_image_records(disk_image) == {}

    def test_entry_for_other_image_is_ignored(self, record, disk_image):
        data = {"image": "/elsewhere.raw", "attachments": {"1": dict(record.to_dict(), image="/elsewhere.raw")}}
        records.image_record_path(disk_image).write_text(json.dumps(data))

        assert records.load_image_records(disk_image) == {}

    def test_mount_point_record_for_other_directory(self, record, mount_dir, other_mount_dir):
        records.mount_point_record_path(mount_dir).write_text(
            json.dumps(record.with_mount_point(str(other_mount_dir)).to_dict())
        )

        assert records.load_mount_point_record(mount_dir) is None


class TestRemove:
    def test_remove_record(self, record, disk_image, mount_dir):
        records.save_record(record.with_mount_point(str(mount_dir)))

        records.remove_record(disk_image, 1)

        assert not records.image_record_path(disk_image).exists()
        assert not records.mount_point_record_path(mount_dir).exists()

    def test_remove_keeps_other_partitions(self, record, disk_image):
        second = MountRecord.create(
            str(disk_image), 2, PartitionGeometry(368050176, 4096), LoopDevice("/dev/loop1")
        )
        records.save_record(record)
        records.save_record(second)

        records.remove_record(disk_image, 1)

        assert records.load_image_records(disk_image) == {2: second}

    def test_remove_missing_is_noop(self, disk_image):
        records.remove_record(disk_image, 1)
        assert not records.image_record_path(disk_image).exists()

    def test_clear_mount_point(self, record, disk_image, mount_dir):
        records.save_record(record.with_mount_point(str(mount_dir)))

        records.clear_mount_point(disk_image, 1)

        assert records.get_image_record(disk_image, 1).mount_point is None
        assert not records.mount_point_record_path(mount_dir).exists()

    def test_scoped_mount_point_removal(self, record, disk_image, mount_dir):
        records.save_record(record.with_mount_point(str(mount_dir)))

        records.remove_mount_point_record(mount_dir, image=disk_image, partition_index=2)
        assert records.mount_point_record_path(mount_dir).exists()

        records.remove_mount_point_record(mount_dir, image=disk_image, partition_index=1)
        assert not records.mount_point_record_path(mount_dir).exists()
