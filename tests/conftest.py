"""
Pytest configuration and shared fixtures for mount-partition tests.

This module provides common fixtures and a simulated host (FakeHost) that
answers parted, sfdisk, losetup, mount and umount the way util-linux does and
keeps a fake kernel mount table on disk.
"""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from mount_partition.config import settings
from mount_partition.logging import logger
from mount_partition.storage import mounts


# ==============================================================================
# Command Output Fixtures
# ==============================================================================


@pytest.fixture
def parted_output() -> str:
    """parted -s -m <image> unit B print for a two partition dos image."""
    return (
        "BYT;\n"
        "/srv/images/win-2012.raw:32212254720B:file:512:512:msdos::;\n"
        "1:1048576B:368050175B:367001600B:ntfs::boot;\n"
        "2:368050176B:32211206143B:31843155968B:ntfs::;\n"
    )


@pytest.fixture
def sfdisk_output() -> str:
    """sfdisk -d <image> for the same two partition dos image."""
    return (
        "label: dos\n"
        "label-id: 0x0188d0f2\n"
        "device: /srv/images/win-2012.raw\n"
        "unit: sectors\n"
        "sector-size: 512\n"
        "\n"
        "/srv/images/win-2012.raw1 : start=        2048, size=      716800, type=7, bootable\n"
        "/srv/images/win-2012.raw2 : start=      718848, size=    62193664, type=7\n"
    )


@pytest.fixture
def losetup_associated_output() -> str:
    """losetup -j <image> -o 1048576 with one matching device."""
    return (
        "/dev/loop3: [66306]:1181425 (/srv/images/win-2012.raw), "
        "offset 1048576, sizelimit 367001600\n"
    )


@pytest.fixture
def mount_table_text() -> str:
    """A /proc/mounts snapshot with one loop device mounted."""
    return (
        "proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n"
        "/dev/sda1 / ext4 rw,relatime 0 0\n"
        "/dev/loop3 /mnt/win\\040boot ntfs3 ro,relatime 0 0\n"
    )


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def disk_image(tmp_path) -> Path:
    """A small regular file standing in for a raw disk image."""
    image = tmp_path / "images" / "disk.raw"
    image.parent.mkdir(parents=True)
    image.write_bytes(b"\x00" * 4096)
    return image.resolve()


@pytest.fixture
def mount_dir(tmp_path) -> Path:
    """An empty directory to mount onto."""
    target = tmp_path / "mnt" / "part1"
    target.mkdir(parents=True)
    return target.resolve()


@pytest.fixture
def other_mount_dir(tmp_path) -> Path:
    target = tmp_path / "mnt" / "other"
    target.mkdir(parents=True)
    return target.resolve()


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path):
    """Reset settings to defaults with locks kept under tmp_path."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    settings.settings_store.values["lock_dir"] = str(tmp_path / "locks")
    settings.settings_store.values["command_timeout_seconds"] = 5
    settings.settings_store.values["lock_timeout_seconds"] = 1
    yield settings.settings_store.values
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Drop loguru's default stderr sink so test output stays readable."""
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


# ==============================================================================
# Simulated Host
# ==============================================================================


class FakeHost:
    """In-memory stand-in for the partition, loop device and mount tools.

    Partition tables are given in 512-byte sectors per image path. Loop
    devices and mounts live in dicts/lists; the mount table is mirrored to
    ``mounts_path`` after every change so mounts.read_mount_table() sees it.
    """

    def __init__(self, mounts_path: Path):
        self.mounts_path = mounts_path
        self.tables: Dict[str, List[Tuple[int, int]]] = {}
        self.sfdisk_tables: Dict[str, List[Tuple[int, int]]] = {}
        self.loops: Dict[str, dict] = {}
        self.mount_table: List[Tuple[str, str, str, str]] = [
            ("proc", "/proc", "proc", "rw,nosuid,nodev,noexec,relatime"),
        ]
        self.calls: List[List[str]] = []
        self.fail_mount: Optional[str] = None
        self.fail_losetup_create: Optional[str] = None
        self.losetup_create_stdout: Optional[str] = None
        self._write_mounts()

    # -- setup helpers -----------------------------------------------------

    def set_table(self, image: Path, partitions: List[Tuple[int, int]]) -> None:
        self.tables[str(image)] = list(partitions)

    def set_sfdisk_table(self, image: Path, partitions: List[Tuple[int, int]]) -> None:
        """Make sfdisk disagree with parted for ``image``."""
        self.sfdisk_tables[str(image)] = list(partitions)

    def add_loop(self, image: Path, offset: int, sizelimit: int, read_only: bool = False) -> str:
        device = f"/dev/loop{self._next_loop_number()}"
        self.loops[device] = {
            "image": str(image),
            "offset": offset,
            "sizelimit": sizelimit,
            "read_only": read_only,
        }
        return device

    def add_mount(self, device: str, target, fstype: str = "ext4", options: str = "rw") -> None:
        self.mount_table.append((device, str(target), fstype, options))
        self._write_mounts()

    def mounts_of(self, device: str) -> List[str]:
        return [target for source, target, _, _ in self.mount_table if source == device]

    def commands_named(self, name: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == name]

    # -- subprocess.run replacement ----------------------------------------

    def __call__(self, command, input=None, text=True, capture_output=True, timeout=None, **kwargs):
        command = list(command)
        self.calls.append(command)
        handler = getattr(self, f"_run_{command[0]}", None)
        if handler is None:
            raise FileNotFoundError(2, "No such file or directory", command[0])
        returncode, stdout, stderr = handler(command)
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def _run_parted(self, command):
        image = command[3]
        table = self.tables.get(image)
        if table is None:
            return 1, "", f"Error: {image}: unrecognised disk label\n"
        lines = ["BYT;", f"{image}:1073741824B:file:512:512:msdos::;"]
        for number, (start, size) in enumerate(table, start=1):
            first = start * 512
            length = size * 512
            lines.append(f"{number}:{first}B:{first + length - 1}B:{length}B:ext4::;")
        return 0, "\n".join(lines) + "\n", ""

    def _run_sfdisk(self, command):
        image = command[2]
        table = self.sfdisk_tables.get(image, self.tables.get(image))
        if table is None:
            return 1, "", f"sfdisk: {image}: does not contain a recognized partition table\n"
        lines = [
            "label: dos",
            "label-id: 0x12345678",
            f"device: {image}",
            "unit: sectors",
            "sector-size: 512",
            "",
        ]
        for number, (start, size) in enumerate(table, start=1):
            lines.append(f"{image}{number} : start={start:>12}, size={size:>12}, type=83")
        return 0, "\n".join(lines) + "\n", ""

    def _run_losetup(self, command):
        if "-j" in command:
            image = command[command.index("-j") + 1]
            offset = int(command[command.index("-o") + 1]) if "-o" in command else None
            lines = []
            for device, loop in sorted(self.loops.items()):
                if loop["image"] != image:
                    continue
                if offset is not None and loop["offset"] != offset:
                    continue
                line = f"{device}: [66306]:1181425 ({image})"
                if loop["offset"]:
                    line += f", offset {loop['offset']}"
                if loop["sizelimit"]:
                    line += f", sizelimit {loop['sizelimit']}"
                lines.append(line)
            return 0, "".join(line + "\n" for line in lines), ""
        if "--find" in command:
            if self.fail_losetup_create:
                return 1, "", self.fail_losetup_create
            offset = int(command[command.index("--offset") + 1])
            sizelimit = int(command[command.index("--sizelimit") + 1])
            device = self.add_loop(
                Path(command[-1]), offset, sizelimit, read_only="--read-only" in command
            )
            stdout = self.losetup_create_stdout if self.losetup_create_stdout is not None else device
            return 0, stdout + "\n", ""
        if "-d" in command:
            device = command[command.index("-d") + 1]
            if device not in self.loops:
                return 1, "", f"losetup: {device}: detach failed: No such device or address\n"
            del self.loops[device]
            return 0, "", ""
        return 1, "", "losetup: unsupported arguments\n"

    def _run_mount(self, command):
        if self.fail_mount:
            return 32, "", self.fail_mount
        device, target = command[-2], command[-1]
        fstype = command[command.index("-t") + 1] if "-t" in command else "ext4"
        options = command[command.index("-o") + 1] if "-o" in command else "rw,relatime"
        self.add_mount(device, target, fstype, options)
        return 0, "", ""

    def _run_umount(self, command):
        target = command[-1]
        for position in range(len(self.mount_table) - 1, -1, -1):
            if self.mount_table[position][1] == target:
                del self.mount_table[position]
                self._write_mounts()
                return 0, "", ""
        return 32, "", f"umount: {target}: not mounted.\n"

    # -- internals ---------------------------------------------------------

    def _next_loop_number(self) -> int:
        number = 0
        while f"/dev/loop{number}" in self.loops:
            number += 1
        return number

    def _write_mounts(self) -> None:
        lines = [
            f"{source} {target.replace(' ', chr(92) + '040')} {fstype} {options} 0 0"
            for source, target, fstype, options in self.mount_table
        ]
        self.mounts_path.write_text("".join(line + "\n" for line in lines))


@pytest.fixture
def fake_host(tmp_path, mocker, monkeypatch) -> FakeHost:
    """A simulated host wired into subprocess.run and the mount table path."""
    host = FakeHost(tmp_path / "proc-mounts")
    monkeypatch.setattr(mounts, "MOUNTS_PATH", host.mounts_path)
    mocker.patch("subprocess.run", side_effect=host)
    return host


@pytest.fixture
def partitioned_image(fake_host, disk_image) -> Path:
    """disk_image with partitions at sector 2048 (716800 sectors) and 718848."""
    fake_host.set_table(disk_image, [(2048, 716800), (718848, 62193664)])
    return disk_image
