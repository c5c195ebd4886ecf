"""Doublures des outils externes pour tester l'orchestration sans root ni disques."""
from __future__ import annotations

import logging
import os
import shutil
import struct
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from isobackup.backup.capabilities import Toolchain
from isobackup.backup.config import BackupConfig, SourceSpec, parse_backup_config
from isobackup.backup.errors import ToolError
from isobackup.backup.preflight import EnvironmentFacts
from isobackup.tools.archive import TarGzipCompressor
from isobackup.tools.iso import ISO_SIGNATURE, PVD_OFFSET, SECTOR_SIZE

HEALTHY_MDSTAT = """Personalities : [raid1]
md0 : active raid1 sdb1[1] sda1[0]
      2096128 blocks super 1.2 [2/2] [UU]
md1 : active raid1 sdb2[1] sda2[0]
      523264 blocks super 1.2 [2/2] [UU]
"""

DEGRADED_MDSTAT = """Personalities : [raid1]
md0 : active raid1 sda1[0]
      2096128 blocks super 1.2 [2/1] [U_]
"""

MDADM_SCAN = "ARRAY /dev/md0 metadata=1.2 name=srv:0 UUID=11111111:22222222:33333333:44444444\n"

GIB = 1024 * 1024 * 1024


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("isobackup.tests")
    logger.setLevel(logging.DEBUG)
    return logger


def make_sources(root: Path, names: Sequence[str] = ("md0", "md1"), size: int = 64 * 1024) -> List[Path]:
    root.mkdir(parents=True, exist_ok=True)
    paths = []
    for index, name in enumerate(names):
        path = root / name
        # contenu déterministe et peu compressible
        path.write_bytes(bytes((i * 31 + index * 7) % 251 for i in range(size)))
        paths.append(path)
    return paths


def make_config(tmp_path: Path, mode: str = "disk", **overrides) -> BackupConfig:
    sources = make_sources(tmp_path / "devices")
    payload = {
        "name": "server_backup",
        "mode": mode,
        "sources": [str(p) for p in sources],
        "sink": str(tmp_path / "sink"),
        "retries": 3,
        "backoff": 0,
        "min_free_gb": 0,
    }
    payload.update(overrides)
    config = parse_backup_config(payload)
    config.sink.mkdir(parents=True, exist_ok=True)
    return config


def healthy_facts(**overrides) -> EnvironmentFacts:
    values = dict(is_root=True, mdstat=HEALTHY_MDSTAT)
    values.update(overrides)
    return EnvironmentFacts(**values)


def write_fake_iso(output: Path, payload: Optional[Path] = None) -> None:
    """ISO minimale : 16 secteurs système, le descripteur primaire, puis la charge utile."""

    data = payload.read_bytes() if payload is not None else b""
    data += b"\x00" * (-len(data) % SECTOR_SIZE)
    blocks = (PVD_OFFSET + SECTOR_SIZE + len(data)) // SECTOR_SIZE
    descriptor = bytearray(SECTOR_SIZE)
    descriptor[0:7] = b"\x01" + ISO_SIGNATURE + b"\x01"
    struct.pack_into("<I", descriptor, 80, blocks)
    struct.pack_into(">I", descriptor, 84, blocks)
    struct.pack_into("<H", descriptor, 128, SECTOR_SIZE)
    struct.pack_into(">H", descriptor, 130, SECTOR_SIZE)
    output.write_bytes(b"\x00" * PVD_OFFSET + bytes(descriptor) + data)


class FakeCapture:
    def __init__(self, fail_on: Optional[str] = None, bad_images: Sequence[Path] = ()) -> None:
        self.fail_on = fail_on
        self.bad_images = {Path(p) for p in bad_images}
        self.captured: List[str] = []
        self.checked: List[Path] = []

    def capture(self, source: SourceSpec, output: Path) -> None:
        self.captured.append(source.device)
        if source.device == self.fail_on:
            # copie interrompue : fichier partiel laissé sur place
            output.write_bytes(Path(source.device).read_bytes()[:100])
            raise ToolError(["dd", f"if={source.device}"], 1, "Input/output error")
        shutil.copyfile(source.device, output)

    def check(self, image: Path) -> bool:
        self.checked.append(image)
        return image not in self.bad_images and image.stat().st_size > 0


class CountingCompressor:
    def __init__(self, logger: logging.Logger) -> None:
        self.inner = TarGzipCompressor(logger, capacity=2)
        self.calls = 0

    def compress(self, source_dir: Path, output: Path) -> Path:
        self.calls += 1
        return self.inner.compress(source_dir, output)


class FakePackager:
    def __init__(self, produce_empty: bool = False) -> None:
        self.calls: List[Dict[str, object]] = []
        self.produce_empty = produce_empty

    def package(self, payload: Path, output: Path, extended: bool) -> Path:
        self.calls.append({"payload": payload, "output": output, "extended": extended})
        if self.produce_empty:
            output.write_bytes(b"")
        else:
            write_fake_iso(output, payload)
        return output


class FakeRaid:
    def __init__(self, description: str = MDADM_SCAN) -> None:
        self.description = description
        self.calls = 0

    def describe(self) -> str:
        self.calls += 1
        return self.description


class FakeMountOperations:
    """Sink distant simulé : `mount` échoue `mount_failures` fois avant de réussir."""

    def __init__(self, mounted: bool = False, mount_failures: int = 0) -> None:
        self.mounted = mounted
        self.mount_failures = mount_failures
        self.checks = 0
        self.unmounts: List[Path] = []
        self.mounts: List[Path] = []

    def is_mounted(self, path: Path) -> bool:
        self.checks += 1
        return self.mounted

    def unmount(self, path: Path) -> None:
        self.unmounts.append(path)
        self.mounted = False

    def mount(self, remote, path: Path) -> None:
        self.mounts.append(path)
        if self.mount_failures:
            self.mount_failures -= 1
            raise OSError("Connection refused")
        self.mounted = True


def make_toolchain(logger: logging.Logger, **overrides) -> Toolchain:
    values = dict(
        capture=FakeCapture(),
        compressor=CountingCompressor(logger),
        packager=FakePackager(),
        raid=FakeRaid(),
        device_size=os.path.getsize,
        in_use=lambda path: False,
    )
    values.update(overrides)
    return Toolchain(**values)
