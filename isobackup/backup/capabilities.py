"""Contrats des outils externes pilotés par le pipeline.

L'exécuteur ne connaît que ces interfaces ; `isobackup.tools.toolchain`
fournit la liaison de production (dd, partclone, tar/gzip, genisoimage,
mdadm) et les tests injectent des doublures.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from isobackup.backup.config import SourceSpec


class CaptureTool(Protocol):
    def capture(self, source: SourceSpec, output: Path) -> None: ...

    def check(self, image: Path) -> bool: ...


class Compressor(Protocol):
    def compress(self, source_dir: Path, output: Path) -> Path: ...


class Packager(Protocol):
    def package(self, payload: Path, output: Path, extended: bool) -> Path: ...


class RaidDescriber(Protocol):
    def describe(self) -> str: ...


@dataclass
class Toolchain:
    capture: CaptureTool
    compressor: Compressor
    packager: Packager
    raid: RaidDescriber
    device_size: Callable[[str], int]
    in_use: Callable[[Path], bool]
