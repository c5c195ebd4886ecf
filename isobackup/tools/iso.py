from __future__ import annotations

import logging
import os
import struct
from pathlib import Path
from typing import List, Optional

from isobackup.backup.errors import BackupError
from isobackup.backup.models import part_path
from isobackup.logging.logger import run_command

SECTOR_SIZE = 2048
PVD_OFFSET = 16 * SECTOR_SIZE
ISO_SIGNATURE = b"CD001"
BOOT_CATALOG = "boot.cat"
# champs du descripteur de volume primaire (ECMA-119), partie petit-boutiste
VOLUME_SPACE_SIZE_OFFSET = 80
LOGICAL_BLOCK_SIZE_OFFSET = 128


class GenisoimagePackager:
    """Emballe l'archive compressée dans une image ISO amorçable."""

    def __init__(self, logger: logging.Logger, volume_label: str = "SERVER_BACKUP") -> None:
        self.logger = logger
        self.volume_label = volume_label[:32]

    def build_command(self, payload: Path, output: Path, extended: bool) -> List[str]:
        cmd = ["genisoimage", "-o", str(output), "-V", self.volume_label]
        if extended:
            cmd.extend(["-udf", "-allow-limited-size"])
        else:
            cmd.extend(["-J", "-R"])
        # pas de -boot-info-table : genisoimage réécrirait l'archive source en place
        cmd.extend(["-b", payload.name, "-c", BOOT_CATALOG, "-no-emul-boot", "-boot-load-size", "4", str(payload)])
        return cmd

    def package(self, payload: Path, output: Path, extended: bool) -> Path:
        if extended:
            self.logger.warning("Archive de plus de 4 Gio : création d'une ISO au format UDF")
        partial = part_path(output)
        try:
            run_command(self.build_command(payload, partial, extended), logger=self.logger)
        except (BackupError, OSError):
            self.logger.error("Création de %s interrompue, image partielle supprimée", output)
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, output)
        return output


def iso_signature_check(path: Path) -> Optional[str]:
    """Vérifie le descripteur de volume primaire ISO 9660 et la taille annoncée.

    genisoimage écrit le descripteur en tête : une image tronquée le contient
    déjà. Le fichier doit donc couvrir tout l'espace de volume déclaré.
    """

    try:
        size = path.stat().st_size
        if size == 0:
            return "image ISO vide"
        if size < PVD_OFFSET + SECTOR_SIZE:
            return f"image ISO tronquée ({size} octets)"
        with path.open("rb") as handle:
            handle.seek(PVD_OFFSET)
            descriptor = handle.read(SECTOR_SIZE)
    except OSError as exc:
        return f"image ISO illisible: {exc}"

    if descriptor[:1] != b"\x01" or descriptor[1:6] != ISO_SIGNATURE:
        return "descripteur de volume ISO 9660 absent"

    (blocks,) = struct.unpack_from("<I", descriptor, VOLUME_SPACE_SIZE_OFFSET)
    (block_size,) = struct.unpack_from("<H", descriptor, LOGICAL_BLOCK_SIZE_OFFSET)
    if blocks == 0 or block_size == 0:
        return "descripteur de volume ISO 9660 incohérent (taille nulle)"
    expected = blocks * block_size
    if size < expected:
        return f"image ISO tronquée ({size} octets, {expected} annoncés)"
    return None
