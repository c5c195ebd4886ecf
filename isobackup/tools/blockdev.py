from __future__ import annotations

import logging
import os
from pathlib import Path

from isobackup.backup.config import BLOCK_SIZE, SourceSpec
from isobackup.backup.errors import ToolError
from isobackup.logging.logger import run_command


def device_size(device: str) -> int:
    """Taille exacte en octets d'un périphérique bloc (ou d'un fichier)."""

    with open(device, "rb") as handle:
        return handle.seek(0, os.SEEK_END)


def detect_fstype(device: str, logger: logging.Logger) -> str:
    output = run_command(["blkid", "-o", "value", "-s", "TYPE", device], logger=logger).strip()
    if not output:
        raise ToolError(["blkid", device], 2, "type de système de fichiers inconnu")
    return output


class DdCapture:
    """Copie brute d'un périphérique entier, bloc par bloc."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def capture(self, source: SourceSpec, output: Path) -> None:
        cmd = [
            "nice",
            "-n",
            "10",
            "dd",
            f"if={source.device}",
            f"of={output}",
            f"bs={BLOCK_SIZE}",
            "conv=fsync",
            "status=none",
        ]
        run_command(cmd, logger=self.logger)

    def check(self, image: Path) -> bool:
        # les images brutes sont contrôlées par leur taille
        return image.is_file()


class PartcloneCapture:
    """Clone des seuls blocs utilisés d'un système de fichiers."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def capture(self, source: SourceSpec, output: Path) -> None:
        fstype = source.fstype or detect_fstype(source.device, self.logger)
        self.logger.info("Clonage de %s (%s) vers %s", source.device, fstype, output)
        cmd = ["nice", "-n", "10", f"partclone.{fstype}", "-c", "-s", source.device, "-O", str(output)]
        run_command(cmd, logger=self.logger, quiet=True)

    def check(self, image: Path) -> bool:
        try:
            run_command(["partclone.chkimg", "-s", str(image)], logger=self.logger, quiet=True)
        except ToolError:
            return False
        return True
