from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from isobackup.logging.logger import run_command

MDSTAT_PATH = Path("/proc/mdstat")


def read_mdstat(path: Path = MDSTAT_PATH) -> Optional[str]:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8", errors="replace")


class MdadmDescriber:
    """Décrit la composition des grappes RAID (`mdadm --detail --scan`)."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def describe(self) -> str:
        return run_command(["mdadm", "--detail", "--scan"], logger=self.logger)
