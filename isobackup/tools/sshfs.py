from __future__ import annotations

import logging
import os
from pathlib import Path

from isobackup.backup.config import RemoteMount
from isobackup.logging.logger import run_command


class SshfsMountOperations:
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def is_mounted(self, path: Path) -> bool:
        return os.path.ismount(path)

    def unmount(self, path: Path) -> None:
        run_command(["umount", str(path)], logger=self.logger)

    def mount(self, remote: RemoteMount, path: Path) -> None:
        cmd = ["sshfs", remote.remote, str(path), "-p", str(remote.port)]
        if remote.options:
            cmd.extend(["-o", ",".join(remote.options)])
        run_command(cmd, logger=self.logger)
