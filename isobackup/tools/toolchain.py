from __future__ import annotations

import logging
from functools import partial

from isobackup.backup.capabilities import Toolchain
from isobackup.backup.config import BackupConfig
from isobackup.tools.archive import TarGzipCompressor
from isobackup.tools.blockdev import DdCapture, PartcloneCapture, device_size
from isobackup.tools.iso import GenisoimagePackager
from isobackup.tools.raid import MdadmDescriber
from isobackup.tools.system import file_in_use


def build_toolchain(config: BackupConfig, logger: logging.Logger) -> Toolchain:
    capture = DdCapture(logger) if config.mode == "disk" else PartcloneCapture(logger)
    return Toolchain(
        capture=capture,
        compressor=TarGzipCompressor(logger),
        packager=GenisoimagePackager(logger, volume_label=config.name.upper()),
        raid=MdadmDescriber(logger),
        device_size=device_size,
        in_use=partial(file_in_use, logger=logger),
    )
