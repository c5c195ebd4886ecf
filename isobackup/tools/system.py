"""Sondes de l'hôte utilisées par la validation des préconditions."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from isobackup.backup.config import SWAP_ESTIMATE_BYTES, BackupConfig, SourceSpec
from isobackup.backup.preflight import EnvironmentFacts, required_tools
from isobackup.tools.blockdev import device_size
from isobackup.tools.raid import MDSTAT_PATH, read_mdstat

MOUNTS_PATH = Path("/proc/mounts")
SWAPS_PATH = Path("/proc/swaps")

MountEntry = Tuple[str, str, str]


def read_mounts(path: Path = MOUNTS_PATH) -> List[MountEntry]:
    entries: List[MountEntry] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) >= 3:
            # /proc/mounts échappe les espaces en \040
            entries.append((parts[0], parts[1].replace("\\040", " "), parts[2]))
    return entries


def read_swaps(path: Path = SWAPS_PATH) -> List[str]:
    if not path.is_file():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()[1:]
    return [line.split()[0] for line in lines if line.strip()]


def backing_device(target: Path, mounts: List[MountEntry]) -> Optional[str]:
    """Source du point de montage le plus spécifique contenant `target`."""

    resolved = str(target.resolve())
    best_source: Optional[str] = None
    best_length = -1
    for source, mountpoint, _ in mounts:
        mountpoint = mountpoint.rstrip("/") or "/"
        contains = mountpoint == "/" or resolved == mountpoint or resolved.startswith(mountpoint + "/")
        if contains and len(mountpoint) >= best_length:
            best_source, best_length = source, len(mountpoint)
    return best_source


def mountpoint_of(device: str, mounts: List[MountEntry]) -> Optional[str]:
    real = os.path.realpath(device)
    for source, mountpoint, _ in mounts:
        if source == device or os.path.realpath(source) == real:
            return mountpoint
    return None


def running_services(names: List[str]) -> List[str]:
    found = []
    for name in names:
        result = subprocess.run(["pgrep", "-x", name], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
        if result.returncode == 0:
            found.append(name)
    return found


def file_in_use(path: Path, logger: logging.Logger) -> bool:
    """Vrai si un processus garde `path` ouvert (tout l'arbre pour un répertoire).

    Sans lsof on ne peut rien affirmer : un avertissement est journalisé et le
    fichier est considéré libre.
    """

    if shutil.which("lsof") is None:
        logger.warning("lsof absent : impossible de vérifier si %s est utilisé, poursuite avec prudence", path)
        return False
    command = ["lsof", "+D", str(path)] if path.is_dir() else ["lsof", str(path)]
    # lsof sort en 1 quand aucun processus ne tient le fichier
    result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, check=False)
    holders = result.stdout.strip()
    if result.returncode == 0 and holders:
        logger.error("%s est utilisé par un autre processus:\n%s", path, holders)
        return True
    return False


def source_bytes(source: SourceSpec, mode: str, mounts: List[MountEntry], swaps: List[str]) -> int:
    if mode == "disk":
        return device_size(source.device)
    if source.fstype == "swap" or source.device in swaps:
        return SWAP_ESTIMATE_BYTES
    mountpoint = mountpoint_of(source.device, mounts)
    if mountpoint:
        return shutil.disk_usage(mountpoint).used
    # système de fichiers non monté : on compte la taille du périphérique
    return device_size(source.device)


def measure_sources(config: BackupConfig) -> Dict[str, int]:
    mounts = read_mounts()
    swaps = read_swaps()
    return {source.device: source_bytes(source, config.mode, mounts, swaps) for source in config.sources}


def available_bytes(path: Path) -> int:
    return shutil.disk_usage(path).free


def probe_environment(config: BackupConfig, logger: logging.Logger, mdstat_path: Path = MDSTAT_PATH) -> EnvironmentFacts:
    mounts = read_mounts()
    mdstat = read_mdstat(mdstat_path)
    if mdstat is not None:
        logger.info("Configuration RAID détectée:\n%s", mdstat.strip())

    devices = [source.device for source in config.sources]
    missing_devices = tuple(d for d in devices if not Path(d).is_block_device())
    mounted = tuple(d for d in devices if d not in missing_devices and mountpoint_of(d, mounts))
    sink_device = backing_device(config.sink, mounts) if config.sink.exists() else None

    return EnvironmentFacts(
        is_root=os.geteuid() == 0,
        missing_tools=tuple(tool for tool in required_tools(config) if not shutil.which(tool)),
        mdstat=mdstat,
        missing_devices=missing_devices,
        mounted_devices=mounted,
        running_services=tuple(running_services(config.services)),
        sink_device=sink_device,
        protected_disks=tuple(config.protected_disks),
    )
