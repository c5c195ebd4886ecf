"""Configuration d'un backup ISO.

Les constantes de ce module fixent les emplacements de travail (logs, état
SQLite) et les valeurs par défaut. Un backup est décrit par un payload JSON
validé clé par clé par `parse_backup_config`.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from isobackup.backup.errors import PreconditionError

ROOT_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = Path(os.getenv("ISOBACKUP_DATA_DIR") or ROOT_DIR / "data")
LOGS_DIR = DATA_DIR / "logs"
DB_PATH = DATA_DIR / "state.sqlite"

GIB = 1024 * 1024 * 1024
MIN_SPACE_GB = 10
MAX_ISO_FILE_SIZE = 4 * GIB  # limite ISO 9660 par fichier
SWAP_ESTIMATE_BYTES = 1 * GIB
BLOCK_SIZE = "4M"
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 5.0  # secondes
DEFAULT_BACKUP_NAME = "server_backup"
DEFAULT_SERVICES = ("mysql", "postgres", "apache2", "nginx")
DEFAULT_SSHFS_OPTIONS = ("allow_other", "ServerAliveInterval=60", "ServerAliveCountMax=3")
MODES = ("disk", "filesystem")


@dataclass(frozen=True)
class SourceSpec:
    device: str
    fstype: Optional[str] = None

    @property
    def image_name(self) -> str:
        return f"{Path(self.device).name}.img"


@dataclass(frozen=True)
class RemoteMount:
    """Montage distant (sshfs) qui porte le répertoire de sortie."""

    remote: str
    port: int = 22
    options: List[str] = field(default_factory=lambda: list(DEFAULT_SSHFS_OPTIONS))


@dataclass
class BackupConfig:
    name: str
    mode: str
    sources: List[SourceSpec]
    sink: Path
    remote_mount: Optional[RemoteMount] = None
    protected_disks: List[str] = field(default_factory=list)
    retries: int = DEFAULT_RETRIES
    backoff: float = DEFAULT_BACKOFF
    min_free_gb: int = MIN_SPACE_GB
    services: List[str] = field(default_factory=lambda: list(DEFAULT_SERVICES))
    raid_descriptor: bool = True
    assume_yes: bool = False

    @property
    def margin_bytes(self) -> int:
        return self.min_free_gb * GIB

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "name": self.name,
            "mode": self.mode,
            "sources": [
                {"device": source.device, "fstype": source.fstype} if source.fstype else source.device
                for source in self.sources
            ],
            "sink": str(self.sink),
            "protected_disks": list(self.protected_disks),
            "retries": self.retries,
            "backoff": self.backoff,
            "min_free_gb": self.min_free_gb,
            "services": list(self.services),
            "raid_descriptor": self.raid_descriptor,
            "assume_yes": self.assume_yes,
        }
        if self.remote_mount:
            payload["remote_mount"] = {
                "remote": self.remote_mount.remote,
                "port": self.remote_mount.port,
                "options": list(self.remote_mount.options),
            }
        return payload


def load_backup_config(path: Path) -> BackupConfig:
    if not path.exists():
        raise PreconditionError(f"Fichier de configuration introuvable: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except json.JSONDecodeError as exc:  # noqa: B904 - message métier
        raise PreconditionError(f"Configuration {path} invalide: {exc}") from exc

    return parse_backup_config(payload)


def parse_backup_config(payload: Dict[str, object]) -> BackupConfig:
    _validate_backup_payload(payload)

    sources = [_parse_source(item) for item in payload["sources"]]
    remote_payload = payload.get("remote_mount")
    remote_mount = None
    if remote_payload:
        remote_mount = RemoteMount(
            remote=remote_payload["remote"],
            port=int(remote_payload.get("port", 22)),
            options=list(remote_payload.get("options", DEFAULT_SSHFS_OPTIONS)),
        )

    return BackupConfig(
        name=str(payload.get("name") or DEFAULT_BACKUP_NAME),
        mode=str(payload.get("mode", "filesystem")),
        sources=sources,
        sink=Path(str(payload["sink"])),
        remote_mount=remote_mount,
        protected_disks=list(payload.get("protected_disks", [])),
        retries=int(payload.get("retries", DEFAULT_RETRIES)),
        backoff=float(payload.get("backoff", DEFAULT_BACKOFF)),
        min_free_gb=int(payload.get("min_free_gb", MIN_SPACE_GB)),
        services=list(payload.get("services", DEFAULT_SERVICES)),
        raid_descriptor=bool(payload.get("raid_descriptor", True)),
        assume_yes=bool(payload.get("assume_yes", False)),
    )


def _parse_source(item: object) -> SourceSpec:
    if isinstance(item, str):
        return SourceSpec(device=item)
    return SourceSpec(device=item["device"], fstype=item.get("fstype") or None)


def _validate_backup_payload(payload: Dict[str, object]) -> None:
    if not isinstance(payload, dict):
        raise PreconditionError("La configuration doit être un objet JSON")

    name = payload.get("name", DEFAULT_BACKUP_NAME)
    if not isinstance(name, str) or not name.strip() or "/" in name:
        raise PreconditionError("La clé 'name' doit être une chaîne non vide sans '/'")

    mode = payload.get("mode", "filesystem")
    if mode not in MODES:
        raise PreconditionError(f"La clé 'mode' doit valoir l'une de {', '.join(MODES)}")

    sink = payload.get("sink")
    if not isinstance(sink, str) or not sink.strip():
        raise PreconditionError("La clé 'sink' doit être une chaîne non vide")

    sources = payload.get("sources")
    if not isinstance(sources, list) or not sources:
        raise PreconditionError("La clé 'sources' doit être une liste non vide")
    for item in sources:
        if isinstance(item, str) and item:
            continue
        if isinstance(item, dict) and isinstance(item.get("device"), str) and item["device"]:
            if "fstype" in item and item["fstype"] is not None and not isinstance(item["fstype"], str):
                raise PreconditionError("sources[].fstype doit être une chaîne si présent")
            continue
        raise PreconditionError("Chaque source doit être un chemin de périphérique ou un objet {device, fstype}")

    image_names = [Path(_parse_source(item).device).name for item in sources]
    if len(set(image_names)) != len(image_names):
        raise PreconditionError("Deux sources produiraient la même image (noms de périphériques en double)")

    remote = payload.get("remote_mount")
    if remote is not None:
        if not isinstance(remote, dict) or not isinstance(remote.get("remote"), str) or not remote.get("remote"):
            raise PreconditionError("remote_mount doit être un objet avec une clé 'remote' non vide")
        if "port" in remote and not isinstance(remote["port"], int):
            raise PreconditionError("remote_mount.port doit être un entier")
        if "options" in remote and not isinstance(remote["options"], list):
            raise PreconditionError("remote_mount.options doit être une liste")

    for list_key in ("protected_disks", "services"):
        value = payload.get(list_key, [])
        if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
            raise PreconditionError(f"La clé '{list_key}' doit être une liste de chaînes")

    for numeric_key in ("retries", "backoff", "min_free_gb"):
        if numeric_key in payload and (
            isinstance(payload[numeric_key], bool) or not isinstance(payload[numeric_key], (int, float))
        ):
            raise PreconditionError(f"{numeric_key} doit être un nombre si présent")

    if "retries" in payload and payload["retries"] <= 0:
        raise PreconditionError("retries doit être strictement positif")
    if "backoff" in payload and payload["backoff"] < 0:
        raise PreconditionError("backoff doit être positif ou nul")
    if "min_free_gb" in payload and payload["min_free_gb"] < 0:
        raise PreconditionError("min_free_gb doit être positif ou nul")
