from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from isobackup.backup.config import BackupConfig
from isobackup.backup.errors import PreconditionError, UserAbort

RAID1_ACTIVE = re.compile(r"active.*raid1")
MEMBER_MAP = re.compile(r"\[([U_]+)\]")


class OutcomeStatus(str, Enum):
    PASS = "pass"
    HARD_FAIL = "hard_fail"
    SOFT_WARN = "soft_warn"


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    reasons: Tuple[str, ...] = ()

    @classmethod
    def passed(cls) -> "Outcome":
        return cls(OutcomeStatus.PASS)

    @classmethod
    def hard_fail(cls, *reasons: str) -> "Outcome":
        return cls(OutcomeStatus.HARD_FAIL, tuple(reasons))

    @classmethod
    def soft_warn(cls, *reasons: str) -> "Outcome":
        return cls(OutcomeStatus.SOFT_WARN, tuple(reasons))


@dataclass(frozen=True)
class EnvironmentFacts:
    """Constat de l'hôte au démarrage du run (voir `tools.system.probe_environment`)."""

    is_root: bool
    missing_tools: Tuple[str, ...] = ()
    mdstat: Optional[str] = None
    missing_devices: Tuple[str, ...] = ()
    mounted_devices: Tuple[str, ...] = ()
    running_services: Tuple[str, ...] = ()
    sink_device: Optional[str] = None
    protected_disks: Tuple[str, ...] = ()


def required_tools(config: BackupConfig) -> List[str]:
    tools = ["genisoimage", "mdadm", "nice"]
    if config.mode == "disk":
        tools.append("dd")
    else:
        tools.append("blkid")
        fstypes = {source.fstype for source in config.sources if source.fstype}
        if not fstypes or any(not source.fstype for source in config.sources):
            # type inconnu à l'avance : on exige au moins les deux formats courants
            fstypes.update({"ext4", "swap"})
        tools.extend(sorted(f"partclone.{fstype}" for fstype in fstypes))
        tools.append("partclone.chkimg")
    if config.remote_mount:
        tools.extend(["sshfs", "umount"])
    return tools


def raid_health_issues(mdstat: str) -> List[str]:
    issues: List[str] = []
    if not RAID1_ACTIVE.search(mdstat):
        issues.append("Aucune grappe RAID1 active dans /proc/mdstat")
    for member_map in MEMBER_MAP.findall(mdstat):
        if "_" in member_map:
            issues.append(f"Grappe RAID dégradée détectée ([{member_map}])")
    return issues


def validate(facts: EnvironmentFacts) -> Outcome:
    """Évalue les préconditions statiques du run.

    Les échecs bloquants sont renvoyés en priorité ; sinon tous les
    avertissements sont regroupés pour confirmation.
    """

    hard: List[str] = []
    if not facts.is_root:
        hard.append("Ce backup doit être lancé en root")
    for tool in facts.missing_tools:
        hard.append(f"Binaire requis introuvable: {tool}")
    if facts.mdstat is None:
        hard.append("RAID non détecté (/proc/mdstat absent)")
    for device in facts.missing_devices:
        hard.append(f"Périphérique source introuvable: {device}")
    if facts.sink_device:
        for disk in facts.protected_disks:
            if facts.sink_device.startswith(disk):
                hard.append(
                    f"Le répertoire de sortie est sur {facts.sink_device}, qui fait partie des disques sauvegardés ({disk})"
                )
    if hard:
        return Outcome.hard_fail(*hard)

    soft: List[str] = []
    soft.extend(raid_health_issues(facts.mdstat or ""))
    for device in facts.mounted_devices:
        soft.append(f"{device} est monté : la sauvegarde à chaud peut être incohérente")
    if facts.running_services:
        soft.append(f"Services actifs détectés ({', '.join(facts.running_services)}) : backup potentiellement incohérent")
    if soft:
        return Outcome.soft_warn(*soft)

    return Outcome.passed()


def estimate_required_bytes(config: BackupConfig, source_bytes: Dict[str, int]) -> int:
    return sum(source_bytes.get(source.device, 0) for source in config.sources) + config.margin_bytes


def check_capacity(required_bytes: int, available_bytes: int) -> Outcome:
    if available_bytes < required_bytes:
        return Outcome.hard_fail(
            f"Espace insuffisant: {required_bytes} octets requis, {available_bytes} octets disponibles"
        )
    return Outcome.passed()


def enforce(outcome: Outcome, confirm: Callable[[str], bool], logger) -> None:
    """Applique une issue de validation : exception, confirmation ou passage."""

    if outcome.status == OutcomeStatus.HARD_FAIL:
        for reason in outcome.reasons:
            logger.error(reason)
        raise PreconditionError("; ".join(outcome.reasons))

    if outcome.status == OutcomeStatus.SOFT_WARN:
        for reason in outcome.reasons:
            logger.warning("Avertissement: %s", reason)
            if not confirm(reason):
                logger.error("Abandon à la demande de l'opérateur")
                raise UserAbort(reason)
            logger.warning("Poursuite confirmée malgré: %s", reason)
