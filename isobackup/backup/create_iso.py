"""Backup ISO amorçable d'un serveur RAID1, reprenable et vérifié.

Ce module enchaîne un run complet :
- validation des préconditions de l'hôte (root, outils, RAID, disques, services)
- contrôle du montage du répertoire de sortie (sshfs éventuel) avec reprises
- verrou exclusif sur le répertoire de sortie
- contrôle de l'espace disponible
- planification des étapes à partir des artefacts déjà présents et vérifiés
- capture, compression, ISO, vérification et nettoyage
- journalisation dans `data/logs/<nom>/backup.log`
- statut du run dans SQLite (`COMPLETED` ou `FAILED`, avec code de sortie)
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from isobackup.backup.capabilities import Toolchain
from isobackup.backup.config import DB_PATH, LOGS_DIR, BackupConfig, load_backup_config, parse_backup_config
from isobackup.backup.errors import EXIT_OK, EXIT_PIPELINE, BackupError, PreconditionError
from isobackup.backup.executor import PipelineExecutor
from isobackup.backup.integrity import ArtifactVerifier
from isobackup.backup.locking import sink_claim
from isobackup.backup.models import MountHandle, PipelineStage, PlannedStage, RetryPolicy, RunContext
from isobackup.backup.mount import MountMonitor, MountOperations
from isobackup.backup.planner import plan, stages_to_run
from isobackup.backup.preflight import (
    EnvironmentFacts,
    check_capacity,
    enforce,
    estimate_required_bytes,
    validate,
)
from isobackup.logging.logger import build_logger
from isobackup.store.sqlite_store import BackupRunState


@dataclass
class BackupResult:
    run_id: str
    iso_path: Path
    size_bytes: int
    planned: List[PlannedStage]


def new_run_id() -> str:
    return f"{time.strftime('%Y%m%dT%H%M%SZ', time.gmtime())}-{uuid.uuid4().hex[:6]}"


def create_iso(
    config: BackupConfig,
    confirm: Callable[[str], bool],
    *,
    toolchain: Optional[Toolchain] = None,
    mount_operations: Optional[MountOperations] = None,
    probe: Optional[Callable[[BackupConfig, logging.Logger], EnvironmentFacts]] = None,
    measure: Optional[Callable[[BackupConfig], Dict[str, int]]] = None,
    available: Optional[Callable[[Path], int]] = None,
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
    state: Optional[BackupRunState] = None,
    run_id: Optional[str] = None,
) -> BackupResult:
    """Produit (ou reprend) le backup ISO décrit par `config`.

    Args:
        config: Description du backup (sources, sink, montage distant, marges).
        confirm: Décision de l'opérateur face à un avertissement ; `False` abandonne le run.
        toolchain: Outils de capture/compression/emballage (production par défaut).
        mount_operations: Opérations de (dé)montage du sink distant.
        probe: Sonde de l'hôte pour les préconditions.
        measure: Volume à sauvegarder par source, pour le contrôle d'espace.
        available: Espace libre du sink.
        cancel: Événement d'annulation testé entre les étapes.
        sleep: Attente entre deux tentatives de montage.

    Raises:
        BackupError: la sous-classe indique la cause et porte le code de sortie ;
            le statut SQLite est mis à jour avant de relancer.
    """

    run_id = run_id or new_run_id()
    logger = logger or build_logger(config.name, LOGS_DIR)
    state = state or BackupRunState(DB_PATH)
    state.ensure_schema()

    logger.info("=== Backup %s (run %s) démarré ===", config.name, run_id)
    state.upsert_status(run_id, config.name, "RUNNING", "Backup démarré")

    try:
        result = _run(
            config,
            confirm,
            run_id=run_id,
            toolchain=toolchain,
            mount_operations=mount_operations,
            probe=probe,
            measure=measure,
            available=available,
            cancel=cancel,
            sleep=sleep,
            logger=logger,
        )
    except BackupError as exc:
        stage = getattr(exc, "stage", None)
        message = f"create_iso échoué: {exc}"
        logger.error(message)
        state.upsert_status(
            run_id, config.name, "FAILED", message, stage=stage.name if stage else None, exit_code=exc.exit_code
        )
        raise
    except Exception as exc:  # noqa: BLE001 - capture volontaire pour tracer l'échec
        message = f"create_iso échoué (erreur inattendue): {exc}"
        logger.exception(message)
        state.upsert_status(run_id, config.name, "FAILED", message, exit_code=EXIT_PIPELINE)
        raise

    state.upsert_status(
        run_id, config.name, "COMPLETED", f"Image ISO prête: {result.iso_path}", exit_code=EXIT_OK
    )
    logger.info("=== Backup %s terminé : ISO enregistrée dans %s ===", config.name, result.iso_path)
    _log_next_steps(result, logger)
    return result


def _run(
    config: BackupConfig,
    confirm: Callable[[str], bool],
    *,
    run_id: str,
    toolchain: Optional[Toolchain],
    mount_operations: Optional[MountOperations],
    probe: Optional[Callable[[BackupConfig, logging.Logger], EnvironmentFacts]],
    measure: Optional[Callable[[BackupConfig], Dict[str, int]]],
    available: Optional[Callable[[Path], int]],
    cancel: Optional[threading.Event],
    sleep: Callable[[float], None],
    logger: logging.Logger,
) -> BackupResult:
    if toolchain is None:
        from isobackup.tools.toolchain import build_toolchain

        toolchain = build_toolchain(config, logger)
    if probe is None or measure is None or available is None:
        from isobackup.tools import system

        probe = probe or system.probe_environment
        measure = measure or system.measure_sources
        available = available or system.available_bytes
    if config.remote_mount and mount_operations is None:
        from isobackup.tools.sshfs import SshfsMountOperations

        mount_operations = SshfsMountOperations(logger)

    logger.info("Vérification des préconditions...")
    enforce(validate(probe(config, logger)), confirm, logger)

    if not config.sink.is_dir():
        logger.warning("Répertoire de sortie %s absent, création...", config.sink)
        try:
            config.sink.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PreconditionError(f"Impossible de créer {config.sink}: {exc}") from exc

    handle = MountHandle(sink_path=config.sink, remote=config.remote_mount)
    policy = RetryPolicy(max_attempts=config.retries, backoff_delay=config.backoff)
    monitor = MountMonitor(handle, policy, mount_operations, logger, sleep=sleep)
    monitor.ensure_healthy()

    context = RunContext(run_id=run_id, config=config)
    with sink_claim(context.lock_path, run_id, logger):
        if config.mode == "disk":
            context.source_sizes = {source.device: toolchain.device_size(source.device) for source in config.sources}

        verifier = ArtifactVerifier(logger, toolchain.capture.check)
        planned = plan(context, verifier, logger)

        required = _required_bytes(context, stages_to_run(planned), measure)
        if required is None:
            logger.info("Image ISO déjà présente et vérifiée : aucun contrôle d'espace nécessaire")
        else:
            free = available(config.sink)
            logger.info("Espace requis estimé: %s octets, disponible: %s octets", required, free)
            enforce(check_capacity(required, free), confirm, logger)

        executor = PipelineExecutor(toolchain, monitor, verifier, logger, cancel=cancel)
        packaged = executor.run(context, planned)

    return BackupResult(
        run_id=run_id,
        iso_path=packaged.path,
        size_bytes=packaged.path.stat().st_size,
        planned=planned,
    )


def _required_bytes(
    context: RunContext,
    to_run: List[PipelineStage],
    measure: Callable[[BackupConfig], Dict[str, int]],
) -> Optional[int]:
    """Espace nécessaire aux étapes qui restent à exécuter, `None` si rien ne sera écrit.

    Sans capture, l'estimation part des artefacts déjà vérifiés qui alimentent
    la prochaine étape (images si la compression est rejouée, sinon l'archive).
    """

    if PipelineStage.PACKAGE not in to_run:
        return None
    if PipelineStage.CAPTURE in to_run:
        return estimate_required_bytes(context.config, measure(context.config))

    upstream = PipelineStage.CAPTURE if PipelineStage.COMPRESS in to_run else PipelineStage.COMPRESS
    staged = sum(artifact.path.stat().st_size for artifact in context.artifacts.get(upstream, []))
    return staged + context.config.margin_bytes


def _log_next_steps(result: BackupResult, logger: logging.Logger) -> None:
    logger.info("Étapes suivantes :")
    logger.info("1. Tester l'ISO dans une machine virtuelle (QEMU, VirtualBox) pour valider le démarrage.")
    logger.info("2. Stocker l'ISO en lieu sûr, de préférence chiffrée (gpg -c %s).", result.iso_path.name)
    logger.info("3. Restauration depuis un live CD : extraire l'archive, restaurer avec partclone, recréer le RAID1 avec mdadm.")
    logger.info("   - Extraction : tar -xzf /chemin/vers/archive.tar.gz")
    logger.info("   - Swap : partclone.swap -r -s backup/md0.img -o /dev/md0")
    logger.info("   - ext4 : partclone.ext4 -r -s backup/md1.img -o /dev/md1")


def prompt_confirm(reason: str) -> bool:
    """Demande confirmation sur le terminal ; refuse si aucun terminal n'est attaché."""

    if not sys.stdin.isatty():
        return False
    answer = input(f"{reason}. Continuer quand même ? (o/N): ")
    return answer.strip().lower() in {"o", "oui", "y", "yes"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="isobackup", description="Backup ISO amorçable d'un serveur RAID1")
    parser.add_argument("--config", type=Path, help="Fichier JSON de configuration")
    parser.add_argument("--name", help="Nom du backup (répertoire, archive et ISO)")
    parser.add_argument("--mode", choices=["disk", "filesystem"])
    parser.add_argument("--source", action="append", help="Périphérique à sauvegarder (répétable)")
    parser.add_argument("--sink", help="Répertoire de sortie")
    parser.add_argument("--remote", help="Montage sshfs distant (user@hôte:/chemin)")
    parser.add_argument("--remote-port", type=int)
    parser.add_argument("--protected-disk", action="append", help="Disque sauvegardé qui ne doit pas porter le sink")
    parser.add_argument("--retries", type=int)
    parser.add_argument("--backoff", type=float)
    parser.add_argument("--min-free-gb", type=int)
    parser.add_argument("--yes", action="store_true", help="Accepter tous les avertissements")
    return parser


def config_from_args(args: argparse.Namespace) -> BackupConfig:
    if args.config:
        config = load_backup_config(args.config)
        payload = config.to_payload()
    else:
        payload = {}

    overrides = {
        "name": args.name,
        "mode": args.mode,
        "sources": args.source,
        "sink": args.sink,
        "protected_disks": args.protected_disk,
        "retries": args.retries,
        "backoff": args.backoff,
        "min_free_gb": args.min_free_gb,
    }
    payload.update({key: value for key, value in overrides.items() if value is not None})
    if args.remote:
        remote = dict(payload.get("remote_mount") or {})
        remote["remote"] = args.remote
        payload["remote_mount"] = remote
    if args.remote_port is not None and payload.get("remote_mount"):
        payload["remote_mount"]["port"] = args.remote_port
    if args.yes:
        payload["assume_yes"] = True
    return parse_backup_config(payload)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except BackupError as exc:
        print(f"Configuration invalide: {exc}", file=sys.stderr)
        return exc.exit_code

    cancel = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
    confirm = (lambda reason: True) if config.assume_yes else prompt_confirm

    try:
        create_iso(config, confirm, cancel=cancel)
    except BackupError as exc:
        return exc.exit_code
    except Exception:  # noqa: BLE001 - déjà tracé par create_iso
        return EXIT_PIPELINE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
