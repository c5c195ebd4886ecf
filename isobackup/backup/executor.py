from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from isobackup.backup.capabilities import Toolchain
from isobackup.backup.config import MAX_ISO_FILE_SIZE
from isobackup.backup.errors import (
    BackupError,
    IntegrityError,
    MountExhausted,
    PipelineCancelled,
    PipelineExecutionError,
    ToolError,
)
from isobackup.backup.integrity import ArtifactVerifier
from isobackup.backup.models import (
    ArtifactKind,
    BackupArtifact,
    PipelineStage,
    PlannedStage,
    RunContext,
    StageAction,
    part_path,
)
from isobackup.backup.mount import MountMonitor


class PipelineExecutor:
    """Enchaîne capture, compression, emballage ISO, vérification et nettoyage.

    Seules les étapes planifiées `run` sont exécutées, dans l'ordre. Le
    moniteur de montage est consulté juste avant chaque accès au sink et
    l'annulation est testée à chaque frontière d'étape. La première erreur
    interrompt le run ; les artefacts partiels restent en place.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        monitor: MountMonitor,
        verifier: ArtifactVerifier,
        logger: logging.Logger,
        cancel: Optional[threading.Event] = None,
        iso_size_threshold: int = MAX_ISO_FILE_SIZE,
    ) -> None:
        self.toolchain = toolchain
        self.monitor = monitor
        self.verifier = verifier
        self.logger = logger
        self.cancel = cancel or threading.Event()
        self.iso_size_threshold = iso_size_threshold

    def run(self, context: RunContext, planned: List[PlannedStage]) -> BackupArtifact:
        to_run = {entry.stage for entry in planned if entry.action == StageAction.RUN}
        handlers: Dict[PipelineStage, Callable[[RunContext, Set[PipelineStage]], None]] = {
            PipelineStage.PRECHECK: self._precheck,
            PipelineStage.CAPTURE: self._capture,
            PipelineStage.COMPRESS: self._compress,
            PipelineStage.PACKAGE: self._package,
            PipelineStage.VERIFY: self._verify,
            PipelineStage.CLEANUP: self._cleanup,
        }

        for entry in planned:
            stage = entry.stage
            if self.cancel.is_set():
                self.logger.warning("Annulation demandée avant l'étape %s", stage.name)
                raise PipelineCancelled(stage, "annulation demandée")
            if entry.action == StageAction.SKIP:
                self.logger.info("Étape %s ignorée (%s)", stage.name, entry.reason)
                continue

            self.logger.info("=== Étape %s ===", stage.name)
            try:
                handlers[stage](context, to_run)
            except ToolError as exc:
                raise PipelineExecutionError(stage, str(exc)) from exc
            except BackupError:
                raise
            except OSError as exc:
                raise PipelineExecutionError(stage, f"Erreur d'entrée/sortie: {exc}") from exc

        packaged = context.artifact(PipelineStage.PACKAGE)
        if packaged is None or not packaged.verified:
            raise PipelineExecutionError(PipelineStage.VERIFY, "Aucune image ISO vérifiée en fin de pipeline")
        return packaged

    def _gate(self) -> None:
        self.monitor.ensure_healthy()

    def _precheck(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        if PipelineStage.CAPTURE not in to_run:
            return
        self._gate()
        context.backup_dir.mkdir(parents=True, exist_ok=True)
        self.logger.info("Répertoire de backup prêt: %s", context.backup_dir)

    def _capture(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        self._gate()
        context.backup_dir.mkdir(parents=True, exist_ok=True)

        expected = context.expected_artifacts(PipelineStage.CAPTURE)
        for artifact in expected:
            if artifact.kind == ArtifactKind.RAID_DESCRIPTOR:
                self._write_descriptor(context, artifact)

        sources = {source.device: source for source in context.config.sources}
        for artifact in expected:
            if artifact.kind == ArtifactKind.RAID_DESCRIPTOR:
                continue
            if context.verified(PipelineStage.CAPTURE, artifact.path):
                self.logger.info("Image %s déjà vérifiée, capture de %s ignorée", artifact.path, artifact.source)
                continue

            self._gate()
            self.logger.info("Traitement de %s...", artifact.source)
            # en cas d'échec l'image partielle reste : le prochain run la rejettera à la vérification
            self.toolchain.capture.capture(sources[artifact.source], artifact.path)

            if artifact.kind == ArtifactKind.RAW_IMAGE and not self.verifier.verify(artifact):
                raise IntegrityError(f"Image brute {artifact.path} invalide juste après la copie", str(artifact.path))
            context.record(PipelineStage.CAPTURE, artifact)
            self.logger.info("Backup de %s terminé", artifact.source)

        self.logger.info("Tous les périphériques sont sauvegardés")

    def _write_descriptor(self, context: RunContext, artifact: BackupArtifact) -> None:
        description = self.toolchain.raid.describe()
        artifact.path.write_text(description, encoding="utf-8")
        if not self.verifier.verify(artifact):
            raise IntegrityError("Description RAID vide : mdadm n'a décrit aucune grappe", str(artifact.path))
        context.record(PipelineStage.CAPTURE, artifact)
        self.logger.info("Métadonnées RAID enregistrées dans %s", artifact.path)

    def _compress(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        self._gate()
        if not context.backup_dir.is_dir():
            raise PipelineExecutionError(PipelineStage.COMPRESS, f"Répertoire de backup introuvable: {context.backup_dir}")
        self._ensure_released(PipelineStage.COMPRESS, context.backup_dir)

        output = self.toolchain.compressor.compress(context.backup_dir, context.compressed_path)
        artifact = BackupArtifact(ArtifactKind.COMPRESSED_IMAGE, output)
        if not self.verifier.verify(artifact):
            raise IntegrityError(f"Archive {output} invalide après compression", str(output))
        context.record(PipelineStage.COMPRESS, artifact)

    def _package(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        self._gate()
        payload = context.compressed_path
        if not payload.is_file():
            raise PipelineExecutionError(PipelineStage.PACKAGE, f"Archive compressée introuvable: {payload}")
        self._ensure_released(PipelineStage.PACKAGE, payload)

        size = payload.stat().st_size
        extended = size > self.iso_size_threshold
        self.logger.info("Archive de %s octets, format %s", size, "UDF" if extended else "ISO 9660")
        output = self.toolchain.packager.package(payload, context.packaged_path, extended)
        context.record(PipelineStage.PACKAGE, BackupArtifact(ArtifactKind.PACKAGED_IMAGE, output))
        self.logger.info("Image ISO amorçable créée: %s", output)

    def _ensure_released(self, stage: PipelineStage, path: Path) -> None:
        if self.toolchain.in_use(path):
            raise PipelineExecutionError(stage, f"{path} est utilisé par un autre processus")

    def _verify(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        self._gate()
        artifact = context.artifact(PipelineStage.PACKAGE) or BackupArtifact(
            ArtifactKind.PACKAGED_IMAGE, context.packaged_path
        )
        if not artifact.path.is_file():
            raise PipelineExecutionError(PipelineStage.VERIFY, f"Image ISO introuvable: {artifact.path}")
        size = artifact.path.stat().st_size
        if size == 0:
            raise PipelineExecutionError(PipelineStage.VERIFY, f"Image ISO vide ou corrompue: {artifact.path}")
        if not artifact.verified:
            reason = self.verifier.check(artifact)
            if reason:
                raise PipelineExecutionError(PipelineStage.VERIFY, f"Image ISO {artifact.path} invalide: {reason}")

        artifact.verified = True
        context.record(PipelineStage.PACKAGE, artifact)
        self.logger.info("Image ISO vérifiée: %s (taille: %s octets)", artifact.path, size)

    def _cleanup(self, context: RunContext, to_run: Set[PipelineStage]) -> None:
        if not context.verified(PipelineStage.PACKAGE, context.packaged_path):
            self.logger.warning("Image ISO non vérifiée : nettoyage des fichiers intermédiaires annulé")
            return
        try:
            self._gate()
        except MountExhausted as exc:
            self.logger.warning("Nettoyage reporté, sink indisponible: %s", exc)
            return

        for stage, path in (
            (PipelineStage.CAPTURE, context.backup_dir),
            (PipelineStage.COMPRESS, context.compressed_path),
        ):
            if not path.exists():
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as exc:
                self.logger.warning("Échec de suppression du fichier temporaire %s: %s", path, exc)
                continue
            context.artifacts.pop(stage, None)
            self.logger.info("Fichier temporaire supprimé: %s", path)

        # restes d'un run tué pendant l'écriture
        for leftover in (part_path(context.compressed_path), part_path(context.packaged_path)):
            if leftover.exists():
                try:
                    leftover.unlink()
                except OSError as exc:
                    self.logger.warning("Échec de suppression du fichier partiel %s: %s", leftover, exc)
                else:
                    self.logger.info("Fichier partiel supprimé: %s", leftover)
