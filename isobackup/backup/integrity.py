from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from isobackup.backup.errors import IntegrityError
from isobackup.backup.models import ArtifactKind, BackupArtifact
from isobackup.tools.archive import gzip_self_check
from isobackup.tools.iso import iso_signature_check


class ArtifactVerifier:
    """Contrôle d'intégrité des artefacts avant de leur faire confiance.

    `check` ne fait que diagnostiquer ; `verify` supprime en plus tout
    artefact invalide pour qu'un run suivant ne puisse pas s'y fier.
    """

    def __init__(
        self,
        logger: logging.Logger,
        image_check: Callable[[Path], bool],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = logger
        self.image_check = image_check
        self.clock = clock

    def check(self, artifact: BackupArtifact) -> Optional[str]:
        path = artifact.path
        if not path.is_file():
            return "artefact absent"

        if artifact.kind == ArtifactKind.COMPRESSED_IMAGE:
            return gzip_self_check(path)
        if artifact.kind == ArtifactKind.PACKAGED_IMAGE:
            return iso_signature_check(path)
        if artifact.kind == ArtifactKind.RAW_IMAGE:
            if artifact.expected_size_bytes is None:
                return "taille de la source inconnue"
            size = path.stat().st_size
            if size != artifact.expected_size_bytes:
                return f"taille {size} octets, attendu {artifact.expected_size_bytes}"
            return None
        if artifact.kind == ArtifactKind.PARTITION_IMAGE:
            return None if self.image_check(path) else "auto-contrôle de l'image en échec"
        if artifact.kind == ArtifactKind.RAID_DESCRIPTOR:
            content = path.read_text(encoding="utf-8", errors="replace")
            if not any(line.startswith("ARRAY") for line in content.splitlines()):
                return "aucune grappe ARRAY décrite"
            return None
        return f"type d'artefact non géré: {artifact.kind}"

    def verify(self, artifact: BackupArtifact) -> bool:
        path = artifact.path
        artifact.verified = False
        if not path.is_file():
            self.logger.info("%s absent", path)
            return False

        self.logger.info("Vérification d'intégrité de %s...", path)
        start = self.clock()
        reason = self.check(artifact)
        duration = self.clock() - start

        if reason is None:
            artifact.verified = True
            self.logger.info("%s est valide. Vérification en %.1f secondes.", path, duration)
            return True

        self.logger.warning(
            "%s est incomplet ou corrompu (%s). Vérification en %.1f secondes. Suppression...",
            path,
            reason,
            duration,
        )
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise IntegrityError(f"Impossible de supprimer l'artefact invalide {path}: {exc}", str(path)) from exc
        return False
