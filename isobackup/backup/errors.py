"""Erreurs métier du backup ISO.

Chaque erreur fatale porte son code de sortie ; `create_iso` et la CLI s'en
servent pour produire une condition de sortie distincte par cause.
"""
from __future__ import annotations

from typing import List, Optional

EXIT_OK = 0
EXIT_PRECONDITION = 1
EXIT_INTEGRITY = 2
EXIT_PIPELINE = 3
EXIT_MOUNT_EXHAUSTED = 4
EXIT_USER_ABORT = 5
EXIT_SINK_BUSY = 6


class BackupError(Exception):
    """Erreur fonctionnelle lors d'un backup."""

    exit_code = EXIT_PIPELINE


class PreconditionError(BackupError):
    """Environnement inadapté : aucun effet de bord n'a encore eu lieu."""

    exit_code = EXIT_PRECONDITION


class UserAbort(BackupError):
    """Refus explicite de l'opérateur de poursuivre malgré un avertissement."""

    exit_code = EXIT_USER_ABORT


class TransientMountError(BackupError):
    """Point de montage indisponible pour une tentative (réessayable)."""

    exit_code = EXIT_MOUNT_EXHAUSTED


class MountExhausted(BackupError):
    """Le point de montage n'a pas pu être rétabli dans le budget de tentatives."""

    exit_code = EXIT_MOUNT_EXHAUSTED


class SinkBusy(BackupError):
    """Un autre run détient déjà le répertoire de sortie."""

    exit_code = EXIT_SINK_BUSY


class IntegrityError(BackupError):
    """Un artefact régénéré reste invalide après vérification."""

    exit_code = EXIT_INTEGRITY

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class PipelineExecutionError(BackupError):
    """Échec d'une étape du pipeline ; les artefacts partiels sont conservés."""

    exit_code = EXIT_PIPELINE

    def __init__(self, stage, message: str) -> None:
        super().__init__(f"[{stage.name}] {message}")
        self.stage = stage


class PipelineCancelled(PipelineExecutionError):
    """Annulation externe constatée à une frontière d'étape."""


class ToolError(BackupError):
    """Commande externe sortie en erreur."""

    def __init__(self, command: List[str], returncode: int, detail: str = "") -> None:
        message = f"Commande échouée ({returncode}): {' '.join(command)}"
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
