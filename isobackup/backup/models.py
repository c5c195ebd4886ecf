from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Dict, List, Optional

from isobackup.backup.config import BackupConfig, RemoteMount

DESCRIPTOR_NAME = "mdadm.conf"
LOCK_NAME = ".isobackup.lock"
PART_SUFFIX = ".part"


def part_path(output: Path) -> Path:
    """Fichier de travail d'un artefact, renommé vers `output` une fois complet."""

    return output.with_name(output.name + PART_SUFFIX)


class ArtifactKind(str, Enum):
    RAW_IMAGE = "raw_image"
    PARTITION_IMAGE = "partition_image"
    COMPRESSED_IMAGE = "compressed_image"
    PACKAGED_IMAGE = "packaged_image"
    RAID_DESCRIPTOR = "raid_descriptor"


class PipelineStage(IntEnum):
    PRECHECK = 0
    CAPTURE = 1
    COMPRESS = 2
    PACKAGE = 3
    VERIFY = 4
    CLEANUP = 5


# Étapes qui écrivent un artefact sur le sink, de la plus ancienne à la plus récente.
PRODUCING_STAGES = (PipelineStage.CAPTURE, PipelineStage.COMPRESS, PipelineStage.PACKAGE)


class StageAction(str, Enum):
    SKIP = "skip"
    RUN = "run"


class MountHealth(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class BackupArtifact:
    kind: ArtifactKind
    path: Path
    expected_size_bytes: Optional[int] = None
    verified: bool = False
    source: Optional[str] = None


@dataclass
class MountHandle:
    sink_path: Path
    health: MountHealth = MountHealth.UNKNOWN
    last_checked_at: Optional[float] = None
    remote: Optional[RemoteMount] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts doit être strictement positif")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay doit être positif ou nul")


@dataclass(frozen=True)
class PlannedStage:
    stage: PipelineStage
    action: StageAction
    reason: str = ""


@dataclass
class RunContext:
    """État d'un run : configuration, nommage et carte des artefacts connus.

    `artifacts` n'est modifiée que par le planificateur et l'exécuteur : une
    entrée y est ajoutée après une vérification réussie ou une étape terminée,
    ou en est retirée.
    """

    run_id: str
    config: BackupConfig
    source_sizes: Dict[str, int] = field(default_factory=dict)
    artifacts: Dict[PipelineStage, List[BackupArtifact]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def sink(self) -> Path:
        return self.config.sink

    @property
    def backup_dir(self) -> Path:
        return self.sink / self.config.name

    @property
    def descriptor_path(self) -> Path:
        return self.backup_dir / DESCRIPTOR_NAME

    @property
    def compressed_path(self) -> Path:
        return self.sink / f"{self.config.name}.tar.gz"

    @property
    def packaged_path(self) -> Path:
        return self.sink / f"{self.config.name}.iso"

    @property
    def lock_path(self) -> Path:
        return self.sink / LOCK_NAME

    def expected_artifacts(self, stage: PipelineStage) -> List[BackupArtifact]:
        """Artefacts qu'une étape doit laisser sur le sink."""

        if stage == PipelineStage.CAPTURE:
            expected: List[BackupArtifact] = []
            if self.config.raid_descriptor:
                expected.append(BackupArtifact(ArtifactKind.RAID_DESCRIPTOR, self.descriptor_path))
            for source in self.config.sources:
                path = self.backup_dir / source.image_name
                if self.config.mode == "disk":
                    expected.append(
                        BackupArtifact(
                            ArtifactKind.RAW_IMAGE,
                            path,
                            expected_size_bytes=self.source_sizes.get(source.device),
                            source=source.device,
                        )
                    )
                else:
                    expected.append(BackupArtifact(ArtifactKind.PARTITION_IMAGE, path, source=source.device))
            return expected
        if stage == PipelineStage.COMPRESS:
            return [BackupArtifact(ArtifactKind.COMPRESSED_IMAGE, self.compressed_path)]
        if stage == PipelineStage.PACKAGE:
            return [BackupArtifact(ArtifactKind.PACKAGED_IMAGE, self.packaged_path)]
        return []

    def record(self, stage: PipelineStage, artifact: BackupArtifact) -> None:
        entries = [a for a in self.artifacts.get(stage, []) if a.path != artifact.path]
        entries.append(artifact)
        self.artifacts[stage] = entries

    def discard(self, stage: PipelineStage, path: Path) -> None:
        entries = [a for a in self.artifacts.get(stage, []) if a.path != path]
        if entries:
            self.artifacts[stage] = entries
        else:
            self.artifacts.pop(stage, None)

    def verified(self, stage: PipelineStage, path: Path) -> bool:
        return any(a.path == path and a.verified for a in self.artifacts.get(stage, []))

    def artifact(self, stage: PipelineStage) -> Optional[BackupArtifact]:
        entries = self.artifacts.get(stage)
        return entries[-1] if entries else None
