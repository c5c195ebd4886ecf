from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from isobackup.backup.config import RemoteMount
from isobackup.backup.errors import BackupError, MountExhausted, TransientMountError
from isobackup.backup.models import MountHandle, MountHealth, RetryPolicy

PROBE_PREFIX = ".isobackup_probe_"


class MountOperations(Protocol):
    def is_mounted(self, path: Path) -> bool: ...

    def unmount(self, path: Path) -> None: ...

    def mount(self, remote: RemoteMount, path: Path) -> None: ...


class MountMonitor:
    """Garantit que le sink est monté et inscriptible avant toute écriture.

    Chaque tentative vérifie le montage, monte le sink distant s'il ne l'est
    pas, puis crée et supprime un fichier sonde. En cas d'échec un sink
    distant est démonté puis on attend `policy.backoff_delay` secondes avant
    la tentative suivante, qui le remonte.
    """

    def __init__(
        self,
        handle: MountHandle,
        policy: RetryPolicy,
        operations: Optional[MountOperations],
        logger: logging.Logger,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if handle.remote is not None and operations is None:
            raise ValueError("Un montage distant exige des opérations de montage")
        self.handle = handle
        self.policy = policy
        self.operations = operations
        self.logger = logger
        self.sleep = sleep
        self.clock = clock

    def ensure_healthy(self) -> MountHandle:
        sink = self.handle.sink_path
        max_attempts = self.policy.max_attempts
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                self._check_mounted()
                self._check_writable()
            except TransientMountError as exc:
                last_error = str(exc)
                self._mark(MountHealth.DEGRADED)
                self.logger.warning("Tentative %s/%s: %s", attempt, max_attempts, last_error)
            else:
                self._mark(MountHealth.HEALTHY)
                self.logger.info("%s est monté et inscriptible", sink)
                return self.handle

            if attempt < max_attempts:
                self._release()
                self.sleep(self.policy.backoff_delay)

        self._mark(MountHealth.FAILED)
        message = f"Impossible de valider {sink} après {max_attempts} tentative(s): {last_error}"
        self.logger.error(message)
        raise MountExhausted(message)

    def _mark(self, health: MountHealth) -> None:
        self.handle.health = health
        self.handle.last_checked_at = self.clock()

    def _check_mounted(self) -> None:
        sink = self.handle.sink_path
        if self.handle.remote is None:
            if not sink.is_dir():
                raise TransientMountError(f"{sink} n'est pas un répertoire accessible")
            return
        if self.operations.is_mounted(sink):
            return
        self._mount()
        if not self.operations.is_mounted(sink):
            raise TransientMountError(f"{sink} n'est pas un point de montage valide")

    def _check_writable(self) -> None:
        probe = self.handle.sink_path / f"{PROBE_PREFIX}{time.time_ns()}"
        try:
            probe.touch()
            probe.unlink()
        except OSError as exc:
            raise TransientMountError(f"Écriture impossible sur {self.handle.sink_path}: {exc}") from exc

    def _mount(self) -> None:
        sink = self.handle.sink_path
        self.logger.warning("%s n'est pas monté, montage de %s", sink, self.handle.remote.remote)
        try:
            self.operations.mount(self.handle.remote, sink)
        except (BackupError, OSError) as exc:
            self.logger.error("Échec du montage de %s: %s", sink, exc)

    def _release(self) -> None:
        """Démonte un sink distant défaillant ; la tentative suivante le remonte."""

        if self.handle.remote is None:
            return
        sink = self.handle.sink_path
        try:
            self.operations.unmount(sink)
        except (BackupError, OSError) as exc:
            self.logger.info("Démontage de %s ignoré: %s", sink, exc)
