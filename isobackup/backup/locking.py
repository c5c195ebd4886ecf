"""Verrou exclusif sur le répertoire de sortie pour un seul run à la fois."""
from __future__ import annotations

import getpass
import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from isobackup.backup.errors import SinkBusy

# délai pendant lequel un verrou illisible est supposé en cours d'écriture
UNREADABLE_GRACE_SECONDS = 60


@dataclass(frozen=True)
class SinkClaim:
    pid: int
    host: str
    user: str
    run_id: str
    acquired_at_utc: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def _pid_active(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _read_claim(lock_path: Path) -> Optional[Dict[str, object]]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _holder_alive(lock_path: Path, payload: Optional[Dict[str, object]]) -> bool:
    if payload is None:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < UNREADABLE_GRACE_SECONDS
    if payload.get("host") != socket.gethostname():
        # impossible de sonder un pid distant : le verrou est respecté
        return True
    pid = payload.get("pid")
    return isinstance(pid, int) and _pid_active(pid)


def acquire_sink(lock_path: Path, run_id: str, logger: logging.Logger) -> SinkClaim:
    claim = SinkClaim(
        pid=os.getpid(),
        host=socket.gethostname(),
        user=getpass.getuser(),
        run_id=run_id,
        acquired_at_utc=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )

    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            payload = _read_claim(lock_path)
            if _holder_alive(lock_path, payload):
                holder = payload or {}
                raise SinkBusy(
                    f"Sink déjà utilisé ({lock_path}): run={holder.get('run_id', '?')} "
                    f"pid={holder.get('pid', '?')} host={holder.get('host', '?')}"
                )
            logger.warning("Verrou obsolète remplacé: %s", payload)
            lock_path.unlink(missing_ok=True)
            continue

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(claim.to_json() + "\n")
        logger.info("Verrou acquis sur %s (run %s)", lock_path, run_id)
        return claim

    raise SinkBusy(f"Impossible d'acquérir le verrou {lock_path}")


def release_sink(lock_path: Path, claim: SinkClaim, logger: logging.Logger) -> None:
    payload = _read_claim(lock_path)
    if payload is not None and payload.get("run_id") != claim.run_id:
        logger.warning("Verrou %s détenu par un autre run, non supprimé", lock_path)
        return
    lock_path.unlink(missing_ok=True)
    logger.info("Verrou libéré (run %s)", claim.run_id)


@contextmanager
def sink_claim(lock_path: Path, run_id: str, logger: logging.Logger) -> Iterator[SinkClaim]:
    claim = acquire_sink(lock_path, run_id, logger)
    try:
        yield claim
    finally:
        release_sink(lock_path, claim, logger)
