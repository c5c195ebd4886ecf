"""Compression en flux tar + gzip du répertoire de backup.

Un thread producteur écrit l'archive tar dans une file bornée ; le thread
appelant consomme les blocs et les compresse. Quand la file est pleine le
producteur bloque : la mémoire reste bornée quelle que soit la taille des
images.

L'archive est écrite dans `<sortie>.part` puis renommée : un fichier au nom
final est toujours une archive complète.
"""
from __future__ import annotations

import gzip
import logging
import os
import queue
import tarfile
import threading
import time
import zlib
from pathlib import Path
from typing import Optional

from isobackup.backup.models import part_path

CHUNK_SIZE = 1024 * 1024
QUEUE_CAPACITY = 16
_EOF = None
_ABORT = object()


class _BoundedPipe:
    """Objet fichier en écriture seule qui pousse ses blocs dans une file bornée."""

    def __init__(self, chunks: "queue.Queue[object]", stop: threading.Event) -> None:
        self._chunks = chunks
        self._stop = stop
        self._buffer = bytearray()

    def write(self, data: bytes) -> int:
        if self._stop.is_set():
            raise OSError("compression interrompue côté consommateur")
        self._buffer.extend(data)
        while len(self._buffer) >= CHUNK_SIZE:
            self._chunks.put(bytes(self._buffer[:CHUNK_SIZE]))
            del self._buffer[:CHUNK_SIZE]
        return len(data)

    def flush(self) -> None:
        if self._buffer:
            self._chunks.put(bytes(self._buffer))
            self._buffer.clear()

    def close(self) -> None:
        self.flush()
        self._chunks.put(_EOF)

    def abort(self) -> None:
        self._buffer.clear()
        self._chunks.put(_ABORT)


class TarGzipCompressor:
    def __init__(self, logger: logging.Logger, capacity: int = QUEUE_CAPACITY, compresslevel: int = 6) -> None:
        self.logger = logger
        self.capacity = capacity
        self.compresslevel = compresslevel

    def compress(self, source_dir: Path, output: Path) -> Path:
        """Archive `source_dir` (sous son propre nom) dans `output` au format tar.gz."""

        chunks: "queue.Queue[object]" = queue.Queue(maxsize=self.capacity)
        errors: list[BaseException] = []
        stop = threading.Event()
        partial = part_path(output)

        def _produce() -> None:
            pipe = _BoundedPipe(chunks, stop)
            try:
                with tarfile.open(fileobj=pipe, mode="w|") as tar:
                    tar.add(str(source_dir), arcname=source_dir.name)
            except BaseException as exc:  # noqa: BLE001 - remonté au consommateur
                errors.append(exc)
                if not stop.is_set():
                    pipe.abort()
            else:
                if not stop.is_set():
                    pipe.close()

        producer = threading.Thread(target=_produce, name="tar-producer", daemon=True)
        self.logger.info("Compression de %s vers %s", source_dir, output)
        start = time.monotonic()
        written = 0
        producer.start()
        try:
            try:
                with gzip.open(partial, "wb", compresslevel=self.compresslevel) as target:
                    while True:
                        chunk = chunks.get()
                        if chunk is _EOF or chunk is _ABORT:
                            break
                        target.write(chunk)
                        written += len(chunk)
            finally:
                stop.set()
                # débloque un producteur en attente si le consommateur a échoué
                while producer.is_alive():
                    try:
                        chunks.get(timeout=0.1)
                    except queue.Empty:
                        pass
                producer.join()

            if errors:
                raise errors[0]
        except BaseException:
            self.logger.error("Compression de %s interrompue, archive partielle supprimée", source_dir)
            partial.unlink(missing_ok=True)
            raise

        os.replace(partial, output)
        self.logger.info(
            "Archive %s écrite (%s octets tar, %.1fs)", output, written, time.monotonic() - start
        )
        return output


def gzip_self_check(path: Path) -> Optional[str]:
    """Relit tout le flux gzip (CRC et longueur) ; renvoie la raison d'échec ou None."""

    try:
        with gzip.open(path, "rb") as stream:
            while stream.read(CHUNK_SIZE):
                pass
    except (OSError, EOFError, zlib.error) as exc:
        return f"archive gzip incomplète ou corrompue: {exc}"
    return None
