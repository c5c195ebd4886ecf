from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List


def build_logger(name: str, logs_dir: Path, log_filename: str = "backup.log") -> logging.Logger:
    logs_dir.mkdir(parents=True, exist_ok=True)
    profile_log_dir = logs_dir / name
    profile_log_dir.mkdir(parents=True, exist_ok=True)
    log_file = profile_log_dir / log_filename

    logger = logging.getLogger(f"isobackup.{log_filename}.{name}")
    logger.setLevel(logging.INFO)

    if not any(isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file) for handler in logger.handlers):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger


def run_command(command: List[str], logger: logging.Logger, cwd: Path | None = None, quiet: bool = False) -> str:
    """Exécute une commande externe et renvoie sa sortie standard.

    Args:
        command: Commande et arguments.
        logger: Journal du run courant.
        cwd: Répertoire de travail optionnel.
        quiet: Ne pas recopier la sortie dans le journal (sorties volumineuses).

    Raises:
        ToolError: si la commande sort avec un code non nul ou est introuvable.
    """

    from isobackup.backup.errors import ToolError

    logger.info("$ %s", " ".join(command))
    try:
        result = subprocess.run(command, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False)
    except OSError as exc:
        raise ToolError(command, -1, str(exc)) from exc

    if result.stdout and not quiet:
        logger.info(result.stdout.strip())
    if result.stderr:
        logger.warning(result.stderr.strip())

    if result.returncode != 0:
        error = ToolError(command, result.returncode, result.stderr.strip())
        logger.error(str(error))
        raise error

    return result.stdout
