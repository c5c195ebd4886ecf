from __future__ import annotations

import threading
from typing import Any, Dict, List

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from isobackup.backup.config import DB_PATH, LOGS_DIR, BackupConfig, parse_backup_config
from isobackup.backup.create_iso import create_iso, new_run_id
from isobackup.backup.errors import BackupError
from isobackup.store.sqlite_store import BackupRunState
from runner.config_store import BackupProfileStore

app = FastAPI(title="isobackup runner", version="0.1.0")
profile_store = BackupProfileStore(DB_PATH)
run_state = BackupRunState(DB_PATH)
run_state.ensure_schema()


# --- Helpers ---
def _get_profile(name: str) -> BackupConfig:
    config = profile_store.get(name)
    if not config:
        raise HTTPException(status_code=404, detail="Profil inconnu")
    return config


def _start_thread(target: Any, *, args: tuple) -> None:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()


def _run_backup(config: BackupConfig, run_id: str) -> None:
    # run sans terminal : les avertissements suivent le réglage assume_yes du profil
    try:
        create_iso(config, lambda reason: config.assume_yes, run_id=run_id, state=run_state)
    except BackupError:
        # create_iso a déjà tracé l'échec dans les logs et dans SQLite
        return


# --- Routes ---
@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/profiles")
def list_profiles() -> List[Dict[str, object]]:
    return [config.to_payload() for config in profile_store.list_profiles()]


@app.post("/profiles", status_code=201)
def save_profile(payload: Dict[str, Any] = Body(...)) -> Dict[str, object]:
    try:
        config = parse_backup_config(payload)
    except BackupError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    profile_store.upsert(config)
    return config.to_payload()


@app.get("/profiles/{name}")
def get_profile(name: str) -> Dict[str, object]:
    return _get_profile(name).to_payload()


@app.post("/profiles/{name}/run", status_code=202)
def trigger_backup(name: str) -> Dict[str, str]:
    config = _get_profile(name)
    run_id = new_run_id()
    run_state.upsert_status(run_id, name, "PENDING", "Backup programmé")
    _start_thread(_run_backup, args=(config, run_id))
    return {"run_id": run_id, "status": "PENDING"}


@app.get("/runs")
def list_runs(profile: str | None = None) -> List[Dict[str, Any]]:
    return run_state.list_runs(profile)


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> Dict[str, Any]:
    run = run_state.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run inconnu")
    return run


@app.get("/profiles/{name}/log", response_class=PlainTextResponse)
def view_log(name: str) -> PlainTextResponse:
    _get_profile(name)
    log_path = LOGS_DIR / name / "backup.log"
    if not log_path.exists():
        raise HTTPException(status_code=404, detail="Fichier de log introuvable")

    content = log_path.read_text(encoding="utf-8", errors="replace")
    return PlainTextResponse(content)
