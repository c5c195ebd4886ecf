import pytest
from fastapi.testclient import TestClient

from isobackup.backup.errors import MountExhausted
from isobackup.store.sqlite_store import BackupRunState
from runner import app as app_module
from runner.config_store import BackupProfileStore

PROFILE = {"name": "srv", "mode": "disk", "sources": ["/dev/md0", "/dev/md1"], "sink": "/mnt/backup"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    db_path = tmp_path / "state.sqlite"
    state = BackupRunState(db_path)
    state.ensure_schema()
    monkeypatch.setattr(app_module, "profile_store", BackupProfileStore(db_path))
    monkeypatch.setattr(app_module, "run_state", state)
    monkeypatch.setattr(app_module, "LOGS_DIR", tmp_path / "logs")
    # exécution synchrone pour observer le résultat du run
    monkeypatch.setattr(app_module, "_start_thread", lambda target, args: target(*args))
    return TestClient(app_module.app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_profile_crud(client):
    created = client.post("/profiles", json=PROFILE)

    assert created.status_code == 201
    assert created.json()["sources"] == ["/dev/md0", "/dev/md1"]
    assert [p["name"] for p in client.get("/profiles").json()] == ["srv"]
    assert client.get("/profiles/srv").json()["mode"] == "disk"
    assert client.get("/profiles/absent").status_code == 404


def test_invalid_profile_is_rejected(client):
    response = client.post("/profiles", json={"name": "srv", "sources": []})

    assert response.status_code == 400
    assert "sources" in response.json()["detail"]


def test_trigger_runs_backup_and_records_state(client, monkeypatch):
    calls = []

    def fake_create_iso(config, confirm, *, run_id, state):
        calls.append((config.name, confirm("avertissement"), run_id))
        state.upsert_status(run_id, config.name, "COMPLETED", "ok", exit_code=0)

    monkeypatch.setattr(app_module, "create_iso", fake_create_iso)
    client.post("/profiles", json=PROFILE)

    response = client.post("/profiles/srv/run")

    assert response.status_code == 202
    run_id = response.json()["run_id"]
    assert calls == [("srv", False, run_id)]
    assert client.get(f"/runs/{run_id}").json()["status"] == "COMPLETED"
    assert [run["run_id"] for run in client.get("/runs", params={"profile": "srv"}).json()] == [run_id]


def test_failed_backup_does_not_break_runner(client, monkeypatch):
    def failing_create_iso(config, confirm, *, run_id, state):
        state.upsert_status(run_id, config.name, "FAILED", "sink perdu", exit_code=MountExhausted.exit_code)
        raise MountExhausted("sink perdu")

    monkeypatch.setattr(app_module, "create_iso", failing_create_iso)
    client.post("/profiles", json=PROFILE)

    run_id = client.post("/profiles/srv/run").json()["run_id"]

    assert client.get(f"/runs/{run_id}").json()["exit_code"] == 4


def test_unknown_run_and_log(client, tmp_path):
    client.post("/profiles", json=PROFILE)

    assert client.get("/runs/absent").status_code == 404
    assert client.get("/profiles/srv/log").status_code == 404

    log_dir = tmp_path / "logs" / "srv"
    log_dir.mkdir(parents=True)
    (log_dir / "backup.log").write_text("2024-01-01 | INFO | ok\n", encoding="utf-8")
    assert client.get("/profiles/srv/log").text == "2024-01-01 | INFO | ok\n"
