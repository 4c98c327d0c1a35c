import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from stepflow.cli import app
from stepflow.persistence import SQLiteJobStore, SQLiteQueueJobStore


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Path:
    for name in ("STEPFLOW_DATABASE_URL", "DATABASE_URL", "STEPFLOW_HOST", "STEPFLOW_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "stepflow.yaml"
    path.write_text(f"store:\n  database_url: sqlite://{tmp_path / 'stepflow.db'}\n")
    return path


def _write_flow(tmp_path: Path, flow: dict, name: str = "flow.json") -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(flow))
    return path


def _invoke(settings: Path, *args: str):
    return CliRunner().invoke(app, ["--config", str(settings), *args])


def test_validate_reports_valid_config(tmp_path, settings):
    flow = _write_flow(tmp_path, {"steps": [{"type": "sleep", "duration": "1ms"}]})

    result = _invoke(settings, "validate", str(flow))

    assert result.exit_code == 0, result.stdout
    assert "Config is valid" in result.stdout


def test_validate_reports_errors_and_warnings(tmp_path):
    flow = tmp_path / "flow.yaml"
    flow.write_text(
        """
steps:
  - type: agent
    id: a
    agent: /x
  - type: agent
    id: a
    agent: /y
  - type: hook
"""
    )

    result = CliRunner().invoke(app, ["validate", str(flow)])

    assert result.exit_code == 1
    assert "DUPLICATE_STEP_ID" in result.stdout
    assert "WARNING INVALID_HOOK_STEP" in result.stdout


def test_validate_missing_file(tmp_path):
    result = CliRunner().invoke(app, ["validate", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "File not found" in result.stdout


def test_run_then_status(tmp_path, settings):
    flow = _write_flow(tmp_path, {"steps": [{"type": "sleep", "duration": 1}]})

    result = _invoke(settings, "run", str(flow), "--input", '{"n": 1}', "--run-id", "run-1")

    assert result.exit_code == 0, result.stdout
    assert '"runId": "run-1"' in result.stdout
    assert '"status": "completed"' in result.stdout
    assert '"slept": 1' in result.stdout

    status = _invoke(settings, "status", "run-1")
    assert status.exit_code == 0, status.stdout
    assert '"run_id": "run-1"' in status.stdout
    assert '"status": "completed"' in status.stdout

    missing = _invoke(settings, "status", "other")
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_run_rejects_invalid_config(tmp_path, settings):
    flow = _write_flow(tmp_path, {"steps": [{"type": "worker", "worker": "w", "await": True}]})

    result = _invoke(settings, "run", str(flow))

    assert result.exit_code == 1
    assert "INVALID_WORKER_AWAIT" in result.stdout



def test_run_reports_mistyped_fields_as_invalid_config(tmp_path, settings):
    flow = _write_flow(tmp_path, {"steps": [{"type": "hook", "token": 5}]})

    result = _invoke(settings, "run", str(flow))

    assert result.exit_code == 1
    assert "INVALID_CONFIG" in result.stdout
    assert "Traceback" not in result.stdout

def test_run_reports_failure(tmp_path, settings):
    flow = _write_flow(tmp_path, {"hookTimeout": "10ms", "steps": [{"type": "hook", "token": "t"}]})

    result = _invoke(settings, "run", str(flow), "--run-id", "run-2")

    assert result.exit_code == 1
    assert "Run failed" in result.stdout
    status = _invoke(settings, "status", "run-2")
    assert '"status": "failed"' in status.stdout


def test_resume_requires_run_id(tmp_path, settings):
    flow = _write_flow(tmp_path, {"steps": [{"type": "sleep", "duration": 1}]})
    result = _invoke(settings, "run", str(flow), "--resume")
    assert result.exit_code == 1
    assert "--resume requires --run-id" in result.stdout


def test_signal_without_waiter_is_queued(settings):
    result = _invoke(settings, "signal", "approve-1", '{"approved": true}')
    assert result.exit_code == 0, result.stdout
    assert "Event for approve-1 queued" in result.stdout

    bad = _invoke(settings, "signal", "approve-1", "{not json")
    assert bad.exit_code == 1
    assert "Invalid JSON" in bad.stdout


def test_job_commands(tmp_path, settings):
    store = SQLiteJobStore(tmp_path / "stepflow.db")
    asyncio.run(store.set_job("job-1", worker_id="resize", status="running", input={"w": 1}))

    listed = _invoke(settings, "job", "list", "resize")
    assert listed.exit_code == 0, listed.stdout
    assert "job-1\trunning" in listed.stdout

    shown = _invoke(settings, "job", "show", "job-1")
    assert shown.exit_code == 0, shown.stdout
    assert '"worker_id": "resize"' in shown.stdout

    assert "No jobs found" in _invoke(settings, "job", "list", "other").stdout
    missing = _invoke(settings, "job", "show", "missing")
    assert missing.exit_code == 1
    assert "Job not found" in missing.stdout


def test_queue_commands(tmp_path, settings):
    store = SQLiteQueueJobStore(tmp_path / "stepflow.db")
    asyncio.run(store.create_queue_job("q-1", "images", "resize", "job-1"))

    listed = _invoke(settings, "queue", "list")
    assert listed.exit_code == 0, listed.stdout
    assert "q-1\timages\trunning\t1 steps" in listed.stdout

    shown = _invoke(settings, "queue", "show", "q-1")
    assert '"queue_id": "images"' in shown.stdout

    missing = _invoke(settings, "queue", "show", "q-2")
    assert missing.exit_code == 1
    assert "Queue job not found" in missing.stdout
