import asyncio

import pytest
import typer
from typer.testing import CliRunner

import queueflow.persistence as persistence
from queueflow.cli import app, load_registry
from queueflow.persistence import (
    Event,
    EventType,
    InMemoryWorkflowRepository,
    Run,
    RunStatus,
    Step,
    StepStatus,
)


@pytest.fixture(autouse=True)
def _no_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("QUEUEFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("QUEUEFLOW_TRANSPORT", raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def test_run_list_shows_runs():
    repo = _setup_repo()
    asyncio.run(repo.create_run(Run(run_id="wrun_a", workflow_name="signup")))
    asyncio.run(repo.create_run(Run(run_id="wrun_b", workflow_name="billing")))
    asyncio.run(repo.update_run("wrun_a", RunStatus.COMPLETED, result={"ok": True}))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "list"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "wrun_a\tsignup\tcompleted" in result.stdout
    assert "wrun_b\tbilling\tcreated" in result.stdout


def test_run_list_empty():
    _setup_repo()

    result = CliRunner().invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.stdout


def test_run_show_details_and_missing():
    repo = _setup_repo()
    asyncio.run(repo.create_run(Run(run_id="wrun_a", workflow_name="signup")))
    _, step = asyncio.run(
        repo.create_step_if_absent(Step(step_id="wrun_a/send/0", run_id="wrun_a", name="send"))
    )
    asyncio.run(
        repo.update_step(step.model_copy(update={"status": StepStatus.COMPLETED, "attempt": 1}))
    )
    asyncio.run(repo.update_run("wrun_a", RunStatus.COMPLETED, result={"sent": True}))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "show", "wrun_a"])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "Run wrun_a (signup): completed" in result.stdout
    assert 'Result: {"sent": true}' in result.stdout
    assert "- send: completed (attempt 1)" in result.stdout

    missing = runner.invoke(app, ["run", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_run_events_prints_log_in_order():
    repo = _setup_repo()
    for event_id, event_type in [
        ("wrun_a:started", EventType.RUN_STARTED),
        ("wrun_a:run_completed", EventType.RUN_COMPLETED),
    ]:
        asyncio.run(repo.append_event(Event(event_id=event_id, run_id="wrun_a", type=event_type)))

    result = CliRunner().invoke(app, ["run", "events", "wrun_a"])
    assert result.exit_code == 0
    lines = [line for line in result.stdout.splitlines() if "\t" in line]
    assert [line.split("\t")[1] for line in lines] == ["run_started", "run_completed"]


def test_run_start_creates_run():
    repo = _setup_repo()

    result = CliRunner().invoke(app, ["run", "start", "signup", "--input", '{"email": "a@b.c"}'])
    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    run_id = result.stdout.strip().splitlines()[-1]
    assert run_id.startswith("wrun_")

    run = asyncio.run(repo.get_run(run_id))
    assert run.workflow_name == "signup"
    assert run.input == {"email": "a@b.c"}
    assert run.status == RunStatus.CREATED


def test_run_start_rejects_invalid_json():
    _setup_repo()

    result = CliRunner().invoke(app, ["run", "start", "signup", "--input", "{not json"])
    assert result.exit_code == 1
    assert "Invalid JSON input" in result.stdout


def test_load_registry_rejects_non_registry():
    with pytest.raises(typer.BadParameter):
        load_registry("queueflow.cli:app")
