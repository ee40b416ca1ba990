from __future__ import annotations

import json
from pathlib import Path

import pytest

from iterloop.controller import LoopController
from iterloop.models import IterationRecord, LoopState, PersistenceError, ToolResult
from iterloop.storage import (
    JsonlHistoryLog,
    JsonSnapshotStore,
    history_path_for,
    validate_state_payload,
)


def _state(**overrides: object) -> LoopState:
    values: dict = {
        "active": True,
        "iteration": 2,
        "max_iterations": 0,
        "completion_promise": None,
        "started_at": "2026-01-01T00:00:00Z",
        "prompt": "task",
        "history": [
            IterationRecord(
                iteration=1,
                timestamp="2026-01-01T00:00:05Z",
                output="first",
                completion_detected=False,
                duration=5000,
                files_modified=(),
                errors=("boom",),
                external_tools_run=(
                    ToolResult(name="pytest", command="python -m pytest", exit_code=1, output="F", duration=12),
                ),
            )
        ],
    }
    values.update(overrides)
    return LoopState(**values)


def test_history_path_is_derived_from_state_path(tmp_path: Path) -> None:
    assert history_path_for(tmp_path / "loop-state.json") == tmp_path / "loop-history.jsonl"
    assert history_path_for(tmp_path / "custom.json") == tmp_path / "custom.history.jsonl"


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------


def test_snapshot_save_writes_indented_json_and_load_restores(tmp_path: Path) -> None:
    path = tmp_path / ".iterloop" / "loop-state.json"
    store = JsonSnapshotStore(path)

    store.save(_state())

    text = path.read_text(encoding="utf-8")
    assert text.startswith("{\n  ")
    payload = json.loads(text)
    assert payload["completionPromise"] is None
    record = payload["history"][0]
    assert record["filesModified"] == []
    assert "commandsRun" not in record
    assert record["externalToolsRun"][0]["exitCode"] == 1

    loaded = store.load()
    assert loaded == _state()


def test_snapshot_load_missing_file_returns_none(tmp_path: Path) -> None:
    assert JsonSnapshotStore(tmp_path / "absent.json").load() is None


def test_snapshot_load_rejects_corrupt_json(tmp_path: Path) -> None:
    path = tmp_path / "loop-state.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError, match="not valid JSON"):
        JsonSnapshotStore(path).load()


def test_snapshot_load_rejects_schema_violations(tmp_path: Path) -> None:
    path = tmp_path / "loop-state.json"
    payload = _state().to_payload()
    payload["iteration"] = 0
    payload["history"][0]["output"] = 17
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(PersistenceError, match="failed validation"):
        JsonSnapshotStore(path).load()


def test_validate_state_payload_reports_nested_record_errors() -> None:
    payload = _state().to_payload()
    del payload["history"][0]["timestamp"]

    failures = validate_state_payload(payload)

    assert failures
    assert failures[0].startswith("history.0.")


def test_snapshot_delete_is_quiet_when_missing(tmp_path: Path) -> None:
    store = JsonSnapshotStore(tmp_path / "loop-state.json")
    store.delete()
    store.save(_state())
    store.delete()
    assert not store.path.exists()


# ---------------------------------------------------------------------------
# History log
# ---------------------------------------------------------------------------


def test_history_log_appends_one_line_per_record(tmp_path: Path) -> None:
    log = JsonlHistoryLog(tmp_path / "logs" / "loop-history.jsonl")
    for iteration in (1, 2):
        log.append(
            IterationRecord(
                iteration=iteration,
                timestamp="2026-01-01T00:00:00Z",
                output=f"out {iteration}",
                completion_detected=False,
            )
        )

    lines = log.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["output"] == "out 2"
    assert [record.iteration for record in log.read()] == [1, 2]


def test_history_log_read_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "loop-history.jsonl"
    good = {"iteration": 1, "timestamp": "t", "output": "ok", "completionDetected": False}
    path.write_text(
        "\n".join([json.dumps(good), "{broken", json.dumps({"iteration": "x"}), ""]),
        encoding="utf-8",
    )

    records = JsonlHistoryLog(path).read()

    assert len(records) == 1
    assert records[0].output == "ok"


def test_history_log_read_missing_file_is_empty(tmp_path: Path) -> None:
    assert JsonlHistoryLog(tmp_path / "nope.jsonl").read() == []


def test_history_log_append_wraps_os_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    log = JsonlHistoryLog(blocker / "loop-history.jsonl")

    with pytest.raises(PersistenceError):
        log.append(
            IterationRecord(iteration=1, timestamp="t", output="", completion_detected=False)
        )


# ---------------------------------------------------------------------------
# File-backed controller
# ---------------------------------------------------------------------------


def test_file_backed_loop_survives_restart_and_keeps_log_after_cancel(tmp_path: Path) -> None:
    state_file = tmp_path / ".iterloop" / "loop-state.json"
    controller = LoopController.from_state_file(state_file)
    controller.start_loop("task", 0, "DONE")
    controller.process_iteration("one")
    controller.process_iteration("two")

    resumed = LoopController.from_state_file(state_file)
    assert resumed.get_state().iteration == 3  # type: ignore[union-attr]

    assert resumed.cancel_loop()
    assert not state_file.exists()
    log = JsonlHistoryLog(history_path_for(state_file))
    assert [record.output for record in log.read()] == ["one", "two"]


def test_corrupt_snapshot_on_disk_starts_idle(tmp_path: Path) -> None:
    state_file = tmp_path / "loop-state.json"
    state_file.write_text("[]", encoding="utf-8")

    controller = LoopController.from_state_file(state_file)

    assert not controller.is_loop_active()
    assert controller.process_iteration("x").iteration == 0
