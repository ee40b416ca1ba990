from __future__ import annotations

import io
import json
import sys
from pathlib import Path

import pytest
import yaml

import iterloop.commands as commands_module


def _load_toml(path: Path) -> dict:
    payload: dict
    if sys.version_info >= (3, 11):
        import tomllib

        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    else:  # pragma: no cover
        import tomli  # type: ignore

        payload = tomli.loads(path.read_text(encoding="utf-8"))
    return payload


def _run(repo: Path, *argv: str) -> int:
    return commands_module.main([*argv, "--working-dir", str(repo)])


def test_loop_lifecycle_smoke(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "start", "--prompt", "Make tests pass", "--max-iterations", "2", "--no-git") == 0
    assert "loop started" in capsys.readouterr().out
    assert (tmp_path / ".iterloop" / "loop-state.json").exists()

    assert _run(tmp_path, "iterate", "--output", "first try", "--error", "boom", "--file", "a.py") == 0
    assert "next_iteration: 2" in capsys.readouterr().out

    assert _run(tmp_path, "status") == 0
    assert "iteration: 2" in capsys.readouterr().out

    assert _run(tmp_path, "iterate", "--output", "second try") == 0
    assert "reason: max iterations reached" in capsys.readouterr().out
    assert not (tmp_path / ".iterloop" / "loop-state.json").exists()

    assert _run(tmp_path, "history", "--log") == 0
    out = capsys.readouterr().out
    assert "history: 2 iteration(s)" in out
    assert "boom" in out


def test_durations_are_recorded_across_separate_invocations(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "start", "--prompt", "task", "--max-iterations", "5", "--no-git") == 0
    assert _run(tmp_path, "iterate", "--output", "one") == 0
    assert _run(tmp_path, "iterate", "--output", "two") == 0
    capsys.readouterr()

    history_path = tmp_path / ".iterloop" / "loop-history.jsonl"
    records = [json.loads(line) for line in history_path.read_text(encoding="utf-8").splitlines()]

    assert [record["iteration"] for record in records] == [1, 2]
    assert all(isinstance(record.get("duration"), int) for record in records)
    assert all(record["duration"] >= 0 for record in records)


def test_invalid_policy_presets_do_not_block_cancel(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "start", "--prompt", "task", "--no-git") == 0
    (tmp_path / ".iterloop" / "policy.yaml").write_text(
        yaml.safe_dump({"tools": {"presets": {"bad": 3}}}), encoding="utf-8"
    )
    capsys.readouterr()

    assert _run(tmp_path, "status") == 0
    assert "active: yes" in capsys.readouterr().out
    assert _run(tmp_path, "cancel") == 0
    assert "cancelled loop (was at iteration 1)" in capsys.readouterr().out
    assert not (tmp_path / ".iterloop" / "loop-state.json").exists()


def test_iterate_reads_output_from_stdin(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(tmp_path, "start", "--prompt", "task", "--completion-promise", "DONE") == 0
    capsys.readouterr()
    monkeypatch.setattr(sys, "stdin", io.StringIO("finished <promise>DONE</promise>\n"))

    assert _run(tmp_path, "iterate") == 0

    assert "reason: completion promise detected" in capsys.readouterr().out


def test_cancel_and_collaborator_commands_smoke(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "cancel") == 0
    assert "no active loop" in capsys.readouterr().out

    assert _run(tmp_path, "templates", "list", "--category", "testing") == 0
    assert "tdd" in capsys.readouterr().out
    assert _run(tmp_path, "templates", "show", "review") == 0
    assert "REVIEW_COMPLETE" in capsys.readouterr().out
    assert _run(tmp_path, "tools", "list") == 0
    assert "go-test" in capsys.readouterr().out
    assert _run(tmp_path, "tools", "detect") == 0
    assert _run(tmp_path, "git", "status") == 0
    assert "git: not available" in capsys.readouterr().out


def test_errors_exit_non_zero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert commands_module.main([]) == 2
    assert _run(tmp_path, "start") == 1
    assert _run(tmp_path, "start", "--prompt", "task", "--max-iterations", "-1") == 1
    assert "ERROR" in capsys.readouterr().err
    assert _run(tmp_path, "templates", "show", "missing") == 1
    assert "unknown template" in capsys.readouterr().err
    assert _run(tmp_path, "iterate", "--output-file", str(tmp_path / "absent.txt")) == 1


def test_package_data_contract_includes_schemas_and_catalogs() -> None:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    pyproject = _load_toml(pyproject_path)

    package_data = (
        pyproject.get("tool", {})
        .get("setuptools", {})
        .get("package-data", {})
        .get("iterloop", [])
    )
    assert "schemas/*.json" in package_data
    assert "data/*.yaml" in package_data
    assert pyproject["project"]["scripts"]["iterloop"] == "iterloop.commands:main"
