"""Snapshot and history-log persistence for the loop controller."""

from __future__ import annotations

import functools
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from jsonschema import Draft202012Validator

from iterloop.constants import (
    HISTORY_FILE_SUFFIX,
    ITERATION_RECORD_SCHEMA_FILE,
    LOOP_STATE_SCHEMA_FILE,
    PACKAGE_SCHEMA_DIR,
    STATE_FILE_SUFFIX,
)
from iterloop.models import IterationRecord, LoopState, PersistenceError

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    def load(self) -> LoopState | None: ...

    def save(self, state: LoopState) -> None: ...

    def delete(self) -> None: ...


class HistoryLog(Protocol):
    def append(self, record: IterationRecord) -> None: ...

    def read(self) -> list[IterationRecord]: ...


def history_path_for(state_path: Path) -> Path:
    """Derive the history-log path that sits beside a snapshot file."""
    name = state_path.name
    if name.endswith(STATE_FILE_SUFFIX):
        return state_path.with_name(name[: -len(STATE_FILE_SUFFIX)] + HISTORY_FILE_SUFFIX)
    return state_path.with_name(f"{state_path.stem}.history.jsonl")


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def _load_validator(schema_file: str) -> Draft202012Validator:
    schema_path = PACKAGE_SCHEMA_DIR / schema_file
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _format_error_path(path: Any) -> str:
    parts = [str(part) for part in path]
    return ".".join(parts) if parts else "<root>"


def _schema_failures(payload: Any, schema_file: str) -> list[str]:
    validator = _load_validator(schema_file)
    failures: list[str] = []
    for error in sorted(
        validator.iter_errors(payload), key=lambda item: _format_error_path(item.path)
    ):
        failures.append(f"{_format_error_path(error.path)}: {error.message}")
    return failures


def validate_state_payload(payload: Any) -> list[str]:
    failures = _schema_failures(payload, LOOP_STATE_SCHEMA_FILE)
    if failures:
        return failures
    for index, item in enumerate(payload["history"]):
        for failure in _schema_failures(item, ITERATION_RECORD_SCHEMA_FILE):
            failures.append(f"history.{index}.{failure}")
    return failures


def validate_record_payload(payload: Any) -> list[str]:
    return _schema_failures(payload, ITERATION_RECORD_SCHEMA_FILE)


# ---------------------------------------------------------------------------
# File-backed implementations
# ---------------------------------------------------------------------------


class JsonSnapshotStore:
    """Current-loop snapshot, rewritten in full on every save."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> LoopState | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"snapshot is not valid JSON: {self.path}: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"snapshot could not be read: {self.path}: {exc}") from exc
        failures = validate_state_payload(payload)
        if failures:
            raise PersistenceError(
                f"snapshot failed validation: {self.path}: " + "; ".join(failures)
            )
        return LoopState.from_payload(payload)

    def save(self, state: LoopState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(state.to_payload(), indent=2) + "\n", encoding="utf-8"
            )
        except OSError as exc:
            raise PersistenceError(f"snapshot could not be written: {self.path}: {exc}") from exc

    def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"snapshot could not be deleted: {self.path}: {exc}") from exc


class JsonlHistoryLog:
    """Append-only JSONL log with one IterationRecord per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def append(self, record: IterationRecord) -> None:
        line = json.dumps(record.to_payload(), separators=(",", ":"))
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise PersistenceError(f"history log could not be appended: {self.path}: {exc}") from exc

    def read(self) -> list[IterationRecord]:
        if not self.path.exists():
            return []
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise PersistenceError(f"history log could not be read: {self.path}: {exc}") from exc
        records: list[IterationRecord] = []
        for line_number, raw_line in enumerate(lines, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("skipping malformed history line %s:%d: %s", self.path, line_number, exc)
                continue
            failures = validate_record_payload(payload)
            if failures:
                logger.warning(
                    "skipping invalid history line %s:%d: %s",
                    self.path,
                    line_number,
                    "; ".join(failures),
                )
                continue
            records.append(IterationRecord.from_payload(payload))
        return records
