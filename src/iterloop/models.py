"""Iterloop data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def _optional_strings(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(str(item) for item in value)


class ConfigurationError(ValueError):
    """Raised when a loop, template, preset, or policy value is invalid."""


class PersistenceError(RuntimeError):
    """Raised when the snapshot or history log cannot be read or written."""


# ---------------------------------------------------------------------------
# Iteration records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolResult:
    name: str
    command: str
    exit_code: int
    output: str
    duration: int  # milliseconds

    @property
    def failed(self) -> bool:
        return self.exit_code != 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "exitCode": self.exit_code,
            "output": self.output,
            "duration": self.duration,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ToolResult:
        return cls(
            name=str(payload["name"]),
            command=str(payload["command"]),
            exit_code=int(payload["exitCode"]),
            output=str(payload["output"]),
            duration=int(payload["duration"]),
        )


@dataclass(frozen=True)
class IterationMetadata:
    """Optional facts reported alongside an iteration's output.

    ``None`` means the caller did not report the field at all; an empty tuple
    means it was reported with zero items. The distinction survives into the
    stored IterationRecord.
    """

    files_modified: tuple[str, ...] | None = None
    commands_run: tuple[str, ...] | None = None
    errors: tuple[str, ...] | None = None
    git_commit: str | None = None
    external_tools_run: tuple[ToolResult, ...] | None = None

    @classmethod
    def build(
        cls,
        *,
        files_modified: Any = None,
        commands_run: Any = None,
        errors: Any = None,
        git_commit: str | None = None,
        external_tools_run: Any = None,
    ) -> IterationMetadata:
        return cls(
            files_modified=_optional_strings(files_modified),
            commands_run=_optional_strings(commands_run),
            errors=_optional_strings(errors),
            git_commit=git_commit or None,
            external_tools_run=(
                tuple(external_tools_run) if external_tools_run is not None else None
            ),
        )


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    timestamp: str
    output: str
    completion_detected: bool
    duration: int | None = None
    files_modified: tuple[str, ...] | None = None
    commands_run: tuple[str, ...] | None = None
    errors: tuple[str, ...] | None = None
    git_commit: str | None = None
    external_tools_run: tuple[ToolResult, ...] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.iteration,
            "timestamp": self.timestamp,
        }
        if self.duration is not None:
            payload["duration"] = self.duration
        payload["output"] = self.output
        payload["completionDetected"] = self.completion_detected
        if self.files_modified is not None:
            payload["filesModified"] = list(self.files_modified)
        if self.commands_run is not None:
            payload["commandsRun"] = list(self.commands_run)
        if self.errors is not None:
            payload["errors"] = list(self.errors)
        if self.git_commit is not None:
            payload["gitCommit"] = self.git_commit
        if self.external_tools_run is not None:
            payload["externalToolsRun"] = [
                tool.to_payload() for tool in self.external_tools_run
            ]
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IterationRecord:
        raw_tools = payload.get("externalToolsRun")
        duration = payload.get("duration")
        return cls(
            iteration=int(payload["iteration"]),
            timestamp=str(payload["timestamp"]),
            output=str(payload.get("output", "")),
            completion_detected=bool(payload.get("completionDetected", False)),
            duration=int(duration) if duration is not None else None,
            files_modified=_optional_strings(payload.get("filesModified")),
            commands_run=_optional_strings(payload.get("commandsRun")),
            errors=_optional_strings(payload.get("errors")),
            git_commit=payload.get("gitCommit"),
            external_tools_run=(
                tuple(ToolResult.from_payload(item) for item in raw_tools)
                if raw_tools is not None
                else None
            ),
        )


# ---------------------------------------------------------------------------
# Loop state
# ---------------------------------------------------------------------------


@dataclass
class LoopState:
    """The single active loop. Only the controller mutates it."""

    active: bool
    iteration: int
    max_iterations: int
    completion_promise: str | None
    started_at: str
    prompt: str
    history: list[IterationRecord] = field(default_factory=list)
    git_enabled: bool = True
    auto_commit: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "completionPromise": self.completion_promise,
            "startedAt": self.started_at,
            "prompt": self.prompt,
            "history": [record.to_payload() for record in self.history],
            "gitEnabled": self.git_enabled,
            "autoCommit": self.auto_commit,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LoopState:
        return cls(
            active=bool(payload["active"]),
            iteration=int(payload["iteration"]),
            max_iterations=int(payload["maxIterations"]),
            completion_promise=payload.get("completionPromise"),
            started_at=str(payload["startedAt"]),
            prompt=str(payload["prompt"]),
            history=[
                IterationRecord.from_payload(item) for item in payload.get("history", [])
            ],
            git_enabled=bool(payload.get("gitEnabled", True)),
            auto_commit=bool(payload.get("autoCommit", False)),
        )


@dataclass(frozen=True)
class ProgressMetrics:
    stagnation_detected: bool = False
    stagnation_reason: str | None = None
    convergence_rate: float = 0.0
    repeated_errors: tuple[str, ...] = ()
    suggested_actions: tuple[str, ...] = ()
    estimated_iterations_remaining: int | None = None


@dataclass(frozen=True)
class IterationResult:
    completed: bool
    iteration: int
    reason: str
    next_prompt: str | None = None
    completion_detected: bool = False
    progress: ProgressMetrics | None = None


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GitStatus:
    exists: bool
    branch: str = ""
    commit: str = ""
    modified: tuple[str, ...] = ()
    added: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    untracked: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.modified or self.added or self.deleted or self.untracked)


@dataclass(frozen=True)
class GitCommitResult:
    success: bool
    commit: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class GitDiffResult:
    files: tuple[str, ...]
    additions: int
    deletions: int
    summary: str


@dataclass(frozen=True)
class ToolSpec:
    name: str
    command: str
    args: tuple[str, ...] = ()
    parser: str = ""
    timeout_seconds: float | None = None

    @property
    def display(self) -> str:
        return " ".join((self.command, *self.args))


@dataclass(frozen=True)
class ToolPreset:
    name: str
    description: str
    tools: tuple[ToolSpec, ...]
    markers: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolAnalysis:
    success: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    summary: str


@dataclass(frozen=True)
class LoopTemplate:
    id: str
    name: str
    description: str
    category: str
    prompt: str
    completion_promise: str | None
    max_iterations: int
    tools: tuple[str, ...] = ()
    git_enabled: bool = True
    auto_commit: bool = False


@dataclass(frozen=True)
class LoopPolicy:
    default_max_iterations: int = 0
    git_enabled: bool = True
    auto_commit: bool = False
    tool_timeout_seconds: float = 30.0
    presets: tuple[ToolPreset, ...] = ()
