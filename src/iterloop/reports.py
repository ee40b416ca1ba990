"""Plain-text renderings of loop state, history, and collaborator results.

All functions are pure and return a single string with ``key: value`` lines.
"""

from __future__ import annotations

from typing import Sequence

from iterloop.constants import (
    REPORT_COMMIT_HASH_CHARS,
    REPORT_ERROR_MAX_CHARS,
    REPORT_ERRORS_PER_RECORD,
)
from iterloop.models import (
    GitStatus,
    IterationRecord,
    IterationResult,
    LoopState,
    LoopTemplate,
    ProgressMetrics,
    ToolAnalysis,
    ToolResult,
)
from iterloop.utils import _clip, _seconds


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def format_progress(metrics: ProgressMetrics) -> str:
    lines = [f"convergence_rate: {metrics.convergence_rate:.2f}"]
    if metrics.estimated_iterations_remaining is not None:
        lines.append(f"estimated_iterations_remaining: {metrics.estimated_iterations_remaining}")
    if metrics.stagnation_detected:
        lines.append(f"stagnation: {metrics.stagnation_reason}")
        for error in metrics.repeated_errors:
            lines.append(f"  repeated_error: {_clip(error, REPORT_ERROR_MAX_CHARS)}")
        for action in metrics.suggested_actions:
            lines.append(f"  suggestion: {action}")
    return "\n".join(lines)


def _history_summary(history: Sequence[IterationRecord]) -> list[str]:
    durations = [record.duration for record in history if record.duration is not None]
    files = {path for record in history for path in record.files_modified or ()}
    tools = sorted(
        {tool.name for record in history for tool in record.external_tools_run or ()}
    )
    lines = [f"iterations_completed: {len(history)}"]
    if durations:
        total = sum(durations)
        lines.append(
            f"total_time: {_seconds(total)} (avg {_seconds(total / len(durations))} per iteration)"
        )
    lines.append(f"files_modified: {len(files)}")
    if tools:
        lines.append(f"tools_used: {', '.join(tools)}")
    return lines


def format_status(state: LoopState | None, metrics: ProgressMetrics | None = None) -> str:
    if state is None or not state.active:
        return "active: no"
    max_iterations = str(state.max_iterations) if state.max_iterations > 0 else "unlimited"
    promise = state.completion_promise or "none (runs until cancelled)"
    git = "enabled" if state.git_enabled else "disabled"
    if state.git_enabled:
        git += f" (auto_commit: {_yes_no(state.auto_commit)})"
    lines = [
        "active: yes",
        f"iteration: {state.iteration}",
        f"max_iterations: {max_iterations}",
        f"completion_promise: {promise}",
        f"started_at: {state.started_at}",
        f"git: {git}",
    ]
    if state.history:
        lines.extend(_history_summary(state.history))
    if metrics is not None and state.history:
        lines.append(format_progress(metrics))
    lines.append("prompt:")
    lines.append(state.prompt)
    return "\n".join(lines)


def _format_record(record: IterationRecord) -> list[str]:
    duration = _seconds(record.duration) if record.duration is not None else "n/a"
    lines = [
        f"iteration {record.iteration}: {record.timestamp} ({duration})",
        f"  completion_detected: {_yes_no(record.completion_detected)}",
    ]
    if record.files_modified is not None:
        lines.append(f"  files_modified: {', '.join(record.files_modified) or '-'}")
    if record.commands_run is not None:
        lines.append(f"  commands_run: {', '.join(record.commands_run) or '-'}")
    if record.errors is not None:
        lines.append(f"  errors: {len(record.errors)}")
        for error in record.errors[:REPORT_ERRORS_PER_RECORD]:
            lines.append(f"    - {_clip(error, REPORT_ERROR_MAX_CHARS)}")
    if record.git_commit:
        lines.append(f"  git_commit: {record.git_commit[:REPORT_COMMIT_HASH_CHARS]}")
    for tool in record.external_tools_run or ():
        marker = "ok" if not tool.failed else "FAIL"
        lines.append(f"  tool: {tool.name} {marker} ({_seconds(tool.duration)})")
    return lines


def format_history_report(history: Sequence[IterationRecord]) -> str:
    if not history:
        return "history: empty"
    lines = [f"history: {len(history)} iteration(s)"]
    for record in history:
        lines.extend(_format_record(record))
    return "\n".join(lines)


def format_iteration_result(result: IterationResult) -> str:
    if result.completed:
        lines = [
            "completed: yes",
            f"iteration: {result.iteration}",
            f"reason: {result.reason}",
        ]
        return "\n".join(lines)
    lines = [
        "completed: no",
        f"next_iteration: {result.iteration}",
    ]
    if result.progress is not None:
        lines.append(format_progress(result.progress))
    if result.next_prompt is not None:
        lines.append("prompt:")
        lines.append(result.next_prompt)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def format_template(template: LoopTemplate) -> str:
    lines = [
        f"template: {template.id}",
        f"name: {template.name}",
        f"category: {template.category}",
        f"description: {template.description}",
        f"completion_promise: {template.completion_promise or 'none'}",
        f"max_iterations: {template.max_iterations or 'unlimited'}",
        f"tools: {', '.join(template.tools) or 'none'}",
        f"git: {'enabled' if template.git_enabled else 'disabled'}"
        f" (auto_commit: {_yes_no(template.auto_commit)})",
        "prompt:",
        template.prompt,
    ]
    return "\n".join(lines)


def format_template_list(templates: Sequence[LoopTemplate]) -> str:
    if not templates:
        return "templates: none"
    lines = [f"templates: {len(templates)}"]
    current_category = None
    for template in sorted(templates, key=lambda item: (item.category, item.id)):
        if template.category != current_category:
            current_category = template.category
            lines.append(f"[{current_category}]")
        lines.append(f"  {template.id}: {template.name} - {template.description}")
    return "\n".join(lines)


def format_git_status(status: GitStatus) -> str:
    if not status.exists:
        return "git: not available"
    lines = [
        f"branch: {status.branch}",
        f"commit: {status.commit[:REPORT_COMMIT_HASH_CHARS]}",
    ]
    for label, paths in (
        ("modified", status.modified),
        ("added", status.added),
        ("deleted", status.deleted),
        ("untracked", status.untracked),
    ):
        lines.append(f"{label}: {len(paths)}")
        lines.extend(f"  {path}" for path in paths)
    return "\n".join(lines)


def format_tool_run(results: Sequence[ToolResult], analysis: ToolAnalysis) -> str:
    lines = [f"success: {_yes_no(analysis.success)}", f"summary: {analysis.summary}"]
    for result in results:
        marker = "ok" if not result.failed else f"FAIL (exit {result.exit_code})"
        lines.append(f"tool: {result.name} {marker} ({_seconds(result.duration)})")
    for error in analysis.errors:
        lines.append(f"  error: {_clip(error, REPORT_ERROR_MAX_CHARS)}")
    for warning in analysis.warnings:
        lines.append(f"  warning: {_clip(warning, REPORT_ERROR_MAX_CHARS)}")
    return "\n".join(lines)
