"""Dispatch layer that wires the loop controller to its collaborators.

``LoopSession`` is what the command line talks to. It owns the single-loop
rule (refusing to start over an active loop), runs tool presets and
auto-commits before handing an iteration to the controller, and renders every
answer as plain text.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from iterloop.config import _load_loop_policy
from iterloop.constants import DEFAULT_STATE_FILE
from iterloop.controller import LoopController
from iterloop.git import GitRepository
from iterloop.models import ConfigurationError, IterationMetadata, LoopPolicy, ToolResult
from iterloop.reports import (
    format_git_status,
    format_history_report,
    format_iteration_result,
    format_status,
    format_template,
    format_template_list,
    format_tool_run,
)
from iterloop.storage import JsonlHistoryLog, JsonSnapshotStore, history_path_for
from iterloop.templates import TemplateCatalog
from iterloop.tools import ToolRunner

logger = logging.getLogger(__name__)


class LoopSession:
    def __init__(
        self,
        working_dir: Path,
        *,
        state_file: Path | None = None,
        policy: LoopPolicy | None = None,
        git: GitRepository | None = None,
        tools: ToolRunner | None = None,
        templates: TemplateCatalog | None = None,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.policy = policy if policy is not None else _load_loop_policy(self.working_dir)
        state_path = Path(state_file) if state_file is not None else self.working_dir / DEFAULT_STATE_FILE
        self.history_log = JsonlHistoryLog(history_path_for(state_path))
        self.controller = LoopController(JsonSnapshotStore(state_path), self.history_log)
        self.git = git if git is not None else GitRepository(self.working_dir)
        if tools is None:
            tools = ToolRunner(self.working_dir, timeout_seconds=self.policy.tool_timeout_seconds)
            tools.add_presets(self.policy.presets)
        self.tools = tools
        self.templates = templates if templates is not None else TemplateCatalog.load()

    # -----------------------------------------------------------------------
    # Loop lifecycle
    # -----------------------------------------------------------------------

    def start(
        self,
        prompt: str | None = None,
        *,
        template_id: str | None = None,
        max_iterations: int | None = None,
        completion_promise: str | None = None,
        git_enabled: bool | None = None,
        auto_commit: bool | None = None,
    ) -> str:
        """Start a loop from explicit values, a template, or policy defaults.

        Explicit arguments win over the template's suggestions, which win over
        the policy defaults.
        """
        if template_id:
            template = self.templates.get(template_id)
            if template is None:
                raise ConfigurationError(f"unknown template: {template_id}")
            prompt = prompt or template.prompt
            if completion_promise is None:
                completion_promise = template.completion_promise
            if max_iterations is None:
                max_iterations = template.max_iterations
            if git_enabled is None:
                git_enabled = template.git_enabled
            if auto_commit is None:
                auto_commit = template.auto_commit

        if self.controller.is_loop_active():
            return (
                "warning: a loop is already active; cancel it before starting a new one\n"
                + self.controller.get_status()
            )

        state = self.controller.start_loop(
            prompt or "",
            self.policy.default_max_iterations if max_iterations is None else max_iterations,
            completion_promise,
            self.policy.git_enabled if git_enabled is None else git_enabled,
            self.policy.auto_commit if auto_commit is None else auto_commit,
        )
        lines = ["loop started", format_status(state)]
        if state.completion_promise:
            lines.append("")
            lines.append("To finish the loop, output exactly:")
            lines.append(f"  <promise>{state.completion_promise}</promise>")
            lines.append("Only output it when the statement is completely true.")
        return "\n".join(lines)

    def iterate(
        self,
        output: str,
        *,
        files_modified: Sequence[str] | None = None,
        commands_run: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        run_tools: Iterable[str] = (),
    ) -> str:
        state = self.controller.get_state()
        if state is None:
            return "no active loop; start one with `iterloop start`"

        tool_results: list[ToolResult] = []
        for preset in run_tools:
            try:
                tool_results.extend(self.tools.run_preset(preset))
            except ConfigurationError as exc:
                logger.warning("skipping tool preset %s: %s", preset, exc)

        git_commit = None
        if state.auto_commit and state.git_enabled and self.git.enabled:
            commit = self.git.create_commit(f"Iteration {state.iteration}", state.iteration)
            if commit.success:
                git_commit = commit.commit
            else:
                logger.info("auto-commit skipped for iteration %d: %s", state.iteration, commit.error)

        metadata = IterationMetadata.build(
            files_modified=files_modified,
            commands_run=commands_run,
            errors=errors,
            git_commit=git_commit,
            external_tools_run=tool_results or None,
        )
        result = self.controller.process_iteration(output, metadata)
        return format_iteration_result(result)

    def cancel(self) -> str:
        state = self.controller.get_state()
        if not self.controller.cancel_loop() or state is None:
            return "no active loop"
        return f"cancelled loop (was at iteration {state.iteration})"

    def status(self) -> str:
        return self.controller.get_status()

    def history(self) -> str:
        return self.controller.get_history_report()

    def log_report(self) -> str:
        """Render every iteration recorded in the durable history log."""
        return format_history_report(self.history_log.read())

    # -----------------------------------------------------------------------
    # Templates
    # -----------------------------------------------------------------------

    def list_templates(self, category: str | None = None) -> str:
        if category:
            return format_template_list(self.templates.by_category(category))
        return format_template_list(self.templates.all())

    def show_template(self, template_id: str) -> str:
        template = self.templates.get(template_id)
        if template is None:
            raise ConfigurationError(f"unknown template: {template_id}")
        return format_template(template)

    # -----------------------------------------------------------------------
    # Git
    # -----------------------------------------------------------------------

    def git_status(self) -> str:
        status = self.git.get_status()
        if not status.exists:
            return format_git_status(status)
        return format_git_status(status) + f"\ndiff: {self.git.get_diff().summary}"

    def git_commit(self, message: str) -> str:
        state = self.controller.get_state()
        iteration = state.iteration if state is not None else 0
        result = self.git.create_commit(message, iteration)
        if not result.success:
            return f"commit failed: {result.error}"
        return f"committed: {result.commit}"

    def git_context(self, count: int = 5) -> str:
        return self.git.get_loop_context(count)

    # -----------------------------------------------------------------------
    # Tools
    # -----------------------------------------------------------------------

    def run_tools(self, presets: Iterable[str]) -> str:
        sections: list[str] = []
        for preset in presets:
            results = self.tools.run_preset(preset)
            analysis = self.tools.analyze_results(results, preset)
            sections.append(f"preset: {preset}\n" + format_tool_run(results, analysis))
        return "\n\n".join(sections) if sections else "no presets requested"

    def detect_tools(self) -> str:
        detected = self.tools.detect_presets()
        if not detected:
            return "detected: none"
        return "detected: " + ", ".join(detected)

    def list_tools(self) -> str:
        lines = []
        for preset in self.tools.get_presets():
            commands = "; ".join(spec.display for spec in preset.tools)
            lines.append(f"{preset.name}: {preset.description} ({commands})")
        return "\n".join(lines)
