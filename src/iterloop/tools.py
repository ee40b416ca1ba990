"""Tool runner collaborator: runs test/lint presets and summarizes their output."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml

from iterloop.constants import (
    BUNDLED_TOOL_PRESETS_FILE,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    SHELL_METACHARACTERS,
    TOOL_NOT_FOUND_EXIT_CODE,
    TOOL_OUTPUT_MAX_CHARS,
    TOOL_TIMEOUT_EXIT_CODE,
)
from iterloop.models import (
    ConfigurationError,
    ToolAnalysis,
    ToolPreset,
    ToolResult,
    ToolSpec,
    _coerce_float,
)
from iterloop.utils import _truncate

logger = logging.getLogger(__name__)

ParsedOutput = tuple[list[str], list[str], str]


def _command_uses_shell_syntax(token: str) -> bool:
    return any(char in SHELL_METACHARACTERS for char in token) or "\n" in token


def _ensure_argv_safe(spec: ToolSpec) -> None:
    for token in (spec.command, *spec.args):
        if _command_uses_shell_syntax(token):
            raise ConfigurationError(
                f"tool {spec.name!r} contains shell metacharacters; "
                "configure an argv-safe command without pipes/subshell syntax"
            )


# ---------------------------------------------------------------------------
# Preset loading
# ---------------------------------------------------------------------------


def _parse_tool_spec(preset_name: str, raw: Any) -> ToolSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"preset {preset_name!r}: tool entries must be mappings")
    name = str(raw.get("name", "")).strip()
    command = str(raw.get("command", "")).strip()
    if not name or not command:
        raise ConfigurationError(f"preset {preset_name!r}: tools need a name and a command")
    raw_args = raw.get("args")
    if raw_args is None:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise ConfigurationError(f"preset {preset_name!r}: command could not be parsed: {exc}") from exc
        command, args = argv[0], tuple(argv[1:])
    elif isinstance(raw_args, list):
        args = tuple(str(arg) for arg in raw_args)
    else:
        raise ConfigurationError(f"preset {preset_name!r}: args must be a list")
    timeout = _coerce_float(raw.get("timeout"), default=0.0)
    return ToolSpec(
        name=name,
        command=command,
        args=args,
        parser=str(raw.get("parser", "") or ""),
        timeout_seconds=timeout if timeout > 0 else None,
    )


def parse_presets(raw: Any) -> tuple[ToolPreset, ...]:
    """Build presets from a ``{name: {description, markers, tools}}`` mapping."""
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        raise ConfigurationError("presets must be a mapping of preset name to definition")
    presets: list[ToolPreset] = []
    for name, body in raw.items():
        if not isinstance(body, dict):
            raise ConfigurationError(f"preset {name!r} must be a mapping")
        raw_tools = body.get("tools")
        if not isinstance(raw_tools, list) or not raw_tools:
            raise ConfigurationError(f"preset {name!r} must list at least one tool")
        markers = body.get("markers") or []
        presets.append(
            ToolPreset(
                name=str(name),
                description=str(body.get("description", "")),
                tools=tuple(_parse_tool_spec(str(name), item) for item in raw_tools),
                markers=tuple(str(marker) for marker in markers),
            )
        )
    return tuple(presets)


def load_bundled_presets(path: Path = BUNDLED_TOOL_PRESETS_FILE) -> tuple[ToolPreset, ...]:
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"tool presets file must contain a mapping: {path}")
    return parse_presets(loaded.get("presets"))


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def _parse_npm_test(output: str, exit_code: int) -> ParsedOutput:
    errors = [
        line for line in _lines(output)
        if "✗" in line or "failing" in line or "Error:" in line
    ]
    match = re.search(r"(\d+) passing?,? (\d+) failing?", output)
    summary = (
        f"Tests: {match.group(1)} passing, {match.group(2)} failing"
        if match
        else f"Exit code: {exit_code}"
    )
    return errors, [], summary


def _parse_eslint(output: str, exit_code: int) -> ParsedOutput:
    errors: list[str] = []
    warnings: list[str] = []
    for line in _lines(output):
        if "error" in line:
            errors.append(line)
        elif "warning" in line:
            warnings.append(line)
    summary = (
        "No linting errors found"
        if exit_code == 0
        else f"{len(errors)} errors, {len(warnings)} warnings"
    )
    return errors, warnings, summary


def _parse_pytest(output: str, exit_code: int) -> ParsedOutput:
    errors = [line for line in _lines(output) if line.startswith("FAILED")]
    match = re.search(r"(\d+) passed, (\d+) failed", output)
    if match:
        summary = f"Tests: {match.group(1)} passed, {match.group(2)} failed"
    else:
        summary = f"Exit code: {exit_code}"
    return errors, [], summary


def _parse_ruff(output: str, exit_code: int) -> ParsedOutput:
    errors = [line for line in _lines(output) if not line.startswith("Found")]
    summary = "No linting errors" if exit_code == 0 else f"{len(errors)} issues found"
    return errors, [], summary


def _parse_cargo_test(output: str, exit_code: int) -> ParsedOutput:
    errors = [
        line for line in _lines(output) if line.startswith("FAILED") or "error:" in line
    ]
    match = re.search(r"test result: ok\. (\d+) passed;", output)
    summary = f"Tests: {match.group(1)} passed" if match else f"Exit code: {exit_code}"
    return errors, [], summary


def _parse_clippy(output: str, exit_code: int) -> ParsedOutput:
    errors: list[str] = []
    warnings: list[str] = []
    for line in _lines(output):
        if "error[" in line:
            errors.append(line)
        elif "warning[" in line:
            warnings.append(line)
    return errors, warnings, f"Clippy: {len(errors)} errors, {len(warnings)} warnings"


def _parse_go_test(output: str, exit_code: int) -> ParsedOutput:
    errors = [line for line in _lines(output) if line.startswith("--- FAIL")]
    match = re.search(r"PASS: (\d+)", output)
    summary = f"Tests: {match.group(1)} passed" if match else f"Exit code: {exit_code}"
    return errors, [], summary


def _parse_build(output: str, exit_code: int) -> ParsedOutput:
    errors = [
        line for line in _lines(output)
        if "error" in line.lower() and "warning" not in line and "notice" not in line
    ]
    return errors, [], "Build successful" if exit_code == 0 else "Build failed"


OUTPUT_PARSERS: dict[str, Callable[[str, int], ParsedOutput]] = {
    "npm-test": _parse_npm_test,
    "eslint": _parse_eslint,
    "pytest": _parse_pytest,
    "ruff": _parse_ruff,
    "cargo-test": _parse_cargo_test,
    "clippy": _parse_clippy,
    "go-test": _parse_go_test,
    "build": _parse_build,
}


def _default_parse(result: ToolResult) -> ParsedOutput:
    errors = [] if not result.failed else [
        f"{result.name} failed with exit code {result.exit_code}"
    ]
    marker = "ok" if not result.failed else "failed"
    return errors, [], f"{result.name}: {marker} ({result.duration // 1000}s)"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ToolRunner:
    def __init__(
        self,
        working_dir: Path,
        presets: Iterable[ToolPreset] | None = None,
        *,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.timeout_seconds = timeout_seconds
        bundled = load_bundled_presets() if presets is None else tuple(presets)
        self._presets: dict[str, ToolPreset] = {preset.name: preset for preset in bundled}

    def add_presets(self, presets: Iterable[ToolPreset]) -> None:
        for preset in presets:
            self._presets[preset.name] = preset

    def get_presets(self) -> list[ToolPreset]:
        return list(self._presets.values())

    def get_preset(self, name: str) -> ToolPreset:
        try:
            return self._presets[name]
        except KeyError:
            raise ConfigurationError(f"unknown tool preset: {name}") from None

    def detect_presets(self) -> list[str]:
        return [
            preset.name
            for preset in self._presets.values()
            if any((self.working_dir / marker).exists() for marker in preset.markers)
        ]

    def run_tool(self, spec: ToolSpec) -> ToolResult:
        _ensure_argv_safe(spec)
        timeout = spec.timeout_seconds or self.timeout_seconds
        argv = [spec.command, *spec.args]
        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                cwd=self.working_dir,
                text=True,
                capture_output=True,
                check=False,
                timeout=timeout,
            )
            exit_code = completed.returncode
            output = completed.stdout or completed.stderr or ""
        except subprocess.TimeoutExpired:
            exit_code = TOOL_TIMEOUT_EXIT_CODE
            output = f"{spec.name} timed out after {timeout:g}s"
        except FileNotFoundError as exc:
            exit_code = TOOL_NOT_FOUND_EXIT_CODE
            output = f"{spec.command} not found: {exc}"
        except OSError as exc:
            exit_code = 1
            output = str(exc)
        duration = round((time.monotonic() - started) * 1000)
        if exit_code != 0:
            logger.info("tool %s exited with code %d", spec.name, exit_code)
        return ToolResult(
            name=spec.name,
            command=spec.display,
            exit_code=exit_code,
            output=_truncate(output, TOOL_OUTPUT_MAX_CHARS),
            duration=duration,
        )

    def run_preset(self, name: str) -> list[ToolResult]:
        preset = self.get_preset(name)
        for spec in preset.tools:
            _ensure_argv_safe(spec)
        logger.debug("running tool preset %s (%d tool(s))", name, len(preset.tools))
        return [self.run_tool(spec) for spec in preset.tools]

    def analyze_results(self, results: list[ToolResult], preset_name: str) -> ToolAnalysis:
        preset = self._presets.get(preset_name)
        specs = preset.tools if preset is not None else ()
        errors: list[str] = []
        warnings: list[str] = []
        summaries: list[str] = []
        for index, result in enumerate(results):
            spec = specs[index] if index < len(specs) else None
            parser = OUTPUT_PARSERS.get(spec.parser) if spec is not None else None
            if parser is not None:
                parsed_errors, parsed_warnings, summary = parser(result.output, result.exit_code)
            else:
                parsed_errors, parsed_warnings, summary = _default_parse(result)
            errors.extend(parsed_errors)
            warnings.extend(parsed_warnings)
            summaries.append(summary)
        return ToolAnalysis(
            success=all(not result.failed for result in results),
            errors=tuple(errors),
            warnings=tuple(warnings),
            summary="\n".join(summaries),
        )
