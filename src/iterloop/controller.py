"""Loop controller: the state machine for one iterative agent loop.

States are ``Idle`` (no LoopState) and ``Active``. The controller is the only
writer of loop state. Every processed iteration is appended to the history
log before the snapshot is rewritten for the next iteration, so after a crash
the log, not the snapshot's counter, is the authoritative record of finished
iterations.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from iterloop.constants import (
    OUTPUT_TRUNCATE_CHARS,
    REASON_COMPLETION,
    REASON_MAX_ITERATIONS,
    REASON_NO_ACTIVE_LOOP,
)
from iterloop.models import (
    ConfigurationError,
    IterationMetadata,
    IterationRecord,
    IterationResult,
    LoopState,
    PersistenceError,
    ProgressMetrics,
)
from iterloop.progress import analyze_progress, is_completion
from iterloop.reports import format_history_report, format_status
from iterloop.storage import (
    HistoryLog,
    JsonlHistoryLog,
    JsonSnapshotStore,
    SnapshotStore,
    history_path_for,
)
from iterloop.utils import _format_utc, _parse_utc, _truncate, _utc_datetime

logger = logging.getLogger(__name__)


def _validate_start(prompt: Any, max_iterations: Any, completion_promise: Any) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ConfigurationError("prompt must be a non-empty string")
    if (
        isinstance(max_iterations, bool)
        or not isinstance(max_iterations, int)
        or max_iterations < 0
    ):
        raise ConfigurationError(
            f"max_iterations must be a non-negative integer, got {max_iterations!r}"
        )
    if completion_promise is not None and not isinstance(completion_promise, str):
        raise ConfigurationError(
            f"completion_promise must be a string or None, got {type(completion_promise).__name__}"
        )


def _merge_errors(metadata: IterationMetadata) -> tuple[str, ...] | None:
    failed_tools = [
        f"{tool.name} failed" for tool in metadata.external_tools_run or () if tool.failed
    ]
    if metadata.errors is None and not failed_tools:
        return None
    return (*(metadata.errors or ()), *failed_tools)


class LoopController:
    def __init__(
        self,
        snapshot_store: SnapshotStore,
        history_log: HistoryLog,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utc_datetime,
    ) -> None:
        self._snapshot_store = snapshot_store
        self._history_log = history_log
        self._clock = clock
        self._wall_clock = wall_clock
        self._state: LoopState | None = None
        self._iteration_started: float | None = None
        self._load()

    @classmethod
    def from_state_file(cls, state_file: Path, **kwargs: Any) -> LoopController:
        state_path = Path(state_file)
        return cls(
            JsonSnapshotStore(state_path),
            JsonlHistoryLog(history_path_for(state_path)),
            **kwargs,
        )

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start_loop(
        self,
        prompt: str,
        max_iterations: int = 0,
        completion_promise: str | None = None,
        git_enabled: bool = True,
        auto_commit: bool = False,
    ) -> LoopState:
        _validate_start(prompt, max_iterations, completion_promise)
        if self._state is not None and self._state.active:
            logger.warning(
                "starting a new loop over the active one at iteration %d", self._state.iteration
            )
        state = LoopState(
            active=True,
            iteration=1,
            max_iterations=max_iterations,
            completion_promise=completion_promise or None,
            started_at=_format_utc(self._wall_clock()),
            prompt=prompt,
            history=[],
            git_enabled=bool(git_enabled),
            auto_commit=bool(auto_commit),
        )
        self._state = state
        self._save()
        self._iteration_started = self._clock()
        logger.info(
            "loop started (max_iterations=%d, completion_promise=%r)",
            max_iterations,
            state.completion_promise,
        )
        return dataclasses.replace(state, history=[])

    def process_iteration(
        self, output: str, metadata: IterationMetadata | None = None
    ) -> IterationResult:
        state = self._state
        if state is None or not state.active:
            return IterationResult(completed=True, iteration=0, reason=REASON_NO_ACTIVE_LOOP)

        metadata = metadata or IterationMetadata()
        completion_detected = is_completion(output, state.completion_promise)
        finished_at = self._wall_clock()
        record = IterationRecord(
            iteration=state.iteration,
            timestamp=_format_utc(finished_at),
            output=_truncate(output, OUTPUT_TRUNCATE_CHARS),
            completion_detected=completion_detected,
            duration=self._elapsed_ms(finished_at),
            files_modified=metadata.files_modified,
            commands_run=metadata.commands_run,
            errors=_merge_errors(metadata),
            git_commit=metadata.git_commit,
            external_tools_run=metadata.external_tools_run,
        )
        self._append_history(record)
        state.history.append(record)
        logger.debug(
            "iteration %d recorded (output=%d chars, errors=%d)",
            record.iteration,
            len(record.output),
            len(record.errors or ()),
        )

        if completion_detected:
            self._terminate(REASON_COMPLETION)
            return IterationResult(
                completed=True,
                iteration=record.iteration,
                reason=REASON_COMPLETION,
                completion_detected=True,
            )
        if state.max_iterations > 0 and state.iteration >= state.max_iterations:
            self._terminate(REASON_MAX_ITERATIONS)
            return IterationResult(
                completed=True, iteration=record.iteration, reason=REASON_MAX_ITERATIONS
            )

        metrics = analyze_progress(state.history)
        if metrics.stagnation_detected:
            logger.info("stagnation detected at iteration %d: %s", record.iteration, metrics.stagnation_reason)
        state.iteration += 1
        self._save()
        self._iteration_started = self._clock()
        return IterationResult(
            completed=False,
            iteration=state.iteration,
            reason=f"iteration {state.iteration} - continue loop",
            next_prompt=state.prompt,
            progress=metrics,
        )

    def cancel_loop(self) -> bool:
        if not self.is_loop_active():
            return False
        self._terminate("cancelled")
        return True

    # -----------------------------------------------------------------------
    # Read-only accessors
    # -----------------------------------------------------------------------

    def is_loop_active(self) -> bool:
        return self._state is not None and self._state.active

    def get_state(self) -> LoopState | None:
        if self._state is None:
            return None
        return dataclasses.replace(self._state, history=list(self._state.history))

    def get_history(self) -> tuple[IterationRecord, ...]:
        if self._state is None:
            return ()
        return tuple(self._state.history)

    def analyze(self) -> ProgressMetrics:
        return analyze_progress(self.get_history())

    def get_status(self) -> str:
        return format_status(self._state, self.analyze())

    def get_history_report(self) -> str:
        return format_history_report(self.get_history())

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _load(self) -> None:
        try:
            state = self._snapshot_store.load()
        except PersistenceError as exc:
            logger.warning("treating unreadable snapshot as no active loop: %s", exc)
            state = None
        if state is not None and not state.active:
            state = None
        self._state = state
        if state is not None:
            logger.info("resumed loop at iteration %d", state.iteration)

    def _elapsed_ms(self, finished_at: datetime) -> int | None:
        if self._iteration_started is not None:
            return max(0, round((self._clock() - self._iteration_started) * 1000))
        # No in-process timer (e.g. a fresh CLI invocation): the iteration began
        # when the previous one was recorded, or when the loop started.
        state = self._state
        if state is None:
            return None
        anchor = state.history[-1].timestamp if state.history else state.started_at
        began = _parse_utc(anchor)
        if began is None:
            return None
        return max(0, round((finished_at - began).total_seconds() * 1000))

    def _terminate(self, reason: str) -> None:
        iteration = self._state.iteration if self._state is not None else 0
        self._state = None
        self._iteration_started = None
        try:
            self._snapshot_store.delete()
        except PersistenceError as exc:
            logger.error("failed to delete loop snapshot: %s", exc)
        logger.info("loop ended at iteration %d: %s", iteration, reason)

    def _save(self) -> None:
        if self._state is None:
            return
        try:
            self._snapshot_store.save(self._state)
        except PersistenceError as exc:
            logger.error("failed to save loop snapshot: %s", exc)

    def _append_history(self, record: IterationRecord) -> None:
        try:
            self._history_log.append(record)
        except PersistenceError as exc:
            logger.error("failed to append iteration %d to history log: %s", record.iteration, exc)
