"""Progress analysis over iteration history.

Everything here is pure: no I/O, no clock, no mutation of the records passed in.
The heuristics are advisory and never gate loop continuation on their own.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Sequence

from iterloop.constants import (
    ERROR_PLACEHOLDER,
    INTEGER_PATTERN,
    LINE_COLUMN_PATTERN,
    MAX_REASON_SIGNATURES,
    MIN_HISTORY_FOR_ANALYSIS,
    NEUTRAL_CONVERGENCE_RATE,
    OUTPUT_LENGTH_TOLERANCE,
    OUTPUT_SHAPE_REASON,
    OUTPUT_SHAPE_SUGGESTIONS,
    PATH_TOKEN_PATTERN,
    PROMISE_PATTERN,
    REPEATED_ERROR_REASON_PREFIX,
    REPEATED_ERROR_SUGGESTIONS,
    REPEATED_ERROR_THRESHOLD,
    STAGNATION_WINDOW,
)
from iterloop.models import IterationRecord, ProgressMetrics

_NORMALIZATION_PASSES = (PATH_TOKEN_PATTERN, LINE_COLUMN_PATTERN, INTEGER_PATTERN)


def extract_promise(text: str) -> str | None:
    """Return the trimmed contents of the first ``<promise>`` tag, if any."""
    match = PROMISE_PATTERN.search(text)
    if match is None:
        return None
    return match.group(1).strip()


def is_completion(text: str, completion_promise: str | None) -> bool:
    if not completion_promise:
        return False
    return extract_promise(text) == completion_promise


def normalize_error(text: str) -> str:
    """Collapse volatile tokens so equivalent errors share one signature.

    Passes run in order: path-like tokens, then ``line:column`` pairs, then
    any remaining standalone integer.
    """
    normalized = text
    for pattern in _NORMALIZATION_PASSES:
        normalized = pattern.sub(ERROR_PLACEHOLDER, normalized)
    return normalized.strip()


def _count_signatures(history: Sequence[IterationRecord]) -> tuple[Counter[str], int]:
    counts: Counter[str] = Counter()
    total = 0
    for record in history:
        for error in record.errors or ():
            counts[normalize_error(error)] += 1
            total += 1
    return counts, total


def _output_shape_stagnant(history: Sequence[IterationRecord]) -> bool:
    window = history[-STAGNATION_WINDOW:]
    if any(record.completion_detected for record in window):
        return False
    lengths = [len(record.output) for record in window]
    first = lengths[0]
    # Each length is compared with the first of the window, scaled by itself.
    return all(abs(length - first) < length * OUTPUT_LENGTH_TOLERANCE for length in lengths)


def analyze_progress(history: Sequence[IterationRecord]) -> ProgressMetrics:
    if len(history) < MIN_HISTORY_FOR_ANALYSIS:
        return ProgressMetrics()

    counts, total = _count_signatures(history)
    stagnation_detected = False
    stagnation_reason: str | None = None
    suggestions: list[str] = []

    repeated = [
        signature for signature, count in counts.items() if count >= REPEATED_ERROR_THRESHOLD
    ]
    if repeated:
        stagnation_detected = True
        stagnation_reason = REPEATED_ERROR_REASON_PREFIX + ", ".join(
            repeated[:MAX_REASON_SIGNATURES]
        )
        suggestions.extend(REPEATED_ERROR_SUGGESTIONS)

    if _output_shape_stagnant(history):
        stagnation_detected = True
        stagnation_reason = OUTPUT_SHAPE_REASON
        suggestions.extend(OUTPUT_SHAPE_SUGGESTIONS)

    if total > 0:
        convergence_rate = 1 - len(counts) / total
    else:
        convergence_rate = NEUTRAL_CONVERGENCE_RATE

    estimate: int | None = None
    if convergence_rate > 0:
        progress_per_iteration = convergence_rate / len(history)
        if progress_per_iteration > 0:
            estimate = math.ceil((1 - convergence_rate) / progress_per_iteration)

    return ProgressMetrics(
        stagnation_detected=stagnation_detected,
        stagnation_reason=stagnation_reason,
        convergence_rate=convergence_rate,
        repeated_errors=tuple(repeated),
        suggested_actions=tuple(suggestions),
        estimated_iterations_remaining=estimate,
    )
