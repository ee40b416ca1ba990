"""Iterloop constants: file layout, analysis thresholds, patterns, and defaults."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
PACKAGE_SCHEMA_DIR = PACKAGE_DIR / "schemas"
PACKAGE_DATA_DIR = PACKAGE_DIR / "data"

LOOP_STATE_SCHEMA_FILE = "loop_state.schema.json"
ITERATION_RECORD_SCHEMA_FILE = "iteration_record.schema.json"
BUNDLED_TEMPLATES_FILE = PACKAGE_DATA_DIR / "templates.yaml"
BUNDLED_TOOL_PRESETS_FILE = PACKAGE_DATA_DIR / "tool_presets.yaml"

DEFAULT_STATE_DIR = ".iterloop"
DEFAULT_STATE_FILE = f"{DEFAULT_STATE_DIR}/loop-state.json"
POLICY_FILE_NAME = "policy.yaml"
STATE_FILE_SUFFIX = "-state.json"
HISTORY_FILE_SUFFIX = "-history.jsonl"

# Iteration records
OUTPUT_TRUNCATE_CHARS = 1000

# Progress analysis
MIN_HISTORY_FOR_ANALYSIS = 3
REPEATED_ERROR_THRESHOLD = 3
STAGNATION_WINDOW = 3
OUTPUT_LENGTH_TOLERANCE = 0.1
NEUTRAL_CONVERGENCE_RATE = 0.5
MAX_REASON_SIGNATURES = 2
ERROR_PLACEHOLDER = "<n>"

PROMISE_PATTERN = re.compile(r"<promise>(.*?)</promise>", re.DOTALL)
PATH_TOKEN_PATTERN = re.compile(r"/\S+")
LINE_COLUMN_PATTERN = re.compile(r"\d+:\d+")
INTEGER_PATTERN = re.compile(r"\b\d+\b")

REPEATED_ERROR_REASON_PREFIX = "Same error(s) repeating across iterations: "
REPEATED_ERROR_SUGGESTIONS = (
    "Consider a different approach - current strategy is not working",
    "Review the repeated error patterns and try addressing them differently",
)
OUTPUT_SHAPE_REASON = (
    "Output length and structure similar across last 3 iterations - may be stuck in a loop"
)
OUTPUT_SHAPE_SUGGESTIONS = (
    "Try breaking down the task into smaller sub-tasks",
    "Consider reviewing the prompt for clarity",
)

# Iteration result reasons
REASON_COMPLETION = "completion promise detected"
REASON_MAX_ITERATIONS = "max iterations reached"
REASON_NO_ACTIVE_LOOP = "no active loop"

# Collaborators
DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0
TOOL_OUTPUT_MAX_CHARS = 5000
TOOL_TIMEOUT_EXIT_CODE = 124
TOOL_NOT_FOUND_EXIT_CODE = 127
SHELL_METACHARACTERS = frozenset("|&;<>()$`")

COMMIT_MESSAGE_MAX_CHARS = 200
COMMIT_MESSAGE_STRIP_CHARS = "\"'`$;<>|&"
COMMIT_TAG_PREFIX = "iterloop-iter"
GIT_LOG_MAX_COUNT = 100
GIT_CONTEXT_MAX_COUNT = 50

# Reports
REPORT_ERROR_MAX_CHARS = 100
REPORT_ERRORS_PER_RECORD = 3
REPORT_COMMIT_HASH_CHARS = 8
