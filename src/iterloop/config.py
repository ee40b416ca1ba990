from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from iterloop.constants import DEFAULT_STATE_DIR, DEFAULT_TOOL_TIMEOUT_SECONDS, POLICY_FILE_NAME
from iterloop.models import ConfigurationError, LoopPolicy, _coerce_bool, _coerce_float, _coerce_non_negative_int
from iterloop.tools import parse_presets

logger = logging.getLogger(__name__)


def _policy_path(repo_root: Path) -> Path:
    return repo_root / DEFAULT_STATE_DIR / POLICY_FILE_NAME


def _load_policy_file(repo_root: Path) -> dict[str, Any]:
    policy_path = _policy_path(repo_root)
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("ignoring unreadable policy file %s: %s", policy_path, exc)
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _section(policy: dict[str, Any], key: str) -> dict[str, Any]:
    value = policy.get(key)
    return value if isinstance(value, dict) else {}


def _load_loop_policy(repo_root: Path) -> LoopPolicy:
    """Read ``.iterloop/policy.yaml`` into a ``LoopPolicy``.

    Missing keys and out-of-range values fall back to defaults. An invalid
    custom preset is logged and every custom preset is ignored.
    """
    policy = _load_policy_file(repo_root)
    loop = _section(policy, "loop")
    tools = _section(policy, "tools")

    timeout = _coerce_float(tools.get("timeout_seconds"), default=DEFAULT_TOOL_TIMEOUT_SECONDS)
    if timeout <= 0:
        timeout = DEFAULT_TOOL_TIMEOUT_SECONDS

    try:
        presets = parse_presets(tools.get("presets") or None)
    except ConfigurationError as exc:
        logger.warning("ignoring custom tool presets in %s: %s", _policy_path(repo_root), exc)
        presets = ()

    return LoopPolicy(
        default_max_iterations=_coerce_non_negative_int(
            loop.get("default_max_iterations"), default=0
        ),
        git_enabled=_coerce_bool(loop.get("git_enabled"), default=True),
        auto_commit=_coerce_bool(loop.get("auto_commit"), default=False),
        tool_timeout_seconds=timeout,
        presets=presets,
    )
