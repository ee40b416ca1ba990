from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from iterloop.constants import DEFAULT_STATE_FILE
from iterloop.models import ConfigurationError
from iterloop.session import LoopSession


def _session(args: argparse.Namespace) -> LoopSession:
    working_dir = Path(args.working_dir).resolve()
    state_file = Path(args.state_file)
    if not state_file.is_absolute():
        state_file = working_dir / state_file
    return LoopSession(working_dir, state_file=state_file)


def _read_output(args: argparse.Namespace) -> str:
    if args.output is not None:
        return args.output
    if args.output_file is not None:
        return Path(args.output_file).read_text(encoding="utf-8")
    return sys.stdin.read()


# ---------------------------------------------------------------------------
# Loop commands
# ---------------------------------------------------------------------------


def _cmd_start(args: argparse.Namespace) -> int:
    if not args.prompt and not args.template:
        print("iterloop start: ERROR provide --prompt or --template", file=sys.stderr)
        return 1
    print(
        _session(args).start(
            args.prompt,
            template_id=args.template,
            max_iterations=args.max_iterations,
            completion_promise=args.completion_promise,
            git_enabled=args.git,
            auto_commit=args.auto_commit,
        )
    )
    return 0


def _cmd_iterate(args: argparse.Namespace) -> int:
    try:
        output = _read_output(args)
    except OSError as exc:
        print(f"iterloop iterate: ERROR {exc}", file=sys.stderr)
        return 1
    print(
        _session(args).iterate(
            output,
            files_modified=args.files_modified,
            commands_run=args.commands_run,
            errors=args.errors,
            run_tools=args.run_tools or (),
        )
    )
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    print(_session(args).cancel())
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    print(_session(args).status())
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    session = _session(args)
    print(session.log_report() if args.log else session.history())
    return 0


# ---------------------------------------------------------------------------
# Collaborator commands
# ---------------------------------------------------------------------------


def _cmd_templates_list(args: argparse.Namespace) -> int:
    print(_session(args).list_templates(args.category))
    return 0


def _cmd_templates_show(args: argparse.Namespace) -> int:
    print(_session(args).show_template(args.template_id))
    return 0


def _cmd_git_status(args: argparse.Namespace) -> int:
    print(_session(args).git_status())
    return 0


def _cmd_git_commit(args: argparse.Namespace) -> int:
    print(_session(args).git_commit(args.message))
    return 0


def _cmd_git_context(args: argparse.Namespace) -> int:
    print(_session(args).git_context(args.count))
    return 0


def _cmd_tools_run(args: argparse.Namespace) -> int:
    print(_session(args).run_tools(args.presets))
    return 0


def _cmd_tools_detect(args: argparse.Namespace) -> int:
    print(_session(args).detect_tools())
    return 0


def _cmd_tools_list(args: argparse.Namespace) -> int:
    print(_session(args).list_tools())
    return 0


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--state-file",
        default=DEFAULT_STATE_FILE,
        help=f"Path to the loop snapshot JSON (default: {DEFAULT_STATE_FILE})",
    )
    common.add_argument(
        "--working-dir",
        default=".",
        help="Repository the loop operates on (default: current directory)",
    )

    parser = argparse.ArgumentParser(description="iterloop command line interface")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", parents=[common], help="Start a new loop")
    start.add_argument("--prompt", default=None, help="Task prompt echoed back every iteration")
    start.add_argument("--template", default=None, help="Seed the loop from a template id")
    start.add_argument(
        "--max-iterations", type=int, default=None, help="Stop after N iterations (0 = unlimited)"
    )
    start.add_argument(
        "--completion-promise",
        default=None,
        help="Exact text that ends the loop when wrapped in <promise> tags",
    )
    start.add_argument(
        "--git", action=argparse.BooleanOptionalAction, default=None, help="Enable git integration"
    )
    start.add_argument(
        "--auto-commit",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Commit all changes before recording each iteration",
    )
    start.set_defaults(handler=_cmd_start)

    iterate = subparsers.add_parser(
        "iterate", parents=[common], help="Record the current iteration and decide what comes next"
    )
    source = iterate.add_mutually_exclusive_group()
    source.add_argument("--output", default=None, help="Iteration output text")
    source.add_argument("--output-file", default=None, help="Read iteration output from a file")
    iterate.add_argument(
        "--file", dest="files_modified", action="append", default=None, help="File modified (repeatable)"
    )
    iterate.add_argument(
        "--command", dest="commands_run", action="append", default=None, help="Command run (repeatable)"
    )
    iterate.add_argument(
        "--error", dest="errors", action="append", default=None, help="Error encountered (repeatable)"
    )
    iterate.add_argument(
        "--run-tools", action="append", default=None, help="Tool preset to run first (repeatable)"
    )
    iterate.set_defaults(handler=_cmd_iterate)

    cancel = subparsers.add_parser("cancel", parents=[common], help="Cancel the active loop")
    cancel.set_defaults(handler=_cmd_cancel)

    status = subparsers.add_parser("status", parents=[common], help="Show loop status and progress")
    status.set_defaults(handler=_cmd_status)

    history = subparsers.add_parser("history", parents=[common], help="Show iteration history")
    history.add_argument(
        "--log", action="store_true", help="Read from the durable history log instead of the snapshot"
    )
    history.set_defaults(handler=_cmd_history)

    templates = subparsers.add_parser("templates", help="Browse loop templates")
    templates_sub = templates.add_subparsers(dest="templates_command")
    templates_list = templates_sub.add_parser("list", parents=[common], help="List templates")
    templates_list.add_argument("--category", default=None, help="Only show one category")
    templates_list.set_defaults(handler=_cmd_templates_list)
    templates_show = templates_sub.add_parser("show", parents=[common], help="Show one template")
    templates_show.add_argument("template_id")
    templates_show.set_defaults(handler=_cmd_templates_show)

    git = subparsers.add_parser("git", help="Git integration")
    git_sub = git.add_subparsers(dest="git_command")
    git_status = git_sub.add_parser("status", parents=[common], help="Show repository status")
    git_status.set_defaults(handler=_cmd_git_status)
    git_commit = git_sub.add_parser("commit", parents=[common], help="Commit all changes")
    git_commit.add_argument("message")
    git_commit.set_defaults(handler=_cmd_git_commit)
    git_context = git_sub.add_parser("context", parents=[common], help="Show recent loop commits")
    git_context.add_argument("--count", type=int, default=5)
    git_context.set_defaults(handler=_cmd_git_context)

    tools = subparsers.add_parser("tools", help="External test/lint tools")
    tools_sub = tools.add_subparsers(dest="tools_command")
    tools_run = tools_sub.add_parser("run", parents=[common], help="Run tool presets")
    tools_run.add_argument("presets", nargs="+")
    tools_run.set_defaults(handler=_cmd_tools_run)
    tools_detect = tools_sub.add_parser("detect", parents=[common], help="Suggest presets for this repo")
    tools_detect.set_defaults(handler=_cmd_tools_detect)
    tools_list = tools_sub.add_parser("list", parents=[common], help="List available presets")
    tools_list.set_defaults(handler=_cmd_tools_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    try:
        return int(handler(args))
    except ConfigurationError as exc:
        print(f"iterloop {args.command}: ERROR {exc}", file=sys.stderr)
        return 1
