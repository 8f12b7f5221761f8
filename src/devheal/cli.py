from __future__ import annotations

import argparse
from pathlib import Path
import subprocess
import sys

from devheal.artifacts import StateLayout
from devheal.config import AppConfig, default_config, load_config
from devheal.issue_queue import FailureReport, IssueQueue, QueueDecision
from devheal.models import Issue, new_issue_id
from devheal.observability import configure_logging
from devheal.patch_sanitizer import sanitize_patch
from devheal.patch_validator import validate_hunks
from devheal.pipeline import FixPipeline
from devheal.worktrees import WorktreeManager


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("devheal.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default level: high)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devheal")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the state directory layout")
    _add_common_options(init_parser)

    fix_parser = subparsers.add_parser("fix", help="Run the fix pipeline for one issue")
    _add_common_options(fix_parser)
    fix_parser.add_argument("--title", required=True)
    source_group = fix_parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument("--excerpt-file", type=Path)
    source_group.add_argument("--prompt-file", type=Path)
    fix_parser.add_argument("--source", default="cli")
    fix_parser.add_argument("--kind", default="runtime")
    fix_parser.add_argument("--signature", default=None)

    rerun_parser = subparsers.add_parser("rerun", help="Rerun the last issue from its saved prompt")
    _add_common_options(rerun_parser)

    sanitize_parser = subparsers.add_parser(
        "sanitize", help="Repair a unified diff and report hunk problems"
    )
    _add_common_options(sanitize_parser)
    sanitize_parser.add_argument("patch", type=Path)
    sanitize_parser.add_argument(
        "--write", action="store_true", help="Overwrite the patch file with the repaired diff"
    )

    prune_parser = subparsers.add_parser(
        "prune", help="Delete failed worktrees beyond fix.retain_on_failure"
    )
    _add_common_options(prune_parser)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    config = _load(args.config)
    configure_logging(args.verbose, state_dir=config.workspace.state_path if args.verbose else None)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "fix":
        raise SystemExit(_cmd_fix(config, args))
    if args.command == "rerun":
        raise SystemExit(_cmd_rerun(config))
    if args.command == "sanitize":
        raise SystemExit(_cmd_sanitize(args.patch, write=bool(args.write)))
    if args.command == "prune":
        _cmd_prune(config)
        return
    raise RuntimeError(f"Unknown command: {args.command}")


def _load(path: Path) -> AppConfig:
    if path.exists():
        return load_config(path)
    return default_config(Path.cwd())


def _layout(config: AppConfig) -> StateLayout:
    return StateLayout(
        workspace_root=config.workspace.root, state_dir_name=config.workspace.state_dir
    )


def _cmd_init(config: AppConfig) -> None:
    layout = _layout(config)
    layout.ensure()
    print(f"initialized {layout.state_dir}")


def _build_queue(config: AppConfig, pipeline: FixPipeline) -> IssueQueue:
    interactive = sys.stdin.isatty()
    login_command = config.agent.login_command

    def decide(report: FailureReport) -> QueueDecision:
        print(f"\n[{report.kind}] {report.issue.title}", file=sys.stderr)
        print(f"hint: {report.hint}", file=sys.stderr)
        print(f"fix log: {report.log_path}", file=sys.stderr)
        if not interactive:
            return "skip"
        if report.auth_required:
            if not login_command:
                return "skip"
            answer = input(f"Run `{login_command}` and retry? [y/N] ").strip().lower()
            return "login" if answer in {"y", "yes"} else "skip"
        answer = input("[r]etry, [s]kip, [o]pen log? ").strip().lower()
        if answer.startswith("r"):
            return "retry"
        if answer.startswith("o"):
            return "open_log"
        return "skip"

    def on_login(report: FailureReport) -> None:
        _ = report
        if login_command:
            subprocess.run(login_command, shell=True, check=False)

    def on_open_log(report: FailureReport) -> None:
        path = Path(report.log_path)
        if path.exists():
            print(path.read_text(encoding="utf-8", errors="replace"))

    return IssueQueue(
        pipeline,
        layout=pipeline.layout,
        ledger=pipeline.ledger,
        decide=decide,
        on_login=on_login,
        on_open_log=on_open_log,
        auth_resume_delay_seconds=config.fix.auth_resume_delay_seconds,
        enabled=config.fix.queue_enabled,
    )


def _print_progress(line: str) -> None:
    print(line, file=sys.stderr)


def _drain(queue: IssueQueue) -> int:
    queue.drain()
    queue.wait_until_idle()
    for result in queue.results:
        sha = result.commit.committed_sha or "(not committed)"
        print(f"{result.issue_id}: fixed on {result.branch} at {sha}")
        if result.reintegration is not None:
            outcome = result.reintegration
            detail = outcome.skipped_reason or outcome.failed_reason or outcome.branch or ""
            status = "applied" if outcome.applied else "not applied"
            print(f"  reintegration: {status} {outcome.strategy or ''} {detail}".rstrip())
    return 0 if queue.results and not queue.pending() else 1


def _cmd_fix(config: AppConfig, args: argparse.Namespace) -> int:
    excerpt = args.excerpt_file.read_text(encoding="utf-8") if args.excerpt_file else None
    prompt = args.prompt_file.read_text(encoding="utf-8") if args.prompt_file else None
    title = str(args.title)
    issue = Issue(
        id=new_issue_id(),
        title=title,
        source=str(args.source),
        signature=str(args.signature) if args.signature else title,
        kind=str(args.kind),
        excerpt=excerpt,
        prompt_text=prompt,
    )
    pipeline = FixPipeline.from_config(config, progress=_print_progress)
    queue = _build_queue(config, pipeline)
    if queue.enqueue(issue) < 0:
        print("fix queue is disabled (fix.queue_enabled = false)", file=sys.stderr)
        return 1
    return _drain(queue)


def _cmd_rerun(config: AppConfig) -> int:
    pipeline = FixPipeline.from_config(config, progress=_print_progress)
    queue = _build_queue(config, pipeline)
    issue = queue.rerun_last()
    if issue is None:
        print("nothing to rerun: no saved prompt found", file=sys.stderr)
        return 1
    print(f"rerunning as {issue.id}", file=sys.stderr)
    return _drain(queue)


def _cmd_sanitize(path: Path, *, write: bool) -> int:
    raw = path.read_text(encoding="utf-8")
    sanitized = sanitize_patch(raw)
    validation = validate_hunks(sanitized.patch)
    print(sanitized.stats_line())
    for error in validation.errors:
        print(f"validator: {error}")
    if write and sanitized.changed:
        path.write_text(sanitized.patch, encoding="utf-8")
    return 0 if validation.ok and "diff --git " in sanitized.patch else 1


def _cmd_prune(config: AppConfig) -> None:
    layout = _layout(config)
    manager = WorktreeManager(repo_root=config.workspace.root, layout=layout, fix=config.fix)
    removed = manager.prune_failed(keep=config.fix.retain_on_failure)
    for path in removed:
        print(f"removed {path}")
    print(f"pruned {len(removed)} failed worktree(s)")
