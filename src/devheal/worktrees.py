from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import shutil

from devheal.artifacts import StateLayout, parse_fix_result, read_tail_text
from devheal.config import FixConfig
from devheal.failures import WorktreeResetFailed, WorktreeSetupFailed
from devheal.git_ops import current_branch, git, is_worktree_root
from devheal.models import FixOutcome, Worktree, safe_worktree_name
from devheal.observability import log_event, log_warning_event


LOGGER = logging.getLogger("devheal.worktrees")


class WorktreePathError(RuntimeError):
    """Raised when a destructive operation targets a path outside the worktrees root."""


@dataclass(frozen=True)
class WorktreeActivity:
    path: Path
    outcome: FixOutcome
    last_active: float


class WorktreeManager:
    def __init__(self, *, repo_root: Path, layout: StateLayout, fix: FixConfig) -> None:
        self.repo_root = repo_root
        self.layout = layout
        self.fix = fix

    @property
    def root(self) -> Path:
        return self.layout.worktrees_dir

    def path_for(self, issue_id: str) -> Path:
        return self.root / safe_worktree_name(issue_id)

    def ensure(self, issue_id: str, *, base_ref: str, branch: str) -> Worktree:
        path = self.path_for(issue_id)
        self.root.mkdir(parents=True, exist_ok=True)
        worktree = Worktree(path=path, branch=branch, base_ref=base_ref)

        if path.exists():
            if not is_worktree_root(path):
                raise WorktreeSetupFailed(
                    f"Worktree path exists but is not a git worktree: {path}"
                )
            checked_out = current_branch(path)
            if checked_out != branch:
                result = git(path, "checkout", branch)
                if not result.ok:
                    raise WorktreeSetupFailed(
                        f"Failed to check out {branch} in {path}:\n{result.stderr.strip()}"
                    )
            log_event(
                LOGGER,
                "worktree_reused",
                issue_id=issue_id,
                path=str(path),
                branch=branch,
                previous_branch=checked_out,
            )
            return worktree

        git(self.repo_root, "worktree", "prune")
        result = git(self.repo_root, "worktree", "add", "-B", branch, str(path), base_ref)
        if not result.ok:
            raise WorktreeSetupFailed(
                f"git worktree add failed (exit {result.returncode}):\n"
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        log_event(
            LOGGER,
            "worktree_created",
            issue_id=issue_id,
            path=str(path),
            branch=branch,
            base_ref=base_ref,
        )
        return worktree

    def reset(self, worktree: Worktree) -> None:
        for args in (("reset", "--hard", worktree.base_ref), ("clean", "-fd")):
            result = git(worktree.path, *args)
            if not result.ok:
                raise WorktreeResetFailed(
                    f"git {' '.join(args)} failed in {worktree.path}:\n{result.stderr.strip()}"
                )
        log_event(LOGGER, "worktree_reset", path=str(worktree.path), base_ref=worktree.base_ref)

    def assert_managed(self, path: Path) -> Path:
        resolved = path.resolve()
        root = self.root.resolve()
        if resolved == root or root not in resolved.parents:
            raise WorktreePathError(f"Refusing to touch path outside {root}: {resolved}")
        return resolved

    def remove(self, path: Path) -> None:
        target = self.assert_managed(path)
        result = git(self.repo_root, "worktree", "remove", "-f", str(target))
        if not result.ok:
            log_warning_event(
                LOGGER,
                "worktree_remove_failed",
                path=str(target),
                stderr=result.stderr,
            )
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
        git(self.repo_root, "worktree", "prune")
        log_event(LOGGER, "worktree_removed", path=str(target))

    def list_dirs(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(entry for entry in self.root.iterdir() if entry.is_dir())

    def activity(self, path: Path) -> WorktreeActivity:
        """Outcome and last activity time, from the newest matching fix log."""
        name = path.name.lower()
        newest_log: Path | None = None
        newest_log_mtime = 0.0
        if self.layout.fix_logs_dir.exists():
            for log_path in self.layout.fix_logs_dir.iterdir():
                if not log_path.is_file() or name not in log_path.name.lower():
                    continue
                mtime = log_path.stat().st_mtime
                if newest_log is None or mtime > newest_log_mtime:
                    newest_log = log_path
                    newest_log_mtime = mtime
        outcome: FixOutcome = "unknown"
        if newest_log is not None:
            outcome = parse_fix_result(read_tail_text(newest_log))
        try:
            dir_mtime = path.stat().st_mtime
        except FileNotFoundError:
            dir_mtime = 0.0
        return WorktreeActivity(
            path=path, outcome=outcome, last_active=max(dir_mtime, newest_log_mtime)
        )

    def infer_outcome(self, path: Path) -> FixOutcome:
        return self.activity(path).outcome

    def apply_retention(self, worktree: Worktree, *, success: bool) -> None:
        if not self.fix.cleanup_worktrees:
            return
        if success:
            if self.fix.retain_on_success <= 0:
                self.remove(worktree.path)
            return
        if self.fix.retain_on_failure <= 0:
            self.remove(worktree.path)
            return
        self.prune_failed(keep=self.fix.retain_on_failure, current=worktree.path)

    def prune_failed(self, *, keep: int, current: Path | None = None) -> list[Path]:
        current_resolved = current.resolve() if current is not None else None
        failed: list[WorktreeActivity] = []
        for path in self.list_dirs():
            if current_resolved is not None and path.resolve() == current_resolved:
                continue
            activity = self.activity(path)
            if activity.outcome == "failed":
                failed.append(activity)
        failed.sort(key=lambda item: item.last_active, reverse=True)

        slots = keep - 1 if current_resolved is not None else keep
        removed: list[Path] = []
        for stale in failed[max(slots, 0) :]:
            self.remove(stale.path)
            removed.append(stale.path)
        log_event(
            LOGGER,
            "worktree_retention_applied",
            keep=keep,
            removed=len(removed),
            current=str(current) if current is not None else None,
        )
        return removed
