"""Bring a committed fix back into the user's checkout, best effort.

Nothing here may fail an attempt: by the time reintegration runs the fix
already lives on its own branch. Every outcome is reported as a
``ReintegrationResult``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
from pathlib import Path
import time

from devheal.artifacts import FixLog
from devheal.config import ReintegrationConfig
from devheal.failures import ReintegrationFailed
from devheal.git_ops import branch_exists, current_branch, git, stash_top, unmerged_paths
from devheal.models import ReintegrationResult, to_base36
from devheal.observability import log_event, log_warning_event


LOGGER = logging.getLogger("devheal.reintegration")


class WorkspaceReintegrator:
    def __init__(
        self,
        config: ReintegrationConfig,
        *,
        repo_root: Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._root = repo_root
        self._clock = clock

    def reintegrate(
        self, *, issue_id: str, committed_sha: str | None, fix_log: FixLog
    ) -> ReintegrationResult:
        try:
            result = self._reintegrate(
                issue_id=issue_id, committed_sha=committed_sha, fix_log=fix_log
            )
        except Exception as exc:  # noqa: BLE001
            error = ReintegrationFailed(f"reintegration raised {type(exc).__name__}: {exc}")
            fix_log.line(f"[reintegrate] failed: {error}")
            log_warning_event(
                LOGGER,
                "reintegration_failed",
                issue_id=issue_id,
                error_type=type(exc).__name__,
            )
            result = ReintegrationResult(applied=False, failed_reason="exception")
        log_event(
            LOGGER,
            "reintegration_finished",
            issue_id=issue_id,
            applied=result.applied,
            strategy=result.strategy,
            skipped_reason=result.skipped_reason,
            failed_reason=result.failed_reason,
        )
        return result

    def _reintegrate(
        self, *, issue_id: str, committed_sha: str | None, fix_log: FixLog
    ) -> ReintegrationResult:
        if not self._config.enabled:
            return ReintegrationResult(applied=False, skipped_reason="disabled")
        if not committed_sha:
            return ReintegrationResult(applied=False, skipped_reason="no_sha")
        if self._config.strategy == "off":
            return ReintegrationResult(applied=False, skipped_reason="strategy_off")

        status = git(self._root, "status", "--porcelain")
        if not status.ok:
            fix_log.line(f"[reintegrate] git status failed: {status.stderr.strip()}")
            return ReintegrationResult(applied=False, skipped_reason="git_status_failed")
        dirty = bool(status.stdout.strip())

        if not dirty:
            return self._cherry_pick_clean(committed_sha, fix_log=fix_log)
        if self._config.strategy == "new_branch":
            return self._onto_new_branch(issue_id, committed_sha, fix_log=fix_log)
        if self._config.strategy == "stash_and_pop":
            return self._stash_and_pop(issue_id, committed_sha, fix_log=fix_log)
        fix_log.line("[reintegrate] workspace has uncommitted changes; skipping")
        return ReintegrationResult(
            applied=False, strategy="skip_if_dirty", skipped_reason="dirty_worktree"
        )

    def _cherry_pick(self, sha: str, *, fix_log: FixLog) -> bool:
        result = git(self._root, "cherry-pick", sha)
        if result.ok:
            return True
        fix_log.line(f"[reintegrate] cherry-pick {sha[:12]} failed: {result.stderr.strip()}")
        git(self._root, "cherry-pick", "--abort")
        return False

    def _cherry_pick_clean(self, sha: str, *, fix_log: FixLog) -> ReintegrationResult:
        if not self._cherry_pick(sha, fix_log=fix_log):
            return ReintegrationResult(applied=False, strategy="clean", failed_reason="cherry_pick")
        fix_log.line(f"[reintegrate] cherry-picked {sha[:12]} onto the workspace")
        return ReintegrationResult(applied=True, strategy="clean")

    def _stash(self, issue_id: str, sha: str, *, fix_log: FixLog) -> bool:
        before = stash_top(self._root)
        stamp = datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(timespec="seconds")
        message = f"devheal-autostash {issue_id} {sha[:12]} {stamp}"
        result = git(self._root, "stash", "push", "-u", "-m", message)
        after = stash_top(self._root)
        if not result.ok or not after or after == before:
            fix_log.line(
                f"[reintegrate] stash push did not create an entry: {result.stderr.strip()}"
            )
            return False
        fix_log.line(f"[reintegrate] stashed local changes as {after[:12]}")
        return True

    def _pop(self, *, fix_log: FixLog) -> tuple[str, ...]:
        result = git(self._root, "stash", "pop")
        if result.ok:
            fix_log.line("[reintegrate] restored local changes")
            return ()
        conflicted = unmerged_paths(self._root)
        fix_log.line("[reintegrate] stash pop hit conflicts; your changes are still in the stash")
        for path in conflicted:
            fix_log.line(f"[reintegrate]   conflicted: {path}")
        fix_log.line("[reintegrate] resolve the files above, then run `git stash drop`")
        return conflicted or ("(unknown)",)

    def _stash_and_pop(self, issue_id: str, sha: str, *, fix_log: FixLog) -> ReintegrationResult:
        if not self._stash(issue_id, sha, fix_log=fix_log):
            return ReintegrationResult(
                applied=False, strategy="stash_and_pop", failed_reason="stash_push"
            )
        if not self._cherry_pick(sha, fix_log=fix_log):
            self._pop(fix_log=fix_log)
            return ReintegrationResult(
                applied=False, strategy="stash_and_pop", failed_reason="cherry_pick"
            )
        fix_log.line(f"[reintegrate] cherry-picked {sha[:12]} onto the workspace")
        conflicted = self._pop(fix_log=fix_log)
        return ReintegrationResult(
            applied=True, strategy="stash_and_pop", conflicted_paths=conflicted
        )

    def _onto_new_branch(self, issue_id: str, sha: str, *, fix_log: FixLog) -> ReintegrationResult:
        original = current_branch(self._root)
        branch = f"{self._config.branch_prefix}{issue_id}"
        if branch_exists(self._root, branch):
            branch = f"{branch}-{to_base36(int(self._clock() * 1000))}"

        if not self._stash(issue_id, sha, fix_log=fix_log):
            return ReintegrationResult(
                applied=False, strategy="new_branch", failed_reason="stash_push"
            )

        switched = git(self._root, "switch", "-c", branch)
        if not switched.ok:
            fix_log.line(f"[reintegrate] switch -c {branch} failed: {switched.stderr.strip()}")
            self._pop(fix_log=fix_log)
            return ReintegrationResult(
                applied=False, strategy="new_branch", failed_reason="switch_branch"
            )

        picked = self._cherry_pick(sha, fix_log=fix_log)
        back = git(self._root, "switch", original)
        if not back.ok:
            fix_log.line(
                f"[reintegrate] could not switch back to {original}: {back.stderr.strip()}"
            )
        conflicted: tuple[str, ...] = ()
        if back.ok:
            conflicted = self._pop(fix_log=fix_log)
        if not picked:
            return ReintegrationResult(
                applied=False, strategy="new_branch", failed_reason="cherry_pick", branch=branch
            )
        if not back.ok:
            return ReintegrationResult(
                applied=False, strategy="new_branch", failed_reason="switch_branch", branch=branch
            )
        fix_log.line(f"[reintegrate] fix available on branch {branch}; {original} left untouched")
        return ReintegrationResult(
            applied=False, strategy="new_branch", branch=branch, conflicted_paths=conflicted
        )
