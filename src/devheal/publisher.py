from __future__ import annotations

import logging

from devheal.artifacts import FixLog
from devheal.config import FixConfig
from devheal.failures import CommitOrPushFailed, NothingToCommit
from devheal.git_ops import git, status_porcelain
from devheal.models import CommitResult, Issue, Worktree
from devheal.observability import log_event, log_warning_event


LOGGER = logging.getLogger("devheal.publisher")

_MAX_FIELD_CHARS = 140


def format_commit_message(template: str, *, issue: Issue) -> str:
    return (
        template.replace("{id}", issue.id)
        .replace("{title}", issue.title[:_MAX_FIELD_CHARS])
        .replace("{sig}", issue.signature[:_MAX_FIELD_CHARS])
    )


class CommitPublisher:
    def __init__(self, fix: FixConfig) -> None:
        self._fix = fix

    def publish(self, worktree: Worktree, issue: Issue, *, fix_log: FixLog) -> CommitResult:
        if not self._fix.auto_commit and not self._fix.auto_push:
            fix_log.line("[commit] auto-commit and auto-push disabled; leaving changes in place")
            return CommitResult(committed_sha=None)

        status = status_porcelain(worktree.path)
        if not status.ok:
            raise CommitOrPushFailed(f"git status failed:\n{status.stderr.strip()}")
        if not status.stdout.strip():
            raise NothingToCommit(
                "No changes detected after applying patch (nothing to commit)."
            )

        committed_sha: str | None = None
        if self._fix.auto_commit:
            message = format_commit_message(self._fix.commit_message_template, issue=issue)
            self._git(worktree, "add", "-A")
            self._git(worktree, "commit", "-m", message)
            committed_sha = self._git(worktree, "rev-parse", "HEAD").strip()
            fix_log.line(f"[commit] {committed_sha} {message}")
            log_event(
                LOGGER,
                "commit_created",
                issue_id=issue.id,
                branch=worktree.branch,
                sha=committed_sha,
            )

        if self._fix.auto_push:
            result = git(worktree.path, "push", "-u", self._fix.remote, worktree.branch)
            if not result.ok:
                log_warning_event(
                    LOGGER,
                    "git_push_failed",
                    issue_id=issue.id,
                    branch=worktree.branch,
                    remote=self._fix.remote,
                )
                raise CommitOrPushFailed(
                    f"git push -u {self._fix.remote} {worktree.branch} failed "
                    f"(exit {result.returncode}):\n{result.stderr.strip()}"
                )
            fix_log.line(f"[push] {self._fix.remote} {worktree.branch}")
            log_event(
                LOGGER,
                "commit_pushed",
                issue_id=issue.id,
                branch=worktree.branch,
                remote=self._fix.remote,
            )
        return CommitResult(committed_sha=committed_sha)

    def _git(self, worktree: Worktree, *args: str) -> str:
        result = git(worktree.path, *args)
        if not result.ok:
            raise CommitOrPushFailed(
                f"git {args[0]} failed (exit {result.returncode}):\n"
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        return result.stdout
