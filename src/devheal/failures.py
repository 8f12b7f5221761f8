from __future__ import annotations

from dataclasses import dataclass
import re
from typing import ClassVar, Literal


ErrorKind = Literal[
    "authentication_required",
    "malformed_patch",
    "non_applying_patch",
    "agent_failed",
    "post_fix_check_failed",
    "post_fix_blocked",
    "commit_or_push_failed",
    "nothing_to_commit",
    "worktree_setup_failed",
    "worktree_reset_failed",
    "reintegration_failed",
    "unknown",
]
NextAttemptStrategy = Literal["default", "non_streaming", "minimal_edit"]


class PipelineError(RuntimeError):
    """Base class for failures raised by fix pipeline stages."""

    kind: ClassVar[ErrorKind] = "unknown"
    retryable: ClassVar[bool] = True
    hint: ClassVar[str] = "Inspect the fix log for details."


class AuthenticationRequired(PipelineError):
    kind = "authentication_required"
    retryable = False
    hint = (
        "The patch agent needs credentials. Put the API key in the workspace "
        ".env.local/.env or log the agent in."
    )


class MalformedPatch(PipelineError):
    kind = "malformed_patch"
    hint = "The agent produced a corrupt diff."


class NonApplyingPatch(PipelineError):
    kind = "non_applying_patch"
    hint = "The agent's diff does not match the current files."

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class PatchGenerationFailed(PipelineError):
    kind = "agent_failed"
    hint = "The patch command failed or printed no diff."


class PostFixCheckFailed(PipelineError):
    kind = "post_fix_check_failed"
    hint = "A post-fix verification command failed; its output is in the fix log."


class PostFixCommandBlocked(PipelineError):
    kind = "post_fix_blocked"
    retryable = False
    hint = "Add the command to post_fix.allowlist or remove it from post_fix.commands."


class CommitOrPushFailed(PipelineError):
    kind = "commit_or_push_failed"
    hint = "Check the remote and branch permissions."


class NothingToCommit(PipelineError):
    kind = "nothing_to_commit"
    retryable = False
    hint = "The patch applied but changed nothing."


class WorktreeSetupFailed(PipelineError):
    kind = "worktree_setup_failed"
    retryable = False
    hint = "Run `git worktree prune` and check the worktrees directory."


class WorktreeResetFailed(PipelineError):
    kind = "worktree_reset_failed"


class ReintegrationFailed(PipelineError):
    kind = "reintegration_failed"
    retryable = False
    hint = "The fix is on its branch; cherry-pick it manually."


class FixAborted(RuntimeError):
    def __init__(self, *, issue_id: str, attempts: int, last_error: BaseException) -> None:
        classification = classify_failure(last_error)
        super().__init__(
            f"Fix aborted for {issue_id} after {attempts} attempt(s): {last_error}"
        )
        self.issue_id = issue_id
        self.attempts = attempts
        self.last_error = last_error
        self.kind: ErrorKind = classification.kind
        self.hint = classification.hint


@dataclass(frozen=True)
class FailureRule:
    pattern: re.Pattern[str]
    kind: ErrorKind
    strategy: NextAttemptStrategy
    retryable: bool


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    retryable: bool
    strategy: NextAttemptStrategy
    hint: str


AUTH_FAILURE_PATTERN = re.compile(
    r"authentication required|cursor-agent login|\bcursor\s+agent\s+login\b",
    re.IGNORECASE,
)

# Checked in order; the first matching rule wins.
FAILURE_RULES: tuple[FailureRule, ...] = (
    FailureRule(
        pattern=AUTH_FAILURE_PATTERN,
        kind="authentication_required",
        strategy="default",
        retryable=False,
    ),
    FailureRule(
        pattern=re.compile(
            r"corrupt patch|invalid hunk ranges|patch appears malformed", re.IGNORECASE
        ),
        kind="malformed_patch",
        strategy="non_streaming",
        retryable=True,
    ),
    FailureRule(
        pattern=re.compile(
            r"patch does not apply|already exists in working directory|patch failed:",
            re.IGNORECASE,
        ),
        kind="non_applying_patch",
        strategy="minimal_edit",
        retryable=True,
    ),
)

_HINTS_BY_KIND: dict[ErrorKind, str] = {
    "authentication_required": AuthenticationRequired.hint,
    "malformed_patch": MalformedPatch.hint,
    "non_applying_patch": NonApplyingPatch.hint,
}


def is_auth_failure(text: str) -> bool:
    return AUTH_FAILURE_PATTERN.search(text) is not None


def classify_failure(error: BaseException) -> Classification:
    if isinstance(error, FixAborted):
        return classify_failure(error.last_error)
    message = str(error)
    for rule in FAILURE_RULES:
        if rule.pattern.search(message):
            return Classification(
                kind=rule.kind,
                retryable=rule.retryable,
                strategy=rule.strategy,
                hint=_HINTS_BY_KIND[rule.kind],
            )
    if isinstance(error, PipelineError):
        return Classification(
            kind=error.kind,
            retryable=error.retryable,
            strategy="default",
            hint=error.hint,
        )
    return Classification(
        kind="unknown",
        retryable=True,
        strategy="default",
        hint=PipelineError.hint,
    )
