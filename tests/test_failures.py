from __future__ import annotations

import pytest

from devheal.failures import (
    FAILURE_RULES,
    AuthenticationRequired,
    CommitOrPushFailed,
    FixAborted,
    MalformedPatch,
    NonApplyingPatch,
    NothingToCommit,
    PatchGenerationFailed,
    PostFixCommandBlocked,
    WorktreeSetupFailed,
    classify_failure,
    is_auth_failure,
)


@pytest.mark.parametrize(
    "text",
    [
        "Error: Authentication required. Please run cursor-agent login",
        "please run `cursor agent login` first",
        "AUTHENTICATION REQUIRED",
    ],
)
def test_is_auth_failure_matches_login_prompts(text: str) -> None:
    assert is_auth_failure(text)


def test_is_auth_failure_ignores_unrelated_text() -> None:
    assert not is_auth_failure("TypeError: cannot read properties of undefined")


def test_failure_rules_are_ordered_auth_first() -> None:
    assert [rule.kind for rule in FAILURE_RULES] == [
        "authentication_required",
        "malformed_patch",
        "non_applying_patch",
    ]


def test_classify_text_rules_win_over_exception_type() -> None:
    # Auth text inside a generation failure is still an auth failure.
    error = PatchGenerationFailed("Patch command failed: code 1\nAuthentication required")
    classification = classify_failure(error)

    assert classification.kind == "authentication_required"
    assert classification.retryable is False


@pytest.mark.parametrize(
    ("error", "kind", "strategy"),
    [
        (RuntimeError("error: corrupt patch at line 12"), "malformed_patch", "non_streaming"),
        (RuntimeError("invalid hunk ranges"), "malformed_patch", "non_streaming"),
        (
            RuntimeError("error: src/a.ts: patch does not apply"),
            "non_applying_patch",
            "minimal_edit",
        ),
        (
            RuntimeError("error: src/new.ts: already exists in working directory"),
            "non_applying_patch",
            "minimal_edit",
        ),
        (RuntimeError("error: patch failed: src/a.ts:3"), "non_applying_patch", "minimal_edit"),
    ],
)
def test_classify_patch_failures(error: Exception, kind: str, strategy: str) -> None:
    classification = classify_failure(error)

    assert classification.kind == kind
    assert classification.strategy == strategy
    assert classification.retryable is True


@pytest.mark.parametrize(
    ("error", "kind", "retryable"),
    [
        (AuthenticationRequired("login"), "authentication_required", False),
        (MalformedPatch("bad"), "malformed_patch", True),
        (NonApplyingPatch("stale"), "non_applying_patch", True),
        (PostFixCommandBlocked("blocked"), "post_fix_blocked", False),
        (CommitOrPushFailed("rejected"), "commit_or_push_failed", True),
        (NothingToCommit("nothing"), "nothing_to_commit", False),
        (WorktreeSetupFailed("exists"), "worktree_setup_failed", False),
        (ValueError("surprise"), "unknown", True),
    ],
)
def test_classify_by_exception_type(error: Exception, kind: str, retryable: bool) -> None:
    classification = classify_failure(error)

    assert classification.kind == kind
    assert classification.retryable is retryable
    assert classification.hint


def test_fix_aborted_carries_last_error_classification() -> None:
    last = NonApplyingPatch("error: a.py: patch does not apply", diagnostics="diag")
    aborted = FixAborted(issue_id="dh_1", attempts=3, last_error=last)

    assert str(aborted).startswith("Fix aborted for dh_1 after 3 attempt(s): ")
    assert aborted.kind == "non_applying_patch"
    assert aborted.attempts == 3
    assert classify_failure(aborted).kind == "non_applying_patch"
    assert last.diagnostics == "diag"
