from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from devheal.attempts import AttemptController, AttemptPlan
from devheal.artifacts import FixLog
from devheal.failures import (
    AuthenticationRequired,
    FixAborted,
    NonApplyingPatch,
    PatchGenerationFailed,
    PostFixCheckFailed,
)
from devheal.models import AttemptRecord, AttemptSuccess, CommitResult
from devheal.prompts import MALFORMED_OUTPUT_NOTICE


SUCCESS = AttemptSuccess(commit=CommitResult(committed_sha="abc123"), reintegration=None)


def _fix_log(tmp_path: Path) -> FixLog:
    log = FixLog(tmp_path / "fix.log")
    log.start(["=== devheal fix start ==="])
    return log


class ScriptedAttempts:
    def __init__(self, *outcomes: BaseException | AttemptSuccess) -> None:
        self.outcomes = list(outcomes)
        self.plans: list[AttemptPlan] = []

    def __call__(self, plan: AttemptPlan) -> AttemptSuccess:
        self.plans.append(plan)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def test_first_attempt_success(tmp_path: Path) -> None:
    run_attempt = ScriptedAttempts(SUCCESS)
    records: list[AttemptRecord] = []
    controller = AttemptController(
        issue_id="dh_1",
        max_attempts=3,
        run_attempt=run_attempt,
        fix_log=_fix_log(tmp_path),
        record=records.append,
    )

    assert controller.run() is SUCCESS
    assert controller.history == ["idle", "attempting", "success"]
    assert run_attempt.plans[0].addenda == ()
    assert records == [AttemptRecord(issue_id="dh_1", number=1, outcome="success")]


@pytest.mark.parametrize(
    ("make_error", "message", "kind"),
    [
        (PatchGenerationFailed, "Patch command failed: code {n}", "agent_failed"),
        (NonApplyingPatch, "error: src/x{n}.ts: patch does not apply", "non_applying_patch"),
    ],
)
def test_three_failures_abort_with_last_error(
    tmp_path: Path, make_error: Callable[[str], Exception], message: str, kind: str
) -> None:
    errors = [make_error(message.format(n=n)) for n in (1, 2, 3)]
    run_attempt = ScriptedAttempts(*errors)
    started: list[int] = []
    log = _fix_log(tmp_path)
    controller = AttemptController(
        issue_id="dh_1",
        max_attempts=3,
        run_attempt=run_attempt,
        fix_log=log,
        on_attempt_start=started.append,
    )

    with pytest.raises(FixAborted) as exc_info:
        controller.run()

    assert exc_info.value.attempts == 3
    assert exc_info.value.last_error is errors[2]
    assert exc_info.value.kind == kind
    assert started == [1, 2, 3]
    assert len(run_attempt.plans) == 3
    assert controller.state == "aborted"
    assert controller.history[-2:] == ["retryable_failure", "aborted"]
    assert [outcome.ok for outcome in controller.outcomes] == [False, False, False]
    # Each retry carries the previous failure.
    assert run_attempt.plans[0].addenda == ()
    assert f">> {message.format(n=1)}" in run_attempt.plans[1].addenda[-1]
    assert f">> {message.format(n=2)}" in run_attempt.plans[2].addenda[-1]
    content = log.path.read_text(encoding="utf-8")
    assert "[attempt 1/3] starting" in content
    assert f"[attempt 3/3] failed ({kind}): {message.format(n=3)}" in content


def test_retry_then_success(tmp_path: Path) -> None:
    run_attempt = ScriptedAttempts(PatchGenerationFailed("no diff"), SUCCESS)
    controller = AttemptController(
        issue_id="dh_1", max_attempts=3, run_attempt=run_attempt, fix_log=_fix_log(tmp_path)
    )

    assert controller.run() is SUCCESS
    assert len(controller.outcomes) == 2
    assert run_attempt.plans[1].number == 2


def test_malformed_patch_switches_to_strict_non_streaming_mode(tmp_path: Path) -> None:
    run_attempt = ScriptedAttempts(
        PatchGenerationFailed("git apply --check failed: code 128\nerror: corrupt patch at line 9"),
        SUCCESS,
    )
    controller = AttemptController(
        issue_id="dh_1", max_attempts=2, run_attempt=run_attempt, fix_log=_fix_log(tmp_path)
    )

    controller.run()

    plan = run_attempt.plans[1]
    assert plan.addenda[0] == MALFORMED_OUTPUT_NOTICE
    assert plan.overrides.explain_mode == "none"
    assert plan.overrides.stream_partial is False


def test_non_applying_patch_adds_minimal_edit_rules(tmp_path: Path) -> None:
    run_attempt = ScriptedAttempts(
        NonApplyingPatch("error: src/a.ts: patch does not apply"),
        SUCCESS,
    )
    controller = AttemptController(
        issue_id="dh_1", max_attempts=2, run_attempt=run_attempt, fix_log=_fix_log(tmp_path)
    )

    controller.run()

    addenda = run_attempt.plans[1].addenda
    assert "Do NOT rewrite entire files." in addenda[0]
    assert "smallest possible targeted edits" in addenda[0]
    assert addenda[1].startswith("Previous attempt failed.")


def test_post_fix_failure_includes_fix_log_tail(tmp_path: Path) -> None:
    log = _fix_log(tmp_path)
    log.line("FAIL src/app.test.ts > renders header")

    run_attempt = ScriptedAttempts(
        PostFixCheckFailed("post-fix command failed: npm test\nexit: 1"),
        SUCCESS,
    )
    controller = AttemptController(
        issue_id="dh_1", max_attempts=2, run_attempt=run_attempt, fix_log=log
    )

    controller.run()

    details = run_attempt.plans[1].addenda[-1]
    assert "Last attempt fix log excerpt (tail):" in details
    assert "FAIL src/app.test.ts > renders header" in details


def test_authentication_failure_is_fatal(tmp_path: Path) -> None:
    run_attempt = ScriptedAttempts(AuthenticationRequired("Authentication required"), SUCCESS)
    records: list[AttemptRecord] = []
    controller = AttemptController(
        issue_id="dh_1",
        max_attempts=3,
        run_attempt=run_attempt,
        fix_log=_fix_log(tmp_path),
        record=records.append,
    )

    with pytest.raises(FixAborted) as exc_info:
        controller.run()

    assert exc_info.value.kind == "authentication_required"
    assert exc_info.value.attempts == 1
    assert len(run_attempt.plans) == 1
    assert controller.history == ["idle", "attempting", "fatal_failure", "aborted"]
    assert records[0].error_kind == "authentication_required"


def test_controller_runs_once(tmp_path: Path) -> None:
    controller = AttemptController(
        issue_id="dh_1",
        max_attempts=1,
        run_attempt=ScriptedAttempts(SUCCESS),
        fix_log=_fix_log(tmp_path),
    )
    controller.run()

    with pytest.raises(RuntimeError, match="already ran"):
        controller.run()


def test_max_attempts_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        AttemptController(
            issue_id="dh_1",
            max_attempts=0,
            run_attempt=ScriptedAttempts(),
            fix_log=_fix_log(tmp_path),
        )
