from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Literal

from devheal.agent_runner import AgentOverrides
from devheal.artifacts import FixLog
from devheal.failures import (
    Classification,
    FixAborted,
    NextAttemptStrategy,
    PostFixCheckFailed,
    classify_failure,
)
from devheal.models import AttemptRecord, AttemptSuccess
from devheal.observability import log_event, log_warning_event
from devheal.prompts import MALFORMED_OUTPUT_NOTICE, MINIMAL_EDIT_RULES, failure_details_block


LOGGER = logging.getLogger("devheal.attempts")

ControllerState = Literal[
    "idle", "attempting", "success", "retryable_failure", "fatal_failure", "aborted"
]

_CHECKS_TAIL_LINES = 220
_STRICT_OVERRIDES = AgentOverrides(explain_mode="none", stream_partial=False)
_STRATEGY_NOTICES: dict[NextAttemptStrategy, str] = {
    "default": "",
    "non_streaming": MALFORMED_OUTPUT_NOTICE,
    "minimal_edit": MINIMAL_EDIT_RULES,
}


@dataclass(frozen=True)
class AttemptPlan:
    number: int
    max_attempts: int
    addenda: tuple[str, ...] = ()
    overrides: AgentOverrides = AgentOverrides()


@dataclass(frozen=True)
class AttemptOutcome:
    number: int
    success: AttemptSuccess | None = None
    error: BaseException | None = None
    classification: Classification | None = None

    @property
    def ok(self) -> bool:
        return self.success is not None


class AttemptController:
    """Drive one issue through at most ``max_attempts`` attempts.

    ``run_attempt`` performs one full attempt for a plan and either returns
    an ``AttemptSuccess`` or raises. Each raised error is classified and
    turned into the plan for the next attempt.
    """

    def __init__(
        self,
        *,
        issue_id: str,
        max_attempts: int,
        run_attempt: Callable[[AttemptPlan], AttemptSuccess],
        fix_log: FixLog,
        record: Callable[[AttemptRecord], None] | None = None,
        on_attempt_start: Callable[[int], None] | None = None,
        on_attempt_error: Callable[[int, BaseException], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.issue_id = issue_id
        self.max_attempts = max_attempts
        self._run_attempt = run_attempt
        self._fix_log = fix_log
        self._record = record
        self._on_attempt_start = on_attempt_start
        self._on_attempt_error = on_attempt_error
        self.state: ControllerState = "idle"
        self.history: list[ControllerState] = ["idle"]
        self.outcomes: list[AttemptOutcome] = []

    def _enter(self, state: ControllerState) -> None:
        self.state = state
        self.history.append(state)

    def run(self) -> AttemptSuccess:
        if self.state != "idle":
            raise RuntimeError(f"AttemptController already ran (state={self.state})")
        plan = AttemptPlan(number=1, max_attempts=self.max_attempts)
        while True:
            self._enter("attempting")
            outcome = self._attempt(plan)
            self.outcomes.append(outcome)
            if outcome.success is not None:
                self._enter("success")
                return outcome.success

            assert outcome.error is not None and outcome.classification is not None
            classification = outcome.classification
            if not classification.retryable:
                self._enter("fatal_failure")
                self._enter("aborted")
                raise FixAborted(
                    issue_id=self.issue_id, attempts=plan.number, last_error=outcome.error
                ) from outcome.error

            self._enter("retryable_failure")
            if plan.number >= self.max_attempts:
                self._enter("aborted")
                raise FixAborted(
                    issue_id=self.issue_id, attempts=plan.number, last_error=outcome.error
                ) from outcome.error
            plan = self._next_plan(plan, outcome)

    def _attempt(self, plan: AttemptPlan) -> AttemptOutcome:
        label = f"[attempt {plan.number}/{plan.max_attempts}]"
        self._fix_log.line(f"{label} starting")
        if self._on_attempt_start is not None:
            self._on_attempt_start(plan.number)
        try:
            success = self._run_attempt(plan)
        except Exception as exc:  # noqa: BLE001
            classification = classify_failure(exc)
            self._fix_log.line(f"{label} failed ({classification.kind}): {exc}")
            log_warning_event(
                LOGGER,
                "attempt_failed",
                issue_id=self.issue_id,
                attempt=plan.number,
                kind=classification.kind,
                retryable=classification.retryable,
                error_type=type(exc).__name__,
            )
            if self._on_attempt_error is not None:
                self._on_attempt_error(plan.number, exc)
            if self._record is not None:
                self._record(
                    AttemptRecord(
                        issue_id=self.issue_id,
                        number=plan.number,
                        outcome="failed",
                        error=str(exc),
                        error_kind=classification.kind,
                    )
                )
            return AttemptOutcome(number=plan.number, error=exc, classification=classification)

        self._fix_log.line(f"{label} success")
        log_event(LOGGER, "attempt_succeeded", issue_id=self.issue_id, attempt=plan.number)
        if self._record is not None:
            self._record(
                AttemptRecord(issue_id=self.issue_id, number=plan.number, outcome="success")
            )
        return AttemptOutcome(number=plan.number, success=success)

    def _next_plan(self, plan: AttemptPlan, outcome: AttemptOutcome) -> AttemptPlan:
        assert outcome.error is not None and outcome.classification is not None
        strategy = outcome.classification.strategy
        overrides = plan.overrides
        addenda: list[str] = []
        notice = _STRATEGY_NOTICES[strategy]
        if notice:
            overrides = _STRICT_OVERRIDES
            addenda.append(notice)
            self._fix_log.line(
                f"[attempt {plan.number}/{plan.max_attempts}] next attempt uses strategy {strategy}"
            )
        checks_tail = ""
        if isinstance(outcome.error, PostFixCheckFailed) or "post-fix command failed:" in str(
            outcome.error
        ):
            checks_tail = self._fix_log.tail_lines(_CHECKS_TAIL_LINES)
        addenda.append(failure_details_block(str(outcome.error), checks_tail=checks_tail))
        return AttemptPlan(
            number=plan.number + 1,
            max_attempts=plan.max_attempts,
            addenda=tuple(addenda),
            overrides=overrides,
        )
