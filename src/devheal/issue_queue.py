from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time
from typing import Literal, Protocol

from devheal.artifacts import IssueLedger, StateLayout, write_text
from devheal.failures import classify_failure
from devheal.models import FixResult, Issue, new_issue_id, utc_now_iso
from devheal.observability import log_event, log_warning_event


LOGGER = logging.getLogger("devheal.issue_queue")

QueueDecision = Literal["retry", "skip", "login", "open_log"]


class Clock(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()


class FixRunner(Protocol):
    def run(self, issue: Issue) -> FixResult: ...


@dataclass(frozen=True)
class FailureReport:
    issue: Issue
    error: BaseException
    kind: str
    hint: str
    log_path: str

    @property
    def auth_required(self) -> bool:
        return self.kind == "authentication_required"


class IssueQueue:
    """Serial FIFO of issues; one issue is attempted at a time."""

    def __init__(
        self,
        pipeline: FixRunner,
        *,
        layout: StateLayout,
        ledger: IssueLedger,
        decide: Callable[[FailureReport], QueueDecision],
        on_login: Callable[[FailureReport], None] | None = None,
        on_open_log: Callable[[FailureReport], None] | None = None,
        clock: Clock | None = None,
        auth_resume_delay_seconds: float = 15.0,
        enabled: bool = True,
    ) -> None:
        self._pipeline = pipeline
        self._layout = layout
        self._ledger = ledger
        self._decide = decide
        self._on_login = on_login
        self._on_open_log = on_open_log
        self._clock = clock or SystemClock()
        self._auth_resume_delay = auth_resume_delay_seconds
        self._enabled = enabled
        self._pending: deque[Issue] = deque()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running = False
        self._paused = False
        self._resume_scheduled = False
        self._active: Issue | None = None
        self.results: list[FixResult] = []

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active(self) -> Issue | None:
        return self._active

    def pending(self) -> tuple[Issue, ...]:
        with self._lock:
            return tuple(self._pending)

    def enqueue(self, issue: Issue, *, front: bool = False, record: bool = True) -> int:
        if not self._enabled:
            log_event(LOGGER, "issue_dropped_queue_disabled", issue_id=issue.id)
            return -1
        if record:
            self._ledger.append(
                {
                    "id": issue.id,
                    "at": issue.enqueued_at,
                    "source": issue.source,
                    "type": issue.kind,
                    "sig": issue.signature,
                    "title": issue.title,
                }
            )
        with self._lock:
            if front:
                self._pending.appendleft(issue)
                position = 0
            else:
                self._pending.append(issue)
                position = len(self._pending) - 1
        log_event(LOGGER, "issue_enqueued", issue_id=issue.id, position=position, front=front)
        return position

    def drain(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        try:
            while True:
                with self._lock:
                    if self._paused or not self._pending:
                        break
                    issue = self._pending.popleft()
                    self._active = issue
                self._process(issue)
        finally:
            with self._lock:
                self._active = None
                self._running = False
                self._idle.notify_all()

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is running, pending or waiting on a resume."""
        with self._lock:
            return self._idle.wait_for(
                lambda: not self._running
                and not self._resume_scheduled
                and (not self._pending or self._paused),
                timeout=timeout,
            )

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        log_event(LOGGER, "queue_paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._resume_scheduled = False
            self._idle.notify_all()
        log_event(LOGGER, "queue_resumed")
        self.drain()

    def _process(self, issue: Issue) -> None:
        log_event(LOGGER, "issue_started", issue_id=issue.id, title=issue.title)
        try:
            result = self._pipeline.run(issue)
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(issue, exc)
            return
        self.results.append(result)

    def _handle_failure(self, issue: Issue, error: Exception) -> None:
        classification = classify_failure(error)
        write_text(
            self._layout.error_path(issue.id),
            f"kind: {classification.kind}\nhint: {classification.hint}\n\n{error}\n",
        )
        report = FailureReport(
            issue=issue,
            error=error,
            kind=classification.kind,
            hint=classification.hint,
            log_path=str(self._layout.fix_log_path(issue.id)),
        )
        log_warning_event(
            LOGGER,
            "issue_failed",
            issue_id=issue.id,
            kind=classification.kind,
            error_type=type(error).__name__,
        )

        decision = self._decide(report)
        while decision == "open_log":
            if self._on_open_log is not None:
                self._on_open_log(report)
            decision = self._decide(report)

        if decision == "retry":
            self.enqueue(issue, front=True, record=False)
        elif decision == "login":
            self._pause_for_login(report)
        else:
            log_event(LOGGER, "issue_skipped", issue_id=issue.id, kind=classification.kind)

    def _pause_for_login(self, report: FailureReport) -> None:
        if self._on_login is not None:
            self._on_login(report)
        self.enqueue(report.issue, front=True, record=False)
        with self._lock:
            self._paused = True
            schedule = not self._resume_scheduled
            self._resume_scheduled = True
        log_event(
            LOGGER,
            "queue_paused",
            issue_id=report.issue.id,
            resume_in_seconds=self._auth_resume_delay,
            scheduled=schedule,
        )
        if schedule:
            self._clock.call_later(self._auth_resume_delay, self.resume)

    def rerun_last(self) -> Issue | None:
        """Re-enqueue the most recent issue's saved prompt under a new id."""
        entry = self._ledger.latest_issue()
        if entry is None:
            return None
        previous_id = str(entry["id"])
        prompt_path = self._layout.prompt_path(previous_id)
        if not prompt_path.is_file():
            log_warning_event(LOGGER, "rerun_prompt_missing", issue_id=previous_id)
            return None
        prompt = prompt_path.read_text(encoding="utf-8")
        issue = Issue(
            id=new_issue_id(),
            title=f"Rerun ({previous_id})",
            source=str(entry.get("source") or "rerun"),
            signature=str(entry.get("sig")),
            kind=str(entry.get("kind") or entry.get("type") or "runtime"),
            prompt_text=prompt,
            enqueued_at=utc_now_iso(),
        )
        write_text(self._layout.prompt_path(issue.id), prompt)
        self._ledger.append(
            {
                "id": issue.id,
                "at": issue.enqueued_at,
                "source": issue.source,
                "type": "rerun",
                "kind": issue.kind,
                "sig": issue.signature,
                "title": issue.title,
                "rerun_of": previous_id,
            }
        )
        self.enqueue(issue, record=False)
        return issue
