from __future__ import annotations

from collections.abc import Callable
import logging

from devheal.agent_runner import PatchAgentRunner
from devheal.artifacts import FixLog, IssueLedger, StateLayout, write_text
from devheal.attempts import AttemptController, AttemptPlan
from devheal.config import AppConfig
from devheal.failures import PatchGenerationFailed, WorktreeSetupFailed
from devheal.git_ops import current_branch, ensure_excluded, git
from devheal.models import (
    AttemptRecord,
    AttemptSuccess,
    FixResult,
    Issue,
    Worktree,
    safe_worktree_name,
    utc_now_iso,
)
from devheal.observability import log_event, log_warning_event
from devheal.patch_applier import PatchApplier, PatchArtifact
from devheal.patch_sanitizer import sanitize_patch
from devheal.patch_validator import validate_hunks
from devheal.post_fix import PostFixRunner
from devheal.prompts import base_prompt, compose_prompt, with_repo_context
from devheal.publisher import CommitPublisher
from devheal.reintegration import WorkspaceReintegrator
from devheal.worktrees import WorktreeManager


LOGGER = logging.getLogger("devheal.pipeline")


class FixPipeline:
    def __init__(
        self,
        config: AppConfig,
        *,
        layout: StateLayout,
        ledger: IssueLedger,
        worktrees: WorktreeManager,
        agent: PatchAgentRunner,
        applier: PatchApplier,
        post_fix: PostFixRunner,
        publisher: CommitPublisher,
        reintegrator: WorkspaceReintegrator,
        progress: Callable[[str], None] | None = None,
    ) -> None:
        self._config = config
        self._root = config.workspace.root
        self._layout = layout
        self._ledger = ledger
        self._worktrees = worktrees
        self._agent = agent
        self._applier = applier
        self._post_fix = post_fix
        self._publisher = publisher
        self._reintegrator = reintegrator
        self._progress = progress

    @classmethod
    def from_config(
        cls, config: AppConfig, *, progress: Callable[[str], None] | None = None
    ) -> FixPipeline:
        root = config.workspace.root
        layout = StateLayout(workspace_root=root, state_dir_name=config.workspace.state_dir)
        return cls(
            config,
            layout=layout,
            ledger=IssueLedger(layout.ledger_path),
            worktrees=WorktreeManager(repo_root=root, layout=layout, fix=config.fix),
            agent=PatchAgentRunner(config.agent, workspace_root=root, progress=progress),
            applier=PatchApplier(),
            post_fix=PostFixRunner(config.post_fix, state_dir_name=config.workspace.state_dir),
            publisher=CommitPublisher(config.fix),
            reintegrator=WorkspaceReintegrator(config.reintegration, repo_root=root),
            progress=progress,
        )

    @property
    def layout(self) -> StateLayout:
        return self._layout

    @property
    def ledger(self) -> IssueLedger:
        return self._ledger

    def fix_log_for(self, issue_id: str) -> FixLog:
        return FixLog(self._layout.fix_log_path(issue_id), listener=self._progress)

    def run(self, issue: Issue) -> FixResult:
        self._layout.ensure()
        ensure_excluded(self._root, f"/{self._config.workspace.state_dir.strip('/')}/")
        fix_log = self.fix_log_for(issue.id)
        head = git(self._root, "rev-parse", "HEAD")
        if not head.ok:
            raise WorktreeSetupFailed(
                f"Cannot resolve HEAD in {self._root}: {head.stderr.strip()}"
            )
        base_ref = head.stdout.strip()
        branch = f"{self._config.fix.branch_prefix}{safe_worktree_name(issue.id)}"
        use_worktrees = self._config.fix.use_worktrees
        fix_log.start(
            [
                "=== devheal fix start ===",
                f"id: {issue.id}",
                f"title: {issue.title}",
                f"source: {issue.source}",
                f"kind: {issue.kind}",
                f"signature: {issue.signature}",
                f"base ref: {base_ref}",
                f"branch: {branch}",
                f"use worktrees: {'yes' if use_worktrees else 'no'}",
                f"started: {utc_now_iso()}",
            ]
        )
        log_event(LOGGER, "issue_started", issue_id=issue.id, branch=branch, base_ref=base_ref)

        worktree: Worktree | None = None
        success = False
        try:
            if use_worktrees:
                try:
                    worktree = self._worktrees.ensure(issue.id, base_ref=base_ref, branch=branch)
                except WorktreeSetupFailed as exc:
                    fix_log.line(f"[worktree] setup failed: {exc}")
                    raise
                workdir = worktree.path
                fix_log.line(f"cwd: {workdir}")
            else:
                workdir = self._root
                fix_log.line(f"cwd: {workdir} (in place)")

            target = worktree or Worktree(
                path=workdir, branch=current_branch(workdir), base_ref=base_ref
            )

            def run_attempt(plan: AttemptPlan) -> AttemptSuccess:
                return self._run_attempt(issue, plan, target, fix_log, reset=worktree is not None)

            controller = AttemptController(
                issue_id=issue.id,
                max_attempts=self._config.fix.max_attempts,
                run_attempt=run_attempt,
                fix_log=fix_log,
                record=self._record_attempt,
                on_attempt_start=lambda number: self._ledger.append(
                    {
                        "id": issue.id,
                        "at": utc_now_iso(),
                        "event": "attempt_start",
                        "attempt": number,
                        "branch": branch,
                    }
                ),
                on_attempt_error=lambda number, exc: write_text(
                    self._layout.error_path(issue.id, attempt=number), f"{exc}\n"
                ),
            )
            attempt_success = controller.run()
            success = True
            log_event(
                LOGGER,
                "issue_finished",
                issue_id=issue.id,
                attempts=len(controller.outcomes),
                sha=attempt_success.commit.committed_sha,
            )
            return FixResult(
                issue_id=issue.id,
                branch=target.branch,
                workdir=workdir,
                commit=attempt_success.commit,
                reintegration=attempt_success.reintegration,
                attempts=len(controller.outcomes),
            )
        finally:
            fix_log.close_result(success)
            self._ledger.append(
                {
                    "id": issue.id,
                    "at": utc_now_iso(),
                    "event": "finished",
                    "outcome": "success" if success else "failed",
                    "branch": branch,
                }
            )
            if worktree is not None:
                try:
                    self._worktrees.apply_retention(worktree, success=success)
                except Exception as exc:  # noqa: BLE001
                    log_warning_event(
                        LOGGER,
                        "worktree_retention_failed",
                        issue_id=issue.id,
                        error_type=type(exc).__name__,
                    )

    def _record_attempt(self, record: AttemptRecord) -> None:
        entry: dict[str, object] = {
            "id": record.issue_id,
            "at": utc_now_iso(),
            "event": "attempt",
            "attempt": record.number,
            "outcome": "pushed" if record.outcome == "success" else "failed",
        }
        if record.error is not None:
            entry["error"] = record.error
            entry["error_kind"] = record.error_kind
        self._ledger.append(entry)

    def _run_attempt(
        self,
        issue: Issue,
        plan: AttemptPlan,
        worktree: Worktree,
        fix_log: FixLog,
        *,
        reset: bool,
    ) -> AttemptSuccess:
        workdir = worktree.path
        if reset:
            self._worktrees.reset(worktree)

        base = base_prompt(issue, file_root=workdir)
        write_text(self._layout.prompt_path(issue.id), base)
        core = compose_prompt(base, plan.addenda)
        prompt = with_repo_context(core, cwd=workdir, base_ref=worktree.base_ref)
        fix_log.line(f"[prompt] {len(prompt)} chars -> {self._layout.prompt_path(issue.id)}")

        raw = self._agent.generate(
            prompt,
            issue_id=issue.id,
            attempt=plan.number,
            cwd=workdir,
            fix_log=fix_log,
            overrides=plan.overrides,
        )
        artifact = self._prepare_artifact(issue.id, plan.number, raw, fix_log)
        self._applier.apply(workdir, artifact, fix_log=fix_log)
        self._post_fix.run(workdir, fix_log=fix_log)
        commit = self._publisher.publish(worktree, issue, fix_log=fix_log)

        reintegration = None
        if reset and commit.committed_sha:
            reintegration = self._reintegrator.reintegrate(
                issue_id=issue.id, committed_sha=commit.committed_sha, fix_log=fix_log
            )
        return AttemptSuccess(commit=commit, reintegration=reintegration)

    def _prepare_artifact(
        self, issue_id: str, attempt: int, raw: str, fix_log: FixLog
    ) -> PatchArtifact:
        sanitized = sanitize_patch(raw)
        if "diff --git " not in sanitized.patch:
            raise PatchGenerationFailed("Patch output did not contain a git diff after sanitizing")
        validation = validate_hunks(sanitized.patch)
        artifact = PatchArtifact(raw=raw, sanitized=sanitized, validation=validation)

        patch_path = write_text(
            self._layout.patch_path(issue_id, attempt=attempt), sanitized.patch
        )
        if sanitized.changed:
            write_text(self._layout.patch_path(issue_id, attempt=attempt, raw=True), raw)
            fix_log.line(f"[patch] sanitized: {sanitized.stats_line()}")
        if not validation.ok:
            fix_log.line(
                f"[patch] validator flagged {len(validation.errors)} hunk(s); "
                "git apply --check decides"
            )
        fix_log.line(f"[patch] saved {patch_path}")
        return artifact

