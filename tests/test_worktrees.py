from __future__ import annotations

import os
from pathlib import Path

import pytest

from devheal.artifacts import StateLayout
from devheal.config import FixConfig
from devheal.failures import WorktreeSetupFailed
from devheal.git_ops import head_sha as git_head
from devheal.models import Worktree
from devheal.worktrees import WorktreeManager, WorktreePathError

from conftest import GitRepo


def _manager(repo: GitRepo, **fix_overrides: object) -> WorktreeManager:
    layout = StateLayout(workspace_root=repo.path)
    layout.ensure()
    fix = FixConfig(**fix_overrides)  # type: ignore[arg-type]
    return WorktreeManager(repo_root=repo.path, layout=layout, fix=fix)


def _fail(manager: WorktreeManager, issue_id: str, *, age: float) -> Worktree:
    base = git_head(manager.repo_root)
    worktree = manager.ensure(issue_id, base_ref=base, branch=f"devheal/{issue_id}")
    log_path = manager.layout.fix_log_path(issue_id)
    log_path.write_text("=== devheal fix end ===\n[result] failed\n", encoding="utf-8")
    stamp = 1_700_000_000 + age
    os.utime(log_path, (stamp, stamp))
    os.utime(worktree.path, (stamp, stamp))
    return worktree


def test_ensure_creates_then_reuses_worktree(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    base = git_repo.head()

    created = manager.ensure("dh_abc", base_ref=base, branch="devheal/dh_abc")
    assert created.path == git_repo.path / ".devheal" / "worktrees" / "dh_abc"
    assert (created.path / "README.md").read_text(encoding="utf-8") == "hello\n"
    assert git_repo.git("-C", str(created.path), "rev-parse", "--abbrev-ref", "HEAD").strip() == (
        "devheal/dh_abc"
    )

    (created.path / "scratch.txt").write_text("keep me", encoding="utf-8")
    reused = manager.ensure("dh_abc", base_ref=base, branch="devheal/dh_abc")
    assert reused.path == created.path
    assert (reused.path / "scratch.txt").exists()


def test_ensure_refuses_plain_directory(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    manager.path_for("dh_plain").mkdir(parents=True)

    with pytest.raises(WorktreeSetupFailed, match="not a git worktree"):
        manager.ensure("dh_plain", base_ref=git_repo.head(), branch="devheal/dh_plain")


def test_reset_discards_changes_and_untracked_files(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    worktree = manager.ensure("dh_reset", base_ref=git_repo.head(), branch="devheal/dh_reset")
    (worktree.path / "README.md").write_text("changed\n", encoding="utf-8")
    (worktree.path / "new.txt").write_text("new\n", encoding="utf-8")

    manager.reset(worktree)

    assert (worktree.path / "README.md").read_text(encoding="utf-8") == "hello\n"
    assert not (worktree.path / "new.txt").exists()


def test_assert_managed_refuses_paths_outside_root(git_repo: GitRepo, tmp_path: Path) -> None:
    manager = _manager(git_repo)

    with pytest.raises(WorktreePathError):
        manager.assert_managed(tmp_path / "elsewhere")
    with pytest.raises(WorktreePathError):
        manager.assert_managed(manager.root)
    with pytest.raises(WorktreePathError):
        manager.remove(manager.root / ".." / ".." / "README.md")
    assert (git_repo.path / "README.md").exists()


def test_successful_worktree_is_removed(git_repo: GitRepo) -> None:
    manager = _manager(git_repo, retain_on_success=0)
    worktree = manager.ensure("dh_ok", base_ref=git_repo.head(), branch="devheal/dh_ok")

    manager.apply_retention(worktree, success=True)

    assert not worktree.path.exists()
    assert "dh_ok" not in git_repo.git("worktree", "list")


def test_cleanup_disabled_keeps_everything(git_repo: GitRepo) -> None:
    manager = _manager(git_repo, cleanup_worktrees=False)
    worktree = manager.ensure("dh_keep", base_ref=git_repo.head(), branch="devheal/dh_keep")

    manager.apply_retention(worktree, success=True)

    assert worktree.path.exists()


def test_failed_worktrees_are_capped_at_retain_on_failure(git_repo: GitRepo) -> None:
    manager = _manager(git_repo, retain_on_failure=2)
    _fail(manager, "dh_one", age=10)
    _fail(manager, "dh_two", age=20)
    _fail(manager, "dh_three", age=30)
    current = _fail(manager, "dh_four", age=40)

    manager.apply_retention(current, success=False)

    remaining = sorted(path.name for path in manager.list_dirs())
    assert remaining == ["dh_four", "dh_three"]


def test_prune_failed_ignores_successful_and_unknown(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    _fail(manager, "dh_old", age=1)
    _fail(manager, "dh_new", age=2)
    good = manager.ensure("dh_good", base_ref=git_repo.head(), branch="devheal/dh_good")
    manager.layout.fix_log_path("dh_good").write_text("[result] success\n", encoding="utf-8")
    manager.ensure("dh_unknown", base_ref=git_repo.head(), branch="devheal/dh_unknown")

    removed = manager.prune_failed(keep=1)

    assert [path.name for path in removed] == ["dh_old"]
    assert good.path.exists()
    assert manager.path_for("dh_unknown").exists()
    assert manager.activity(manager.path_for("dh_new")).outcome == "failed"


def test_infer_outcome_reads_newest_matching_log(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    worktree = _fail(manager, "dh_twice", age=5)
    assert manager.infer_outcome(worktree.path) == "failed"

    retry_log = manager.layout.fix_logs_dir / "dh_twice.retry.log"
    retry_log.write_text("[result] success\n", encoding="utf-8")

    assert manager.infer_outcome(worktree.path) == "success"
    assert manager.infer_outcome(manager.path_for("dh_none")) == "unknown"
