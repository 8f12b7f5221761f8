from __future__ import annotations

from pathlib import Path

from devheal.shell import CommandResult, capture, run


def git(cwd: Path, *args: str, input_text: str | None = None) -> CommandResult:
    """Run git in ``cwd`` and return the result without raising on failure."""
    return capture(["git", "-C", str(cwd), *args], input_text=input_text)


def git_checked(cwd: Path, *args: str, input_text: str | None = None) -> str:
    return run(["git", "-C", str(cwd), *args], input_text=input_text)


def head_sha(cwd: Path) -> str:
    return git_checked(cwd, "rev-parse", "HEAD").strip()


def current_branch(cwd: Path) -> str:
    return git_checked(cwd, "rev-parse", "--abbrev-ref", "HEAD").strip()


def status_porcelain(cwd: Path) -> CommandResult:
    return git(cwd, "status", "--porcelain")


def is_worktree_root(path: Path) -> bool:
    """True when ``path`` is the top level of its own git working tree.

    A plain directory nested inside another checkout reports that checkout
    as its top level, which does not count.
    """
    inside = git(path, "rev-parse", "--is-inside-work-tree")
    if not inside.ok or inside.stdout.strip() != "true":
        return False
    toplevel = git(path, "rev-parse", "--show-toplevel")
    if not toplevel.ok:
        return False
    return Path(toplevel.stdout.strip()).resolve() == path.resolve()


def stash_top(cwd: Path) -> str:
    result = git(cwd, "stash", "list", "-1", "--format=%H")
    if not result.ok:
        return ""
    return result.stdout.strip()


def unmerged_paths(cwd: Path) -> tuple[str, ...]:
    result = git(cwd, "diff", "--name-only", "--diff-filter=U")
    if not result.ok:
        return ()
    return tuple(line.strip() for line in result.stdout.splitlines() if line.strip())


def branch_exists(cwd: Path, branch: str) -> bool:
    return git(cwd, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}").ok


def is_tracked(cwd: Path, rel_path: str) -> bool:
    return git(cwd, "ls-files", "--error-unmatch", "--", rel_path).ok


def parse_porcelain_paths(status_text: str) -> tuple[str, ...]:
    paths: list[str] = []
    for line in status_text.splitlines():
        if len(line) < 4:
            continue
        entry = line[3:].strip()
        if " -> " in entry:
            entry = entry.split(" -> ", 1)[1].strip()
        if len(entry) >= 2 and entry.startswith('"') and entry.endswith('"'):
            entry = entry[1:-1]
        if entry and entry not in paths:
            paths.append(entry)
    return tuple(paths)


def ensure_excluded(repo_root: Path, pattern: str) -> bool:
    """Add ``pattern`` to the repository's local exclude file if missing."""
    result = git(repo_root, "rev-parse", "--git-path", "info/exclude")
    if not result.ok:
        return False
    exclude_path = Path(result.stdout.strip())
    if not exclude_path.is_absolute():
        exclude_path = repo_root / exclude_path
    existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
    if pattern in existing.splitlines():
        return False
    exclude_path.parent.mkdir(parents=True, exist_ok=True)
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with exclude_path.open("a", encoding="utf-8") as fh:
        fh.write(f"{prefix}{pattern}\n")
    return True
