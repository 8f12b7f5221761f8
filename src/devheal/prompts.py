from __future__ import annotations

import logging
from pathlib import Path
import re

from devheal.git_ops import git
from devheal.models import Issue
from devheal.observability import log_warning_event


LOGGER = logging.getLogger("devheal.prompts")

_SOURCE_EXTENSIONS = "py|ts|tsx|js|jsx|mjs|cjs|css|scss|md|json|vue|svelte|html"
_PATH_LINE_RE = re.compile(
    r"((?:/[^\s:'\"()]+/)?(?:[A-Za-z0-9_.-]+/)+"
    rf"[A-Za-z0-9_.-]+\.(?:{_SOURCE_EXTENSIONS})):(\d+)(?::\d+)?"
)
_PATH_RE = re.compile(rf"((?:[A-Za-z0-9_.-]+/)+[A-Za-z0-9_.-]+\.(?:{_SOURCE_EXTENSIONS}))\b")
_CONTEXT_HEADER_RE = re.compile(r"^---\s+(\S+)\s+\(L\d+-L\d+\)\s+---\s*$", re.MULTILINE)
_IDENTIFIER_RE = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]{2,}\b")
_STOP_WORDS = frozenset(
    {
        "diff", "git", "index", "import", "export", "default", "return", "const", "let",
        "var", "function", "class", "interface", "type", "extends", "implements", "async",
        "await", "true", "false", "null", "undefined", "none", "string", "number",
        "boolean", "props", "state", "react", "node", "error", "errors", "runtime",
        "issue", "prompt", "context", "repo", "self",
    }
)  # fmt: skip
_MAX_REFS = 6
_MAX_FILE_BYTES = 512_000
_EXCERPT_CHARS = 18_000
_SNAPSHOT_STATUS_LINES = 12
_SNAPSHOT_HEAD_LINES = 140
_MAX_SEARCH_TERMS = 5

MALFORMED_OUTPUT_NOTICE = """
IMPORTANT: Your previous output was malformed and could not be turned into an applyable patch.
You MUST output exactly one unified diff (as produced by `git diff`) and nothing else.
Every hunk header must match the lines that follow it.
""".strip()

MINIMAL_EDIT_RULES = """
IMPORTANT: Your previous output did not produce an applyable patch for the current files.
You likely used a stale snippet or proposed a rewrite that is too large.

Rules for the next attempt:
- Make the smallest possible targeted edits. No large refactors.
- Do NOT rewrite entire files.
- Do NOT add files that already exist; if a file exists, modify it instead.
- Copy context lines exactly from the repo snapshot below.
""".strip()


def _read_excerpt(
    root: Path, rel_path: str, *, around_line: int | None = None, before: int = 70, after: int = 70
) -> str | None:
    path = root / rel_path
    resolved_root = root.resolve()
    if resolved_root not in path.resolve().parents or not path.is_file():
        return None
    size = path.stat().st_size
    if size > _MAX_FILE_BYTES:
        return f"[file omitted: {rel_path} (too large: {size} bytes)]"
    lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    start, end = 0, min(len(lines), 220)
    if around_line is not None and around_line > 0:
        index = max(0, min(len(lines) - 1, around_line - 1))
        start = max(0, index - before)
        end = min(len(lines), index + after + 1)
    body = "\n".join(lines[start:end])
    if len(body) > _EXCERPT_CHARS:
        body = f"{body[:_EXCERPT_CHARS]}\n/* ...truncated... */"
    return f"--- {rel_path} (L{start + 1}-L{end}) ---\n{body}"


def _relative_to_root(raw_path: str, root: Path) -> str:
    candidate = Path(raw_path)
    if candidate.is_absolute():
        try:
            return candidate.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            return raw_path.lstrip("/")
    return raw_path


def extract_path_line_refs(text: str, *, root: Path) -> list[tuple[str, int]]:
    refs: list[tuple[str, int]] = []
    for match in _PATH_LINE_RE.finditer(text):
        refs.append((_relative_to_root(match.group(1), root), int(match.group(2))))
        if len(refs) >= _MAX_REFS:
            break
    return refs


def extract_repo_paths(text: str) -> list[str]:
    paths: list[str] = []
    for match in _PATH_RE.finditer(text):
        path = match.group(1)
        if path.startswith("/") or path in paths:
            continue
        paths.append(path)
        if len(paths) >= _MAX_REFS:
            break
    return paths


def _context_block(excerpt: str, *, root: Path) -> str:
    blocks: list[str] = []
    refs = extract_path_line_refs(excerpt, root=root)
    for rel_path, line in refs:
        block = _read_excerpt(root, rel_path, around_line=line)
        if block:
            blocks.append(block)
    referenced = {rel_path for rel_path, _ in refs}
    for rel_path in extract_repo_paths(excerpt):
        if rel_path in referenced:
            continue
        block = _read_excerpt(root, rel_path)
        if block:
            blocks.append(block)
    if not blocks:
        return ""
    return "Context (read-only file excerpts):\n" + "\n\n".join(blocks) + "\n"


def build_fix_prompt(excerpt: str, *, kind: str, file_root: Path) -> str:
    if kind == "manual-ui":
        goal = "Goal: implement the requested UI behavior described below."
        label = "UI issue report:"
    elif kind == "build":
        goal = "Goal: fix the build error(s) shown below with minimal changes."
        label = "Build error excerpt:"
    else:
        goal = (
            "Goal: fix the runtime error(s) shown below with minimal changes "
            "so the dev server recovers."
        )
        label = "Runtime error excerpt:"
    return f"""
You are a code repair agent.
{goal}

Constraints:
- Output ONLY a unified diff in `git diff` format, starting with `diff --git`.
- No markdown fences and no prose before or after the diff.
- Do NOT modify lockfiles.
- Prefer targeted edits; do not rewrite whole files.

{_context_block(excerpt, root=file_root)}
{label}
{excerpt}
""".strip() + "\n"


def base_prompt(issue: Issue, *, file_root: Path) -> str:
    if issue.prompt_text is not None:
        return issue.prompt_text
    assert issue.excerpt is not None
    return build_fix_prompt(issue.excerpt, kind=issue.kind, file_root=file_root)


def context_paths(prompt: str) -> list[str]:
    paths: list[str] = []
    for match in _CONTEXT_HEADER_RE.finditer(prompt):
        if match.group(1) not in paths:
            paths.append(match.group(1))
        if len(paths) >= _MAX_REFS:
            return paths
    if paths:
        return paths
    return extract_repo_paths(prompt)


def build_repo_snapshot(cwd: Path, *, base_ref: str, prompt: str) -> str:
    lines = ["Repo snapshot (read-only; use this to make sure your diff applies cleanly):"]
    lines.append(f"- base ref: {base_ref}")
    head = git(cwd, "rev-parse", "HEAD")
    if head.ok:
        lines.append(f"- worktree HEAD: {head.stdout.strip()}")
    status = git(cwd, "status", "--porcelain")
    if status.ok:
        entries = [line for line in status.stdout.splitlines() if line.strip()]
        summary = " | ".join(entries[:_SNAPSHOT_STATUS_LINES]) if entries else "(clean)"
        lines.append(f"- git status --porcelain: {summary}")

    paths = context_paths(prompt)
    if paths:
        lines.append("")
        lines.append("File excerpts from HEAD (via `git show`):")
    for rel_path in paths:
        shown = git(cwd, "show", f"HEAD:{rel_path}")
        if not shown.ok:
            lines.append(f"--- {rel_path} (git show failed; file may be new or untracked) ---")
            continue
        body = shown.stdout[:_EXCERPT_CHARS]
        head_lines = "\n".join(body.split("\n")[:_SNAPSHOT_HEAD_LINES])
        lines.append(f"--- {rel_path} (HEAD, first {_SNAPSHOT_HEAD_LINES} lines) ---")
        lines.append(head_lines)
    lines.append("")
    return "\n".join(lines)


def search_terms(prompt: str) -> list[str]:
    terms: list[str] = []
    for match in _IDENTIFIER_RE.finditer(prompt):
        term = match.group(0)
        if term.lower() in _STOP_WORDS or term in terms:
            continue
        high_signal = (
            re.fullmatch(r"[A-Z][A-Za-z0-9]+", term) is not None
            or re.match(r"use[A-Z]", term) is not None
            or re.search(r"[a-z][A-Z]", term) is not None
            or "_" in term
        )
        if not high_signal:
            continue
        terms.append(term)
        if len(terms) >= _MAX_SEARCH_TERMS:
            break
    return terms


def build_search_hints(cwd: Path, *, prompt: str) -> str:
    lines = [
        "Repo search hints (via `git grep`):",
        "(Use these to anchor edits in the real code instead of rewriting files.)",
        "",
    ]
    found = False
    for term in search_terms(prompt):
        result = git(cwd, "grep", "-n", "-m", "3", "-F", term)
        if not result.ok or not result.stdout.strip():
            continue
        found = True
        lines.append(f'--- git grep -n -m 3 "{term}" ---')
        lines.append("\n".join(result.stdout.strip().split("\n")[:6]))
        lines.append("")
    if not found:
        return ""
    return "\n".join(lines).strip() + "\n"


def failure_details_block(message: str, *, checks_tail: str = "") -> str:
    details = "\n".join(f">> {line}" for line in message.split("\n"))
    block = (
        "Previous attempt failed. You MUST output a new unified diff that applies cleanly "
        "and makes all checks, commit and push succeed.\n"
        f"Failure details:\n{details}"
    )
    if checks_tail:
        block += f"\n\nLast attempt fix log excerpt (tail):\n{checks_tail}"
    return block


def compose_prompt(base: str, addenda: tuple[str, ...]) -> str:
    sections = [base.rstrip("\n"), *addenda]
    return "\n\n".join(section for section in sections if section) + "\n"


def with_repo_context(prompt: str, *, cwd: Path, base_ref: str) -> str:
    try:
        snapshot = build_repo_snapshot(cwd, base_ref=base_ref, prompt=prompt)
        hints = build_search_hints(cwd, prompt=prompt)
    except OSError as exc:
        log_warning_event(LOGGER, "prompt_snapshot_failed", cwd=str(cwd), error=str(exc))
        return prompt
    parts = (prompt.rstrip("\n"), snapshot.rstrip("\n"), hints.rstrip("\n"))
    return "\n\n".join(part for part in parts if part) + "\n"
