from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import re
import secrets
import time
from typing import Literal


AttemptStatus = Literal["success", "failed"]
FixOutcome = Literal["success", "failed", "unknown"]
ReintegrationStrategy = Literal["clean", "stash_and_pop", "skip_if_dirty", "new_branch", "off"]

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9._-]+")
_MAX_SAFE_NAME_LEN = 80


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("value must be >= 0")
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def new_issue_id(*, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"dh_{to_base36(stamp)}_{secrets.token_hex(3)}"


def safe_worktree_name(issue_id: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("-", issue_id.lower())[:_MAX_SAFE_NAME_LEN]


@dataclass(frozen=True)
class Issue:
    id: str
    title: str
    source: str
    signature: str
    kind: str = "runtime"
    excerpt: str | None = None
    prompt_text: str | None = None
    enqueued_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        if self.excerpt is None and self.prompt_text is None:
            raise ValueError("Issue requires an excerpt or prompt_text")


@dataclass(frozen=True)
class Worktree:
    path: Path
    branch: str
    base_ref: str


@dataclass(frozen=True)
class AttemptRecord:
    issue_id: str
    number: int
    outcome: AttemptStatus
    error: str | None = None
    error_kind: str | None = None


@dataclass(frozen=True)
class CommitResult:
    committed_sha: str | None


@dataclass(frozen=True)
class ReintegrationResult:
    applied: bool
    strategy: ReintegrationStrategy | None = None
    skipped_reason: str | None = None
    failed_reason: str | None = None
    branch: str | None = None
    conflicted_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class AttemptSuccess:
    commit: CommitResult
    reintegration: ReintegrationResult | None


@dataclass(frozen=True)
class FixResult:
    issue_id: str
    branch: str
    workdir: Path
    commit: CommitResult
    reintegration: ReintegrationResult | None
    attempts: int
