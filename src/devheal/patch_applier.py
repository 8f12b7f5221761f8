from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re

from devheal.artifacts import FixLog
from devheal.failures import MalformedPatch, NonApplyingPatch
from devheal.git_ops import git, is_tracked
from devheal.observability import log_event
from devheal.patch_sanitizer import SanitizedPatch
from devheal.patch_validator import ValidationResult
from devheal.shell import CommandResult


LOGGER = logging.getLogger("devheal.patch_applier")

_IMPLICATED_PATH_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"patch failed:\s+([^:\n]+):\d+"),
    re.compile(r"error:\s+([^:\n]+):\s+patch does not apply"),
    re.compile(r"error:\s+([^:\n]+):\s+already exists in working directory"),
)
_CORRUPT_RE = re.compile(r"corrupt patch", re.IGNORECASE)
_MAX_PATHS = 5
_EXCERPT_LINES = 80
_EXCERPT_CHARS = 6000
_STATUS_LINES = 8
_VALIDATION_ERRORS_LOGGED = 6
_APPLY_ARGS = ("apply", "--whitespace=nowarn", "-")
_CHECK_ARGS = ("apply", "--check", "--whitespace=nowarn", "-")


@dataclass(frozen=True)
class PatchArtifact:
    raw: str
    sanitized: SanitizedPatch
    validation: ValidationResult

    @property
    def patch(self) -> str:
        return self.sanitized.patch


@dataclass(frozen=True)
class FileDiagnostic:
    path: str
    exists: bool
    tracked: bool
    head_excerpt: str | None


@dataclass(frozen=True)
class ApplyDiagnostics:
    head: str
    status: str
    files: tuple[FileDiagnostic, ...]

    def render(self) -> str:
        lines = [
            "--- devheal apply diagnostics ---",
            f"worktree HEAD: {self.head or '(unknown)'}",
            f"git status --porcelain: {self.status}",
        ]
        for item in self.files:
            lines.append("")
            lines.append(
                f"file: {item.path} (exists={'yes' if item.exists else 'no'}, "
                f"tracked={'yes' if item.tracked else 'no'})"
            )
            if item.head_excerpt:
                lines.append(f"--- {item.path} (first {_EXCERPT_LINES} lines) ---")
                lines.append(item.head_excerpt)
        return "\n".join(lines)


def implicated_paths(stderr: str) -> tuple[str, ...]:
    found: list[str] = []
    for pattern in _IMPLICATED_PATH_PATTERNS:
        for match in pattern.finditer(stderr):
            path = match.group(1).strip()
            if path and path not in found:
                found.append(path)
    return tuple(found[:_MAX_PATHS])


def _is_inside(root: Path, candidate: Path) -> bool:
    resolved = candidate.resolve()
    root_resolved = root.resolve()
    return resolved != root_resolved and root_resolved in resolved.parents


def collect_diagnostics(cwd: Path, stderr: str) -> ApplyDiagnostics:
    head_result = git(cwd, "rev-parse", "HEAD")
    status_result = git(cwd, "status", "--porcelain")
    status_lines = [line for line in status_result.stdout.splitlines() if line.strip()]
    status = " | ".join(status_lines[:_STATUS_LINES]) if status_lines else "(clean)"

    files: list[FileDiagnostic] = []
    for rel_path in implicated_paths(stderr):
        absolute = cwd / rel_path
        if not _is_inside(cwd, absolute):
            continue
        exists = absolute.is_file()
        excerpt: str | None = None
        if exists:
            text = absolute.read_text(encoding="utf-8", errors="replace")
            excerpt = "\n".join(text.split("\n")[:_EXCERPT_LINES])[:_EXCERPT_CHARS]
        files.append(
            FileDiagnostic(
                path=rel_path,
                exists=exists,
                tracked=is_tracked(cwd, rel_path),
                head_excerpt=excerpt,
            )
        )
    return ApplyDiagnostics(
        head=head_result.stdout.strip() if head_result.ok else "",
        status=status,
        files=tuple(files),
    )


class PatchApplier:
    def check(self, cwd: Path, patch: str) -> CommandResult:
        return git(cwd, *_CHECK_ARGS, input_text=patch)

    def apply(self, cwd: Path, artifact: PatchArtifact, *, fix_log: FixLog) -> None:
        check = self.check(cwd, artifact.patch)
        if not check.ok:
            stderr = (check.stderr or check.stdout).strip()
            fix_log.line(f"[apply] sanitizer: {artifact.sanitized.stats_line()}")
            if not artifact.validation.ok:
                for error in artifact.validation.errors[:_VALIDATION_ERRORS_LOGGED]:
                    fix_log.line(f"[apply] validator: {error}")
            diagnostics = collect_diagnostics(cwd, stderr).render()
            fix_log.line(diagnostics)
            log_event(
                LOGGER,
                "patch_check_failed",
                cwd=str(cwd),
                exit_code=check.returncode,
                validation_ok=artifact.validation.ok,
            )
            message = (
                f"git apply --check failed: code {check.returncode}\n{stderr}\n\n{diagnostics}"
            )
            if _CORRUPT_RE.search(stderr):
                raise MalformedPatch(message)
            raise NonApplyingPatch(message, diagnostics=diagnostics)

        applied = git(cwd, *_APPLY_ARGS, input_text=artifact.patch)
        if not applied.ok:
            raise NonApplyingPatch(
                f"git apply failed: code {applied.returncode}\n"
                f"{(applied.stderr or applied.stdout).strip()}"
            )
        fix_log.line("[apply] patch applied")
        log_event(LOGGER, "patch_applied", cwd=str(cwd), patch_chars=len(artifact.patch))
