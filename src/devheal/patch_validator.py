from __future__ import annotations

from dataclasses import dataclass
import re


HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(,(\d+))? \+(\d+)(,(\d+))? @@")


@dataclass(frozen=True)
class HunkCheck:
    line_number: int
    declared_old: int
    declared_new: int
    seen_old: int
    seen_new: int

    @property
    def ok(self) -> bool:
        return self.declared_old == self.seen_old and self.declared_new == self.seen_new


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    errors: tuple[str, ...]
    hunks: tuple[HunkCheck, ...] = ()


def validate_hunks(patch: str) -> ValidationResult:
    """Recount every hunk and compare against its header.

    Advisory only: ``git apply --check`` has the final word. ``\\`` marker
    lines count toward neither side.
    """
    lines = patch.replace("\r\n", "\n").rstrip("\n").split("\n")
    errors: list[str] = []
    hunks: list[HunkCheck] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if not line.startswith("@@ "):
            index += 1
            continue
        line_number = index + 1
        match = HUNK_HEADER_RE.match(line)
        if match is None:
            errors.append(f"bad hunk header at line {line_number}")
            index += 1
            continue
        declared_old = int(match.group(3)) if match.group(3) is not None else 1
        declared_new = int(match.group(6)) if match.group(6) is not None else 1
        seen_old = 0
        seen_new = 0
        index += 1
        while index < len(lines):
            body = lines[index]
            if body.startswith("@@ ") or body.startswith("diff --git "):
                break
            if body.startswith("+"):
                seen_new += 1
            elif body.startswith("-"):
                seen_old += 1
            elif not body.startswith("\\"):
                seen_old += 1
                seen_new += 1
            index += 1
        check = HunkCheck(
            line_number=line_number,
            declared_old=declared_old,
            declared_new=declared_new,
            seen_old=seen_old,
            seen_new=seen_new,
        )
        hunks.append(check)
        if not check.ok:
            errors.append(
                f"hunk count mismatch near line {line_number}: "
                f"expected -{declared_old}/+{declared_new}, saw -{seen_old}/+{seen_new}"
            )
    return ValidationResult(ok=not errors, errors=tuple(errors), hunks=tuple(hunks))
