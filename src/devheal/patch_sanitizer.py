"""Repair the usual ways agent-authored unified diffs come out broken.

Agents tend to wrap diffs in prose, forget the leading space on context
lines, indent hunk headers, and miscount hunk ranges. ``sanitize_patch``
fixes those without touching anything git would accept as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
import re


_DIFF_START = "diff --git "
_HEADER_PREFIXES: tuple[str, ...] = (
    "diff --git ",
    "index ",
    "--- ",
    "+++ ",
    "new file mode ",
    "deleted file mode ",
    "similarity index ",
    "rename from ",
    "rename to ",
    "old mode ",
    "new mode ",
    "Binary files ",
    "GIT binary patch",
)
_HUNK_PREFIXES = (" ", "+", "-", "\\")
HUNK_HEADER_RE = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@(.*)$")


@dataclass(frozen=True)
class SanitizedPatch:
    patch: str
    changed: bool
    fixed_missing_prefixes: int = 0
    fixed_hunk_headers: int = 0
    fixed_hunk_ranges: int = 0
    dropped_non_diff_lines: int = 0

    def stats_line(self) -> str:
        return (
            f"changed={str(self.changed).lower()} "
            f"fixed_missing_prefixes={self.fixed_missing_prefixes} "
            f"fixed_hunk_headers={self.fixed_hunk_headers} "
            f"fixed_hunk_ranges={self.fixed_hunk_ranges} "
            f"dropped_non_diff_lines={self.dropped_non_diff_lines}"
        )


class _OpenHunk:
    def __init__(self, header_index: int) -> None:
        self.header_index = header_index
        self.old = 0
        self.new = 0

    def count(self, line: str) -> None:
        if line.startswith("+"):
            self.new += 1
        elif line.startswith("-"):
            self.old += 1
        elif line.startswith("\\"):
            return
        else:
            self.old += 1
            self.new += 1


def _format_range(start: str, count: int) -> str:
    if count == 1:
        return start
    return f"{start},{count}"


def _declared_count(value: str | None) -> int:
    return 1 if value is None else int(value)


def _is_header_line(line: str) -> bool:
    return line.startswith(_HEADER_PREFIXES)


def _is_hunk_header(line: str) -> bool:
    return line.startswith("@@ ") or HUNK_HEADER_RE.match(line) is not None


def sanitize_patch(raw: str) -> SanitizedPatch:
    lines = raw.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    while lines and lines[-1] == "":
        lines.pop()

    out: list[str] = []
    hunk: _OpenHunk | None = None
    seen_diff = False
    fixed_missing_prefixes = 0
    fixed_hunk_headers = 0
    fixed_hunk_ranges = 0
    dropped = 0

    def finalize() -> None:
        nonlocal hunk, fixed_hunk_ranges
        if hunk is None:
            return
        match = HUNK_HEADER_RE.match(out[hunk.header_index])
        if match is not None:
            old_start, old_count, new_start, new_count, suffix = match.groups()
            if _declared_count(old_count) != hunk.old or _declared_count(new_count) != hunk.new:
                out[hunk.header_index] = (
                    f"@@ -{_format_range(old_start, hunk.old)} "
                    f"+{_format_range(new_start, hunk.new)} @@{suffix}"
                )
                fixed_hunk_ranges += 1
        hunk = None

    for line in lines:
        if not seen_diff:
            if not line.startswith(_DIFF_START):
                continue
            seen_diff = True

        if line.startswith(_DIFF_START):
            finalize()
            out.append(line)
            continue

        if _is_hunk_header(line):
            finalize()
            out.append(line)
            hunk = _OpenHunk(len(out) - 1)
            continue

        stripped = line.lstrip()
        if stripped != line and HUNK_HEADER_RE.match(stripped):
            finalize()
            out.append(stripped)
            hunk = _OpenHunk(len(out) - 1)
            fixed_hunk_headers += 1
            continue

        if hunk is not None:
            if not line.startswith(_HUNK_PREFIXES):
                line = f" {line}"
                fixed_missing_prefixes += 1
            hunk.count(line)
            out.append(line)
            continue

        if line == "" or _is_header_line(line):
            out.append(line)
        else:
            dropped += 1

    finalize()

    while out and out[-1] == "":
        out.pop()
    patch = "\n".join(out) + "\n" if out else ""
    return SanitizedPatch(
        patch=patch,
        changed=patch != raw,
        fixed_missing_prefixes=fixed_missing_prefixes,
        fixed_hunk_headers=fixed_hunk_headers,
        fixed_hunk_ranges=fixed_hunk_ranges,
        dropped_non_diff_lines=dropped,
    )
