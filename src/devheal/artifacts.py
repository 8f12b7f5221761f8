from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
import threading
import time
from typing import Protocol

from devheal.models import FixOutcome


LOGGER = logging.getLogger("devheal.artifacts")

_RESULT_SUCCESS_RE = re.compile(r"\[result\]\s+success\b", re.IGNORECASE)
_RESULT_FAILED_RE = re.compile(r"\[result\]\s+failed\b", re.IGNORECASE)
DEFAULT_TAIL_BYTES = 24_000


@dataclass(frozen=True)
class StateLayout:
    workspace_root: Path
    state_dir_name: str = ".devheal"

    @property
    def state_dir(self) -> Path:
        return self.workspace_root / self.state_dir_name

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    @property
    def fix_logs_dir(self) -> Path:
        return self.state_dir / "fix-logs"

    @property
    def patches_dir(self) -> Path:
        return self.state_dir / "patches"

    @property
    def prompts_dir(self) -> Path:
        return self.state_dir / "prompts"

    @property
    def errors_dir(self) -> Path:
        return self.state_dir / "errors"

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "issues.jsonl"

    def ensure(self) -> None:
        for directory in (
            self.worktrees_dir,
            self.fix_logs_dir,
            self.patches_dir,
            self.prompts_dir,
            self.errors_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def fix_log_path(self, issue_id: str) -> Path:
        return self.fix_logs_dir / f"{issue_id}.log"

    def prompt_path(self, issue_id: str) -> Path:
        return self.prompts_dir / f"{issue_id}.txt"

    def patch_path(self, issue_id: str, *, attempt: int | None = None, raw: bool = False) -> Path:
        stem = issue_id if attempt is None else f"{issue_id}.attempt-{attempt}"
        suffix = ".raw.diff" if raw else ".diff"
        return self.patches_dir / f"{stem}{suffix}"

    def error_path(self, issue_id: str, *, attempt: int | None = None) -> Path:
        label = "final" if attempt is None else f"attempt-{attempt}"
        return self.errors_dir / f"{issue_id}.{label}.txt"


def write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def read_tail_text(path: Path, max_bytes: int = DEFAULT_TAIL_BYTES) -> str:
    try:
        with path.open("rb") as fh:
            fh.seek(0, 2)
            size = fh.tell()
            fh.seek(max(0, size - max_bytes))
            data = fh.read()
    except FileNotFoundError:
        return ""
    return data.decode("utf-8", errors="replace")


def parse_fix_result(text: str) -> FixOutcome:
    success = [m.start() for m in _RESULT_SUCCESS_RE.finditer(text)]
    failed = [m.start() for m in _RESULT_FAILED_RE.finditer(text)]
    if not success and not failed:
        return "unknown"
    if not failed:
        return "success"
    if not success:
        return "failed"
    return "success" if success[-1] > failed[-1] else "failed"


class FixLog:
    """Append-only, human-readable progress log for one issue."""

    def __init__(self, path: Path, *, listener: Callable[[str], None] | None = None) -> None:
        self.path = path
        self._listener = listener
        self._lock = threading.Lock()

    def start(self, header_lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self.path.write_text("", encoding="utf-8")
        for line in header_lines:
            self.line(line)

    def line(self, text: str) -> None:
        self.text(f"{text}\n")
        if self._listener is not None:
            self._listener(text)

    def text(self, chunk: str) -> None:
        if not chunk:
            return
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(chunk)

    def close_result(self, success: bool) -> None:
        self.line("=== devheal fix end ===")
        self.line(f"[result] {'success' if success else 'failed'}")

    def tail_lines(self, count: int) -> str:
        try:
            content = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""
        return "\n".join(content.rstrip("\n").split("\n")[-count:])

    def tail_text(self, max_bytes: int = DEFAULT_TAIL_BYTES) -> str:
        return read_tail_text(self.path, max_bytes)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


def start_daemon_timer(delay_seconds: float, callback: Callable[[], None]) -> Cancellable:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class ChunkWriter:
    """Buffer streamed text and flush it in chunks instead of per token.

    Text that sits in the buffer is flushed by a timer after
    ``flush_interval_seconds`` even when no further writes arrive.
    """

    def __init__(
        self,
        sink: Callable[[str], None],
        *,
        flush_interval_seconds: float = 0.25,
        max_buffer_chars: int = 16_384,
        clock: Callable[[], float] = time.monotonic,
        start_timer: Callable[[float, Callable[[], None]], Cancellable] = start_daemon_timer,
    ) -> None:
        self._sink = sink
        self._flush_interval = flush_interval_seconds
        self._max_buffer = max_buffer_chars
        self._clock = clock
        self._buffer: list[str] = []
        self._buffered = 0
        self._start_timer = start_timer
        self._timer: Cancellable | None = None
        self._last_flush = clock()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

    def write(self, chunk: str) -> None:
        with self._lock:
            if not chunk:
                return
            self._buffer.append(chunk)
            self._buffered += len(chunk)
            due = (
                self._buffered >= self._max_buffer
                or self._clock() - self._last_flush >= self._flush_interval
            )
            if not due and self._timer is None:
                self._timer = self._start_timer(self._flush_interval, self.flush)
        if due:
            self.flush()

    def flush(self) -> None:
        # Sink calls are serialized in write order.
        with self._flush_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                text = "".join(self._buffer)
                self._buffer.clear()
                self._buffered = 0
                self._last_flush = self._clock()
            if text:
                self._sink(text)


class IssueLedger:
    """NDJSON record of issue and attempt events, one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def append(self, entry: dict[str, object]) -> None:
        line = json.dumps(entry, sort_keys=True, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(f"{line}\n")

    def entries(self) -> Iterator[dict[str, object]]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        for number, raw_line in enumerate(content.splitlines(), start=1):
            if not raw_line.strip():
                continue
            try:
                entry = json.loads(raw_line)
            except json.JSONDecodeError:
                LOGGER.warning("event=ledger_line_invalid path=%s line=%s", self.path, number)
                continue
            if isinstance(entry, dict):
                yield entry

    def latest_issue(self) -> dict[str, object] | None:
        latest: dict[str, object] | None = None
        for entry in self.entries():
            if "outcome" in entry:
                continue
            if entry.get("id") and entry.get("sig") and entry.get("type"):
                latest = entry
        return latest
