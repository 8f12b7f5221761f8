from __future__ import annotations

import logging
from pathlib import Path
import re

from devheal.artifacts import FixLog
from devheal.config import PostFixConfig
from devheal.failures import PostFixCheckFailed, PostFixCommandBlocked
from devheal.git_ops import parse_porcelain_paths, status_porcelain
from devheal.observability import log_event
from devheal.shell import CommandResult, stream, tail


LOGGER = logging.getLogger("devheal.post_fix")

_OUTPUT_TAIL_CHARS = 8000


def touched_paths(status_text: str, *, exclude_prefixes: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(
        path
        for path in parse_porcelain_paths(status_text)
        if not any(path.startswith(prefix) for prefix in exclude_prefixes)
    )


class PostFixRunner:
    def __init__(self, config: PostFixConfig, *, state_dir_name: str = ".devheal") -> None:
        self._config = config
        self._format_check_re = re.compile(config.format_check_pattern)
        self._exclude_prefixes = (f"{state_dir_name.rstrip('/')}/", *config.exclude_prefixes)

    def run(self, cwd: Path, *, fix_log: FixLog) -> None:
        allowlist = {entry.strip() for entry in self._config.allowlist if entry.strip()}
        for command in self._config.commands:
            normalized = command.strip()
            if allowlist and normalized not in allowlist:
                raise PostFixCommandBlocked(f"post-fix command blocked by allowlist: {normalized}")
            if self._format_check_re.search(normalized):
                self._run_format_guard(cwd, normalized, fix_log=fix_log)
                continue
            fix_log.line(f"[post-fix] $ {normalized}")
            result = self._stream(normalized, cwd=cwd, fix_log=fix_log)
            log_event(
                LOGGER,
                "post_fix_command_finished",
                command=normalized,
                exit_code=result.returncode,
            )
            if not result.ok:
                raise PostFixCheckFailed(_failure_message(normalized, result))

    def _run_format_guard(self, cwd: Path, command: str, *, fix_log: FixLog) -> None:
        status = status_porcelain(cwd)
        if not status.ok:
            raise PostFixCheckFailed(
                f"post-fix command failed: {command}\nexit: {status.returncode}\n\n"
                f"git status failed:\n{tail(status.stderr, _OUTPUT_TAIL_CHARS)}"
            )
        files = touched_paths(status.stdout, exclude_prefixes=self._exclude_prefixes)
        if not files:
            fix_log.line(f"[post-fix] {command}: no touched files to check")
            return

        check_argv = [*self._config.formatter_check, *files]
        fix_log.line(f"[post-fix] format guard on {len(files)} touched file(s)")
        first = self._stream(check_argv, cwd=cwd, fix_log=fix_log)
        if first.ok:
            return

        fix_log.line("[post-fix] formatting touched files and re-checking")
        write = self._stream([*self._config.formatter_write, *files], cwd=cwd, fix_log=fix_log)
        if not write.ok:
            raise PostFixCheckFailed(_failure_message(command, write))
        second = self._stream(check_argv, cwd=cwd, fix_log=fix_log)
        log_event(
            LOGGER,
            "post_fix_format_guard_finished",
            files=len(files),
            rewrote=True,
            ok=second.ok,
        )
        if not second.ok:
            raise PostFixCheckFailed(_failure_message(command, second))

    def _stream(self, argv: list[str] | str, *, cwd: Path, fix_log: FixLog) -> CommandResult:
        try:
            return stream(argv, cwd=cwd, on_stdout=fix_log.text, on_stderr=fix_log.text)
        except OSError as exc:
            command = argv if isinstance(argv, str) else " ".join(argv)
            raise PostFixCheckFailed(
                f"post-fix command failed: {command}\nexit: -1\n\n{exc}"
            ) from exc


def _failure_message(command: str, result: CommandResult) -> str:
    return (
        f"post-fix command failed: {command}\n"
        f"exit: {result.returncode}\n\n"
        f"stderr:\n{tail(result.stderr, _OUTPUT_TAIL_CHARS)}\n\n"
        f"stdout:\n{tail(result.stdout, _OUTPUT_TAIL_CHARS)}"
    )
