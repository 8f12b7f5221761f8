from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shlex
import threading
import time

from dotenv import dotenv_values

from devheal.artifacts import ChunkWriter, FixLog
from devheal.config import AgentConfig, ExplainMode
from devheal.failures import AuthenticationRequired, PatchGenerationFailed, is_auth_failure
from devheal.observability import log_event
from devheal.shell import stream, tail


LOGGER = logging.getLogger("devheal.agent_runner")

_OUTPUT_TAIL_CHARS = 4000
_THINKING_LIMITS = (400, 20_000)
_STREAM_LIMITS = (1000, 200_000)


@dataclass(frozen=True)
class AgentOverrides:
    explain_mode: ExplainMode | None = None
    stream_partial: bool | None = None


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def resolve_credential(
    name: str,
    *,
    workspace_root: Path,
    env_files: tuple[str, ...],
    environ: Mapping[str, str],
) -> tuple[str, Path] | None:
    """Find ``name`` in the workspace env files when the process lacks it."""
    if environ.get(name):
        return None
    for file_name in env_files:
        path = workspace_root / file_name
        if not path.is_file():
            continue
        value = dotenv_values(path).get(name)
        if value:
            return value, path
    return None


class Heartbeat:
    """Report progress while the agent is quiet; never stops the process."""

    def __init__(
        self,
        *,
        fix_log: FixLog,
        progress: Callable[[str], None] | None = None,
        interval_seconds: float = 10.0,
        quiet_report_seconds: float = 12.0,
        quiet_log_seconds: float = 30.0,
        log_every_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fix_log = fix_log
        self._progress = progress
        self._interval = interval_seconds
        self._quiet_report = quiet_report_seconds
        self._quiet_log = quiet_log_seconds
        self._log_every = log_every_seconds
        self._clock = clock
        self._started = clock()
        self._last_output = self._started
        self._last_logged: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def touch(self) -> None:
        self._last_output = self._clock()

    def tick(self) -> None:
        now = self._clock()
        elapsed = int(now - self._started)
        quiet = now - self._last_output
        if quiet < self._quiet_report:
            return
        if self._progress is not None:
            self._progress(f"Generating patch... ({elapsed}s)")
        if quiet < self._quiet_log:
            return
        if self._last_logged is not None and now - self._last_logged < self._log_every:
            return
        self._last_logged = now
        self._fix_log.line(f"[still running] generating patch... ({elapsed}s, quiet {int(quiet)}s)")

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name="devheal-heartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.tick()


class PatchAgentRunner:
    def __init__(
        self,
        config: AgentConfig,
        *,
        workspace_root: Path,
        progress: Callable[[str], None] | None = None,
    ) -> None:
        self._config = config
        self._workspace_root = workspace_root
        self._progress = progress

    def build_command(self, *, cwd: Path) -> list[str]:
        argv = shlex.split(self._config.command)
        if not argv:
            raise PatchGenerationFailed("agent.command is empty")
        if cwd.resolve() == self._workspace_root.resolve():
            return argv
        # Run tool scripts from the workspace root, not the worktree's possibly older copy.
        rewritten: list[str] = []
        for token in argv:
            candidate = self._workspace_root / token
            if not Path(token).is_absolute() and "/" in token and candidate.is_file():
                rewritten.append(str(candidate.resolve()))
            else:
                rewritten.append(token)
        return rewritten

    def build_env(
        self,
        *,
        issue_id: str,
        attempt: int,
        fix_log: FixLog,
        overrides: AgentOverrides,
        environ: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        base = dict(os.environ if environ is None else environ)
        credential = resolve_credential(
            self._config.credential_env_var,
            workspace_root=self._workspace_root,
            env_files=self._config.env_files,
            environ=base,
        )
        if credential is not None:
            value, source = credential
            base[self._config.credential_env_var] = value
            fix_log.line(
                f"[auth] injecting {self._config.credential_env_var} from {source.name}"
            )

        explain_mode = overrides.explain_mode or self._config.explain_mode
        stream_partial = (
            overrides.stream_partial
            if overrides.stream_partial is not None
            else self._config.stream_partial
        )
        base.update(
            {
                "DEVHEAL_ISSUE_ID": issue_id,
                "DEVHEAL_ATTEMPT": str(attempt),
                "DEVHEAL_WORKSPACE_ROOT": str(self._workspace_root),
                "DEVHEAL_AGENT_EXPLAIN_MODE": explain_mode,
                "DEVHEAL_AGENT_STREAM_PARTIAL": "1" if stream_partial else "",
                "DEVHEAL_AGENT_THINKING_MAX_CHARS": str(
                    _clamp(self._config.thinking_max_chars, _THINKING_LIMITS)
                ),
                "DEVHEAL_AGENT_STREAM_MAX_CHARS": str(
                    _clamp(self._config.stream_max_chars, _STREAM_LIMITS)
                ),
                "DEVHEAL_AGENT_HEARTBEAT": "1" if self._config.heartbeat else "",
            }
        )
        return base

    def generate(
        self,
        prompt: str,
        *,
        issue_id: str,
        attempt: int,
        cwd: Path,
        fix_log: FixLog,
        overrides: AgentOverrides | None = None,
    ) -> str:
        overrides = overrides or AgentOverrides()
        argv = self.build_command(cwd=cwd)
        env = self.build_env(
            issue_id=issue_id, attempt=attempt, fix_log=fix_log, overrides=overrides
        )
        fix_log.line(f"[agent] running: {' '.join(shlex.quote(part) for part in argv)}")
        log_event(
            LOGGER,
            "agent_started",
            issue_id=issue_id,
            attempt=attempt,
            cwd=str(cwd),
            explain_mode=env["DEVHEAL_AGENT_EXPLAIN_MODE"],
            stream_partial=bool(env["DEVHEAL_AGENT_STREAM_PARTIAL"]),
        )

        writer = ChunkWriter(fix_log.text)
        heartbeat = Heartbeat(fix_log=fix_log, progress=self._progress)

        def on_stderr(chunk: str) -> None:
            heartbeat.touch()
            writer.write(chunk)

        if self._config.heartbeat:
            heartbeat.start()
        started = time.monotonic()
        try:
            result = stream(
                argv,
                cwd=cwd,
                input_text=prompt,
                env=env,
                on_stdout=lambda _chunk: heartbeat.touch(),
                on_stderr=on_stderr,
            )
        except OSError as exc:
            raise PatchGenerationFailed(f"Patch command could not start: {exc}") from exc
        finally:
            heartbeat.stop()
            writer.flush()

        elapsed = round(time.monotonic() - started, 1)
        log_event(
            LOGGER,
            "agent_finished",
            issue_id=issue_id,
            attempt=attempt,
            exit_code=result.returncode,
            elapsed_seconds=elapsed,
            stdout_chars=len(result.stdout),
        )
        if not result.ok:
            combined = f"{result.stderr}\n{result.stdout}"
            details = (
                f"Patch command failed: code {result.returncode}\n\n"
                f"stderr:\n{tail(result.stderr, _OUTPUT_TAIL_CHARS)}\n\n"
                f"stdout:\n{tail(result.stdout, _OUTPUT_TAIL_CHARS)}"
            )
            if is_auth_failure(combined):
                raise AuthenticationRequired(
                    "Patch agent authentication required.\n"
                    f"Set {self._config.credential_env_var} in the workspace "
                    f"{' or '.join(self._config.env_files) or 'environment'}, or run: "
                    f"{self._config.login_command or 'the agent login command'}\n\n{details}"
                )
            raise PatchGenerationFailed(details)
        if "diff --git " not in result.stdout:
            raise PatchGenerationFailed(
                "Patch output did not contain a git diff (missing 'diff --git').\n\n"
                f"stdout tail:\n{tail(result.stdout, _OUTPUT_TAIL_CHARS)}"
            )
        return result.stdout
