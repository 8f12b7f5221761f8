from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from devheal.agent_runner import (
    AgentOverrides,
    Heartbeat,
    PatchAgentRunner,
    resolve_credential,
)
from devheal.artifacts import FixLog
from devheal.config import AgentConfig
from devheal.failures import AuthenticationRequired, PatchGenerationFailed
from devheal.shell import CommandResult


DIFF = "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n@@ -1 +1 @@\n-a\n+b\n"


def _fix_log(tmp_path: Path) -> FixLog:
    log = FixLog(tmp_path / "fix.log")
    log.start(["=== devheal fix start ==="])
    return log


def _install_stream(
    monkeypatch: pytest.MonkeyPatch,
    result: CommandResult,
    *,
    stderr_chunks: tuple[str, ...] = (),
) -> dict[str, object]:
    called: dict[str, object] = {}

    def fake_stream(
        argv: list[str] | str,
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> CommandResult:
        called.update(argv=argv, cwd=cwd, input_text=input_text, env=env)
        for chunk in stderr_chunks:
            assert on_stderr is not None
            on_stderr(chunk)
        if on_stdout is not None and result.stdout:
            on_stdout(result.stdout)
        return result

    monkeypatch.setattr("devheal.agent_runner.stream", fake_stream)
    return called


def test_resolve_credential_prefers_process_env(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("CURSOR_API_KEY=from-file\n", encoding="utf-8")

    assert (
        resolve_credential(
            "CURSOR_API_KEY",
            workspace_root=tmp_path,
            env_files=(".env",),
            environ={"CURSOR_API_KEY": "already-set"},
        )
        is None
    )


def test_resolve_credential_reads_env_files_in_order(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("CURSOR_API_KEY=plain\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text(
        "# local override\nexport CURSOR_API_KEY='local-key'\n", encoding="utf-8"
    )

    found = resolve_credential(
        "CURSOR_API_KEY",
        workspace_root=tmp_path,
        env_files=(".env.local", ".env"),
        environ={},
    )

    assert found == ("local-key", tmp_path / ".env.local")


def test_build_env_injects_credential_and_clamps_limits(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text('CURSOR_API_KEY="secret"\n', encoding="utf-8")
    runner = PatchAgentRunner(
        AgentConfig(thinking_max_chars=10, stream_max_chars=10_000_000, explain_mode="full"),
        workspace_root=tmp_path,
    )
    log = _fix_log(tmp_path)

    env = runner.build_env(
        issue_id="dh_1",
        attempt=2,
        fix_log=log,
        overrides=AgentOverrides(stream_partial=False),
        environ={"PATH": "/bin"},
    )

    assert env["CURSOR_API_KEY"] == "secret"
    assert env["PATH"] == "/bin"
    assert env["DEVHEAL_ISSUE_ID"] == "dh_1"
    assert env["DEVHEAL_ATTEMPT"] == "2"
    assert env["DEVHEAL_AGENT_EXPLAIN_MODE"] == "full"
    assert env["DEVHEAL_AGENT_STREAM_PARTIAL"] == ""
    assert env["DEVHEAL_AGENT_THINKING_MAX_CHARS"] == "400"
    assert env["DEVHEAL_AGENT_STREAM_MAX_CHARS"] == "200000"
    content = log.path.read_text(encoding="utf-8")
    assert "[auth] injecting CURSOR_API_KEY from .env" in content
    assert "secret" not in content


def test_build_command_uses_workspace_copy_of_scripts(tmp_path: Path) -> None:
    (tmp_path / "tools").mkdir()
    (tmp_path / "tools" / "agent.mjs").write_text("", encoding="utf-8")
    worktree = tmp_path / ".devheal" / "worktrees" / "dh_1"
    worktree.mkdir(parents=True)
    runner = PatchAgentRunner(
        AgentConfig(command="node tools/agent.mjs --mode 'fast run' other/missing.js"),
        workspace_root=tmp_path,
    )

    assert runner.build_command(cwd=tmp_path) == [
        "node",
        "tools/agent.mjs",
        "--mode",
        "fast run",
        "other/missing.js",
    ]
    assert runner.build_command(cwd=worktree) == [
        "node",
        str((tmp_path / "tools" / "agent.mjs").resolve()),
        "--mode",
        "fast run",
        "other/missing.js",
    ]


def test_generate_returns_stdout_and_logs_stderr(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    called = _install_stream(
        monkeypatch,
        CommandResult(returncode=0, stdout=DIFF, stderr="thinking...\n"),
        stderr_chunks=("thinking...\n",),
    )
    runner = PatchAgentRunner(AgentConfig(heartbeat=False), workspace_root=tmp_path)
    log = _fix_log(tmp_path)

    out = runner.generate("fix it", issue_id="dh_1", attempt=1, cwd=tmp_path, fix_log=log)

    assert out == DIFF
    assert called["input_text"] == "fix it"
    assert called["cwd"] == tmp_path
    env = called["env"]
    assert isinstance(env, dict)
    assert env["DEVHEAL_AGENT_STREAM_PARTIAL"] == "1"
    assert "thinking...\n" in log.path.read_text(encoding="utf-8")


def test_generate_raises_authentication_required(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _install_stream(
        monkeypatch,
        CommandResult(returncode=1, stdout="", stderr="Error: Authentication required\n"),
    )
    runner = PatchAgentRunner(AgentConfig(heartbeat=False), workspace_root=tmp_path)

    with pytest.raises(AuthenticationRequired, match="cursor agent login"):
        runner.generate(
            "fix it", issue_id="dh_1", attempt=1, cwd=tmp_path, fix_log=_fix_log(tmp_path)
        )


def test_generate_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _install_stream(monkeypatch, CommandResult(returncode=2, stdout="", stderr="crash"))
    runner = PatchAgentRunner(AgentConfig(heartbeat=False), workspace_root=tmp_path)

    with pytest.raises(PatchGenerationFailed, match="Patch command failed: code 2"):
        runner.generate(
            "fix it", issue_id="dh_1", attempt=1, cwd=tmp_path, fix_log=_fix_log(tmp_path)
        )


def test_generate_requires_a_diff(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _install_stream(monkeypatch, CommandResult(returncode=0, stdout="I changed it!", stderr=""))
    runner = PatchAgentRunner(AgentConfig(heartbeat=False), workspace_root=tmp_path)

    with pytest.raises(PatchGenerationFailed, match="missing 'diff --git'"):
        runner.generate(
            "fix it", issue_id="dh_1", attempt=1, cwd=tmp_path, fix_log=_fix_log(tmp_path)
        )


def test_generate_wraps_launch_errors(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def broken_stream(*args: object, **kwargs: object) -> CommandResult:
        _ = args, kwargs
        raise FileNotFoundError("node")

    monkeypatch.setattr("devheal.agent_runner.stream", broken_stream)
    runner = PatchAgentRunner(AgentConfig(heartbeat=False), workspace_root=tmp_path)

    with pytest.raises(PatchGenerationFailed, match="could not start"):
        runner.generate(
            "fix it", issue_id="dh_1", attempt=1, cwd=tmp_path, fix_log=_fix_log(tmp_path)
        )


def test_heartbeat_reports_and_rate_limits_log_lines(tmp_path: Path) -> None:
    now = [0.0]
    progress: list[str] = []
    log = _fix_log(tmp_path)
    heartbeat = Heartbeat(fix_log=log, progress=progress.append, clock=lambda: now[0])

    now[0] = 5.0
    heartbeat.tick()
    assert progress == []

    now[0] = 13.0
    heartbeat.tick()
    assert progress == ["Generating patch... (13s)"]
    assert "[still running]" not in log.path.read_text(encoding="utf-8")

    now[0] = 31.0
    heartbeat.tick()
    now[0] = 41.0
    heartbeat.tick()
    lines = [
        line
        for line in log.path.read_text(encoding="utf-8").splitlines()
        if line.startswith("[still running]")
    ]
    assert lines == ["[still running] generating patch... (31s, quiet 31s)"]

    heartbeat.touch()
    now[0] = 50.0
    heartbeat.tick()
    assert len(progress) == 3
