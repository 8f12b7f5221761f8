from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
import codecs
import logging
import subprocess
import threading
from typing import IO


class CommandError(RuntimeError):
    def __init__(self, message: str, *, returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


LOGGER = logging.getLogger("devheal.shell")

_READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]


def _describe(argv: list[str] | str) -> str:
    return argv if isinstance(argv, str) else " ".join(argv)


def _failure(argv: list[str] | str, result: CommandResult) -> CommandError:
    command = _describe(argv)
    LOGGER.error(
        "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
        command,
        result.returncode,
        _preview(result.stderr),
        _preview(result.stdout),
    )
    return CommandError(
        "Command failed\n"
        f"cmd: {command}\n"
        f"exit: {result.returncode}\n"
        f"stdout:\n{result.stdout}\n"
        f"stderr:\n{result.stderr}",
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        env=dict(env) if env is not None else None,
    )
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    result = capture(argv, cwd=cwd, input_text=input_text)
    if check and not result.ok:
        raise _failure(argv, result)
    return result.stdout


def stream(
    argv: list[str] | str,
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    on_stdout: Callable[[str], None] | None = None,
    on_stderr: Callable[[str], None] | None = None,
) -> CommandResult:
    """Run a process while handing its output to callbacks as it arrives.

    A string ``argv`` is run through the shell. Both streams are also
    accumulated and returned in full once the process exits.
    """
    proc = subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env is not None else None,
        shell=isinstance(argv, str),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    assert proc.stdout is not None and proc.stderr is not None and proc.stdin is not None
    stdout_parts: list[str] = []
    stderr_parts: list[str] = []
    readers = [
        threading.Thread(
            target=_pump,
            args=(proc.stdout, stdout_parts, on_stdout),
            name="devheal-stdout",
            daemon=True,
        ),
        threading.Thread(
            target=_pump,
            args=(proc.stderr, stderr_parts, on_stderr),
            name="devheal-stderr",
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()
    try:
        if input_text:
            proc.stdin.write(input_text.encode("utf-8"))
    except BrokenPipeError:
        LOGGER.warning("event=command_stdin_closed command=%s", _describe(argv))
    finally:
        try:
            proc.stdin.close()
        except BrokenPipeError:
            pass
    returncode = proc.wait()
    for reader in readers:
        reader.join()
    return CommandResult(
        returncode=returncode,
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts),
    )


def _pump(
    source: IO[bytes],
    sink: list[str],
    callback: Callable[[str], None] | None,
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    read = getattr(source, "read1", source.read)
    while True:
        chunk = read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if not text:
            continue
        sink.append(text)
        if callback is not None:
            callback(text)
    rest = decoder.decode(b"", final=True)
    if rest:
        sink.append(rest)
        if callback is not None:
            callback(rest)
    source.close()
