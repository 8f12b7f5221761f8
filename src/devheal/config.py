from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
import tomllib
from typing import Literal, cast


ExplainMode = Literal["none", "summary", "full"]
ConfiguredStrategy = Literal["stash_and_pop", "skip_if_dirty", "new_branch", "off"]

_EXPLAIN_MODES: tuple[str, ...] = ("none", "summary", "full")
_STRATEGIES: tuple[str, ...] = ("stash_and_pop", "skip_if_dirty", "new_branch", "off")


@dataclass(frozen=True)
class WorkspaceConfig:
    root: Path
    state_dir: str = ".devheal"

    @property
    def state_path(self) -> Path:
        return self.root / self.state_dir


@dataclass(frozen=True)
class FixConfig:
    max_attempts: int = 3
    use_worktrees: bool = True
    branch_prefix: str = "devheal/"
    remote: str = "origin"
    auto_commit: bool = True
    auto_push: bool = True
    commit_message_template: str = "devheal: {title} ({id})"
    cleanup_worktrees: bool = True
    retain_on_success: int = 0
    retain_on_failure: int = 2
    queue_enabled: bool = True
    auth_resume_delay_seconds: int = 15


@dataclass(frozen=True)
class AgentConfig:
    command: str = "node tools/cursor-agent-patch.mjs"
    credential_env_var: str = "CURSOR_API_KEY"
    env_files: tuple[str, ...] = (".env.local", ".env")
    explain_mode: ExplainMode = "summary"
    stream_partial: bool = True
    thinking_max_chars: int = 2500
    stream_max_chars: int = 20000
    heartbeat: bool = True
    login_command: str | None = "cursor agent login"


@dataclass(frozen=True)
class PostFixConfig:
    commands: tuple[str, ...] = ()
    allowlist: tuple[str, ...] = ()
    format_check_pattern: str = r"^npm\s+run\s+format:check(\s|$)"
    formatter_check: tuple[str, ...] = ("npx", "--no-install", "prettier", "--check")
    formatter_write: tuple[str, ...] = ("npx", "--no-install", "prettier", "--write")
    exclude_prefixes: tuple[str, ...] = ("node_modules/", "dist/", "build/")


@dataclass(frozen=True)
class ReintegrationConfig:
    enabled: bool = True
    strategy: ConfiguredStrategy = "stash_and_pop"
    branch_prefix: str = "devheal/apply/"


@dataclass(frozen=True)
class AppConfig:
    workspace: WorkspaceConfig
    fix: FixConfig = field(default_factory=FixConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    post_fix: PostFixConfig = field(default_factory=PostFixConfig)
    reintegration: ReintegrationConfig = field(default_factory=ReintegrationConfig)


class ConfigError(ValueError):
    pass


def default_config(root: Path) -> AppConfig:
    return AppConfig(workspace=WorkspaceConfig(root=root.resolve()))


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    workspace_data = _optional_table(data, "workspace") or {}
    fix_data = _optional_table(data, "fix") or {}
    agent_data = _optional_table(data, "agent") or {}
    post_fix_data = _optional_table(data, "post_fix") or {}
    reintegration_data = _optional_table(data, "reintegration") or {}

    root = Path(_str_with_default(workspace_data, "root", ".")).expanduser()
    if not root.is_absolute():
        root = path.parent / root
    workspace = WorkspaceConfig(
        root=root.resolve(),
        state_dir=_str_with_default(workspace_data, "state_dir", ".devheal"),
    )
    if Path(workspace.state_dir).is_absolute() or ".." in Path(workspace.state_dir).parts:
        raise ConfigError("workspace.state_dir must be a relative path inside the workspace")

    fix = _parse_fix_config(fix_data)
    agent = _parse_agent_config(agent_data)
    post_fix = _parse_post_fix_config(post_fix_data)
    reintegration = ReintegrationConfig(
        enabled=_bool_with_default(reintegration_data, "enabled", True),
        strategy=_parse_strategy(reintegration_data.get("strategy", "stash_and_pop")),
        branch_prefix=_str_with_default(reintegration_data, "branch_prefix", "devheal/apply/"),
    )

    return AppConfig(
        workspace=workspace,
        fix=fix,
        agent=agent,
        post_fix=post_fix,
        reintegration=reintegration,
    )


def _parse_fix_config(fix_data: dict[str, object]) -> FixConfig:
    fix = FixConfig(
        max_attempts=_int_with_default(fix_data, "max_attempts", 3),
        use_worktrees=_bool_with_default(fix_data, "use_worktrees", True),
        branch_prefix=_str_with_default(fix_data, "branch_prefix", "devheal/"),
        remote=_str_with_default(fix_data, "remote", "origin"),
        auto_commit=_bool_with_default(fix_data, "auto_commit", True),
        auto_push=_bool_with_default(fix_data, "auto_push", True),
        commit_message_template=_str_with_default(
            fix_data, "commit_message_template", "devheal: {title} ({id})"
        ),
        cleanup_worktrees=_bool_with_default(fix_data, "cleanup_worktrees", True),
        retain_on_success=_int_with_default(fix_data, "retain_on_success", 0),
        retain_on_failure=_int_with_default(fix_data, "retain_on_failure", 2),
        queue_enabled=_bool_with_default(fix_data, "queue_enabled", True),
        auth_resume_delay_seconds=_int_with_default(fix_data, "auth_resume_delay_seconds", 15),
    )
    if fix.max_attempts < 1:
        raise ConfigError("fix.max_attempts must be >= 1")
    if fix.retain_on_success < 0:
        raise ConfigError("fix.retain_on_success must be >= 0")
    if fix.retain_on_failure < 0:
        raise ConfigError("fix.retain_on_failure must be >= 0")
    if fix.auth_resume_delay_seconds < 1:
        raise ConfigError("fix.auth_resume_delay_seconds must be >= 1")
    return fix


def _parse_agent_config(agent_data: dict[str, object]) -> AgentConfig:
    explain_mode = agent_data.get("explain_mode", "summary")
    if not isinstance(explain_mode, str) or explain_mode not in _EXPLAIN_MODES:
        raise ConfigError("agent.explain_mode must be one of: none, summary, full")
    login_command: str | None = "cursor agent login"
    if "login_command" in agent_data:
        login_command = _optional_str(agent_data, "login_command")
    return AgentConfig(
        command=_str_with_default(agent_data, "command", "node tools/cursor-agent-patch.mjs"),
        credential_env_var=_str_with_default(agent_data, "credential_env_var", "CURSOR_API_KEY"),
        env_files=_tuple_of_str_with_default(agent_data, "env_files", (".env.local", ".env")),
        explain_mode=cast(ExplainMode, explain_mode),
        stream_partial=_bool_with_default(agent_data, "stream_partial", True),
        thinking_max_chars=_int_with_default(agent_data, "thinking_max_chars", 2500),
        stream_max_chars=_int_with_default(agent_data, "stream_max_chars", 20000),
        heartbeat=_bool_with_default(agent_data, "heartbeat", True),
        login_command=login_command,
    )


def _parse_post_fix_config(post_fix_data: dict[str, object]) -> PostFixConfig:
    defaults = PostFixConfig()
    post_fix = PostFixConfig(
        commands=_tuple_of_str_with_default(post_fix_data, "commands", ()),
        allowlist=_tuple_of_str_with_default(post_fix_data, "allowlist", ()),
        format_check_pattern=_str_with_default(
            post_fix_data, "format_check_pattern", defaults.format_check_pattern
        ),
        formatter_check=_tuple_of_str_with_default(
            post_fix_data, "formatter_check", defaults.formatter_check
        ),
        formatter_write=_tuple_of_str_with_default(
            post_fix_data, "formatter_write", defaults.formatter_write
        ),
        exclude_prefixes=_tuple_of_str_with_default(
            post_fix_data, "exclude_prefixes", defaults.exclude_prefixes
        ),
    )
    try:
        re.compile(post_fix.format_check_pattern)
    except re.error as exc:
        raise ConfigError(f"post_fix.format_check_pattern is not a valid regex: {exc}") from exc
    if not post_fix.formatter_check or not post_fix.formatter_write:
        raise ConfigError("post_fix.formatter_check and post_fix.formatter_write must be non-empty")
    for command in post_fix.commands:
        if not command.strip():
            raise ConfigError("post_fix.commands entries must be non-empty strings")
    return post_fix


def _parse_strategy(value: object) -> ConfiguredStrategy:
    if not isinstance(value, str):
        raise ConfigError(f"reintegration.strategy must be one of: {', '.join(_STRATEGIES)}")
    normalized = value.strip().lower()
    if normalized not in _STRATEGIES:
        raise ConfigError(f"reintegration.strategy must be one of: {', '.join(_STRATEGIES)}")
    return cast(ConfiguredStrategy, normalized)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)
