from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from open_core.errors import ConfigError


@dataclass(frozen=True)
class ToolPermissions:
    edit: bool = True
    shell: bool = True
    network: bool = True
    filesystem: bool = True

    def allows(self, category: str) -> bool:
        return bool(getattr(self, category, True))


@dataclass(frozen=True)
class ToolCompatibilityRule:
    """Tools a model family should not be offered, and what to offer instead.

    ``pattern`` is matched as a case-insensitive substring of the model id;
    ``"*"`` in ``disabled`` removes every tool.
    """

    pattern: str
    disabled: tuple[str, ...] = ()
    alternatives: tuple[tuple[str, str], ...] = ()
    provider: str | None = None
    reason: str = ""

    def matches(self, provider_id: str, model_id: str) -> bool:
        if self.provider and self.provider.lower() != provider_id.lower():
            return False
        return self.pattern.lower() in model_id.lower()


DEFAULT_COMPATIBILITY_RULES: tuple[ToolCompatibilityRule, ...] = (
    ToolCompatibilityRule(
        pattern="claude",
        disabled=("patch",),
        alternatives=(("patch", "edit"),),
        reason="prefers exact string edits over patches",
    ),
    ToolCompatibilityRule(
        pattern="gpt",
        disabled=("todowrite", "todoread"),
        reason="task lists are handled in-conversation",
    ),
    ToolCompatibilityRule(
        pattern="qwen",
        disabled=("patch", "todowrite", "todoread"),
        alternatives=(("patch", "edit"),),
        reason="unreliable with multi-hunk patches",
    ),
    ToolCompatibilityRule(pattern="o1", disabled=("*",), reason="reasoning model without tool calling"),
    ToolCompatibilityRule(pattern="o3", disabled=("*",), reason="reasoning model without tool calling"),
)


@dataclass(frozen=True)
class SessionConfig:
    compression_threshold: float = 0.8
    preserve_threshold: float = 0.3
    max_turns: int = 50
    output_reserve: int = 4096
    max_tokens_retries: int = 3
    enable_locking: bool = True
    enable_queuing: bool = True
    enable_revert: bool = True
    lock_timeout_seconds: float | None = None
    max_queue_depth: int = 64


@dataclass(frozen=True)
class ToolConfig:
    permissions: ToolPermissions = field(default_factory=ToolPermissions)
    max_tool_result_chars: int = 40_000
    bash_timeout_seconds: float = 30.0
    compatibility_rules: tuple[ToolCompatibilityRule, ...] = DEFAULT_COMPATIBILITY_RULES


@dataclass(frozen=True)
class WorkspaceConfig:
    working_directory: str | None = None
    project_root: str | None = None
    custom_instruction_files: tuple[str, ...] = ("AGENTS.md", "CLAUDE.md", "CONTEXT.md")
    global_instruction_paths: tuple[str, ...] = (
        "~/.config/open-core/AGENTS.md",
        "~/.claude/CLAUDE.md",
    )
    include_project_tree: bool = True
    max_tree_entries: int = 200

    def resolved_working_directory(self) -> Path:
        return Path(self.working_directory or Path.cwd()).resolve()

    def resolved_project_root(self) -> Path:
        if self.project_root:
            return Path(self.project_root).resolve()
        return self.resolved_working_directory()


@dataclass(frozen=True)
class CoreConfig:
    session: SessionConfig = field(default_factory=SessionConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    memory_enabled: bool = False
    memory_db_path: str = ".open_core/sessions.db"
    log_level: str = "INFO"
    log_consumers: tuple[dict, ...] | None = None

    def with_overrides(self, **changes: Any) -> CoreConfig:
        """Return a new snapshot; nested sections accept dicts of field overrides."""
        updates: dict[str, Any] = {}
        for key, value in changes.items():
            current = getattr(self, key)
            if isinstance(value, dict) and hasattr(current, "__dataclass_fields__"):
                updates[key] = replace(current, **value)
            else:
                updates[key] = value
        config = replace(self, **updates)
        validate_config(config)
        return config


@dataclass
class RuntimeEnv:
    provider_api_keys: dict[str, str]


def load_json_config(path: str | None = None) -> dict:
    config_path = Path(path or os.environ.get("OPEN_CORE_CONFIG") or Path.cwd() / "config.json")
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _parse_permissions(raw: object) -> ToolPermissions:
    if not isinstance(raw, dict):
        return ToolPermissions()
    lowered = {str(k).lower(): v for k, v in raw.items()}
    return ToolPermissions(
        edit=_to_bool(lowered.get("edit"), default=True),
        shell=_to_bool(lowered.get("shell"), default=True),
        network=_to_bool(lowered.get("network"), default=True),
        filesystem=_to_bool(lowered.get("filesystem"), default=True),
    )


def _parse_rules(raw: object) -> tuple[ToolCompatibilityRule, ...]:
    if raw is None:
        return DEFAULT_COMPATIBILITY_RULES
    if not isinstance(raw, list):
        raise ConfigError("ToolCompatibilityRules must be a list")
    rules: list[ToolCompatibilityRule] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("Pattern"):
            raise ConfigError(f"Invalid tool compatibility rule: {entry!r}")
        alternatives = entry.get("Alternatives") or {}
        rules.append(
            ToolCompatibilityRule(
                pattern=str(entry["Pattern"]),
                disabled=tuple(str(name) for name in entry.get("Disabled", [])),
                alternatives=tuple((str(k), str(v)) for k, v in alternatives.items()),
                provider=entry.get("Provider"),
                reason=str(entry.get("Reason", "")),
            )
        )
    return tuple(rules)


def parse_core_config(config: dict) -> CoreConfig:
    defaults_workspace = WorkspaceConfig()
    session = SessionConfig(
        compression_threshold=float(config.get("CompressionThreshold", 0.8)),
        preserve_threshold=float(config.get("PreserveThreshold", 0.3)),
        max_turns=int(config.get("MaxTurns", 50)),
        output_reserve=int(config.get("OutputReserve", 4096)),
        max_tokens_retries=int(config.get("MaxTokensRetries", 3)),
        enable_locking=_to_bool(config.get("EnableLocking"), default=True),
        enable_queuing=_to_bool(config.get("EnableQueuing"), default=True),
        enable_revert=_to_bool(config.get("EnableRevert"), default=True),
        lock_timeout_seconds=_optional_float(config.get("LockTimeoutSeconds")),
        max_queue_depth=int(config.get("MaxQueueDepth", 64)),
    )
    tools = ToolConfig(
        permissions=_parse_permissions(config.get("ToolPermissions")),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        bash_timeout_seconds=float(config.get("BashTimeoutSeconds", 30)),
        compatibility_rules=_parse_rules(config.get("ToolCompatibilityRules")),
    )
    workspace = WorkspaceConfig(
        working_directory=config.get("WorkingDirectory"),
        project_root=config.get("ProjectRoot"),
        custom_instruction_files=tuple(
            config.get("CustomInstructionFiles", defaults_workspace.custom_instruction_files)
        ),
        global_instruction_paths=tuple(
            config.get("GlobalInstructionPaths", defaults_workspace.global_instruction_paths)
        ),
        include_project_tree=_to_bool(config.get("IncludeProjectTree"), default=True),
        max_tree_entries=int(config.get("MaxTreeEntries", 200)),
    )
    consumers = config.get("LogConsumers")
    core = CoreConfig(
        session=session,
        tools=tools,
        workspace=workspace,
        memory_enabled=_to_bool(config.get("MemoryEnabled", False), default=False),
        memory_db_path=str(config.get("MemoryDbPath", ".open_core/sessions.db")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=tuple(consumers) if consumers is not None else None,
    )
    validate_config(core)
    return core


def validate_config(config: CoreConfig) -> None:
    session = config.session
    if not 0 < session.compression_threshold <= 1:
        raise ConfigError(f"CompressionThreshold must be in (0, 1], got {session.compression_threshold}")
    if not 0 < session.preserve_threshold < 1:
        raise ConfigError(f"PreserveThreshold must be in (0, 1), got {session.preserve_threshold}")
    if session.max_turns < 1:
        raise ConfigError(f"MaxTurns must be at least 1, got {session.max_turns}")
    if session.output_reserve < 0:
        raise ConfigError(f"OutputReserve must not be negative, got {session.output_reserve}")
    if session.max_queue_depth < 0:
        raise ConfigError(f"MaxQueueDepth must not be negative, got {session.max_queue_depth}")
    if session.lock_timeout_seconds is not None and session.lock_timeout_seconds <= 0:
        raise ConfigError(f"LockTimeoutSeconds must be positive, got {session.lock_timeout_seconds}")


_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def resolve_runtime_env(provider_names: list[str] | None = None) -> RuntimeEnv:
    load_dotenv()
    names = provider_names or list(_API_KEY_VARS)
    keys: dict[str, str] = {}
    for name in names:
        env_var = _API_KEY_VARS.get(name.strip().lower())
        if env_var and os.environ.get(env_var):
            keys[name.strip().lower()] = os.environ[env_var]
    return RuntimeEnv(provider_api_keys=keys)
