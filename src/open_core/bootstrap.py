from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from loguru import logger

from open_core.config import CoreConfig, RuntimeEnv
from open_core.dynamic_tool_registry import DynamicToolRegistry
from open_core.event_bus import EventBus
from open_core.logging_config import setup_logging
from open_core.orchestrator import SessionOrchestrator
from open_core.provider import Provider, create_provider
from open_core.providers.transforms import ProviderTransformRegistry
from open_core.session_state import SessionStateManager
from open_core.snapshots import FileSnapshotManager
from open_core.store import SessionStore, SqliteSessionStore
from open_core.stream_processor import CostFunction, StreamEventProcessor, linear_cost
from open_core.system_prompt import SystemPromptAssembler
from open_core.tool import Tool
from open_core.tool_registry import ToolRegistry, get_all


@dataclass
class AppRuntime:
    orchestrator: SessionOrchestrator
    bus: EventBus
    store: SessionStore | None
    builtin_tools: list[Tool]
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.bus.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def build_orchestrator(
    config: CoreConfig,
    providers: Mapping[str, Provider],
    *,
    tools: list[Tool] | None = None,
    store: SessionStore | None = None,
    bus: EventBus | None = None,
    cost: CostFunction = linear_cost,
) -> SessionOrchestrator:
    """Wire a SessionOrchestrator from a configuration snapshot and its collaborators."""
    workspace = config.workspace
    if tools is None:
        tools = get_all(
            str(workspace.resolved_working_directory()),
            bash_timeout_seconds=config.tools.bash_timeout_seconds,
            include_network=config.tools.permissions.network,
        )

    bus = bus or EventBus()
    transforms = ProviderTransformRegistry(config.tools.compatibility_rules)
    state = SessionStateManager(
        config.session,
        store=store,
        snapshots=FileSnapshotManager(enabled=config.session.enable_revert),
    )
    return SessionOrchestrator(
        config=config,
        providers=providers,
        state=state,
        prompts=SystemPromptAssembler(workspace),
        transforms=transforms,
        tools=DynamicToolRegistry(ToolRegistry(tools), transforms, config.tools.permissions),
        processor=StreamEventProcessor(bus, cost=cost),
        bus=bus,
    )


async def bootstrap_runtime(config: CoreConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=config.log_level, consumers=config.log_consumers)

    providers = {name: create_provider(name, api_key) for name, api_key in env.provider_api_keys.items()}
    if not providers:
        logger.warning("No provider API keys found; chat requests will fail until a provider is configured")

    store: SessionStore | None = None
    if config.memory_enabled:
        db_path = Path(config.memory_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        store = SqliteSessionStore(str(db_path))
        logger.info(f"Session store: {db_path}")

    tools = get_all(
        str(config.workspace.resolved_working_directory()),
        bash_timeout_seconds=config.tools.bash_timeout_seconds,
        include_network=config.tools.permissions.network,
    )
    bus = EventBus()
    orchestrator = build_orchestrator(config, providers, tools=tools, store=store, bus=bus)
    return AppRuntime(
        orchestrator=orchestrator,
        bus=bus,
        store=store,
        builtin_tools=tools,
        log_descriptions=log_descriptions,
    )
