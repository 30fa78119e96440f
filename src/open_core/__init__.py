from open_core.bootstrap import AppRuntime, bootstrap_runtime, build_orchestrator
from open_core.config import CoreConfig, load_json_config, parse_core_config, resolve_runtime_env
from open_core.event_bus import BusEvent, EventBus
from open_core.messages import ChatInput, ChatResponse, FileInput, TextInput
from open_core.orchestrator import SessionOrchestrator

__all__ = [
    "AppRuntime",
    "BusEvent",
    "ChatInput",
    "ChatResponse",
    "CoreConfig",
    "EventBus",
    "FileInput",
    "SessionOrchestrator",
    "TextInput",
    "bootstrap_runtime",
    "build_orchestrator",
    "load_json_config",
    "parse_core_config",
    "resolve_runtime_env",
]
