"""Per-provider and per-model request adjustments.

Every transform returns new data and is idempotent: feeding a transformed
message list or schema back in yields an equal result.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from typing import Any

from open_core.config import DEFAULT_COMPATIBILITY_RULES, ToolCompatibilityRule

_CACHING_PROVIDERS = frozenset({"anthropic", "openrouter", "bedrock"})
_CACHE_MARKER = {"type": "ephemeral"}
_CACHED_TAIL_MESSAGES = 2

_TOOL_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")

_IMAGE_PLACEHOLDER = "[image omitted: model does not accept image input]"

_GEMINI_UNSUPPORTED_KEYS = frozenset({"additionalProperties", "$schema", "default", "examples", "$id", "$ref"})
_GEMINI_FORMATS = frozenset({"enum", "date-time"})


@dataclass(frozen=True)
class ModelCapabilities:
    supports_streaming: bool = True
    supports_tool_calls: bool = True
    supports_images: bool = False
    supports_system_messages: bool = True
    supports_temperature: bool = True
    context_window: int = 16_000
    max_output_tokens: int = 4096


@dataclass(frozen=True)
class ModelParameters:
    max_tokens: int
    temperature: float | None = None
    top_p: float | None = None
    caching: bool = False


def model_family(model_id: str) -> str:
    model = model_id.lower()
    if "claude" in model:
        return "claude"
    if re.search(r"(^|[/:-])o[13]([/:-]|$)", model) or model.startswith(("o1", "o3")):
        return "reasoning"
    if "gpt" in model:
        return "gpt"
    if "gemini" in model:
        return "gemini"
    if "qwen" in model:
        return "qwen"
    return "default"


def _capabilities_for(model_id: str) -> ModelCapabilities:
    model = model_id.lower()
    family = model_family(model_id)
    if family == "claude":
        return ModelCapabilities(supports_images=True, context_window=200_000, max_output_tokens=8192)
    if family == "reasoning":
        return ModelCapabilities(
            supports_tool_calls=False,
            supports_system_messages=False,
            supports_temperature=False,
            context_window=128_000,
            max_output_tokens=32_768,
        )
    if family == "gpt":
        if "gpt-4o" in model or "gpt-4.1" in model or "gpt-4-turbo" in model:
            return ModelCapabilities(supports_images=True, context_window=128_000, max_output_tokens=16_384)
        if "gpt-4" in model:
            return ModelCapabilities(supports_images="vision" in model, context_window=8192, max_output_tokens=4096)
        return ModelCapabilities(context_window=16_385, max_output_tokens=4096)
    if family == "gemini":
        window = 1_000_000 if ("1.5" in model or "2." in model) else (128_000 if "pro" in model else 32_000)
        return ModelCapabilities(supports_images=True, context_window=window, max_output_tokens=8192)
    if family == "qwen":
        return ModelCapabilities(context_window=32_000, max_output_tokens=8192)
    return ModelCapabilities()


class ProviderTransformRegistry:
    def __init__(self, compatibility_rules: tuple[ToolCompatibilityRule, ...] = DEFAULT_COMPATIBILITY_RULES):
        self._rules = tuple(compatibility_rules)
        self._capabilities: dict[tuple[str, str], ModelCapabilities] = {}

    @property
    def compatibility_rules(self) -> tuple[ToolCompatibilityRule, ...]:
        return self._rules

    # -- capabilities / parameters -------------------------------------------

    def get_model_capabilities(self, provider_id: str, model_id: str) -> ModelCapabilities:
        key = (provider_id.lower(), model_id.lower())
        cached = self._capabilities.get(key)
        if cached is None:
            cached = _capabilities_for(model_id)
            self._capabilities[key] = cached
        return cached

    def get_optimal_parameters(self, provider_id: str, model_id: str) -> ModelParameters:
        capabilities = self.get_model_capabilities(provider_id, model_id)
        max_tokens = min(4096, int(capabilities.context_window * 0.1), capabilities.max_output_tokens)
        caching = provider_id.lower() in _CACHING_PROVIDERS
        family = model_family(model_id)
        if family == "reasoning":
            return ModelParameters(max_tokens=max_tokens, temperature=1.0, caching=caching)
        if family == "qwen":
            return ModelParameters(max_tokens=max_tokens, temperature=0.55, top_p=1.0, caching=caching)
        if family == "claude":
            return ModelParameters(max_tokens=max_tokens, temperature=0.7, caching=caching)
        return ModelParameters(max_tokens=max_tokens, temperature=0.7 if family == "gpt" else None, caching=caching)

    # -- messages --------------------------------------------------------------

    def transform_messages(self, messages: list[dict], provider_id: str, model_id: str) -> list[dict]:
        capabilities = self.get_model_capabilities(provider_id, model_id)
        normalize_ids = model_family(model_id) == "claude"
        caching = provider_id.lower() in _CACHING_PROVIDERS

        result: list[dict] = []
        for message in copy.deepcopy(messages):
            content = message.get("content")
            if isinstance(content, list):
                blocks = []
                for block in content:
                    block = _sanitize_block(block, capabilities, normalize_ids)
                    if block is not None:
                        blocks.append(block)
                if not blocks:
                    continue
                message["content"] = blocks
            elif isinstance(content, str) and not content.strip():
                continue
            result.append(message)

        for index, message in enumerate(result):
            in_tail = index >= len(result) - _CACHED_TAIL_MESSAGES
            _set_cache_marker(message, enabled=caching and in_tail)
        return result

    # -- tool schemas ------------------------------------------------------------

    def transform_tool_schema(self, schema: dict[str, Any], provider_id: str, model_id: str) -> dict[str, Any]:
        provider = provider_id.lower()
        result = copy.deepcopy(schema)
        if provider == "openai":
            result = _optional_to_nullable(result)
        if provider in ("google", "gemini") or model_family(model_id) == "gemini":
            result = _sanitize_gemini(result)
        return result

    # -- compatibility table -------------------------------------------------------

    def matching_rules(self, provider_id: str, model_id: str) -> list[ToolCompatibilityRule]:
        return [rule for rule in self._rules if rule.matches(provider_id, model_id)]

    def get_disabled_tools(self, provider_id: str, model_id: str) -> set[str]:
        disabled: set[str] = set()
        for rule in self.matching_rules(provider_id, model_id):
            disabled.update(rule.disabled)
        return disabled

    def get_tool_alternatives(self, provider_id: str, model_id: str) -> dict[str, str]:
        alternatives: dict[str, str] = {}
        for rule in self.matching_rules(provider_id, model_id):
            for original, alternative in rule.alternatives:
                alternatives.setdefault(original, alternative)
        return alternatives


def _sanitize_block(block: Any, capabilities: ModelCapabilities, normalize_ids: bool) -> Any:
    if not isinstance(block, dict):
        return block
    block_type = block.get("type")
    if block_type == "text" and not str(block.get("text", "")).strip():
        return None
    if block_type == "image" and not capabilities.supports_images:
        return {"type": "text", "text": _IMAGE_PLACEHOLDER}
    if normalize_ids:
        if block_type == "tool_use" and "id" in block:
            block["id"] = _TOOL_ID_UNSAFE.sub("_", str(block["id"]))
        elif block_type == "tool_result" and "tool_use_id" in block:
            block["tool_use_id"] = _TOOL_ID_UNSAFE.sub("_", str(block["tool_use_id"]))
    return block


def _set_cache_marker(message: dict, *, enabled: bool) -> None:
    content = message.get("content")
    if isinstance(content, str):
        if not enabled:
            return
        content = [{"type": "text", "text": content}]
        message["content"] = content
    if not isinstance(content, list) or not content:
        return
    for block in content:
        if isinstance(block, dict):
            block.pop("cache_control", None)
    last = content[-1]
    if enabled and isinstance(last, dict):
        last["cache_control"] = dict(_CACHE_MARKER)


def _optional_to_nullable(schema: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(schema, dict):
        return schema
    properties = schema.get("properties")
    if isinstance(properties, dict):
        required = set(schema.get("required", []))
        for name, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            if name not in required:
                prop["nullable"] = True
                prop.pop("default", None)
            _optional_to_nullable(prop)
    items = schema.get("items")
    if isinstance(items, dict):
        _optional_to_nullable(items)
    return schema


def _sanitize_gemini(schema: Any) -> Any:
    if isinstance(schema, list):
        return [_sanitize_gemini(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _GEMINI_UNSUPPORTED_KEYS:
            continue
        if key == "format" and value not in _GEMINI_FORMATS:
            continue
        result[key] = _sanitize_gemini(value)

    if "enum" in result and result.get("type") in ("integer", "number"):
        result["type"] = "string"
        result["enum"] = [str(v) for v in result["enum"]]

    properties = result.get("properties")
    if isinstance(properties, dict) and isinstance(result.get("required"), list):
        result["required"] = [name for name in result["required"] if name in properties]
    return result
