from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from open_core.config import ToolPermissions
from open_core.providers.transforms import ProviderTransformRegistry
from open_core.tool import ProviderTool, Tool
from open_core.tool_registry import ToolRegistry

# Category for tools that do not declare one themselves.
_DEFAULT_PERMISSIONS = {
    "edit": "edit",
    "write_file": "edit",
    "patch": "edit",
    "bash": "shell",
    "web_fetch": "network",
    "web_search": "network",
    "read_file": "filesystem",
    "list": "filesystem",
    "glob": "filesystem",
    "grep": "filesystem",
}

_ALL_TOOLS = "*"


@dataclass
class ToolCompatibility:
    compatible: bool
    warnings: list[str] = field(default_factory=list)
    alternatives: list[str] = field(default_factory=list)


@dataclass
class ToolRecommendations:
    recommended: list[str] = field(default_factory=list)
    discouraged: list[str] = field(default_factory=list)


def permission_of(tool: Tool) -> str:
    return getattr(tool, "permission", None) or _DEFAULT_PERMISSIONS.get(tool.name, "filesystem")


class DynamicToolRegistry:
    """Selects the tools offered to one model on one request.

    Selection order: permission filter, per-request enable map, model-family
    incompatibility filter (with substitution of recommended alternatives that
    exist in the catalog), then provider schema transforms.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        transforms: ProviderTransformRegistry,
        permissions: ToolPermissions | None = None,
    ):
        self._registry = registry
        self._transforms = transforms
        self._permissions = permissions or ToolPermissions()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def resolve_tools(
        self,
        provider_id: str,
        model_id: str,
        enabled: dict[str, bool] | None = None,
    ) -> dict[str, Tool]:
        capabilities = self._transforms.get_model_capabilities(provider_id, model_id)
        if not capabilities.supports_tool_calls:
            return {}

        selected: dict[str, Tool] = {}
        for tool in self._registry.all():
            if not self._permissions.allows(permission_of(tool)):
                continue
            if enabled is not None and enabled.get(tool.name) is False:
                continue
            selected[tool.name] = tool

        disabled = self._transforms.get_disabled_tools(provider_id, model_id)
        if _ALL_TOOLS in disabled:
            return {}

        alternatives = self._transforms.get_tool_alternatives(provider_id, model_id)
        for name in sorted(disabled.intersection(selected)):
            del selected[name]
            substitute = alternatives.get(name)
            if not substitute or substitute in selected:
                continue
            tool = self._registry.get(substitute)
            if tool is None or not self._permissions.allows(permission_of(tool)):
                continue
            if enabled is not None and enabled.get(substitute) is False:
                continue
            logger.debug(f"Substituting tool {name} with {substitute} for {provider_id}/{model_id}")
            selected[substitute] = tool
        return selected

    def get_tools(
        self,
        provider_id: str,
        model_id: str,
        enabled: dict[str, bool] | None = None,
    ) -> list[ProviderTool]:
        return self.describe(self.resolve_tools(provider_id, model_id, enabled), provider_id, model_id)

    def describe(self, tools: dict[str, Tool], provider_id: str, model_id: str) -> list[ProviderTool]:
        return [
            ProviderTool(
                name=tool.name,
                description=tool.description,
                input_schema=self._transforms.transform_tool_schema(tool.input_schema, provider_id, model_id),
            )
            for tool in tools.values()
        ]

    def validate_tool_compatibility(self, tool_name: str, provider_id: str, model_id: str) -> ToolCompatibility:
        try:
            capabilities = self._transforms.get_model_capabilities(provider_id, model_id)
            if not capabilities.supports_tool_calls:
                return ToolCompatibility(
                    compatible=False,
                    warnings=[f"{model_id} does not support tool calls"],
                )

            warnings: list[str] = []
            alternatives: list[str] = []
            compatible = True
            for rule in self._transforms.matching_rules(provider_id, model_id):
                if _ALL_TOOLS in rule.disabled or tool_name in rule.disabled:
                    compatible = False
                    warnings.append(f"{tool_name} is disabled for {model_id}: {rule.reason or rule.pattern}")
                    alternatives.extend(alt for original, alt in rule.alternatives if original == tool_name)

            tool = self._registry.get(tool_name)
            if tool is None:
                warnings.append(f"{tool_name} is not registered")
            elif not self._permissions.allows(permission_of(tool)):
                compatible = False
                warnings.append(f"{tool_name} requires the {permission_of(tool)} permission")
            return ToolCompatibility(compatible=compatible, warnings=warnings, alternatives=alternatives)
        except Exception as ex:
            logger.warning(f"Tool compatibility check failed for {tool_name}: {ex}")
            return ToolCompatibility(compatible=False, warnings=[f"compatibility check failed: {ex}"])

    def get_tool_recommendations(self, provider_id: str, model_id: str) -> ToolRecommendations:
        offered = self.resolve_tools(provider_id, model_id)
        disabled = self._transforms.get_disabled_tools(provider_id, model_id)
        discouraged = sorted(
            name for name in self._registry.names() if name not in offered and (name in disabled or _ALL_TOOLS in disabled)
        )
        return ToolRecommendations(recommended=sorted(offered), discouraged=discouraged)
