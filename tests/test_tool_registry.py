import asyncio
import unittest
from dataclasses import dataclass

from open_core.errors import ToolExecutionError, ToolSecurityError, ToolValidationError
from open_core.tool import GenericMetadata, ToolResult
from open_core.tool_registry import ToolRegistry, get_all
from tests.support import EchoTool, tool_context


@dataclass(frozen=True)
class _UnknownMetadata:
    kind: str = "mystery"


class _ReturningTool(EchoTool):
    def __init__(self, result):
        super().__init__(name="returning")
        self._result = result

    async def execute(self, tool_input, context):
        return self._result


class ToolRegistryTests(unittest.TestCase):
    def test_validates_input_against_schema(self) -> None:
        registry = ToolRegistry([EchoTool()])
        with self.assertRaises(ToolValidationError) as ctx:
            registry.validate_input("echo", {"text": 5})
        self.assertEqual("echo", ctx.exception.tool_name)
        self.assertIn("text", ctx.exception.errors[0])

        with self.assertRaises(ToolValidationError):
            registry.validate_input("echo", {})

    def test_execute_returns_typed_result(self) -> None:
        registry = ToolRegistry([EchoTool()])
        result = asyncio.run(registry.execute("echo", {"text": "hi"}, tool_context()))
        self.assertEqual("hi", result.output)
        self.assertEqual({"data": {"echoed": True}, "kind": "generic"}, result.metadata_dict())

    def test_plain_string_result_is_wrapped(self) -> None:
        registry = ToolRegistry([_ReturningTool("plain")])
        result = asyncio.run(registry.execute("returning", {"text": "x"}, tool_context()))
        self.assertEqual(ToolResult(output="plain", metadata=GenericMetadata()), result)

    def test_unsupported_result_shapes_rejected(self) -> None:
        for bad in (42, ToolResult(output="x", metadata=_UnknownMetadata())):
            with self.subTest(result=bad):
                registry = ToolRegistry([_ReturningTool(bad)])
                with self.assertRaises(ToolExecutionError):
                    asyncio.run(registry.execute("returning", {"text": "x"}, tool_context()))

    def test_unexpected_exceptions_are_wrapped(self) -> None:
        registry = ToolRegistry([EchoTool(fail_with=RuntimeError("disk on fire"))])
        with self.assertRaises(ToolExecutionError) as ctx:
            asyncio.run(registry.execute("echo", {"text": "x"}, tool_context()))
        self.assertIn("disk on fire", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_tool_errors_pass_through(self) -> None:
        registry = ToolRegistry([EchoTool(fail_with=ToolSecurityError("nope", tool_name="echo"))])
        with self.assertRaises(ToolSecurityError):
            asyncio.run(registry.execute("echo", {"text": "x"}, tool_context()))

    def test_unknown_tool(self) -> None:
        with self.assertRaises(ToolExecutionError):
            asyncio.run(ToolRegistry().execute("ghost", {}, tool_context()))

    def test_lookup(self) -> None:
        registry = ToolRegistry([EchoTool("b"), EchoTool("a")])
        self.assertEqual(["a", "b"], registry.names())
        self.assertIn("a", registry)
        self.assertIsNone(registry.get("c"))


class BuiltinCatalogTests(unittest.TestCase):
    def test_get_all_builtin_tools(self) -> None:
        names = sorted(tool.name for tool in get_all("."))
        self.assertEqual(
            ["bash", "edit", "glob", "grep", "list", "read_file", "web_fetch", "write_file"],
            names,
        )

    def test_network_tools_can_be_excluded(self) -> None:
        names = [tool.name for tool in get_all(".", include_network=False)]
        self.assertNotIn("web_fetch", names)

    def test_builtin_schemas_register_cleanly(self) -> None:
        registry = ToolRegistry(get_all("."))
        self.assertEqual(8, len(registry.all()))


if __name__ == "__main__":
    unittest.main()
