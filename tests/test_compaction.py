import asyncio
import unittest

from open_core.compaction import (
    SUMMARIZE_PROMPT,
    build_summary_request,
    estimate_tokens,
    format_for_summarization,
    provider_summarizer,
    recorded_tokens,
)
from open_core.identifiers import generate_id
from open_core.messages import StepFinishPart, TokenUsage, ToolPart, ToolStateRunning
from tests.support import ScriptedProvider, completed_message


def _with_tool(message, output: str = "file body", error: str | None = None):
    part = ToolPart(
        id=generate_id("prt"),
        session_id=message.info.session_id,
        message_id=message.id,
        tool="read_file",
        call_id="call-7",
        state=ToolStateRunning(input={"path": "a.py"}, start=1),
    )
    if error is None:
        part.complete(output)
    else:
        part.fail(error)
    message.parts.append(part)
    return message


class TokenEstimateTests(unittest.TestCase):
    def test_estimate_counts_text_and_tools(self) -> None:
        user = completed_message("s1", "user", "x" * 40)
        assistant = _with_tool(completed_message("s1", "assistant"), output="y" * 100)
        # 40 text + 9 name + 16 json input + 100 output
        self.assertEqual((40 + 9 + 16 + 100) // 4, estimate_tokens([user, assistant]))

    def test_recorded_tokens_prefer_last_step(self) -> None:
        message = completed_message("s1", "assistant", tokens=TokenUsage(input=1000, output=1000))
        self.assertEqual(2000, recorded_tokens(message))

        for usage in (TokenUsage(input=10), TokenUsage(input=50, output=5, cache_read=5, reasoning=99)):
            message.parts.append(
                StepFinishPart(id=generate_id("prt"), session_id="s1", message_id=message.id, tokens=usage)
            )
        self.assertEqual(60, recorded_tokens(message))


class SummaryRequestTests(unittest.TestCase):
    def test_format_for_summarization(self) -> None:
        user = completed_message("s1", "user", "please read a.py")
        assistant = _with_tool(completed_message("s1", "assistant", "reading"))
        failed = _with_tool(completed_message("s1", "assistant"), error="permission denied")

        text = format_for_summarization([user, assistant, failed])

        self.assertIn("[user]: please read a.py", text)
        self.assertIn('[Tool call: read_file({"path": "a.py"})]', text)
        self.assertIn("[Tool result (call-7)]: file body", text)
        self.assertIn("[Tool error (call-7)]: permission denied", text)

    def test_long_tool_output_is_previewed(self) -> None:
        assistant = _with_tool(completed_message("s1", "assistant"), output="a" * 600 + "b" * 600)
        text = format_for_summarization([assistant])
        self.assertIn("[...truncated...]", text)
        self.assertNotIn("a" * 600, text)

    def test_request_is_capped(self) -> None:
        huge = completed_message("s1", "user", "z" * 150_000)
        request = build_summary_request([huge])
        self.assertTrue(request.startswith(SUMMARIZE_PROMPT))
        self.assertIn("[...middle of conversation omitted for brevity...]", request)
        self.assertLess(len(request), 101_000 + len(SUMMARIZE_PROMPT))


class ProviderSummarizerTests(unittest.TestCase):
    def test_calls_create_message_deterministically(self) -> None:
        provider = ScriptedProvider([], summary="They fixed the parser.")
        summarize = provider_summarizer(provider, "gpt-4o-mini")

        summary = asyncio.run(summarize([completed_message("s1", "user", "fix the parser")]))

        self.assertEqual("They fixed the parser.", summary)
        (request,) = provider.summary_requests
        self.assertEqual("gpt-4o-mini", request["model"])
        self.assertEqual(0, request["temperature"])
        self.assertIn("fix the parser", request["messages"][0]["content"])

    def test_blank_summary_is_an_error(self) -> None:
        summarize = provider_summarizer(ScriptedProvider([], summary="   "), "m")
        with self.assertRaises(ValueError):
            asyncio.run(summarize([completed_message("s1", "user", "hi")]))


if __name__ == "__main__":
    unittest.main()
