import json
import unittest

from open_core.errors import InvalidToolTransitionError
from open_core.identifiers import generate_id
from open_core.messages import (
    FilePart,
    MessageError,
    StepFinishPart,
    StepStartPart,
    TokenUsage,
    ToolPart,
    ToolStateRunning,
    message_from_dict,
    message_to_dict,
    new_message,
    text_part,
)


def _tool_part(message, call_id: str = "call-1") -> ToolPart:
    return ToolPart(
        id=generate_id("prt"),
        session_id=message.info.session_id,
        message_id=message.id,
        tool="read_file",
        call_id=call_id,
        state=ToolStateRunning(input={"path": "a.py"}, start=1),
    )


class StoredMessageSerializationTests(unittest.TestCase):
    def test_round_trip_preserves_every_part(self) -> None:
        message = new_message("s1", "assistant", provider_id="openai", model_id="gpt-4o-mini", system=["sys"])
        message.parts.append(StepStartPart(id="p0", session_id="s1", message_id=message.id))
        message.parts.append(text_part(message, "Looking at the file"))
        done = _tool_part(message, "call-1")
        done.complete("contents", title="a.py", metadata={"kind": "read", "total_lines": 3})
        failed = _tool_part(message, "call-2")
        failed.fail("boom", incomplete=True)
        message.parts.extend([done, failed])
        message.parts.append(
            FilePart(id="p9", session_id="s1", message_id=message.id, url="data:image/png;base64,AAA", mime="image/png")
        )
        message.parts.append(
            StepFinishPart(id="p10", session_id="s1", message_id=message.id, tokens=TokenUsage(input=5, output=2), cost=0.5)
        )
        message.info.tokens = TokenUsage(input=5, output=2, cache_read=1)
        message.info.finish_reason = "stop"
        message.info.error = MessageError("ProviderError", "bad")
        message.info.time.completed = message.info.time.created + 10

        restored = message_from_dict(json.loads(json.dumps(message_to_dict(message))))

        self.assertEqual(message, restored)

    def test_unknown_part_type_rejected(self) -> None:
        data = message_to_dict(new_message("s1", "user"))
        data["parts"].append({"id": "x", "session_id": "s1", "message_id": "m", "type": "hologram"})
        with self.assertRaises(ValueError):
            message_from_dict(data)


class ToolPartTransitionTests(unittest.TestCase):
    def test_completion_is_one_way(self) -> None:
        message = new_message("s1", "assistant")
        part = _tool_part(message)
        part.complete("ok")
        self.assertEqual("completed", part.state.status)
        self.assertEqual({"path": "a.py"}, part.state.input)

        with self.assertRaises(InvalidToolTransitionError):
            part.complete("again")
        with self.assertRaises(InvalidToolTransitionError):
            part.fail("late")

    def test_failure_keeps_start_time(self) -> None:
        message = new_message("s1", "assistant")
        part = _tool_part(message)
        part.fail("denied")
        self.assertEqual("error", part.state.status)
        self.assertEqual(1, part.state.start)
        self.assertFalse(part.state.incomplete)


class TokenUsageTests(unittest.TestCase):
    def test_addition_and_total(self) -> None:
        usage = TokenUsage(input=1, output=2) + TokenUsage(input=3, reasoning=4, cache_write=5)
        self.assertEqual(TokenUsage(input=4, output=2, reasoning=4, cache_write=5), usage)
        self.assertEqual(15, usage.total)

    def test_from_dict_tolerates_missing_fields(self) -> None:
        self.assertEqual(TokenUsage(output=7), TokenUsage.from_dict({"output": "7"}))
        self.assertEqual(TokenUsage(), TokenUsage.from_dict(None))


if __name__ == "__main__":
    unittest.main()
