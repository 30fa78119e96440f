import asyncio
import unittest
from unittest import mock

from open_core.compaction import SUMMARY_PREFIX
from open_core.config import SessionConfig
from open_core.errors import CompressionError, SessionError
from open_core.identifiers import generate_id, now_ms
from open_core.messages import StepFinishPart, TokenUsage, ToolPart, ToolStateRunning, new_message, text_part
from open_core.session_state import SessionStateManager
from tests.support import WorkspaceTestCase, completed_message


def _manager(**config) -> SessionStateManager:
    manager = SessionStateManager(SessionConfig(**config))
    manager.get_or_create_session("s1")
    return manager


class SessionMessagesTests(unittest.TestCase):
    def test_add_message_accumulates_totals_and_title(self) -> None:
        manager = _manager()
        manager.add_message(completed_message("s1", "user", "Refactor the tokenizer\nwith details"))
        assistant = completed_message("s1", "assistant", "ok", tokens=TokenUsage(input=10, output=5))
        assistant.info.cost = 0.5
        manager.add_message(assistant)

        info = manager.get_session("s1")
        self.assertEqual("Refactor the tokenizer", info.title)
        self.assertEqual(TokenUsage(input=10, output=5), info.tokens)
        self.assertEqual(0.5, info.cost)
        self.assertEqual(2, len(info.messages))

    def test_rejects_unfinalized_and_duplicate_messages(self) -> None:
        manager = _manager()
        with self.assertRaises(ValueError):
            manager.add_message(new_message("s1", "user"))

        message = completed_message("s1", "user", "hi")
        manager.add_message(message)
        with self.assertRaises(ValueError):
            manager.add_message(message)

    def test_unknown_session(self) -> None:
        manager = SessionStateManager()
        with self.assertRaises(SessionError) as ctx:
            manager.get_session("missing")
        self.assertEqual(SessionError.NOT_FOUND, ctx.exception.code)


class SessionLockTests(unittest.TestCase):
    def test_requests_run_in_submission_order(self) -> None:
        async def scenario():
            manager = _manager()
            gate = asyncio.Event()
            order: list[str] = []

            async def request(name: str):
                async def run(lock):
                    order.append(name)
                    if name == "a":
                        await gate.wait()
                    return name

                return await manager.enqueue("s1", run)

            first = asyncio.create_task(request("a"))
            await asyncio.sleep(0)
            rest = [asyncio.create_task(request(name)) for name in ("b", "c")]
            for _ in range(3):
                await asyncio.sleep(0)
            depth = manager.queue_depth("s1")
            locked = manager.is_locked("s1")
            gate.set()
            results = await asyncio.gather(first, *rest)
            return order, results, depth, locked, manager.is_locked("s1")

        order, results, depth, locked, locked_after = asyncio.run(scenario())
        self.assertEqual(["a", "b", "c"], order)
        self.assertEqual(["a", "b", "c"], results)
        self.assertEqual(2, depth)
        self.assertTrue(locked)
        self.assertFalse(locked_after)

    def test_busy_when_queuing_disabled(self) -> None:
        async def scenario():
            manager = _manager(enable_queuing=False)
            async with manager.acquire_lock("s1"):
                async with manager.acquire_lock("s1"):
                    pass

        with self.assertRaises(SessionError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(SessionError.BUSY, ctx.exception.code)

    def test_queue_full(self) -> None:
        async def scenario():
            manager = _manager(max_queue_depth=1)
            holder = await manager._acquire("s1")
            waiter = asyncio.create_task(manager._acquire("s1"))
            await asyncio.sleep(0)
            try:
                with self.assertRaises(SessionError) as ctx:
                    await manager._acquire("s1")
            finally:
                holder.release()
                (await waiter).release()
            return ctx.exception.code

        self.assertEqual(SessionError.QUEUE_FULL, asyncio.run(scenario()))

    def test_lock_timeout(self) -> None:
        async def scenario():
            manager = _manager(lock_timeout_seconds=0.05)
            async with manager.acquire_lock("s1"):
                with self.assertRaises(SessionError) as ctx:
                    await manager._acquire("s1")
                depth = manager.queue_depth("s1")
            return ctx.exception.code, depth, manager.is_locked("s1")

        code, depth, locked = asyncio.run(scenario())
        self.assertEqual(SessionError.LOCK_TIMEOUT, code)
        self.assertEqual(0, depth)
        self.assertFalse(locked)

    def test_cancelled_waiter_does_not_receive_lock(self) -> None:
        async def scenario():
            manager = _manager()
            holder = await manager._acquire("s1")
            waiter = asyncio.create_task(manager._acquire("s1"))
            await asyncio.sleep(0)
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            holder.release()
            return manager.is_locked("s1"), manager.queue_depth("s1")

        self.assertEqual((False, 0), asyncio.run(scenario()))

    def test_locking_disabled_allows_concurrent_holders(self) -> None:
        async def scenario():
            manager = _manager(enable_locking=False)
            async with manager.acquire_lock("s1"):
                async with manager.acquire_lock("s1"):
                    return True

        self.assertTrue(asyncio.run(scenario()))

    def test_abort_signals_holder(self) -> None:
        async def scenario():
            manager = _manager()
            idle = manager.abort("s1")
            async with manager.acquire_lock("s1") as lock:
                signalled = manager.abort("s1")
                return idle, signalled, lock.abort.is_set()

        self.assertEqual((False, True, True), asyncio.run(scenario()))

    def test_release_is_idempotent(self) -> None:
        async def scenario():
            manager = _manager()
            lock = await manager._acquire("s1")
            lock.release()
            lock.release()
            return lock.released, manager.is_locked("s1")

        self.assertEqual((True, False), asyncio.run(scenario()))


class RevertTests(WorkspaceTestCase):
    def _conversation(self, manager: SessionStateManager):
        u1 = completed_message("s1", "user", "first", created=1)
        a1 = completed_message("s1", "assistant", "one", tokens=TokenUsage(input=10), created=2)
        u2 = completed_message("s1", "user", "second", created=3)
        a2 = completed_message("s1", "assistant", "two", tokens=TokenUsage(input=20), created=4)
        for message in (u1, a1, u2, a2):
            manager.add_message(message)
        return u1, a1, u2, a2

    def test_revert_removes_message_and_successors(self) -> None:
        manager = _manager()
        u1, a1, u2, _ = self._conversation(manager)

        info = asyncio.run(manager.revert("s1", u2.id))

        self.assertEqual(2, info.removed_messages)
        self.assertEqual([u1.id, a1.id], [m.id for m in manager.get_messages("s1")])
        session = manager.get_session("s1")
        self.assertEqual(TokenUsage(input=10), session.tokens)
        self.assertEqual(info, session.revert)

    def test_revert_restores_files_touched_by_removed_messages(self) -> None:
        manager = _manager()
        _, _, u2, a2 = self._conversation(manager)
        path = self.write("app.py", "before")
        manager.snapshots.capture("s1", a2.id, "call-1", [path])
        path.write_text("after", encoding="utf-8")

        info = asyncio.run(manager.revert("s1", u2.id))

        self.assertEqual([str(path)], info.restored_files)
        self.assertEqual("before", path.read_text(encoding="utf-8"))

    def test_part_level_revert(self) -> None:
        manager = _manager()
        u1 = completed_message("s1", "user", "edit both files")
        assistant = new_message("s1", "assistant")
        intro = text_part(assistant, "Editing now")
        first = ToolPart(
            id=generate_id("prt"), session_id="s1", message_id=assistant.id, tool="edit",
            call_id="call-a", state=ToolStateRunning(input={}, start=1),
        )
        second = ToolPart(
            id=generate_id("prt"), session_id="s1", message_id=assistant.id, tool="edit",
            call_id="call-b", state=ToolStateRunning(input={}, start=1),
        )
        first.complete("ok")
        second.complete("ok")
        assistant.parts.extend([intro, first, second])
        assistant.info.time.completed = now_ms()
        follow_up = completed_message("s1", "user", "thanks")
        for message in (u1, assistant, follow_up):
            manager.add_message(message)

        a = self.write("a.py", "a-before")
        b = self.write("b.py", "b-before")
        manager.snapshots.capture("s1", assistant.id, "call-a", [a])
        manager.snapshots.capture("s1", assistant.id, "call-b", [b])
        a.write_text("a-after", encoding="utf-8")
        b.write_text("b-after", encoding="utf-8")

        info = asyncio.run(manager.revert("s1", assistant.id, part_id=second.id))

        messages = manager.get_messages("s1")
        self.assertEqual([u1.id, assistant.id], [m.id for m in messages])
        self.assertEqual([intro.id, first.id], [p.id for p in messages[1].parts])
        self.assertEqual(1, info.removed_messages)
        self.assertEqual("a-after", a.read_text(encoding="utf-8"))
        self.assertEqual("b-before", b.read_text(encoding="utf-8"))

    def test_failed_restore_leaves_history_untouched(self) -> None:
        manager = _manager()
        assistant = new_message("s1", "assistant")
        intro = text_part(assistant, "Editing now")
        tool = ToolPart(
            id=generate_id("prt"), session_id="s1", message_id=assistant.id, tool="edit",
            call_id="call-a", state=ToolStateRunning(input={}, start=1),
        )
        tool.complete("ok")
        assistant.parts.extend([intro, tool])
        assistant.info.time.completed = now_ms()
        manager.add_message(completed_message("s1", "user", "edit it"))
        manager.add_message(assistant)

        with mock.patch.object(manager.snapshots, "restore", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                asyncio.run(manager.revert("s1", assistant.id, part_id=tool.id))

        messages = manager.get_messages("s1")
        self.assertEqual(2, len(messages))
        self.assertEqual([intro.id, tool.id], [p.id for p in messages[1].parts])
        self.assertIsNone(manager.get_session("s1").revert)

    def test_revert_refused_while_locked(self) -> None:
        async def scenario(manager, message_id):
            async with manager.acquire_lock("s1"):
                await manager.revert("s1", message_id)

        manager = _manager()
        u1, *_ = self._conversation(manager)
        with self.assertRaises(SessionError) as ctx:
            asyncio.run(scenario(manager, u1.id))
        self.assertEqual(SessionError.LOCKED, ctx.exception.code)
        self.assertEqual(4, len(manager.get_messages("s1")))

    def test_revert_errors(self) -> None:
        manager = _manager()
        u1, *_ = self._conversation(manager)
        with self.assertRaises(SessionError) as ctx:
            asyncio.run(manager.revert("s1", "msg_missing"))
        self.assertEqual(SessionError.NOT_FOUND, ctx.exception.code)

        with self.assertRaises(SessionError) as ctx:
            asyncio.run(manager.revert("s1", u1.id, part_id="prt_missing"))
        self.assertEqual(SessionError.NOT_FOUND, ctx.exception.code)

        disabled = _manager(enable_revert=False)
        with self.assertRaises(SessionError) as ctx:
            asyncio.run(disabled.revert("s1", u1.id))
        self.assertEqual(SessionError.REVERT_DISABLED, ctx.exception.code)


class CompressionTests(unittest.TestCase):
    def _filled(self, count: int = 10, **config) -> SessionStateManager:
        manager = _manager(**config)
        for index in range(count):
            role = "user" if index % 2 == 0 else "assistant"
            manager.add_message(completed_message("s1", role, f"message {index}", created=index + 1))
        return manager

    def test_keeps_recent_messages_and_summarizes_the_rest(self) -> None:
        manager = self._filled(10)
        original = manager.get_messages("s1")
        seen: list[list[str]] = []

        async def summarize(messages):
            seen.append([m.id for m in messages])
            return "They discussed ten things."

        self.assertTrue(asyncio.run(manager.compress("s1", summarize)))

        messages = manager.get_messages("s1")
        self.assertEqual([m.id for m in original[:7]], seen[0])
        self.assertEqual([m.id for m in original[7:]], [m.id for m in messages[1:]])
        summary = messages[0]
        self.assertTrue(summary.info.summary)
        self.assertEqual("user", summary.info.role)
        self.assertTrue(summary.text().startswith(SUMMARY_PREFIX))
        self.assertIn("They discussed ten things.", summary.text())
        self.assertTrue(manager.get_session("s1").compressed)

    def test_keeps_at_least_one_message(self) -> None:
        manager = self._filled(2, preserve_threshold=0.1)

        async def summarize(messages):
            return "short"

        self.assertTrue(asyncio.run(manager.compress("s1", summarize)))
        self.assertEqual(2, len(manager.get_messages("s1")))

    def test_nothing_to_compress(self) -> None:
        manager = self._filled(1)

        async def summarize(messages):
            raise AssertionError("should not be called")

        self.assertFalse(asyncio.run(manager.compress("s1", summarize)))

    def test_failure_leaves_history_untouched(self) -> None:
        manager = self._filled(10)
        before = [m.id for m in manager.get_messages("s1")]

        async def summarize(messages):
            raise RuntimeError("provider down")

        with self.assertRaises(CompressionError):
            asyncio.run(manager.compress("s1", summarize))
        self.assertEqual(before, [m.id for m in manager.get_messages("s1")])
        self.assertFalse(manager.get_session("s1").compressed)

    def test_should_compress_uses_estimate(self) -> None:
        manager = _manager(output_reserve=0)
        manager.add_message(completed_message("s1", "user", "x" * 400))
        self.assertTrue(manager.should_compress("s1", context_window=100))
        self.assertFalse(manager.should_compress("s1", context_window=1000))

    def test_should_compress_uses_recorded_usage(self) -> None:
        manager = _manager(output_reserve=0)
        manager.add_message(completed_message("s1", "user", "hi", created=1))
        assistant = completed_message("s1", "assistant", "ok", created=2)
        assistant.parts.append(
            StepFinishPart(id=generate_id("prt"), session_id="s1", message_id=assistant.id, tokens=TokenUsage(input=90))
        )
        manager.add_message(assistant)
        self.assertTrue(manager.should_compress("s1", context_window=100))

    def test_recorded_usage_before_summary_is_ignored(self) -> None:
        manager = _manager(output_reserve=0)
        assistant = completed_message("s1", "assistant", "ok", created=1)
        assistant.parts.append(
            StepFinishPart(id=generate_id("prt"), session_id="s1", message_id=assistant.id, tokens=TokenUsage(input=90))
        )
        manager.add_message(assistant)
        summary = completed_message("s1", "user", "summary", created=2)
        summary.info.summary = True
        manager.add_message(summary)
        self.assertFalse(manager.should_compress("s1", context_window=100))


if __name__ == "__main__":
    unittest.main()
