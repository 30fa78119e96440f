import unittest

from open_core.snapshots import FileSnapshotManager
from tests.support import WorkspaceTestCase


class FileSnapshotManagerTests(WorkspaceTestCase):
    def test_restore_existing_file_by_message(self) -> None:
        path = self.write("a.txt", "original")
        manager = FileSnapshotManager()
        self.assertEqual([str(path)], manager.capture("s1", "m1", "c1", [path]))

        path.write_text("changed", encoding="utf-8")
        restored = manager.restore("s1", message_ids={"m1"})

        self.assertEqual([str(path)], restored)
        self.assertEqual("original", path.read_text(encoding="utf-8"))
        self.assertEqual([], manager.snapshots_for("s1"))

    def test_restore_removes_files_created_after_snapshot(self) -> None:
        path = self.workdir / "new.txt"
        manager = FileSnapshotManager()
        manager.capture("s1", "m1", "c1", [path])
        path.write_text("created by tool", encoding="utf-8")

        manager.restore("s1", call_ids={"c1"})

        self.assertFalse(path.exists())

    def test_first_capture_wins_per_call(self) -> None:
        path = self.write("a.txt", "v1")
        manager = FileSnapshotManager()
        manager.capture("s1", "m1", "c1", [path])
        path.write_text("v2", encoding="utf-8")
        self.assertEqual([], manager.capture("s1", "m1", "c1", [path]))
        self.assertEqual(1, len(manager.snapshots_for("s1")))

    def test_oldest_snapshot_is_applied_last(self) -> None:
        path = self.write("a.txt", "v1")
        manager = FileSnapshotManager()
        manager.capture("s1", "m1", "c1", [path])
        path.write_text("v2", encoding="utf-8")
        manager.capture("s1", "m2", "c2", [path])
        path.write_text("v3", encoding="utf-8")

        manager.restore("s1", message_ids={"m1", "m2"})

        self.assertEqual("v1", path.read_text(encoding="utf-8"))

    def test_restore_leaves_unselected_snapshots(self) -> None:
        a = self.write("a.txt", "a1")
        b = self.write("b.txt", "b1")
        manager = FileSnapshotManager()
        manager.capture("s1", "m1", "c1", [a])
        manager.capture("s1", "m1", "c2", [b])
        a.write_text("a2", encoding="utf-8")
        b.write_text("b2", encoding="utf-8")

        manager.restore("s1", call_ids={"c2"})

        self.assertEqual("a2", a.read_text(encoding="utf-8"))
        self.assertEqual("b1", b.read_text(encoding="utf-8"))
        self.assertEqual(["c1"], [s.call_id for s in manager.snapshots_for("s1")])

    def test_disabled_manager_captures_nothing(self) -> None:
        path = self.write("a.txt", "x")
        manager = FileSnapshotManager(enabled=False)
        self.assertEqual([], manager.capture("s1", "m1", "c1", [path]))
        self.assertEqual([], manager.restore("s1", message_ids={"m1"}))

    def test_discard(self) -> None:
        path = self.write("a.txt", "x")
        manager = FileSnapshotManager()
        manager.capture("s1", "m1", "c1", [path])
        manager.discard("s1")
        self.assertEqual([], manager.snapshots_for("s1"))


if __name__ == "__main__":
    unittest.main()
