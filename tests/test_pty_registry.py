import os
import tempfile
import time
import unittest
from pathlib import Path


def _alive(pid: int) -> bool:
    import psutil

    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


def _wait_for(pred, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.05)
    return pred()


class TestPtySupervisor(unittest.TestCase):
    def test_spawn_capture_and_kill_tree(self) -> None:
        from coders.kernel.output_buffer import OutputBuffer
        from coders.kernel.process_tree import ProcessTree
        from coders.runners.pty import PtySupervisor

        sup = PtySupervisor(process_tree=ProcessTree(grace_seconds=0.2))
        self.addCleanup(sup.stop_all)
        buf = OutputBuffer(100)
        with tempfile.TemporaryDirectory() as td:
            s = sup.spawn(
                session_id="t1",
                name="coder-sh-t1",
                cwd=Path(td),
                command=["sh", "-c", "echo ready; sleep 30 & sleep 30"],
                env={},
                buffer=buf,
            )
            self.assertTrue(_wait_for(lambda: "ready" in buf.get_all_lines()))
            self.assertTrue(_wait_for(lambda: len(sup.process_tree.descendants([s.pid])) >= 2))
            tree = sup.process_tree.descendants([s.pid])

            self.assertTrue(sup.kill("t1"))
            self.assertFalse(s.is_running())
            self.assertTrue(s.killed)
            self.assertTrue(_wait_for(lambda: not any(_alive(p) for p in tree)))
            self.assertFalse(sup.kill("t1"))

    def test_spawn_errors(self) -> None:
        from coders.errors import SpawnError
        from coders.kernel.output_buffer import OutputBuffer
        from coders.runners.pty import PtySupervisor

        sup = PtySupervisor()
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(SpawnError):
                sup.spawn(session_id="x", name="x", cwd=Path(td), command=["no-such-tool-xyz"], env={}, buffer=OutputBuffer())
            with self.assertRaises(SpawnError):
                sup.spawn(session_id="x", name="x", cwd=Path(td) / "missing", command=["sh"], env={}, buffer=OutputBuffer())
            with self.assertRaises(SpawnError):
                sup.spawn(session_id="x", name="x", cwd=Path(td), command=[], env={}, buffer=OutputBuffer())


class TestSessionRegistry(unittest.TestCase):
    def setUp(self) -> None:
        from coders.kernel.settings import Settings, ToolSpec
        from coders.kernel.store import MemoryStore

        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self._old_home = os.environ.get("CODERS_HOME")
        os.environ["CODERS_HOME"] = self._td.name
        self.addCleanup(self._restore_home)

        self.settings = Settings(heartbeat_enabled=False, kill_grace_seconds=0.1)
        self.settings.tools["echo"] = ToolSpec(name="echo", command=["sh", "-c", 'echo "id=$CODERS_SESSION_ID"; sleep 30'], prompt_mode="none")
        self.settings.tools["crashy"] = ToolSpec(name="crashy", command=["sh", "-c", "sleep 0.2; exit 3"], prompt_mode="none")
        self.store = MemoryStore()

    def _restore_home(self) -> None:
        if self._old_home is None:
            os.environ.pop("CODERS_HOME", None)
        else:
            os.environ["CODERS_HOME"] = self._old_home

    def _registry(self):
        from coders.kernel.registry import SessionRegistry

        reg = SessionRegistry(settings=self.settings, store=self.store)
        self.addCleanup(reg.close)
        return reg

    def test_create_list_output_kill(self) -> None:
        from coders.contracts.v1 import SpawnRequest
        from coders.errors import SessionNotFoundError

        reg = self._registry()
        info = reg.create_session(SpawnRequest(tool="echo", task="Say hello", cwd=self._td.name))

        self.assertTrue(info.id.startswith("coder-echo-say-hello-"))
        self.assertEqual(info.status, "running")
        self.assertGreater(info.pid, 0)
        self.assertEqual([s.id for s in reg.list_sessions()], [info.id])
        self.assertTrue(_wait_for(lambda: f"id={info.id}" in reg.get_output(info.id)))

        reg.promises.publish(info.id, "done")
        killed = reg.kill_session(info.id)
        self.assertEqual(killed.status, "killed")
        self.assertIsNone(reg.promises.get_promise(info.id))
        with self.assertRaises(SessionNotFoundError):
            reg.get_session(info.id)
        with self.assertRaises(SessionNotFoundError):
            reg.kill_session(info.id)

    def test_missing_binary_is_reported(self) -> None:
        from coders.contracts.v1 import SpawnRequest
        from coders.errors import SpawnError

        reg = self._registry()
        with self.assertRaises(SpawnError):
            reg.create_session(SpawnRequest(tool="no-such-tool-xyz", cwd=self._td.name))
        self.assertEqual(reg.list_sessions(), [])

    def test_kill_completed_only_touches_promised_sessions(self) -> None:
        from coders.contracts.v1 import SpawnRequest

        reg = self._registry()
        a = reg.create_session(SpawnRequest(tool="echo", task="a", cwd=self._td.name))
        b = reg.create_session(SpawnRequest(tool="echo", task="b", cwd=self._td.name))
        reg.promises.publish(a.id, "finished")

        killed = reg.kill_completed()
        self.assertEqual([k.id for k in killed], [a.id])
        self.assertEqual([s.id for s in reg.list_sessions()], [b.id])

    def test_crash_restarts_until_limit(self) -> None:
        from coders.contracts.v1 import SpawnRequest

        reg = self._registry()
        info = reg.create_session(
            SpawnRequest(tool="crashy", task="t", cwd=self._td.name, restart_on_crash=True, max_restarts=1)
        )
        self.assertTrue(_wait_for(lambda: reg.get_session(info.id).status == "failed", timeout=10))

        final = reg.get_session(info.id)
        self.assertEqual(final.restart_count, 1)
        events = reg.crashes.events(info.id)
        self.assertEqual(len(events), 2)
        self.assertFalse(events[0].will_restart)
        self.assertTrue(events[1].will_restart)

    def test_exit_after_promise_is_not_a_crash(self) -> None:
        from coders.contracts.v1 import SpawnRequest

        reg = self._registry()
        info = reg.create_session(SpawnRequest(tool="crashy", task="t", cwd=self._td.name, restart_on_crash=True))
        reg.promises.publish(info.id, "done")
        self.assertTrue(_wait_for(lambda: reg.get_session(info.id).status == "exited"))
        time.sleep(0.2)
        self.assertEqual(reg.get_session(info.id).status, "exited")
        self.assertEqual(reg.crashes.events(info.id), [])


if __name__ == "__main__":
    unittest.main()
