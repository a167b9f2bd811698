import unittest


class TestPromiseStore(unittest.TestCase):
    def test_round_trip_and_delete(self) -> None:
        from coders.contracts.v1 import Promise
        from coders.kernel.promises import PromiseStore
        from coders.kernel.store import MemoryStore

        ps = PromiseStore(MemoryStore())
        p = Promise(session_id="s1", status="needs-review", summary="done", files_changed=["a.py"], blockers=[])
        ps.set_promise(p)
        self.assertEqual(ps.get_promise("s1"), p)

        self.assertTrue(ps.delete_promise("s1"))
        self.assertIsNone(ps.get_promise("s1"))

    def test_publish_rejects_bad_input(self) -> None:
        from coders.errors import InvalidPromiseError
        from coders.kernel.promises import PromiseStore
        from coders.kernel.store import MemoryStore

        ps = PromiseStore(MemoryStore())
        with self.assertRaises(InvalidPromiseError):
            ps.publish("", "summary")
        with self.assertRaises(InvalidPromiseError):
            ps.publish("s1", "summary", status="finished")

    def test_promise_expires(self) -> None:
        from coders.kernel.promises import PromiseStore
        from coders.kernel.store import MemoryStore

        now = [100.0]
        ps = PromiseStore(MemoryStore(clock=lambda: now[0]), ttl=60)
        ps.publish("s1", "done")
        now[0] += 61
        self.assertIsNone(ps.get_promise("s1"))

    def test_list_and_resume(self) -> None:
        from coders.kernel.promises import PromiseStore
        from coders.kernel.store import MemoryStore

        ps = PromiseStore(MemoryStore())
        ps.publish("a", "one")
        ps.publish("b", "two", status="blocked", blockers=["needs api key"])
        self.assertEqual({p.session_id for p in ps.list_promises()}, {"a", "b"})
        self.assertTrue(ps.resume("a"))
        self.assertEqual([p.session_id for p in ps.list_promises()], ["b"])


class TestCrashLog(unittest.TestCase):
    def test_eleventh_event_evicts_oldest(self) -> None:
        from coders.contracts.v1 import CrashEvent
        from coders.kernel.crash import CrashLog
        from coders.kernel.store import MemoryStore

        log = CrashLog(MemoryStore())
        for i in range(11):
            log.record(CrashEvent(session_id="s1", reason=f"crash {i}"))
        events = log.events("s1")
        self.assertEqual(len(events), 10)
        self.assertEqual(events[0].reason, "crash 10")
        self.assertNotIn("crash 0", [e.reason for e in events])

    def test_restart_budget(self) -> None:
        from coders.contracts.v1 import SessionState
        from coders.kernel.crash import CrashLog
        from coders.kernel.store import MemoryStore

        log = CrashLog(MemoryStore())
        state = SessionState(session_id="s1", session_name="coder-claude-x", tool="claude", restart_on_crash=True, max_restarts=2)
        log.save_state(state)

        first = log.on_unexpected_exit(state, exit_code=1)
        second = log.on_unexpected_exit(log.get_state("s1"), exit_code=1)
        self.assertTrue(first.will_restart)
        self.assertTrue(second.will_restart)
        self.assertEqual(log.get_state("s1").restart_count, 2)

        final = log.on_unexpected_exit(log.get_state("s1"), exit_code=137)
        self.assertFalse(final.will_restart)
        self.assertIsNone(log.get_state("s1"))
        self.assertEqual(len(log.events("s1")), 3)


if __name__ == "__main__":
    unittest.main()
