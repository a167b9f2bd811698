import unittest


class _Clock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class TestHeartbeatClassification(unittest.TestCase):
    def test_thresholds(self) -> None:
        from coders.kernel.heartbeat import classify_heartbeat

        self.assertEqual(classify_heartbeat(59), "healthy")
        self.assertEqual(classify_heartbeat(61), "stale")
        self.assertEqual(classify_heartbeat(301), "dead")
        self.assertEqual(classify_heartbeat(None), "dead")

    def test_never_improves_with_age(self) -> None:
        from coders.kernel.heartbeat import classify_heartbeat

        rank = {"healthy": 0, "stale": 1, "dead": 2}
        prev = 0
        for age in range(0, 600, 7):
            cur = rank[classify_heartbeat(float(age))]
            self.assertGreaterEqual(cur, prev)
            prev = cur

    def _evaluate(self, age):
        from coders.contracts.v1 import HeartbeatRecord
        from coders.kernel.health import HealthEvaluator
        from coders.kernel.heartbeat import heartbeat_key
        from coders.kernel.store import MemoryStore

        clock = _Clock()
        store = MemoryStore(clock=clock)
        if age is not None:
            rec = HeartbeatRecord(session_id="s1", timestamp=int((clock.t - age) * 1000))
            store.set(heartbeat_key("s1"), rec.model_dump(), ttl=3600)
        ev = HealthEvaluator(store, clock=clock)
        return ev.evaluate("s1", terminal_alive=True, process_running=True)

    def test_evaluate_from_store(self) -> None:
        self.assertEqual(self._evaluate(70).heartbeat_status, "stale")
        self.assertEqual(self._evaluate(400).heartbeat_status, "dead")
        self.assertEqual(self._evaluate(None).heartbeat_status, "dead")
        self.assertEqual(self._evaluate(5).heartbeat_status, "healthy")

    def test_store_outage_reads_as_missing(self) -> None:
        from coders.errors import StoreUnavailableError
        from coders.kernel.heartbeat import read_heartbeat

        class _Down:
            def get(self, key):
                raise StoreUnavailableError("down")

        self.assertIsNone(read_heartbeat(_Down(), "s1"))


class TestHeartbeatPublisher(unittest.TestCase):
    def test_publish_once_sets_record_and_broadcasts(self) -> None:
        from coders.kernel.heartbeat import HeartbeatPublisher, heartbeat_key, read_heartbeat
        from coders.kernel.store import HEARTBEAT_CHANNEL, MemoryStore

        store = MemoryStore()
        seen = []
        store.subscribe(HEARTBEAT_CHANNEL, lambda channel, message: seen.append(message))
        usage_text = "Total cost: $1.25\nTotal tokens: 5000\nAPI calls: 12\n"
        pub = HeartbeatPublisher(store, "s1", interval=30, task="fix", output_source=lambda: usage_text)

        rec = pub.publish_once()

        self.assertEqual(pub.ttl, 75.0)
        self.assertIsNotNone(store.get(heartbeat_key("s1")))
        got = read_heartbeat(store, "s1")
        self.assertEqual(got.task, "fix")
        self.assertEqual(got.usage.cost, "$1.25")
        self.assertEqual(got.usage.tokens, 5000)
        self.assertEqual(got.usage.api_calls, 12)
        self.assertEqual(seen[0]["session_id"], "s1")
        self.assertEqual(rec.pane_id, "s1")

    def test_backoff_doubles_and_caps(self) -> None:
        from coders.kernel.heartbeat import backoff_delay

        no_jitter = lambda: 0.0  # noqa: E731
        self.assertEqual(backoff_delay(1, rand=no_jitter), 1.0)
        self.assertEqual(backoff_delay(2, rand=no_jitter), 2.0)
        self.assertEqual(backoff_delay(4, rand=no_jitter), 8.0)
        self.assertEqual(backoff_delay(20, rand=no_jitter), 30.0)
        self.assertLessEqual(backoff_delay(20, rand=lambda: 1.0), 30.0)

    def test_run_retries_after_store_failure(self) -> None:
        from coders.errors import StoreUnavailableError
        from coders.kernel.heartbeat import HeartbeatPublisher
        from coders.kernel.store import MemoryStore

        class _Flaky(MemoryStore):
            def __init__(self) -> None:
                super().__init__()
                self.calls = 0

            def set(self, key, value, *, ttl=None):
                self.calls += 1
                if self.calls == 1:
                    raise StoreUnavailableError("down")
                super().set(key, value, ttl=ttl)

        store = _Flaky()
        alive = iter([True, True, False])
        pub = HeartbeatPublisher(store, "s1", interval=0.1, is_alive=lambda: next(alive), rand=lambda: 0.0)
        pub._stop.wait = lambda timeout: False  # type: ignore[assignment]
        pub.run()

        self.assertEqual(store.calls, 2)
        self.assertEqual(pub.failures, 0)

    def test_parse_usage_limits(self) -> None:
        from coders.kernel.heartbeat import parse_usage

        text = "Current session\n███ 42% used\nCurrent week (all models)\n█ 17% used\n"
        u = parse_usage(text)
        self.assertEqual(u.session_limit_pct, 42.0)
        self.assertEqual(u.weekly_limit_pct, 17.0)
        self.assertIsNone(parse_usage("nothing to see"))


class TestResolveStatus(unittest.TestCase):
    def _result(self, **kw):
        from coders.contracts.v1 import HealthCheckResult

        base = dict(
            session_id="s1",
            heartbeat_status="healthy",
            output_signal="changing",
            heartbeat_age_ms=1000,
            heartbeat_seen=True,
            process_running=True,
            terminal_alive=True,
        )
        base.update(kw)
        return HealthCheckResult(**base)

    def test_precedence(self) -> None:
        from coders.kernel.health import resolve_status

        dead_everything = self._result(terminal_alive=False, process_running=False, heartbeat_status="dead")
        self.assertEqual(resolve_status(dead_everything, has_promise=True).status, "healthy")
        self.assertEqual(resolve_status(dead_everything).status, "dead")
        self.assertEqual(resolve_status(self._result(process_running=False)).status, "unresponsive")

        orch = self._result(heartbeat_seen=False, heartbeat_status="dead", heartbeat_age_ms=None)
        self.assertEqual(resolve_status(orch, is_orchestrator=True).status, "healthy")
        self.assertEqual(resolve_status(orch).status, "dead")

        dead_and_stuck = self._result(heartbeat_status="dead", heartbeat_age_ms=400_000, output_signal="stuck")
        self.assertEqual(resolve_status(dead_and_stuck).status, "dead")
        stale_and_stuck = self._result(heartbeat_status="stale", heartbeat_age_ms=70_000, output_signal="stuck")
        self.assertEqual(resolve_status(stale_and_stuck).status, "stale")
        self.assertEqual(resolve_status(self._result(output_signal="stuck", output_stale_for_ms=400_000)).status, "stuck")
        self.assertEqual(resolve_status(self._result(output_signal="unresponsive")).status, "unresponsive")
        self.assertEqual(resolve_status(self._result()).message, "Active")

    def test_heartbeat_not_expected_is_not_dead(self) -> None:
        from coders.kernel.health import resolve_status

        r = self._result(heartbeat_status="dead", heartbeat_seen=False, heartbeat_age_ms=None, heartbeat_expected=False)
        self.assertEqual(resolve_status(r).status, "healthy")

    def test_summary_counts(self) -> None:
        from coders.kernel.health import read_summary, resolve_status, store_results, summarize
        from coders.kernel.store import MemoryStore

        results = [
            resolve_status(self._result(session_id="a")),
            resolve_status(self._result(session_id="b", heartbeat_status="stale", heartbeat_age_ms=70_000)),
            resolve_status(self._result(session_id="c", terminal_alive=False)),
        ]
        summary = summarize(results, now_ms=123)
        self.assertEqual((summary.total_sessions, summary.healthy, summary.stale, summary.dead), (3, 1, 1, 1))

        store = MemoryStore()
        store_results(store, summary)
        self.assertEqual(read_summary(store).timestamp, 123)


class TestOutputSampler(unittest.TestCase):
    def test_unchanged_output_becomes_stuck(self) -> None:
        from coders.contracts.v1 import HeartbeatRecord
        from coders.kernel.health import HealthEvaluator, OutputSampler
        from coders.kernel.heartbeat import heartbeat_key
        from coders.kernel.store import MemoryStore

        wall = _Clock()
        mono = _Clock(0.0)
        store = MemoryStore(clock=wall)
        ev = HealthEvaluator(store, sampler=OutputSampler(min_interval=0, clock=mono), stale_threshold=300, clock=wall)
        tail = lambda: ["same", "screen"]  # noqa: E731

        def check():
            store.set(heartbeat_key("s1"), HeartbeatRecord(session_id="s1", timestamp=int(wall.t * 1000)).model_dump())
            return ev.evaluate("s1", terminal_alive=True, process_running=True, read_tail=tail)

        self.assertEqual(check().output_signal, "changing")
        mono.t += 100
        self.assertEqual(check().output_signal, "static")
        mono.t += 250
        self.assertEqual(check().output_signal, "stuck")

    def test_static_output_without_any_heartbeat_is_unresponsive(self) -> None:
        from coders.kernel.health import HealthEvaluator, OutputSampler
        from coders.kernel.store import MemoryStore

        mono = _Clock(0.0)
        ev = HealthEvaluator(MemoryStore(), sampler=OutputSampler(min_interval=0, clock=mono))
        tail = lambda: ["prompt>"]  # noqa: E731
        ev.evaluate("s1", terminal_alive=True, process_running=True, read_tail=tail)
        mono.t += 400
        r = ev.evaluate("s1", terminal_alive=True, process_running=True, read_tail=tail)
        self.assertEqual(r.output_signal, "unresponsive")

    def test_blank_frozen_terminal_ages_like_any_other_output(self) -> None:
        from coders.kernel.health import HealthEvaluator, OutputSampler, output_hash, resolve_status
        from coders.kernel.store import MemoryStore

        self.assertTrue(output_hash([]))
        self.assertEqual(output_hash([]), output_hash([]))

        mono = _Clock(0.0)
        ev = HealthEvaluator(MemoryStore(), sampler=OutputSampler(min_interval=0, clock=mono))
        blank = lambda: []  # noqa: E731
        for _ in range(100):
            r = ev.evaluate("s1", terminal_alive=True, process_running=True, read_tail=blank)
            mono.t += 10
        self.assertEqual(r.output_signal, "unresponsive")
        self.assertGreaterEqual(r.output_stale_for_ms, 300_000)
        self.assertEqual(resolve_status(r).status, "unresponsive")

        r = ev.evaluate("s2", terminal_alive=True, process_running=True, read_tail=blank, heartbeat_expected=False)
        mono.t += 400
        r = ev.evaluate("s2", terminal_alive=True, process_running=True, read_tail=blank, heartbeat_expected=False)
        self.assertEqual(r.output_signal, "stuck")
        self.assertEqual(resolve_status(r).status, "stuck")



class _FakeRegistry:
    def __init__(self, store, ids):
        from coders.kernel.promises import PromiseStore
        from coders.kernel.settings import Settings

        self.settings = Settings()
        self.store = store
        self.promises = PromiseStore(store)
        self.ids = list(ids)

    def list_sessions(self):
        from coders.contracts.v1 import SessionInfo

        return [SessionInfo(id=i, name=i, tool="sh") for i in self.ids]

    def process_running(self, session_id):
        return True

    def get_output(self, session_id, lines=0):
        return ["$ "]

    def heartbeat_enabled(self, session_id):
        return True


class TestHealthMonitor(unittest.TestCase):
    def test_forgets_sessions_that_left_the_registry(self) -> None:
        from coders.contracts.v1 import HeartbeatRecord
        from coders.daemon.monitor import HealthMonitor
        from coders.kernel.heartbeat import heartbeat_key
        from coders.kernel.store import MemoryStore

        store = MemoryStore()
        reg = _FakeRegistry(store, ["a", "b"])
        store.set(heartbeat_key("a"), HeartbeatRecord(session_id="a").model_dump())
        mon = HealthMonitor(reg)
        self.assertEqual(mon.check_once().total_sessions, 2)
        self.assertEqual(set(mon.evaluator.sampler._samples), {"a", "b"})
        self.assertIn("a", mon.evaluator._heartbeat_seen)

        reg.ids = ["b"]
        self.assertEqual(mon.check_once().total_sessions, 1)
        self.assertEqual(set(mon.evaluator.sampler._samples), {"b"})
        self.assertNotIn("a", mon.evaluator._heartbeat_seen)


if __name__ == "__main__":
    unittest.main()
