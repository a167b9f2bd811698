import unittest


class _Clock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class _StoreContract:
    def make(self, clock):
        raise NotImplementedError

    def test_ttl_expiry(self) -> None:
        clock = _Clock()
        s = self.make(clock)
        s.set("k:a", {"v": 1}, ttl=10)
        s.set("k:b", {"v": 2})
        self.assertEqual(s.get("k:a"), {"v": 1})
        clock.t += 11
        self.assertIsNone(s.get("k:a"))
        self.assertEqual(s.get("k:b"), {"v": 2})
        self.assertEqual(s.keys("k:"), ["k:b"])

    def test_delete(self) -> None:
        s = self.make(_Clock())
        s.set("k:a", {"v": 1})
        self.assertTrue(s.delete("k:a"))
        self.assertFalse(s.delete("k:a"))
        self.assertIsNone(s.get("k:a"))

    def test_list_is_capped_newest_first(self) -> None:
        s = self.make(_Clock())
        for i in range(12):
            s.lpush_trim("l:x", {"i": i}, max_len=10, ttl=60)
        items = s.lrange("l:x")
        self.assertEqual(len(items), 10)
        self.assertEqual(items[0], {"i": 11})
        self.assertEqual(items[-1], {"i": 2})
        self.assertEqual(s.lrange("l:x", 2), [{"i": 11}, {"i": 10}])

    def test_publish_reaches_subscribers(self) -> None:
        s = self.make(_Clock())
        got = []
        unsubscribe = s.subscribe("chan", lambda channel, message: got.append(message))
        s.publish("chan", {"n": 1})
        unsubscribe()
        s.publish("chan", {"n": 2})
        self.assertEqual(got, [{"n": 1}])


class TestMemoryStore(_StoreContract, unittest.TestCase):
    def make(self, clock):
        from coders.kernel.store import MemoryStore

        return MemoryStore(clock=clock)


class TestRedisStoreCommands(unittest.TestCase):
    def _store(self):
        from unittest.mock import MagicMock

        from coders.kernel.store import RedisStore

        client = MagicMock()
        return RedisStore(client=client), client

    def test_set_uses_millisecond_expiry(self) -> None:
        s, client = self._store()
        s.set("coders:pane:a", {"v": 1}, ttl=1.5)
        client.set.assert_called_once_with("coders:pane:a", '{"v": 1}', px=1500)
        s.set("coders:pane:b", {"v": 2})
        client.set.assert_called_with("coders:pane:b", '{"v": 2}', px=None)

    def test_get_decodes_json_and_ignores_garbage(self) -> None:
        s, client = self._store()
        client.get.return_value = '{"status": "completed"}'
        self.assertEqual(s.get("k"), {"status": "completed"})
        client.get.return_value = "not json"
        self.assertIsNone(s.get("k"))
        client.get.return_value = None
        self.assertIsNone(s.get("k"))

    def test_list_push_is_trimmed_and_expired_in_one_pipeline(self) -> None:
        s, client = self._store()
        pipe = client.pipeline.return_value
        s.lpush_trim("coders:crashes:a", {"i": 1}, max_len=10, ttl=60)
        pipe.lpush.assert_called_once_with("coders:crashes:a", '{"i": 1}')
        pipe.ltrim.assert_called_once_with("coders:crashes:a", 0, 9)
        pipe.pexpire.assert_called_once_with("coders:crashes:a", 60000)
        pipe.execute.assert_called_once_with()

    def test_lrange_counts(self) -> None:
        s, client = self._store()
        client.lrange.return_value = ['{"i": 2}', "junk", '{"i": 1}']
        self.assertEqual(s.lrange("l", 3), [{"i": 2}, {"i": 1}])
        client.lrange.assert_called_with("l", 0, 2)
        s.lrange("l")
        client.lrange.assert_called_with("l", 0, -1)
        self.assertEqual(s.lrange("l", 0), [])

    def test_keys_scan_escapes_glob_characters(self) -> None:
        s, client = self._store()
        client.scan_iter.return_value = iter(["p[1]:b", "p[1]:a", "p[1]:a"])
        self.assertEqual(s.keys("p[1]:"), ["p[1]:a", "p[1]:b"])
        client.scan_iter.assert_called_once_with(match="p\\[1\\]:*", count=500)

    def test_publish_sends_json(self) -> None:
        s, client = self._store()
        s.publish("coders:heartbeats", {"paneId": "a"})
        client.publish.assert_called_once_with("coders:heartbeats", '{"paneId": "a"}')

    def test_connection_errors_become_store_unavailable(self) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        from coders.errors import StoreUnavailableError

        s, client = self._store()
        for method in (client.get, client.set, client.delete, client.publish, client.lrange):
            method.side_effect = RedisConnectionError("connection refused")
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("connection refused")
        client.ping.side_effect = RedisConnectionError("connection refused")
        with self.assertRaises(StoreUnavailableError):
            s.get("k")
        with self.assertRaises(StoreUnavailableError):
            s.set("k", {"v": 1})
        with self.assertRaises(StoreUnavailableError):
            s.delete("k")
        with self.assertRaises(StoreUnavailableError):
            s.publish("c", {})
        with self.assertRaises(StoreUnavailableError):
            s.lrange("l")
        with self.assertRaises(StoreUnavailableError):
            s.lpush_trim("l", {}, max_len=10)
        self.assertFalse(s.ping())

    def test_promise_reader_treats_outage_as_absent(self) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        from coders.kernel.promises import PromiseStore

        s, client = self._store()
        client.get.side_effect = RedisConnectionError("connection refused")
        self.assertIsNone(PromiseStore(s).get_promise("coder-claude-x-1"))

    def test_default_store_follows_redis_url_setting(self) -> None:
        from coders.kernel.settings import Settings
        from coders.kernel.store import RedisStore, default_store

        s = default_store(Settings(redis_url="redis://127.0.0.1:6390/2"))
        self.assertIsInstance(s, RedisStore)
        self.assertEqual(s.url, "redis://127.0.0.1:6390/2")
        s.close()


class TestRedisStoreLive(unittest.TestCase):
    """Runs against CODERS_TEST_REDIS_URL (default local server); skipped when none answers."""

    def setUp(self) -> None:
        import os
        import uuid

        from coders.kernel.store import RedisStore

        self.store = RedisStore(os.environ.get("CODERS_TEST_REDIS_URL") or "redis://localhost:6379/15")
        if not self.store.ping():
            self.store.close()
            self.skipTest("no redis server")
        self.addCleanup(self.store.close)
        self.prefix = f"coders-test:{uuid.uuid4().hex[:8]}:"

    def tearDown(self) -> None:
        for k in self.store.keys(self.prefix):
            self.store.delete(k)

    def test_values_expire(self) -> None:
        import time

        self.store.set(self.prefix + "a", {"v": 1}, ttl=0.2)
        self.store.set(self.prefix + "b", {"v": 2})
        self.assertEqual(self.store.get(self.prefix + "a"), {"v": 1})
        time.sleep(0.4)
        self.assertIsNone(self.store.get(self.prefix + "a"))
        self.assertEqual(self.store.keys(self.prefix), [self.prefix + "b"])

    def test_list_is_capped_newest_first(self) -> None:
        key = self.prefix + "crashes"
        for i in range(12):
            self.store.lpush_trim(key, {"i": i}, max_len=10, ttl=60)
        items = self.store.lrange(key)
        self.assertEqual(len(items), 10)
        self.assertEqual(items[0], {"i": 11})
        self.assertEqual(items[-1], {"i": 2})

    def test_broadcast_reaches_a_second_connection(self) -> None:
        import threading

        from coders.kernel.store import RedisStore

        other = RedisStore(self.store.url)
        self.addCleanup(other.close)
        channel = self.prefix + "heartbeats"
        got = []
        arrived = threading.Event()

        def _on_message(_channel, message):
            got.append(message)
            arrived.set()

        unsubscribe = other.subscribe(channel, _on_message)
        self.addCleanup(unsubscribe)
        waited = 0.0
        while not arrived.is_set() and waited < 5.0:
            self.store.publish(channel, {"paneId": "a"})
            arrived.wait(0.2)
            waited += 0.2
        self.assertTrue(arrived.is_set())
        self.assertEqual(got[0], {"paneId": "a"})


if __name__ == "__main__":
    unittest.main()
