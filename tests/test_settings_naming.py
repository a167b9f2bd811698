import os
import tempfile
import unittest


class TestSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        from coders.kernel.settings import settings_from_doc

        s = settings_from_doc({}, env={})
        self.assertEqual(s.default_tool, "claude")
        self.assertEqual(s.fallback_tool, "codex")
        self.assertEqual(s.heartbeat_interval, 30.0)
        self.assertTrue(s.heartbeat_enabled)
        self.assertEqual(s.output_max_lines, 1000)
        self.assertFalse(s.restart_on_crash)
        self.assertEqual(s.max_restarts, 3)

    def test_env_overrides_file(self) -> None:
        from coders.kernel.settings import settings_from_doc

        doc = {"default_tool": "gemini", "heartbeat_interval": "45s", "heartbeat_enabled": True}
        env = {
            "CODERS_DEFAULT_TOOL": "Codex",
            "CODERS_HEARTBEAT_INTERVAL": "1m",
            "CODERS_DEFAULT_HEARTBEAT": "false",
            "CODERS_LOG_LEVEL": "debug",
        }
        s = settings_from_doc(doc, env=env)
        self.assertEqual(s.default_tool, "codex")
        self.assertEqual(s.heartbeat_interval, 60.0)
        self.assertFalse(s.heartbeat_enabled)
        self.assertEqual(s.log_level, "DEBUG")

        s = settings_from_doc(doc, env={})
        self.assertEqual(s.default_tool, "gemini")
        self.assertEqual(s.heartbeat_interval, 45.0)

    def test_invalid_values_fall_back(self) -> None:
        from coders.kernel.settings import settings_from_doc

        s = settings_from_doc({"heartbeat_interval": "soon", "max_restarts": "many", "output_max_lines": -5}, env={})
        self.assertEqual(s.heartbeat_interval, 30.0)
        self.assertEqual(s.max_restarts, 3)
        self.assertEqual(s.output_max_lines, 1)

    def test_redis_url_sources(self) -> None:
        from coders.kernel.settings import DEFAULT_REDIS_URL, settings_from_doc

        self.assertEqual(settings_from_doc({}, env={}).redis_url, DEFAULT_REDIS_URL)
        doc = {"redis_url": "redis://cache:6379/1"}
        self.assertEqual(settings_from_doc(doc, env={}).redis_url, "redis://cache:6379/1")
        self.assertEqual(settings_from_doc(doc, env={"REDIS_URL": "redis://r:1"}).redis_url, "redis://r:1")
        env = {"REDIS_URL": "redis://r:1", "CODERS_REDIS_URL": "redis://c:2"}
        self.assertEqual(settings_from_doc(doc, env=env).redis_url, "redis://c:2")
        self.assertNotIn("crash_check_interval", settings_from_doc({}, env={}).to_dict())

    def test_tool_argv(self) -> None:
        from coders.kernel.settings import settings_from_doc

        s = settings_from_doc({"tools": {"mytool": {"command": "mytool --fast", "prompt_mode": "arg"}}}, env={})
        self.assertEqual(s.tool("gemini").argv(prompt="do it"), ["gemini", "--yolo", "--prompt-interactive", "do it"])
        self.assertEqual(s.tool("claude").argv(prompt="do it", model="opus"), ["claude", "--dangerously-skip-permissions", "--model", "opus"])
        self.assertEqual(s.tool("mytool").argv(prompt="x"), ["mytool", "--fast", "x"])
        self.assertEqual(s.tool("unknown").command, ["unknown"])

    def test_save_and_load(self) -> None:
        from coders.kernel.settings import Settings, load_settings, save_settings

        old_home = os.environ.get("CODERS_HOME")
        try:
            with tempfile.TemporaryDirectory() as td:
                os.environ["CODERS_HOME"] = td
                save_settings(Settings(default_tool="opencode", max_restarts=5))
                s = load_settings(env={})
                self.assertEqual(s.default_tool, "opencode")
                self.assertEqual(s.max_restarts, 5)
        finally:
            if old_home is None:
                os.environ.pop("CODERS_HOME", None)
            else:
                os.environ["CODERS_HOME"] = old_home


class TestNaming(unittest.TestCase):
    def test_slugify(self) -> None:
        from coders.kernel.naming import slugify

        self.assertEqual(slugify("Fix the Login bug!"), "fix-the-login-bug")
        self.assertEqual(slugify("  --a__b--  "), "a-b")
        self.assertEqual(len(slugify("x" * 80)), 30)
        self.assertEqual(slugify("!!!"), "")

    def test_session_name_and_id(self) -> None:
        from coders.kernel.naming import ORCHESTRATOR_NAME, is_orchestrator, new_session_id, session_name

        name = session_name("claude", "Write tests")
        self.assertEqual(name, "coder-claude-write-tests")
        sid = new_session_id(name)
        self.assertTrue(sid.startswith(name + "-"))
        self.assertNotEqual(sid, new_session_id(name))
        self.assertTrue(is_orchestrator(new_session_id(ORCHESTRATOR_NAME)))
        self.assertFalse(is_orchestrator(sid))


if __name__ == "__main__":
    unittest.main()
