import json
import unittest
from pathlib import Path
from unittest import mock

from tests.base import WorkspaceTestCase
from waylog.app_config import load_json_config, parse_app_config, resolve_runtime_env
from waylog.bootstrap import build_providers
from waylog.paths import config_path


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})

        self.assertEqual("INFO", app.log_level)
        self.assertIsNone(app.log_consumers)
        self.assertEqual(2.0, app.poll_interval_seconds)
        self.assertEqual("ancestor", app.attribution_policy)
        self.assertEqual(10, app.state_lock_timeout_seconds)
        self.assertEqual({}, app.providers)

    def test_provider_overrides(self) -> None:
        app = parse_app_config(
            {
                "LogLevel": "debug",
                "PollIntervalSeconds": "0.5",
                "AttributionPolicy": "Exact",
                "Providers": {"Claude": {"DataDir": "/data/claude", "Executable": "/opt/bin/claude"}, "codex": {}},
            }
        )

        self.assertEqual("DEBUG", app.log_level)
        self.assertEqual(0.5, app.poll_interval_seconds)
        self.assertEqual("exact", app.attribution_policy)
        self.assertEqual(Path("/data/claude"), app.providers["claude"].data_dir)
        self.assertEqual("/opt/bin/claude", app.providers["claude"].executable)
        self.assertIsNone(app.providers["codex"].data_dir)

        providers = build_providers(app)
        self.assertEqual(Path("/data/claude"), providers["claude"].data_dir)
        self.assertEqual("codex", providers["codex"].executable)
        self.assertEqual("exact", providers["gemini"].policy.name)

    def test_unknown_policy_is_rejected_when_building(self) -> None:
        with self.assertRaises(ValueError):
            build_providers(parse_app_config({"AttributionPolicy": "nearest"}))


class LoadConfigTests(WorkspaceTestCase):
    def test_missing_config_is_empty(self) -> None:
        self.assertEqual({}, load_json_config(self._project))

    def test_reads_project_config(self) -> None:
        path = config_path(self._project)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"LogLevel": "WARNING"}), encoding="utf-8")

        self.assertEqual({"LogLevel": "WARNING"}, load_json_config(self._project))

    def test_runtime_env_log_level_override(self) -> None:
        with mock.patch.dict("os.environ", {"WAYLOG_LOG_LEVEL": "debug"}):
            env = resolve_runtime_env(self._project)
        self.assertEqual("DEBUG", env.log_level_override)
        self.assertEqual(self._project, env.project_dir)

        with mock.patch.dict("os.environ", {"WAYLOG_LOG_LEVEL": ""}):
            self.assertIsNone(resolve_runtime_env(self._project).log_level_override)


if __name__ == "__main__":
    unittest.main()
