import unittest
from pathlib import Path
from unittest import mock

from waylog.attribution import ExactPathPolicy
from waylog.errors import UnknownProvider
from waylog.provider import SUPPORTED_PROVIDERS, ProviderAdapter, create_provider


class ProviderFactoryTests(unittest.TestCase):
    def test_creates_each_supported_provider(self) -> None:
        for name in SUPPORTED_PROVIDERS:
            provider = create_provider(name, data_dir=Path("/nonexistent"))
            self.assertIsInstance(provider, ProviderAdapter)
            self.assertEqual(name, provider.name)
            self.assertEqual(name, provider.executable)

    def test_overrides_are_applied(self) -> None:
        provider = create_provider(" Claude ", data_dir=Path("/srv/claude"), executable="/opt/claude", policy=ExactPathPolicy())
        self.assertEqual(Path("/srv/claude"), provider.data_dir)
        self.assertEqual("/opt/claude", provider.executable)
        self.assertEqual("exact", provider.policy.name)

    def test_unknown_provider_raises(self) -> None:
        with self.assertRaises(UnknownProvider) as ctx:
            create_provider("copilot")
        self.assertIn("copilot", str(ctx.exception))

    def test_default_store_honours_environment(self) -> None:
        with mock.patch.dict("os.environ", {"CLAUDE_CONFIG_DIR": "/cfg/claude", "CODEX_HOME": "/cfg/codex"}):
            self.assertEqual(Path("/cfg/claude/projects"), create_provider("claude").data_dir)
            self.assertEqual(Path("/cfg/codex/sessions"), create_provider("codex").data_dir)


if __name__ == "__main__":
    unittest.main()
