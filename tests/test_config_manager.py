import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from familyhub.config_manager import ConfigManager
from familyhub.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_creates_default_file(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertTrue(self.config_path.exists())
        config = manager.load()
        self.assertEqual(config.caldav.server_url, "https://caldav.icloud.com")
        self.assertEqual(config.caldav.preferred_calendar_name, "Home")
        self.assertEqual(config.sync.max_workers, 4)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = AppConfig.from_dict(
            {
                "caldav": {"server_url": "https://dav.example.com/", "timeout_seconds": 10},
                "logging": {"level": "debug"},
            }
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["caldav"]["server_url"], "https://dav.example.com")
        self.assertEqual(data["caldav"]["timeout_seconds"], 10)
        self.assertEqual(data["logging"]["level"], "DEBUG")
        self.assertFalse(self.config_path.with_suffix(".yaml.tmp").exists())

    def test_update_merges_nested_sections(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"caldav": {"timeout_seconds": 12}})
        config = manager.update({"sync": {"include_color": False}})
        self.assertEqual(config.caldav.timeout_seconds, 12)
        self.assertFalse(config.sync.include_color)
        self.assertEqual(config.caldav.server_url, "https://caldav.icloud.com")

    def test_environment_overrides_file_values(self) -> None:
        manager = ConfigManager(str(self.config_path))
        with mock.patch.dict(
            os.environ,
            {"FAMILYHUB_CALDAV_URL": "https://dav.internal.example", "FAMILYHUB_LOG_LEVEL": "warning"},
        ):
            config = manager.load()
        self.assertEqual(config.caldav.server_url, "https://dav.internal.example")
        self.assertEqual(config.logging.level, "WARNING")
        stored = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(stored["caldav"]["server_url"], "https://caldav.icloud.com")

    def test_non_mapping_file_is_rejected(self) -> None:
        self.config_path.write_text("- just\n- a list\n", encoding="utf-8")
        manager = ConfigManager(str(self.config_path))
        with self.assertRaises(ValueError):
            manager.load()


if __name__ == "__main__":
    unittest.main()
