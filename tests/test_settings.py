import os
import sys
import unittest

import keyring
import yaml

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig
from settings_schema import EngineSettings, load_settings, validate_settings


class DummyKeyring(keyring.backend.KeyringBackend):
    priority = 1

    def __init__(self):
        self.store = {}

    def get_password(self, service, username):
        return self.store.get((service, username))

    def set_password(self, service, username, password):
        self.store[(service, username)] = password

    def delete_password(self, service, username):
        self.store.pop((service, username), None)


class SettingsValidationTest(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = EngineSettings()
        self.assertEqual(settings.timezone, "UTC")
        self.assertEqual(settings.base_xp, 100)
        self.assertEqual(settings.prestige_min_xp, 100_000)
        self.assertEqual(settings.xp_spike_multiplier, 3.0)
        self.assertFalse(settings.streak_forgiveness)

    def test_invalid_values(self) -> None:
        for data in (
            {"base_xp": 0},
            {"xp_spike_multiplier": 1.0},
            {"timezone": "Mars/Olympus_Mons"},
            {"trailing_weeks": 2, "min_trailing_weeks": 3},
            {"new_account_percentile": 120},
        ):
            with self.assertRaises(ValueError):
                validate_settings(data)

    def test_valid_override(self) -> None:
        settings = validate_settings({"timezone": "Europe/Berlin", "prestige_cooldown_days": 7})
        self.assertEqual(settings.timezone, "Europe/Berlin")
        self.assertEqual(settings.prestige_cooldown_days, 7)


class SettingsFileTest(unittest.TestCase):
    def setUp(self) -> None:
        self.path = "test_engine_settings.yaml"
        if os.path.exists(self.path):
            os.remove(self.path)

    def tearDown(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
        os.environ.pop("ENCRYPT_SETTINGS", None)

    def test_missing_file_uses_defaults(self) -> None:
        self.assertEqual(load_settings(self.path), EngineSettings())

    def test_load_with_overrides(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"base_xp": 150, "timezone": "Asia/Tokyo"}, f)
        settings = load_settings(self.path, base_xp=200)
        self.assertEqual(settings.base_xp, 200)
        self.assertEqual(settings.timezone, "Asia/Tokyo")

    def test_environment_overrides_file(self) -> None:
        YamlConfig(self.path).save({"cron_secret": "from-file", "timezone": "UTC"})
        os.environ["PROGRESSION_CRON_SECRET"] = "from-env"
        os.environ["PROGRESSION_TIMEZONE"] = "Europe/Berlin"
        try:
            settings = load_settings(self.path)
        finally:
            os.environ.pop("PROGRESSION_CRON_SECRET", None)
            os.environ.pop("PROGRESSION_TIMEZONE", None)
        self.assertEqual(settings.cron_secret, "from-env")
        self.assertEqual(settings.timezone, "Europe/Berlin")

    def test_update_merges_into_file(self) -> None:
        cfg = YamlConfig(self.path)
        cfg.save({"base_xp": 150})
        cfg.update(prestige_cooldown_days=14)
        self.assertEqual(cfg.load(), {"base_xp": 150, "prestige_cooldown_days": 14})

    def test_cron_secret_kept_in_keyring(self) -> None:
        keyring.set_keyring(DummyKeyring())
        os.environ["ENCRYPT_SETTINGS"] = "1"
        YamlConfig(self.path).save({"cron_secret": "hunter2", "base_xp": 120})
        with open(self.path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        self.assertNotEqual(raw["cron_secret"], "hunter2")
        settings = load_settings(self.path)
        self.assertEqual(settings.cron_secret, "hunter2")
        self.assertEqual(settings.base_xp, 120)


if __name__ == "__main__":
    unittest.main()
