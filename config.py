import os
from typing import Any, Dict

import keyring
import yaml

APP_VERSION = "1.0.0"
KEYRING_SERVICE = "progression-engine"

# Deployment overrides that win over the settings file.
ENV_OVERRIDES = {
    "cron_secret": "PROGRESSION_CRON_SECRET",
    "timezone": "PROGRESSION_TIMEZONE",
}


class YamlConfig:
    """Engine settings file.

    With ``ENCRYPT_SETTINGS=1`` the cron secret is kept in the OS keyring and
    the file only records that it is set.
    """

    SENSITIVE_KEYS = frozenset({"cron_secret"})

    def __init__(self, path: str = "settings.yaml", service: str = KEYRING_SERVICE) -> None:
        self.path = path
        self.service = service
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_file(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _resolve_secrets(self, data: Dict[str, Any]) -> None:
        for key in self.SENSITIVE_KEYS & data.keys():
            secret = keyring.get_password(self.service, key)
            if secret is None:
                del data[key]
            else:
                data[key] = secret

    def load(self) -> Dict[str, Any]:
        data = self._read_file()
        if self.encrypt:
            self._resolve_secrets(data)
        for key, env_name in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                data[key] = value
        return data

    def save(self, data: Dict[str, Any]) -> None:
        out = dict(data)
        if self.encrypt:
            for key in self.SENSITIVE_KEYS & out.keys():
                keyring.set_password(self.service, key, str(out[key]))
                out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f, sort_keys=True)

    def update(self, **changes: Any) -> Dict[str, Any]:
        """Merge ``changes`` into the stored file and return the result."""
        data = self._read_file()
        if self.encrypt:
            self._resolve_secrets(data)
        data.update(changes)
        self.save(data)
        return data
