import os

import keyring
import yaml

from exercise_resolver import ResolverPolicy
from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Load and save settings to a YAML file with optional encryption."""

    SENSITIVE_KEYS = {
        "assistant_api_key",
    }

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"
        self.service = "iron-planner"

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if self.encrypt:
            for key in list(data.keys()):
                if key in self.SENSITIVE_KEYS:
                    secret = keyring.get_password(self.service, key)
                    if secret is not None:
                        data[key] = secret
                    else:
                        data.pop(key, None)
        return data

    def save(self, data: dict) -> None:
        out = dict(data)
        if self.encrypt:
            for key in self.SENSITIVE_KEYS:
                if key in out and out[key] is not None:
                    keyring.set_password(self.service, key, str(out[key]))
                    out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Validated settings; ``PLANNER_DB_PATH`` overrides the file's db path."""
    data = YamlConfig(path).load()
    if os.environ.get("PLANNER_DB_PATH"):
        data["db_path"] = os.environ["PLANNER_DB_PATH"]
    return validate_settings(data)


def resolver_policy(settings: SettingsSchema) -> ResolverPolicy:
    return ResolverPolicy(
        threshold=settings.resolver_threshold,
        tie_margin=settings.resolver_tie_margin,
        max_suggestions=settings.resolver_max_suggestions,
    )


def draft_resolver_policy(settings: SettingsSchema) -> ResolverPolicy:
    return ResolverPolicy(
        threshold=settings.draft_resolver_threshold,
        tie_margin=settings.draft_resolver_tie_margin,
        max_suggestions=settings.resolver_max_suggestions,
    )
