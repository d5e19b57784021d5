"""
config.py
----------
Process-wide settings for the relay server.

Settings come from a YAML file (see relay.yaml) and are fixed at startup.
Command-line flags in server.py override host, port and upload directory.
"""

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional

import yaml

RANDOMIZED = "randomized"
SANITIZED = "sanitized"
NAMING_MODES = (RANDOMIZED, SANITIZED)

DEFAULT_MAX_FILE_SIZE = 20 * 1024 * 1024            # 20 MiB
DEFAULT_ALLOWED_TYPES = frozenset({"jpg", "jpeg", "png", "pdf", "txt", "mp4"})
DEFAULT_DELETE_AFTER_MS = 10 * 60 * 1000            # 10 minutes
DEFAULT_SEND_TIMEOUT_MS = 5 * 1000                  # per outbound frame


class ConfigError(Exception):
    """Raised when the configuration file holds unknown keys or bad values."""


@dataclass(frozen=True)
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    uploads_dir: str = "uploads"
    url_prefix: str = "/uploads"
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_file_types: FrozenSet[str] = field(default=DEFAULT_ALLOWED_TYPES)
    delete_after_ms: Optional[int] = DEFAULT_DELETE_AFTER_MS   # None = keep files
    naming_mode: str = RANDOMIZED
    send_timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS

    @property
    def delete_enabled(self) -> bool:
        return self.delete_after_ms is not None

    def with_overrides(self, **changes) -> "RelayConfig":
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


_KNOWN_KEYS = {
    "host", "port", "uploads_dir", "url_prefix", "max_file_size",
    "allowed_file_types", "delete_old_files", "delete_after_ms",
    "encrypt_file_names", "naming_mode", "send_timeout_ms",
}


def _int(raw: dict, key: str, minimum: int) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{key} must be an integer >= {minimum}, got {value!r}")
    return value


def config_from_dict(raw: Optional[dict]) -> RelayConfig:
    """
    Build a RelayConfig from a parsed YAML mapping.

    Two boolean switches are understood as well:
    `delete_old_files: false` disables expiry and `encrypt_file_names`
    selects between randomized and sanitized stored names.
    """
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be a mapping")
    unknown = set(raw) - _KNOWN_KEYS
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

    cfg = RelayConfig()
    changes = {}

    for key in ("host", "uploads_dir", "url_prefix"):
        if key in raw:
            if not isinstance(raw[key], str) or not raw[key]:
                raise ConfigError(f"{key} must be a non-empty string")
            changes[key] = raw[key]
    if "url_prefix" in changes:
        prefix = "/" + changes["url_prefix"].strip("/")
        if prefix == "/":
            raise ConfigError("url_prefix must name a path segment, e.g. /uploads")
        changes["url_prefix"] = prefix

    changes["port"] = _int(raw, "port", 0)
    changes["max_file_size"] = _int(raw, "max_file_size", 0)
    changes["send_timeout_ms"] = _int(raw, "send_timeout_ms", 1)

    if "allowed_file_types" in raw:
        types = raw["allowed_file_types"] or []
        if not isinstance(types, (list, tuple, set)):
            raise ConfigError("allowed_file_types must be a list of extensions")
        changes["allowed_file_types"] = frozenset(str(t).lower().lstrip(".") for t in types)

    delete_after = _int(raw, "delete_after_ms", 1)
    if raw.get("delete_old_files") is False or ("delete_after_ms" in raw and delete_after is None):
        cfg = replace(cfg, delete_after_ms=None)
    elif delete_after is not None:
        changes["delete_after_ms"] = delete_after

    if "naming_mode" in raw:
        if raw["naming_mode"] not in NAMING_MODES:
            raise ConfigError(f"naming_mode must be one of {NAMING_MODES}")
        changes["naming_mode"] = raw["naming_mode"]
    elif "encrypt_file_names" in raw:
        changes["naming_mode"] = RANDOMIZED if raw["encrypt_file_names"] else SANITIZED

    return cfg.with_overrides(**changes)


def load_config(yaml_path: Optional[str] = None) -> RelayConfig:
    """Load settings from yaml_path; defaults when no path is given."""
    if yaml_path is None:
        return RelayConfig()
    with open(yaml_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {yaml_path}: {e}") from e
    return config_from_dict(raw)
