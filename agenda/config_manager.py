from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from agenda.models import AppConfig


ENV_OVERRIDES = {
    "AGENDA_GOOGLE_CLIENT_ID": ("google", "client_id"),
    "AGENDA_GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
    "AGENDA_GOOGLE_REDIRECT_URI": ("google", "redirect_uri"),
}
SECRET_FIELDS = (("google", "client_secret"),)
MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if not value:
            continue
        section_data = data.get(section)
        if not isinstance(section_data, dict):
            section_data = {}
            data[section] = section_data
        section_data[key] = value
    return data


def preserve_masked_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets from an update so stored values survive."""
    sanitized = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        section_data = sanitized.get(section)
        if not isinstance(section_data, dict) or key not in section_data:
            continue
        value = str(section_data.get(key) or "").strip()
        if value in {"", MASK}:
            if str(current.get(section, {}).get(key, "")):
                section_data.pop(key, None)
            else:
                section_data[key] = ""
        if not section_data:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(AppConfig())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        return data if isinstance(data, dict) else {}

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(_apply_env_overrides(self._read_file()))

    def _write(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            # Merge onto the file contents so env overrides are never persisted.
            current = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _deep_merge(current, preserve_masked_secrets(payload, current))
            self.save(AppConfig.from_dict(merged))
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
