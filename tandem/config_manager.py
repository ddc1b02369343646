from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from tandem.errors import ValidationError
from tandem.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_known_keys(payload: dict[str, Any], template: dict[str, Any], prefix: str = "") -> None:
    for key, value in payload.items():
        path = f"{prefix}{key}"
        if key not in template:
            raise ValidationError(f"Unknown config key: {path}")
        if isinstance(template[key], dict):
            if not isinstance(value, dict):
                raise ValidationError(f"Config section {path} must be a mapping")
            _check_known_keys(value, template[key], prefix=f"{path}.")


def _write_yaml(path: Path, config_dict: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML file holding the remote provider and sync settings.

    The API thread writes it and the scheduler thread re-reads it before every pass,
    so changes apply without a restart.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValidationError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {self.config_path} must hold a mapping")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read_raw()
        try:
            return AppConfig.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Config file {self.config_path} has an invalid value: {exc}") from exc

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _write_yaml(tmp_path, config_dict)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("Config file %s is busy, rewriting it in place", self.config_path)
                _write_yaml(self.config_path, config_dict)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge a partial config into the stored one; unknown keys are rejected."""
        with self._lock:
            current = self.load().to_dict()
            _check_known_keys(payload, current)
            try:
                config = AppConfig.from_dict(_deep_merge(current, payload))
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid config value: {exc}") from exc
            self.save(config)
        logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no changes")
        return config
