from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from studysync.models import AppConfig, default_app_config

MASK = "***"
CREDENTIAL_KEYS = ("base_url", "username", "password")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _replace_file(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        path.write_text(text, encoding="utf-8")
        tmp_path.unlink(missing_ok=True)


class ConfigManager:
    """YAML-backed settings for the CalDAV connection, calendar and sync cadence."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _replace_file(self.config_path, text)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def apply_client_update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge settings sent by a client that only ever saw the masked password.

        A blank or masked password keeps the stored one. Sending any credential
        field reconnects a disconnected integration unless ``connected`` is given.
        """
        with self._lock:
            stored_password = self.load().caldav.password
            update = dict(payload)
            caldav = update.get("caldav")
            if isinstance(caldav, dict):
                caldav = dict(caldav)
                password = caldav.get("password")
                if password is not None and str(password).strip() in {"", MASK}:
                    if stored_password:
                        del caldav["password"]
                    else:
                        caldav["password"] = ""
                if "connected" not in caldav and any(key in caldav for key in CREDENTIAL_KEYS):
                    caldav["connected"] = True
                if caldav:
                    update["caldav"] = caldav
                else:
                    update.pop("caldav")
            return self.update(update)

    def set_managed_calendar(self, calendar_id: str) -> AppConfig:
        return self.update({"calendar": {"calendar_id": calendar_id}})

    def invalidate_credential(self) -> AppConfig:
        """Disconnect the integration after the server rejected the credential."""
        return self.update(
            {
                "caldav": {"password": "", "connected": False},
                "calendar": {"calendar_id": ""},
            }
        )

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["caldav"].get("password"):
            config["caldav"]["password"] = MASK
        return config

    def secret_meta(self) -> dict[str, Any]:
        has_password = bool(self.load().caldav.password.strip())
        return {"caldav": {"password": {"is_masked": has_password}}}
