"""Typed SyncConfig persisted as key/value rows in sync_settings."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from inventory_sync.config import Settings
from inventory_sync.exceptions import ConfigurationError
from inventory_sync.models.sync_setting import SyncSetting
from inventory_sync.schemas.config import FullSyncConfig, SyncConfig
from inventory_sync.services.event_notifier import CONFIG_UPDATED, EventNotifier
from inventory_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

ENABLED_KEY = "inventory_sync_enabled"
AUTO_UPDATE_KEY = "inventory_auto_update_on_sale"
INTERVAL_KEY = "inventory_sync_interval"
LAST_SYNC_KEY = "inventory_last_sync"
CONNECTION_STATUS_KEY = "inventory_connection_status"

CONNECTION_STATUSES = ("connected", "disconnected", "error", "not_checked")

DESCRIPTIONS = {
    ENABLED_KEY: "Enable automatic inventory sync",
    AUTO_UPDATE_KEY: "Automatically update inventory stock on POS sale",
    INTERVAL_KEY: "Sync interval in milliseconds",
    LAST_SYNC_KEY: "Last successful inventory sync timestamp",
    CONNECTION_STATUS_KEY: "Inventory connection status",
}

# Names accepted by update_setting, mapped onto storage keys
SETTING_ALIASES = {
    "enabled": ENABLED_KEY,
    "autoUpdateOnSale": AUTO_UPDATE_KEY,
    "auto_update_on_sale": AUTO_UPDATE_KEY,
    "syncInterval": INTERVAL_KEY,
    "sync_interval": INTERVAL_KEY,
    ENABLED_KEY: ENABLED_KEY,
    AUTO_UPDATE_KEY: AUTO_UPDATE_KEY,
    INTERVAL_KEY: INTERVAL_KEY,
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off"):
        return False
    raise ConfigurationError(f"Expected a boolean, got {value!r}")


def validate_interval(value: Any) -> int:
    """Interval must be a positive whole number of milliseconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Sync interval must be a positive integer, got {value!r}")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"Sync interval must be a positive integer, got {value!r}")
    return value


class SyncConfigService:
    """Reads and writes the sync settings; every setter publishes config_updated."""

    def __init__(self, session_factory: sessionmaker, app_settings: Settings, notifier: Optional[EventNotifier] = None):
        self.session_factory = session_factory
        self.app_settings = app_settings
        self.notifier = notifier

    def _load(self) -> Dict[str, Optional[str]]:
        with self.session_factory() as db:
            return {row.key: row.value for row in db.query(SyncSetting).all()}

    def _defaults(self) -> Dict[str, Optional[str]]:
        return {
            ENABLED_KEY: "true" if self.app_settings.default_sync_enabled else "false",
            AUTO_UPDATE_KEY: "true" if self.app_settings.default_auto_update_on_sale else "false",
            INTERVAL_KEY: str(self.app_settings.default_sync_interval_ms),
            LAST_SYNC_KEY: None,
            CONNECTION_STATUS_KEY: "not_checked",
        }

    def _typed(self, raw: Dict[str, Optional[str]]) -> Dict[str, Any]:
        values = {**self._defaults(), **{k: v for k, v in raw.items() if v is not None}}
        try:
            interval = validate_interval(values[INTERVAL_KEY])
        except ConfigurationError:
            log.warning(f"Stored sync interval {values[INTERVAL_KEY]!r} is invalid, using default")
            interval = self.app_settings.default_sync_interval_ms
        return {
            "enabled": values[ENABLED_KEY] == "true",
            "auto_update_on_sale": values[AUTO_UPDATE_KEY] == "true",
            "sync_interval": interval,
            "last_sync": values.get(LAST_SYNC_KEY),
        }

    def get_sync_config(self) -> SyncConfig:
        return SyncConfig(**self._typed(self._load()))

    def get_full_config(self) -> FullSyncConfig:
        raw = self._load()
        return FullSyncConfig(
            **self._typed(raw),
            connection_status=raw.get(CONNECTION_STATUS_KEY) or "not_checked",
            all_settings=raw,
        )

    def _write(self, key: str, value: Optional[str], description: Optional[str] = None) -> SyncSetting:
        now = utcnow()
        with self.session_factory() as db:
            setting = db.query(SyncSetting).filter(SyncSetting.key == key).first()
            if setting is None:
                setting = SyncSetting(key=key, created_at=now)
                db.add(setting)
            setting.value = value
            setting.description = description or setting.description or DESCRIPTIONS.get(key)
            setting.updated_at = now
            db.commit()
            db.refresh(setting)
        log.debug(f"Setting {key} = {value!r}")
        return setting

    def _publish(self, key: str, value: Any) -> None:
        if self.notifier is not None:
            self.notifier.publish(CONFIG_UPDATED, {"key": key, "value": value})

    def update_setting(self, key: str, value: Any, description: Optional[str] = None) -> SyncSetting:
        """Generic setter for the recognized configuration keys."""
        if not key:
            raise ConfigurationError("Setting key is required")
        storage_key = SETTING_ALIASES.get(key)
        if storage_key is None:
            raise ConfigurationError(f"Unknown sync setting '{key}'")

        if storage_key == INTERVAL_KEY:
            stored = str(validate_interval(value))
        else:
            stored = "true" if _as_bool(value) else "false"

        setting = self._write(storage_key, stored, description)
        self._publish(storage_key, stored)
        return setting

    def set_enabled(self, enabled: Any) -> bool:
        value = _as_bool(enabled)
        self._write(ENABLED_KEY, "true" if value else "false")
        self._publish(ENABLED_KEY, value)
        return value

    def set_auto_update_on_sale(self, enabled: Any) -> bool:
        value = _as_bool(enabled)
        self._write(AUTO_UPDATE_KEY, "true" if value else "false")
        self._publish(AUTO_UPDATE_KEY, value)
        return value

    def set_sync_interval(self, interval_ms: Any) -> int:
        value = validate_interval(interval_ms)
        self._write(INTERVAL_KEY, str(value))
        self._publish(INTERVAL_KEY, value)
        return value

    def update_last_sync(self, timestamp: Optional[str] = None) -> str:
        timestamp = timestamp or utcnow().isoformat()
        self._write(LAST_SYNC_KEY, timestamp)
        return timestamp

    def set_connection_status(self, status: str) -> None:
        if status not in CONNECTION_STATUSES:
            raise ConfigurationError(f"Unknown connection status '{status}'")
        self._write(CONNECTION_STATUS_KEY, status)

    def initialize_default_settings(self) -> int:
        """Insert default rows for keys that do not exist yet; returns how many were created."""
        existing = self._load()
        created = 0
        for key, value in self._defaults().items():
            if key in existing:
                continue
            self._write(key, value, DESCRIPTIONS[key])
            created += 1
        log.info(f"Initialized {created} default sync settings")
        return created
