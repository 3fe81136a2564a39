from typing import Any, Dict

from .errors import ConfigLoadError, PersistError
from .models import BotConfig
from .storage import Storage
from .utils import json_log


class ConfigStore:
    """
    Owns the active BotConfig. Loaded once at startup (persisted values merged
    over defaults), replaced wholesale on every update and written straight back.
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._config = BotConfig()

    @property
    def current(self) -> BotConfig:
        return self._config

    def load(self) -> BotConfig:
        try:
            data = self._read()
        except ConfigLoadError as e:
            json_log("config_load_error", error=str(e))
            self._config = BotConfig()
            return self._config
        if data is None:
            self._config = BotConfig()
        else:
            self._config = BotConfig.from_json(data)
            json_log("config_loaded", path=str(self.storage.config_path))
        return self._config

    def _read(self):
        try:
            data = self.storage.read_json(self.storage.config_path)
        except (OSError, ValueError) as e:
            raise ConfigLoadError(str(e)) from e
        if data is not None and not isinstance(data, dict):
            raise ConfigLoadError("config document is not a JSON object")
        return data

    def update(self, changes: Dict[str, Any]) -> BotConfig:
        """Shallow-merge JSON-keyed changes and persist. Returns the new config."""
        self._config = self._config.merged(changes)
        self.persist()
        return self._config

    def persist(self) -> bool:
        try:
            self.storage.write_json(self.storage.config_path, self._config.to_json())
            return True
        except PersistError as e:
            json_log("config_persist_error", error=str(e))
            return False
