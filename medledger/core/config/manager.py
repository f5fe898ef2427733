from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from medledger.core.config.io import atomic_write_json, quarantine_corrupt, read_json_file
from medledger.core.config.models import AppConfig
from medledger.core.config.paths import ConfigFsPaths
from medledger.core.errors import ConfigError


class ConfigManager:
    """
    Loads config/medledger.json into a validated AppConfig.

    - missing file: defaults are written (unless read_only)
    - corrupt JSON: file is quarantined under config/backups and defaults are used
    - schema violations: ConfigError (never silently replaced)
    - secrets are resolved from the environment only, by the variable names in config
    """

    def __init__(
        self,
        *,
        fs: Optional[ConfigFsPaths] = None,
        logger: Optional[logging.Logger] = None,
        read_only: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger or logging.getLogger("medledger.config")
        self.read_only = read_only
        self._env = env if env is not None else os.environ
        self._cfg: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        rr = read_json_file(self.fs.config_file)
        raw: Dict[str, Any] = {}
        if rr.ok:
            raw = rr.data
        elif rr.error == "missing":
            self.logger.info("No config at %s; using defaults.", self.fs.config_file)
            if not self.read_only:
                atomic_write_json(self.fs.config_file, AppConfig().model_dump(mode="json"))
        else:
            moved = None if self.read_only else quarantine_corrupt(self.fs.config_file, self.fs.backups_dir)
            self.logger.warning("Config %s unreadable (%s); using defaults. Quarantined to %s.", self.fs.config_file, rr.error, moved)

        try:
            cfg = AppConfig.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError("Configuration file failed validation.", path=self.fs.config_file, errors=e.errors(include_url=False)) from e
        self._cfg = cfg
        return cfg

    def get(self) -> AppConfig:
        if self._cfg is None:
            return self.load()
        return self._cfg

    def save(self, cfg: AppConfig) -> None:
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        atomic_write_json(self.fs.config_file, cfg.model_dump(mode="json"))
        self._cfg = cfg

    @property
    def env(self) -> Mapping[str, str]:
        return self._env

    def secret(self, env_name: str) -> Optional[str]:
        if not env_name:
            return None
        v = self._env.get(env_name)
        v = v.strip() if isinstance(v, str) else None
        return v or None

    def path(self, p: str) -> str:
        return self.fs.resolve(p)
