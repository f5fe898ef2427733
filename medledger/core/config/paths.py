from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ConfigFsPaths:
    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def config_file(self) -> str:
        return os.path.join(self.config_dir, "medledger.json")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def secure_dir(self) -> str:
        return os.path.join(self.root, "secure")

    @property
    def data_dir(self) -> str:
        return os.path.join(self.root, "data")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.root, "logs")

    def resolve(self, path: str) -> str:
        """Relative paths in config are anchored at the repo root."""
        if not path or os.path.isabs(path):
            return path
        return os.path.join(self.root, path)
