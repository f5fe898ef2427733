from medledger.core.config.manager import ConfigManager
from medledger.core.config.models import AppConfig
from medledger.core.config.paths import ConfigFsPaths

__all__ = ["AppConfig", "ConfigFsPaths", "ConfigManager"]
