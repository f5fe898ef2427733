from __future__ import annotations

import json

from medledger.core.config import ConfigManager
from medledger.core.config.paths import ConfigFsPaths


def main() -> None:
    cm = ConfigManager(fs=ConfigFsPaths("."), read_only=True)
    cfg = cm.load()
    print(json.dumps(cfg.model_dump(mode="json"), indent=2, sort_keys=True))
    # Secrets live only in the environment; show whether each is present.
    for name in (cfg.crypto.key_env, cfg.ledger.private_key_env, cfg.content_store.token_env):
        print(f"{name}: {'set' if cm.secret(name) else 'missing'}")


if __name__ == "__main__":
    main()
