from __future__ import annotations

import os

from medledger.core.config import ConfigManager
from medledger.core.config.paths import ConfigFsPaths
from medledger.core.crypto import generate_key_bytes, key_id_from_key_bytes, write_key_file


def main() -> None:
    cm = ConfigManager(fs=ConfigFsPaths("."))
    cfg = cm.load()
    key_path = cm.path(cfg.crypto.key_path)

    if os.path.exists(key_path):
        print(f"Encryption key already exists at: {key_path}")
        return

    key = generate_key_bytes()
    write_key_file(key_path, key)
    print(f"Created encryption key at: {key_path}")
    print(f"Key fingerprint (key_id): {key_id_from_key_bytes(key)}")
    print("Back this file up: records encrypted with it cannot be read without it.")


if __name__ == "__main__":
    main()
