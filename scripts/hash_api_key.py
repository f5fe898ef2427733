from __future__ import annotations

import secrets

from medledger.web.security import hash_api_key


def main() -> None:
    key = secrets.token_urlsafe(32)
    print(f"API key (give to the client, shown once): {key}")
    print(f"Add to web.api_key_hashes: {hash_api_key(key)}")


if __name__ == "__main__":
    main()
