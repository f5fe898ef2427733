from __future__ import annotations

import argparse
import sys

import uvicorn

from medledger.core.config import ConfigManager
from medledger.core.config.paths import ConfigFsPaths
from medledger.core.errors import MedLedgerError
from medledger.core.logger import setup_logging
from medledger.core.services import build_services
from medledger.web.api import create_app


def main() -> None:
    ap = argparse.ArgumentParser(description="MedLedger record registry and consent service")
    ap.add_argument("--root", default=".", help="Directory holding config/, data/, logs/ and secure/.")
    ap.add_argument("--host", default=None, help="Bind host (overrides web.bind_host).")
    ap.add_argument("--port", type=int, default=None, help="Bind port (overrides web.port).")
    ap.add_argument("--check", action="store_true", help="Build services, print status and exit.")
    args = ap.parse_args()

    cm = ConfigManager(fs=ConfigFsPaths(args.root))
    try:
        cfg = cm.load()
    except MedLedgerError as e:
        print(f"Config error: {e.user_message}", file=sys.stderr)
        sys.exit(2)
    logger = setup_logging(cm.path(cfg.logging.log_dir), level=cfg.logging.level)

    try:
        services = build_services(cm)
    except MedLedgerError as e:
        logger.critical("Startup failed: %s (%s)", e.user_message, e.code)
        sys.exit(2)

    if args.check:
        for k, v in services.health().items():
            print(f"{k}: {v}")
        return

    host = args.host or cfg.web.bind_host
    port = int(args.port or cfg.web.port)
    logger.info("MedLedger listening on %s:%d", host, port)
    uvicorn.run(create_app(services), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
