from __future__ import annotations

import argparse
import sys

from medledger.core.audit import AuditTrail
from medledger.core.config import ConfigManager
from medledger.core.config.paths import ConfigFsPaths


def main() -> None:
    ap = argparse.ArgumentParser(description="Verify the audit trail hash chain and sequence.")
    ap.add_argument("--last", type=int, default=None, help="Only check the last N entries.")
    ap.add_argument("--rebuild-index", action="store_true", help="Rebuild the SQLite index from the JSONL log.")
    args = ap.parse_args()

    cm = ConfigManager(fs=ConfigFsPaths("."), read_only=True)
    cfg = cm.load()
    trail = AuditTrail(
        path_jsonl=cm.path(cfg.audit.path_jsonl),
        sqlite_path=cm.path(cfg.audit.sqlite_path) if cfg.audit.use_sqlite_index else None,
    )
    report = trail.verify_integrity(limit_last_n=args.last)
    print(f"ok={report.ok} checked={report.checked} head_seq={report.head_seq} message={report.message}")
    if not report.ok:
        print(f"broken at line {report.broken_at_line} (seq {report.broken_at_seq})")
        sys.exit(1)
    if args.rebuild_index:
        print(f"Indexed {trail.rebuild_index()} entries.")


if __name__ == "__main__":
    main()
