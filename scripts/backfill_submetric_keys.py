#!/usr/bin/env python3
"""Re-key legacy submetric definitions to canonical keys (idempotent)."""

import argparse
import json
import sys

sys.path.insert(0, ".")

from app import create_app
from app.services.key_backfill import backfill_submetric_keys


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-key legacy submetric definitions; merge duplicates into canonical rows."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist backfill changes")
    parser.add_argument("--workspace-id", default=None, help="Limit to one workspace")
    parser.add_argument("--env", default=None, help="Config name (default: APP_ENV)")
    args = parser.parse_args()

    apply = bool(args.apply)
    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app(args.env)
    with app.app_context():
        summary = backfill_submetric_keys(apply=apply, workspace_id=args.workspace_id)

    print(
        "[SUMMARY] "
        f"mode={summary['mode']} "
        f"processed={summary['processed']} "
        f"rekeyed={summary['rekeyed']} "
        f"merged={summary['merged']} "
        f"unchanged={summary['unchanged']} "
        f"skipped={len(summary['skipped'])}"
    )
    if summary["orphans"]:
        print("[ORPHANS] " + json.dumps(summary["orphans"], indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
