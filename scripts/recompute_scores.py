import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dutysync.context import build_context  # noqa: E402
from dutysync.core.logging_config import setup_logging  # noqa: E402
from dutysync.rosters import recompute_personnel_scores  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild cached duty scores from the score event ledger")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--no-sync", action="store_true", help="do not mirror corrected totals to the remote")
    args = parser.parse_args()

    setup_logging()
    ctx = build_context(database_url=args.database_url, start_relay=False)
    try:
        changed = recompute_personnel_scores(ctx)
        if not args.no_sync:
            ctx.relay.run_pending()
        print({"changed": len(changed), "failed_writes": ctx.store.failed_writes})
        return 0 if ctx.store.failed_writes == 0 else 1
    finally:
        ctx.close()


if __name__ == "__main__":
    raise SystemExit(main())
