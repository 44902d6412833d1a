import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dutysync.context import build_context  # noqa: E402
from dutysync.core.logging_config import setup_logging  # noqa: E402
from dutysync.sync import pull_remote_collections  # noqa: E402


def process_once(ctx, replay_limit: int) -> dict:
    requeued = ctx.relay.replay_failures(limit=replay_limit) if replay_limit else 0
    invalidated = ctx.store.poll_changes()
    result = ctx.relay.run_pending()
    result["requeued"] = requeued
    result["invalidated"] = invalidated
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Deliver queued sync operations to the remote store")
    parser.add_argument("--replay-limit", type=int, default=100, help="failures to requeue per pass (0 disables)")
    parser.add_argument("--poll-seconds", type=float, default=30.0)
    parser.add_argument("--pull", action="store_true", help="merge the remote collections before delivering")
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    setup_logging()
    ctx = build_context(start_relay=False)
    if not ctx.relay.enabled:
        print({"error": "REMOTE_SYNC_URL is not configured"})
        ctx.close()
        return 2

    try:
        if args.pull:
            print(pull_remote_collections(ctx.store, ctx.remote))
        while True:
            result = process_once(ctx, max(0, min(int(args.replay_limit), 1000)))
            print(result)
            if args.once:
                return 0 if result["failed"] == 0 else 1
            time.sleep(max(1.0, float(args.poll_seconds)))
    finally:
        ctx.close()


if __name__ == "__main__":
    raise SystemExit(main())
