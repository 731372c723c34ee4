from __future__ import annotations

import argparse
import os
import sys

from resizepipe.core.config import get_settings
from resizepipe.worker.pipeline import run_worker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the resize worker pool until interrupted")
    parser.add_argument("--state-root", default=None, help="Override RESIZEPIPE_STATE_ROOT")
    parser.add_argument("--concurrency", type=int, default=None, help="Worker slot count")
    parser.add_argument("--worker-prefix", default=None, help="Prefix used for worker ids")
    parser.add_argument("--log-level", default=None, help="Override RESIZEPIPE_LOG_LEVEL")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.state_root is not None:
        os.environ["RESIZEPIPE_STATE_ROOT"] = args.state_root
    if args.log_level is not None:
        os.environ["RESIZEPIPE_LOG_LEVEL"] = args.log_level
    get_settings.cache_clear()

    clean = run_worker(
        max_concurrency=args.concurrency,
        worker_prefix=args.worker_prefix,
    )
    return 0 if clean else 1


if __name__ == "__main__":
    sys.exit(main())
