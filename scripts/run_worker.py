#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from inference_pipeline.runtime import create_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident consumer loop for pipeline events.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--until-idle",
        action="store_true",
        help="Drain every subscribed channel and exit.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    runtime = create_runtime_from_env()
    try:
        if args.until_idle:
            stats = runtime.dispatcher.run_until_idle()
        elif args.iterations > 0:
            stats = runtime.dispatcher.run_forever(stop_after_iterations=args.iterations)
        else:
            stats = runtime.dispatcher.run_forever(stop_after_iterations=None)
    finally:
        runtime.close()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
