#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shipledger.ops.backend_consistency import compare_order_sets
from shipledger.ops.backend_consistency import load_sqlite_orders
from shipledger.remote_mirror import RedisRemoteMirror


def main() -> int:
    parser = argparse.ArgumentParser(description="Compare the local sqlite order set against the redis mirror")
    parser.add_argument("--sqlite-path", required=True, help="sqlite record store path")
    parser.add_argument("--redis-dsn", default=os.environ.get("REDIS_DSN", ""), help="redis dsn")
    parser.add_argument(
        "--key-prefix",
        default=os.environ.get("SHIPLEDGER_MIRROR_KEY_PREFIX", "shipledger"),
        help="mirror key prefix",
    )
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("SHIPLEDGER_LOG_LEVEL", "WARNING").upper())

    local = load_sqlite_orders(args.sqlite_path)
    mirror = RedisRemoteMirror(dsn=args.redis_dsn, namespace=args.key_prefix)
    remote = asyncio.run(mirror.get_all())
    result = compare_order_sets(local, remote)
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if result["all_matched"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
