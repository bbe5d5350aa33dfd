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

from shipledger.orchestrator import build_orchestrator
from shipledger.settings import LedgerSettings


async def _export(settings: LedgerSettings, out_path: Path) -> dict[str, object]:
    orchestrator = build_orchestrator(settings)
    await orchestrator.open()
    try:
        snapshot = await orchestrator.export_snapshot()
    finally:
        await orchestrator.close()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8")
    return {"action": "export", "file": str(out_path), "orders": len(snapshot["orders"])}


async def _import(settings: LedgerSettings, in_path: Path) -> dict[str, object]:
    orchestrator = build_orchestrator(settings)
    await orchestrator.open()
    try:
        result = await orchestrator.import_snapshot(in_path.read_text(encoding="utf-8"))
    finally:
        await orchestrator.close()
    return {"action": "import", "file": str(in_path), **result}


def main() -> int:
    parser = argparse.ArgumentParser(description="Export or import an order snapshot file")
    parser.add_argument("action", choices=["export", "import"])
    parser.add_argument("--file", required=True, help="snapshot json path")
    parser.add_argument("--sqlite-path", default="", help="sqlite record store path (default from env)")
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("SHIPLEDGER_LOG_LEVEL", "WARNING").upper())

    settings = LedgerSettings.from_env()
    if args.sqlite_path.strip():
        settings.sqlite_path = args.sqlite_path.strip()
    path = Path(args.file)
    if args.action == "export":
        summary = asyncio.run(_export(settings, path))
    else:
        summary = asyncio.run(_import(settings, path))
    print(json.dumps(summary, ensure_ascii=False, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
