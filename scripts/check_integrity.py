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


async def _run(settings: LedgerSettings, *, fix: bool) -> dict[str, object]:
    orchestrator = build_orchestrator(settings)
    await orchestrator.open()
    try:
        report = await orchestrator.run_integrity_check()
        summary: dict[str, object] = {"report": report.as_dict()}
        if fix:
            summary["fix"] = (await orchestrator.auto_fix_integrity()).as_dict()
            summary["report_after_fix"] = (await orchestrator.run_integrity_check()).as_dict()
        return summary
    finally:
        await orchestrator.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the order integrity check against a sqlite record store")
    parser.add_argument("--sqlite-path", default="", help="sqlite record store path (default from env)")
    parser.add_argument("--fix", action="store_true", help="apply auto-fix after the check")
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("SHIPLEDGER_LOG_LEVEL", "WARNING").upper())

    settings = LedgerSettings.from_env()
    if args.sqlite_path.strip():
        settings.sqlite_path = args.sqlite_path.strip()
    summary = asyncio.run(_run(settings, fix=args.fix))
    print(json.dumps(summary, ensure_ascii=False, sort_keys=True, indent=2))
    final = summary.get("report_after_fix") or summary["report"]
    return 0 if isinstance(final, dict) and final.get("is_valid") else 2


if __name__ == "__main__":
    raise SystemExit(main())
