from __future__ import annotations

import argparse
import asyncio
import json
import sys

from legalhub.core.logging import configure_logging
from legalhub.services.sync.sweep import STATUS_ERROR, sweep


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pull new records from the vendor for active services")
    parser.add_argument("--kind", action="append", default=[], help="processes|distributions|publications")
    parser.add_argument("--service-id", action="append", default=[], help="Limit to these service ids")
    parser.add_argument("--force", action="store_true", help="Ignore the minimum interval between runs")
    return parser


async def _run(args: argparse.Namespace) -> int:
    reports = await sweep(kinds=args.kind or None, service_ids=args.service_id or None, force=args.force)
    print(json.dumps([report.as_dict() for report in reports], indent=2))
    return 1 if any(report.status == STATUS_ERROR for report in reports) else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report sweep failures with a non-zero exit
        print(f"run_sync failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
