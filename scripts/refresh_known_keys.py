#!/usr/bin/env python3
"""
Run one refresh pass over the configured market data keys.

Meant to be invoked by an external scheduler (cron, a CronJob) once a day.
Every key is re-fetched through the pipeline's single-flight coordinator,
so a refresh overlapping live traffic never doubles upstream calls.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from shared.logging import configure_logging  # noqa: E402
from service_marketdata.app.config import PipelineSettings  # noqa: E402
from service_marketdata.app.service import MarketDataPipeline  # noqa: E402


async def refresh(*, keys_file: Optional[Path], settings: PipelineSettings, dry_run: bool) -> dict:
    """Execute one refresh pass and return the summary."""
    pipeline = MarketDataPipeline(settings)
    try:
        refresher = pipeline.refresher(keys_file)
        if dry_run:
            return {
                "planned": len(refresher.requests),
                "keys": [request.cache_key() for request in refresher.requests],
            }
        await pipeline.start()
        return await refresher.run_once()
    finally:
        await pipeline.close()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh cached market data for known keys.")
    parser.add_argument("--keys-file", type=Path, default=None, help="Path to refresh key JSON override")
    parser.add_argument("--provider", default=None, help="Provider to fetch from (defaults to settings)")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent refresh operations")
    parser.add_argument("--dry-run", action="store_true", help="List planned keys without fetching")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    overrides = {}
    if args.provider:
        overrides["default_provider"] = args.provider
    if args.concurrency:
        overrides["refresh_concurrency"] = args.concurrency
    settings = PipelineSettings(**overrides)
    configure_logging(settings.service_name, settings.log_level)

    try:
        summary = asyncio.run(refresh(keys_file=args.keys_file, settings=settings, dry_run=args.dry_run))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[refresh] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[refresh] DRY RUN - no upstream calls executed")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if not summary.get("failed") else 2


if __name__ == "__main__":
    raise SystemExit(main())
