#!/usr/bin/env python3
"""
AQHI batch runner
=================
Evaluates a JSON file of feed readings and prints results as JSON.

Input is either a list of feed records, or an object with
"readings" (current polls) and optional "history" (earlier polls
used for the 3-hour average). Every record has the feed shape:

    {"stationId": "...", "lat": 13.75, "lon": 100.5,
     "timestamp": "2025-01-15T12:00:00Z",
     "pollutants": {"pm25": {"value": 155, "isIndexOrConcentration": "index"}}}

Usage:
    python -m aqhi_backend readings.json --variant canadian
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from aqhi_backend.collectors.reading_history import InMemoryReadingHistory
from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.models import ensure_utc
from aqhi_backend.processors.concentration_normalizer import ConcentrationNormalizer
from aqhi_backend.processors.formula_engine import DEFAULT_VARIANTS
from aqhi_backend.processors.health_index_service import summarize
from aqhi_backend.processors.temporal_aggregator import utc_now
from aqhi_backend.utils.settings import EngineSettings, build_service

logger = logging.getLogger(__name__)


def load_records(path: Path) -> Dict[str, List[Dict[str, Any]]]:
    with open(path, encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, list):
        return {'readings': data, 'history': []}
    if isinstance(data, dict) and isinstance(data.get('readings'), list):
        return {'readings': data['readings'], 'history': data.get('history') or []}
    raise ValueError(f"{path}: expected a list of readings or an object with a 'readings' list")


async def run(records: Dict[str, List[Dict[str, Any]]], settings: EngineSettings,
              enable_supplement: bool = True, at: Optional[datetime] = None) -> Dict[str, Any]:
    clock = (lambda: at) if at else utc_now
    normalizer = ConcentrationNormalizer()

    history = InMemoryReadingHistory(clock=clock)
    current = [normalizer.reading_from_feed(record) for record in records['readings']]
    history.record_many([normalizer.reading_from_feed(record) for record in records['history']])
    history.record_many(current)
    history.prune()

    service = build_service(settings, history=history, enable_supplement=enable_supplement, clock=clock)
    results = await service.compute_batch(current)

    report = service.fusion.last_report if service.fusion else None
    return {
        'variant': settings.variant,
        'computed_at': clock().isoformat(),
        'results': [result.to_dict() for result in results],
        'summary': summarize(results),
        'cache': service.cache.stats(),
        'fusion': {
            'stations_needing_data': report.stations_needing_data,
            'grid_points_needed': report.grid_points_needed,
            'fetches_issued': report.fetches_issued,
            'fetch_failures': report.fetch_failures,
            'budget_skips': report.budget_skips,
            'api_calls_saved': report.api_calls_saved,
        } if report else None,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Main function with command line arguments"""

    parser = argparse.ArgumentParser(description='Compute AQHI for a batch of station readings')
    parser.add_argument('input', type=Path, help='JSON file of feed readings')
    parser.add_argument('--variant', choices=[v.name for v in DEFAULT_VARIANTS],
                        help='Formula variant (default: AQHI_VARIANT or thai)')
    parser.add_argument('--at', type=str, help='Evaluate as of this ISO-8601 time instead of now')
    parser.add_argument('--no-supplement', action='store_true', help='Do not fill gaps from the supplementary source')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

    try:
        settings = EngineSettings.from_env()
        if args.variant:
            settings = dataclasses.replace(settings, variant=args.variant)
        at = ensure_utc(datetime.fromisoformat(args.at.replace('Z', '+00:00'))) if args.at else None
        records = load_records(args.input)
        output = asyncio.run(run(records, settings, enable_supplement=not args.no_supplement, at=at))
    except InvalidConfiguration as e:
        logger.error(f"❌ Configuration error: {e}")
        return 2
    except (OSError, ValueError) as e:
        logger.error(f"❌ Could not process {args.input}: {e}")
        return 1

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
