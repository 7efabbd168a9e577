"""
CryWatch - Command Line Entry Point

Analyzes recorded clips and inspects the stored cry history.

NOT A MEDICAL DEVICE: the alert heuristics have no clinical validity.

Usage:
    python -m crywatch analyze recording.wav [more.wav ...]
    python -m crywatch history --limit 20
    python -m crywatch stats --hours 24

Every command prints one JSON object per line on stdout. Logging follows
APP_LOG_LEVEL and LOG_JSON; the history commands read the storage backend
configured by STORAGE_BACKEND and STORAGE_DIR.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Sequence

import librosa

from crywatch.config import Settings, get_settings
from crywatch.core import serialization
from crywatch.core.history_store import create_history_store
from crywatch.core.logging import setup_structured_logging
from crywatch.core.pipeline import CryAnalysisPipeline, create_pipeline

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="crywatch",
        description="Infant cry analysis (research use only, not a medical device)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Analyze recorded audio clips")
    analyze.add_argument("paths", nargs="+", help="Audio files (any format librosa reads)")

    history = commands.add_parser("history", help="Print the most recent stored cries")
    history.add_argument("--limit", type=int, default=20, help="Number of cries, newest first")

    stats = commands.add_parser("stats", help="Print aggregate cry statistics")
    stats.add_argument(
        "--hours",
        type=float,
        default=None,
        help="Only count cries from the last N hours (default: all)",
    )

    return parser.parse_args(argv)


def analyze_file(pipeline: CryAnalysisPipeline, path: str) -> dict:
    """Load one clip at its native rate, downmixed to mono, and analyze it."""
    samples, sample_rate = librosa.load(path, sr=None, mono=True)
    result, diagnosis = pipeline.analyze_clip(samples, int(sample_rate))
    return {
        "file": path,
        "riskLevel": result.risk_level.value,
        "alerts": [alert.to_dict() for alert in result.alerts],
        "diagnosis": diagnosis.to_dict(),
        "features": result.features.to_dict(),
    }


def _analyze(settings: Settings, paths: List[str]) -> int:
    pipeline = create_pipeline(settings)
    failures = 0
    try:
        for path in paths:
            try:
                report = analyze_file(pipeline, path)
            except Exception as e:
                logger.error("Failed to analyze %s: %s", path, e)
                failures += 1
                continue
            print(serialization.dumps(report))
    finally:
        pipeline.close()
    return 1 if failures else 0


def main(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    settings = settings or get_settings()

    setup_structured_logging(settings.app_log_level, settings.log_json)

    if args.command == "analyze":
        return _analyze(settings, args.paths)

    with create_history_store(settings) as store:
        if args.command == "history":
            for cry in store.get_recent(args.limit):
                print(serialization.dumps(cry.to_dict()))
        else:
            analytics = store.get_analytics(timeframe_hours=args.hours)
            print(serialization.dumps(analytics.to_dict()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
