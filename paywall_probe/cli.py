"""
Command-line entry point.

    python -m paywall_probe --url https://example.com/article
    TEST_URL=https://example.com/article python -m paywall_probe --headful
"""

import argparse
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .core import probe_url_sync
from .models import RunReport


def _table(rows: List[List], headers: List[str]) -> str:
    rows = [[str(c) for c in row] for row in rows]
    widths = [max(len(r[i]) for r in [headers] + rows) for i in range(len(headers))]
    line = lambda r: "| " + " | ".join(c.ljust(widths[i]) for i, c in enumerate(r)) + " |"
    sep = "+-" + "-+-".join("-" * w for w in widths) + "-+"
    return "\n".join([sep, line(headers), sep] + [line(r) for r in rows] + [sep])


def print_summary(report: RunReport, out_dir: Path):
    counts = sorted(report.summary.counts_by_severity.items())
    print("\n=== Findings summary ===\n")
    print(_table([[i, sev, n] for i, (sev, n) in enumerate(counts)], ["index", "Severity", "Count"]))

    top = [[i, f.id, f.title, f.severity.value] for i, f in enumerate(report.ranked()[:12])]
    print("\nTop findings (first 12):\n")
    print(_table(top, ["index", "id", "title", "severity"]))

    print("\nChannels:\n")
    print(_table(
        [[c.channel, c.outcome.value, c.candidates, c.positives, c.reason or ""] for c in report.channels],
        ["channel", "outcome", "candidates", "positives", "reason"],
    ))

    print(f"\nReport (JSON): {out_dir / 'report.json'}")
    print(f"Report (Markdown): {out_dir / 'report.md'}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paywall exposure probe (authorized testing only)")
    parser.add_argument("--url", default=os.environ.get("TEST_URL"), help="Target article URL (or TEST_URL)")
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("--out", help="Output directory (default ./probe_<timestamp>)")
    parser.add_argument("--ua", help="User-agent override for the browser and plain requests")
    parser.add_argument("--timeout", type=float, help="Navigation timeout in seconds")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)
    if not args.url:
        parser.error("provide --url or the TEST_URL environment variable")

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    out_dir = Path(args.out or f"probe_{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    config = load_config(args.config)
    config = replace(config, artifacts_dir=str(out_dir / "content"))
    if args.timeout:
        config = replace(config, navigation_timeout=args.timeout)

    report = probe_url_sync(args.url, config=config, headless=not args.headful, user_agent=args.ua, log_level=level)

    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / "report.json").write_text(report.to_json(), encoding="utf-8")
    (out_dir / "report.md").write_text(report.to_markdown(), encoding="utf-8")

    print_summary(report, out_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
