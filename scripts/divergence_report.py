"""Run the data-integrity checks against the local database and optionally apply a fix."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines import divergence_catalog as catalog
from engines.correction import Actor, CorrectionEngine
from engines.detection import DivergenceDetector
from engines.history import HistoryStore
from engines.validation import IntegrityError
from grade_config import GradeConfigResolver
from learning_levels import LearningLevelClassifier


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--severity",
        choices=[severity.value for severity in catalog.Severity],
        default=None,
        help="Only report divergences of this severity",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON instead of a summary",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    parser.add_argument(
        "--fix",
        metavar="TYPE",
        default=None,
        help="Divergence type to correct after detection (e.g. medias_inconsistentes)",
    )
    targets = parser.add_mutually_exclusive_group()
    targets.add_argument("--ids", nargs="+", default=None, help="Target ids to correct")
    targets.add_argument("--all", dest="fix_all", action="store_true", help="Correct every detected target")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Correction parameter, may be repeated (e.g. --param value=9.5)",
    )
    parser.add_argument(
        "--confirm",
        metavar="TOKEN",
        default=None,
        help="Operator confirmation, required for types that cannot run unattended",
    )
    parser.add_argument("--user", default=None, help="Operator name recorded in the history")
    return parser


def _parse_params(pairs: Sequence[str]) -> dict:
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --param {pair!r}; expected KEY=VALUE")
        params[key.strip()] = value
    return params


def _print_summary(report_dict: dict) -> None:
    summary = report_dict["summary"]
    print(
        "Divergences: {total} (critical {critical}, important {important}, "
        "warning {warning}, informational {informational}); failed checks: {failed_checks}".format(**summary)
    )
    for item in report_dict["divergences"]:
        if item["status"] == "failed":
            print(f"  [{item['severity']}] {item['type']}: check failed ({item['error']})")
        else:
            print(f"  [{item['severity']}] {item['type']}: {item['count']} - {item['title']}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    db.init()
    resolver = GradeConfigResolver()
    classifier = LearningLevelClassifier(resolver.bands)
    detector = DivergenceDetector(resolver, classifier)

    report = asyncio.run(detector.run_all())
    report_dict = report.to_dict(severity=args.severity)

    payload = json.dumps(report_dict, indent=2, ensure_ascii=False, default=str)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    if args.json:
        print(payload)
    else:
        _print_summary(report_dict)

    if args.fix:
        try:
            params = _parse_params(args.param)
            engine = CorrectionEngine(detector, resolver, classifier, HistoryStore())
            result = engine.apply(
                args.fix,
                ids=args.ids,
                fix_all=args.fix_all,
                params=params,
                actor=Actor(user_name=args.user),
                confirmation_token=args.confirm,
            )
        except (IntegrityError, ValueError) as exc:
            print(f"Correction rejected: {exc}", file=sys.stderr)
            return 2
        print(
            f"Correction {result.type}: {result.corrected} corrected, {result.noops} no-op, "
            f"{result.errors} errors"
        )
        for message in result.messages:
            print(f"  {message}")
        return 0 if result.success else 1

    return 1 if report.summary["critical"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
