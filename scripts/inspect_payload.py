#!/usr/bin/env python3
"""Normalize and score a saved provider response for debugging."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dealflow.jobs.normalizer import extract_many
from dealflow.jobs.scoring import score_deal, score_label


def load_products(payload: Any) -> list[Any]:
    if isinstance(payload, dict) and isinstance(payload.get("products"), list):
        return payload["products"]
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return [payload]
    return []


def render(products: list[Any], *, now: datetime, include_snapshot: bool) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for deal in extract_many(products, now=now):
        scored = score_deal(deal)
        row = asdict(deal)
        if not include_snapshot:
            row.pop("raw_snapshot", None)
        row["score"] = scored.score
        row["score_label"] = score_label(scored.score)
        row["discount"] = round(scored.discount, 2)
        row["score_components"] = {key: round(value, 2) for key, value in scored.components.items()}
        rows.append(row)
    rows.sort(key=lambda row: -row["score"])
    return rows


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def main() -> None:
    parser = argparse.ArgumentParser(description="Print normalized deal facts for a saved provider response.")
    parser.add_argument("path", type=Path, help="JSON file with a provider response, a product list or one product")
    parser.add_argument("--now", help="Reference time (ISO 8601) for the 30/90-day windows")
    parser.add_argument("--min-score", type=int, default=0, help="Only print deals scoring at least this much")
    parser.add_argument("--snapshot", action="store_true", help="Include the trimmed raw snapshot")
    args = parser.parse_args()

    try:
        payload = json.loads(args.path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        parser.error(f"cannot read {args.path}: {exc}")

    rows = render(load_products(payload), now=_parse_now(args.now), include_snapshot=args.snapshot)
    rows = [row for row in rows if row["score"] >= args.min_score]
    json.dump(rows, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
