"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv as _load_dotenv

from newbiz import config
from newbiz.cache import Cache
from newbiz.directory import (
    CategoryNotFoundError,
    RegionNotFoundError,
    StaticCategoryDirectory,
    StaticRegionDirectory,
)
from newbiz.http import CostTracker, HttpClient, RateLimiter
from newbiz.pipeline import BudgetConfig, Orchestrator, RegionBusyError
from newbiz.places_client import PlacesClient
from newbiz.store import SqliteBusinessStore

MODES = ("initial", "new-only", "weekly")


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discover newly opened businesses with Google Places")
    parser.add_argument("--preflight", action="store_true", help="Run offline checks only")
    parser.add_argument(
        "--region",
        action="append",
        default=None,
        help="Region or zone name; repeat for several (weekly mode defaults to all top-level zones)",
    )
    parser.add_argument(
        "--categories",
        default=None,
        help="Comma-separated category labels (default: all)",
    )
    parser.add_argument("--mode", choices=MODES, default="new-only")
    parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Confidence threshold for new-only mode (default: %s)" % config.DEFAULT_CONFIDENCE_THRESHOLD,
    )
    parser.add_argument("--budget", type=float, default=None, help="Monthly budget in USD")
    parser.add_argument("--warn-threshold", type=float, default=None, help="Budget warning share (0-1)")
    parser.add_argument("--db", default=None, help="Business store SQLite path")
    parser.add_argument("--cache-path", default=None, help="Response cache SQLite path")
    parser.add_argument("--config", default=None, help="Path to scrape_config.json")
    parser.add_argument("--full-details", action="store_true", help="Request the full detail field tier")
    parser.add_argument("--no-category-check", action="store_true", help="Skip post-detail category validation")
    parser.add_argument("--workers", type=int, default=1, help="Parallel search workers")
    return parser.parse_args(argv)


def split_categories(value: Optional[str]) -> Optional[list]:
    if not value:
        return None
    labels = [c.strip() for c in value.split(",") if c.strip()]
    return labels or None


def run_preflight(api_key: Optional[str], args: argparse.Namespace) -> int:
    ok = True
    if api_key:
        print("API key: OK")
    else:
        print("API key: MISSING")
        ok = False

    regions = StaticRegionDirectory()
    for name in args.region or []:
        matches = regions.list_regions_by_name_or_zone(name)
        print(f"Region {name!r}: {len(matches)} zone(s)" if matches else f"Region {name!r}: NOT FOUND")
        ok = ok and bool(matches)

    known = {c.label.lower() for c in StaticCategoryDirectory().list_categories()}
    for label in split_categories(args.categories) or []:
        found = label.lower() in known
        print(f"Category {label!r}: {'OK' if found else 'NOT FOUND'}")
        ok = ok and found

    print(f"Monthly budget: ${config.MONTHLY_BUDGET_USD:.2f} (warn at {config.BUDGET_WARN_THRESHOLD:.0%})")
    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def build_orchestrator(
    api_key: str, args: argparse.Namespace, cache: Cache, store: SqliteBusinessStore
) -> Orchestrator:
    http_client = HttpClient(
        api_key,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
    )
    client = PlacesClient(
        http_client,
        RateLimiter(config.MAX_REQUESTS_PER_SECOND),
        CostTracker(cache),
        cache=cache,
    )
    budget = BudgetConfig(
        monthly_limit=args.budget if args.budget is not None else config.MONTHLY_BUDGET_USD,
        warn_threshold=(
            args.warn_threshold if args.warn_threshold is not None else config.BUDGET_WARN_THRESHOLD
        ),
    )
    return Orchestrator(
        client,
        store,
        StaticRegionDirectory(),
        StaticCategoryDirectory(),
        budget=budget,
        max_workers=args.workers,
        full_details=args.full_details,
        validate_categories=not args.no_category_check,
    )


def main(argv: Optional[list] = None) -> int:
    load_env()
    args = parse_args(argv)
    config.load_scrape_config(args.config)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    api_key = (os.environ.get("GOOGLE_MAPS_API_KEY") or "").strip()
    if args.preflight:
        return run_preflight(api_key, args)
    if not api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        return 1
    if args.mode != "weekly" and not args.region:
        print(f"--region is required for --mode {args.mode}", file=sys.stderr)
        return 2

    categories = split_categories(args.categories)
    cache = Cache(args.cache_path or config.CACHE_DB_PATH)
    store = SqliteBusinessStore(args.db or config.STORE_DB_PATH)
    try:
        orchestrator = build_orchestrator(api_key, args, cache, store)
        if args.mode == "initial":
            session = orchestrator.start_initial_scraping(args.region[0], categories)
        elif args.mode == "new-only":
            session = orchestrator.start_new_business_only(
                args.region[0], categories, confidence_threshold=args.threshold
            )
        else:
            session = orchestrator.start_weekly_update(args.region, categories)
    except (RegionNotFoundError, CategoryNotFoundError, RegionBusyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    finally:
        store.close()
        cache.close()

    print(json.dumps(session.summary(), indent=2, ensure_ascii=False))
    return 0 if session.status.value == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
