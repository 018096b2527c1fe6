from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from typing import Any, Optional

from leadscrape.config import Settings
from leadscrape.events import COMPLETE, ERROR, LOOKUP_PROGRESS, PROGRESS
from leadscrape.logging_utils import configure_logging
from leadscrape.service import ScrapeService
from leadscrape.storage import JsonlRecordStorage


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _load_list(path: Optional[str]) -> list[str]:
    if not path:
        return []
    items: list[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                items.append(line)
    return items


def _print_progress(payload: dict[str, Any]) -> None:
    print(
        f"progress units={payload['units_completed']}/{payload['units_total']} "
        f"towns={payload['towns_completed']}/{payload['towns_total']} "
        f"businesses={payload['businesses_found']} pct={payload['percentage']}"
    )


def _print_error(payload: dict[str, Any]) -> None:
    print(f"error {payload.get('town') or payload.get('item_key') or payload.get('phone') or ''} {payload['error']}")


def _print_lookup(payload: dict[str, Any]) -> None:
    if payload.get("phone"):
        print(f"lookup {payload['completed']}/{payload['total']} {payload['phone']} -> {payload['provider']}")


def run_job(
    settings: Settings,
    towns: list[str],
    industries: list[str],
    do_lookup: bool,
    concurrency: Optional[int],
    results_path: str,
    session_id: Optional[str],
    resume: bool,
) -> str:
    storage = JsonlRecordStorage(results_path)
    service = ScrapeService(settings, storage=storage)
    handle = service.submit(
        towns,
        industries,
        do_provider_lookup=do_lookup,
        concurrency=concurrency,
        session_id=session_id,
        resume=resume,
        listeners={
            PROGRESS: [_print_progress],
            ERROR: [_print_error],
            LOOKUP_PROGRESS: [_print_lookup],
            COMPLETE: [lambda payload: print(f"\nDONE: status={payload['status']}")],
        },
    )
    print(f"session={handle.session_id}")

    try:
        while not service.wait(handle.session_id, timeout=1.0):
            pass
    except KeyboardInterrupt:
        print("stopping after the current batch...")
        service.stop(handle.session_id)
        service.wait(handle.session_id)
    finally:
        storage.close()

    report = service.report(handle.session_id)
    print(
        f"units attempted={report.units_attempted} succeeded={report.units_succeeded} "
        f"abandoned={report.units_abandoned} not_attempted={report.units_not_attempted}"
    )
    if do_lookup:
        print(
            f"lookups phones={report.phones_total} cached={report.lookups_from_cache} "
            f"live={report.lookups_live} abandoned={report.lookups_abandoned}"
        )
    for item in report.abandoned_items:
        print(f"abandoned {item['item_type']} {item['item_key']}: {item['error']}")
    return report.status


def main() -> None:
    parser = argparse.ArgumentParser(description="Scrape business listings for towns x industries")
    parser.add_argument("--towns", help="Comma separated towns")
    parser.add_argument("--towns-file", help="File with one town per line")
    parser.add_argument("--industries", help="Comma separated industries")
    parser.add_argument("--industries-file", help="File with one industry per line")
    parser.add_argument("--lookup", action="store_true", help="Resolve phone providers after scraping")
    parser.add_argument("--lookup-backend", choices=("browser", "http"), help="Carrier lookup transport")
    parser.add_argument("--concurrency", type=int, help="Number of browser batches run in parallel")
    parser.add_argument("--results", default="results.jsonl", help="Output JSONL file path")
    parser.add_argument("--session", help="Session id to use (required with --resume)")
    parser.add_argument("--resume", action="store_true", help="Only process persisted retries of --session")
    parser.add_argument("--database-url", help="SQLAlchemy URL for the retry queue and provider cache")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--business", help="Look up one business by free-text query and exit")
    parser.add_argument("--cleanup-cache", action="store_true", help="Delete stale provider cache entries and exit")
    parser.add_argument("--log-level", help="Logging level")

    args = parser.parse_args()

    settings = Settings.from_env()
    if args.database_url:
        settings = replace(settings, database_url=args.database_url)
    if args.headful:
        settings = replace(settings, headless=False)
    if args.lookup_backend:
        settings = replace(settings, lookup=replace(settings.lookup, backend=args.lookup_backend))
    configure_logging(args.log_level or settings.log_level)

    if args.cleanup_cache:
        deleted = ScrapeService(settings).cleanup_cache()
        print(f"deleted {deleted} stale cache entries")
        return

    if args.business:
        records = ScrapeService(settings).lookup_business(args.business)
        for record in records:
            print(json.dumps(record.to_dict(), ensure_ascii=False))
        print(f"found {len(records)} businesses")
        return

    towns = _split(args.towns) + _load_list(args.towns_file)
    industries = _split(args.industries) + _load_list(args.industries_file)
    if args.resume and not args.session:
        parser.error("--resume needs --session")
    if not towns or not industries:
        parser.error("at least one town and one industry are required")

    status = run_job(
        settings,
        towns,
        industries,
        do_lookup=args.lookup,
        concurrency=args.concurrency,
        results_path=args.results,
        session_id=args.session,
        resume=args.resume,
    )
    if status == "failed":
        logging.getLogger(__name__).error("job failed")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
