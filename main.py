"""
main.py — command-line runner.

  python main.py scan IMG [IMG ...] [--hint TEXT] [--user ID] [--refinement stats]
  python main.py resume SCAN_ID {extraction,research,refinement}
  python main.py show SCAN_ID [--runs]
  python main.py list [--status STATUS] [--limit N]
  python main.py keys list | set NAME VALUE | delete NAME
  python main.py cache cleanup | stats BRAND | brands

Image arguments are local paths (relative to DATA_DIR unless absolute) or
http(s) URLs. Results are printed as JSON.
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import config

# Log file lives in DATA_DIR beside the database.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=logging.INFO,
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(str(_data_dir / "pipeline.log"), encoding="utf-8"),
        ],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _print_scan(scan) -> None:
    if scan is None:
        print(json.dumps({"error": "scan not found"}))
        return
    print(json.dumps(asdict(scan), indent=2, default=str))


# ── Commands ──────────────────────────────────────────────────────────────────

async def cmd_scan(args: argparse.Namespace) -> int:
    import database as db
    import orchestrator
    from models import Strategy

    strategy = Strategy.from_config()
    if args.refinement:
        strategy.refinement_provider = args.refinement
    if args.provider:
        strategy.extraction_provider = args.provider

    scan_id = await db.create_scan(args.user)
    logger.info("Created scan %s with %d image(s)", scan_id, len(args.images))
    scan = await orchestrator.run_pipeline(scan_id, args.images, args.hint or None, strategy)
    _print_scan(scan)
    return 0 if scan and scan.status.value == "completed" else 1


async def cmd_resume(args: argparse.Namespace) -> int:
    import orchestrator
    from models import Strategy

    strategy = Strategy.from_config()
    if args.refinement:
        strategy.refinement_provider = args.refinement
    scan = await orchestrator.resume_pipeline(args.scan_id, args.stage, strategy=strategy)
    _print_scan(scan)
    return 0 if scan and scan.status.value == "completed" else 1


async def cmd_show(args: argparse.Namespace) -> int:
    import database as db

    scan = await db.get_scan(args.scan_id)
    _print_scan(scan)
    if scan is not None and args.runs:
        runs = await db.get_pipeline_runs(args.scan_id)
        print(json.dumps([asdict(r) for r in runs], indent=2, default=str))
    return 0 if scan else 1


async def cmd_list(args: argparse.Namespace) -> int:
    import database as db
    from models import ScanStatus

    scans = await db.get_scans_by_status(ScanStatus(args.status), args.limit)
    for scan in scans:
        line = f"{scan.id}  {scan.status.value:<11} {scan.updated_at}"
        if scan.error_kind:
            line += f"  {scan.error_kind}: {scan.error_message}"
        print(line)
    if not scans:
        print(f"No {args.status} scans")
    return 0


async def cmd_keys(args: argparse.Namespace) -> int:
    import key_store
    import market_search
    from providers import manager

    if args.action == "list":
        for name, value in (await key_store.get_all_keys()).items():
            print(f"{name:<20} {key_store.mask(value)}")
        print(f"Vision providers: {', '.join(await manager.available_providers()) or 'none'}")
        print(f"Search backends:  {await market_search.backend_names()}")
        return 0

    if args.action == "set":
        await key_store.set(args.name, args.value)
        print(f"{args.name} saved")
    else:
        await key_store.delete(args.name)
        print(f"{args.name} removed from DB")
    # Cached clients hold the old key
    manager.reset()
    market_search.reset()
    return 0


async def cmd_cache(args: argparse.Namespace) -> int:
    import brand_decoders
    import research_cache

    if args.action == "cleanup":
        cleared = await research_cache.cleanup_stale(limit=args.limit)
        print(f"Cleared {cleared} stale market snapshot(s)")
    elif args.action == "brands":
        for brand in brand_decoders.supported_brands():
            print(brand)
    else:
        stats = await research_cache.brand_stats(args.brand)
        stats["has_decoder"] = brand_decoders.has_decoder(args.brand)
        print(json.dumps(stats, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    from models import ScanStatus

    parser = argparse.ArgumentParser(description="Clothing scan pipeline: photos → extraction → research → price.")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Create a scan from images and run the pipeline")
    scan.add_argument("images", nargs="+", help="Image paths or URLs")
    scan.add_argument("--hint", action="append", help="On-device OCR fragment (repeatable)")
    scan.add_argument("--user", default="cli", help="Owner id stored on the scan")
    scan.add_argument("--provider", choices=["anthropic", "openai", "google"], help="Extraction provider")
    scan.add_argument("--refinement", choices=["anthropic", "openai", "google", "stats"])
    scan.set_defaults(func=cmd_scan)

    resume = sub.add_parser("resume", help="Resume a failed scan from a stage")
    resume.add_argument("scan_id")
    resume.add_argument("stage", choices=["extraction", "research", "refinement"])
    resume.add_argument("--refinement", choices=["anthropic", "openai", "google", "stats"])
    resume.set_defaults(func=cmd_resume)

    show = sub.add_parser("show", help="Print a scan record")
    show.add_argument("scan_id")
    show.add_argument("--runs", action="store_true", help="Also print the pipeline run log")
    show.set_defaults(func=cmd_show)

    scans = sub.add_parser("list", help="List scans by status")
    scans.add_argument("--status", default="failed", choices=[s.value for s in ScanStatus])
    scans.add_argument("--limit", type=int, default=20)
    scans.set_defaults(func=cmd_list)

    keys = sub.add_parser("keys", help="Manage API keys stored in the DB")
    keys_sub = keys.add_subparsers(dest="action", required=True)
    keys_sub.add_parser("list")
    key_set = keys_sub.add_parser("set")
    key_set.add_argument("name")
    key_set.add_argument("value")
    key_delete = keys_sub.add_parser("delete")
    key_delete.add_argument("name")
    keys.set_defaults(func=cmd_keys)

    cache = sub.add_parser("cache", help="Research cache maintenance")
    cache_sub = cache.add_subparsers(dest="action", required=True)
    cleanup = cache_sub.add_parser("cleanup")
    cleanup.add_argument("--limit", type=int, default=100)
    stats = cache_sub.add_parser("stats")
    stats.add_argument("brand")
    cache_sub.add_parser("brands", help="Brands with a style-code decoder")
    cache.set_defaults(func=cmd_cache)

    return parser


async def run(args: argparse.Namespace) -> int:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as db
    try:
        await db.init_db()
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise
    return await args.func(args)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
