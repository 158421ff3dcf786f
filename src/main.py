from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from config import AppSettings, config
from db.db import Database
from db.repositories import AssetRepository, HolderRepository
from domain.errors import CustodyError, ErrorCategory
from importers.inventory_seed import load_holder_seed, load_inventory_seed
from services.asset_locks import AssetLockRegistry
from services.custody_ledger import DEFAULT_HISTORY_LIMIT, CustodyLedger
from services.notifications import build_notifier
from utils.custody_report import render_assets, render_history

PROJECT_ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger(__name__)


def build_ledger(database: Database, settings: AppSettings) -> CustodyLedger:
    return CustodyLedger(
        database.session_factory,
        notifier=build_notifier(settings.notify_webhook_url, timeout=settings.notify_timeout_seconds),
        locks=AssetLockRegistry(timeout_seconds=settings.lock_timeout_seconds),
        max_attempts=settings.max_conflict_retries,
    )


def seed(database: Database, *, assets_csv: Path, holders_csv: Path) -> tuple[int, int]:
    """Provision assets and holders that are not stored yet. Returns the counts added."""
    assets = load_inventory_seed(assets_csv)
    holders = load_holder_seed(holders_csv)

    with database.session_factory() as session:
        asset_repository = AssetRepository(session)
        holder_repository = HolderRepository(session)

        known_assets = {asset.asset_id for asset in asset_repository.list()}
        known_holders = {holder.holder_id for holder in holder_repository.list()}
        new_assets = [asset for asset in assets if asset.asset_id not in known_assets]
        new_holders = [holder for holder in holders if holder.holder_id not in known_holders]

        if new_assets:
            asset_repository.create_many(new_assets)
        if new_holders:
            holder_repository.create_many(new_holders)

    logger.info(
        "Seeded %d assets from %s and %d holders from %s", len(new_assets), assets_csv, len(new_holders), holders_csv
    )
    return len(new_assets), len(new_holders)


def run(args: argparse.Namespace, settings: AppSettings) -> int:
    with Database.open(settings.database_url, timeout_seconds=settings.storage_timeout_seconds) as database:
        if args.command == "seed":
            try:
                added_assets, added_holders = seed(database, assets_csv=args.assets, holders_csv=args.holders)
            except ValueError as err:
                print(f"error ({ErrorCategory.INVALID_INPUT}): {err}", file=sys.stderr)
                return 1
            print(f"Added {added_assets} assets and {added_holders} holders")
            return 0

        ledger = build_ledger(database, settings)
        try:
            if args.command == "tap":
                outcome = ledger.record_tap(args.holder, args.asset)
                print(f"{outcome.message} ({outcome.note})")
            elif args.command == "history":
                render_history(ledger.history(args.asset, limit=args.limit))
            elif args.command == "overdue":
                render_assets(ledger.overdue(), title="Overdue assets:")
            else:
                render_assets(ledger.list_assets())
        except CustodyError as err:
            print(f"error ({err.category}): {err}", file=sys.stderr)
            return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track custody of shared gear from tag taps.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    seed_parser = subparsers.add_parser("seed", help="Provision assets and holders from CSV files.")
    seed_parser.add_argument("--assets", type=Path, default=PROJECT_ROOT / "data" / "assets.csv")
    seed_parser.add_argument("--holders", type=Path, default=PROJECT_ROOT / "data" / "holders.csv")

    tap_parser = subparsers.add_parser("tap", help="Record a tap of ASSET by HOLDER.")
    tap_parser.add_argument("holder")
    tap_parser.add_argument("asset")

    history_parser = subparsers.add_parser("history", help="Show recent transitions.")
    history_parser.add_argument("--asset", default=None)
    history_parser.add_argument("--limit", type=int, default=DEFAULT_HISTORY_LIMIT)

    subparsers.add_parser("overdue", help="Show held assets past their expected return.")
    subparsers.add_parser("assets", help="Show all assets.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    settings = config()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    return run(args, settings)


if __name__ == "__main__":
    sys.exit(main())
