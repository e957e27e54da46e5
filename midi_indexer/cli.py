"""midi-indexer command line.

Usage:
  midi-indexer --config config.json run
  midi-indexer --config config.json index --id 42 [--operator 0x...]
  midi-indexer --config config.json reconcile
  midi-indexer --config config.json drain
  midi-indexer --config config.json queue [--all]
  midi-indexer --config config.json listings --seller 0x... [--device 3] [--limit 50]
"""

import argparse
import asyncio
import sys
from typing import Any, Dict

from .config import ConfigError, load_config
from .logs import configure_logging
from .service import IndexerService
from .store import Store
from .utils import json_dumps


async def _run_index(cfg: Dict[str, Any], token_id: int, operator: str) -> Dict[str, Any]:
    service = IndexerService(cfg)
    await service.init()
    try:
        if not operator:
            operator = await service.chain.find_original_minter(token_id)
            if not operator:
                return {"id": token_id, "ok": False, "error": "OPERATOR_RESOLUTION_FAILED"}
        result = await service.indexer.index_by_id(token_id, operator)
        if result:
            await service.store.queue.remove(token_id)
        return {"id": token_id, "ok": result.ok, "error": result.error}
    finally:
        await service.close()


async def _run_sweep(cfg: Dict[str, Any], which: str) -> Dict[str, Any]:
    service = IndexerService(cfg)
    await service.init()
    try:
        if which == "reconcile":
            report = await service.reconciler.sync()
        else:
            report = await service.drainer.drain()
        return report.as_dict()
    finally:
        await service.close()


async def _query(cfg: Dict[str, Any], args: argparse.Namespace) -> Any:
    store = Store(cfg["db_path"])
    await store.init_db()
    try:
        if args.command == "queue":
            if args.all:
                return await store.queue.fetch_all()
            return await store.queue.fetch(cfg["queue_max_attempts"])
        return await store.listings.fetch_all(
            seller_address=args.seller, device_id=args.device, limit=args.limit
        )
    finally:
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="MIDI registry indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Subscribe to chain events and run the periodic sweeps")

    index_parser = sub.add_parser("index", help="Index a single token id now")
    index_parser.add_argument("--id", type=int, required=True)
    index_parser.add_argument("--operator", type=str, default=None)

    sub.add_parser("reconcile", help="Run one reconciliation sweep")
    sub.add_parser("drain", help="Run one retry queue pass")

    queue_parser = sub.add_parser("queue", help="Show retry queue entries")
    queue_parser.add_argument("--all", action="store_true", help="Include entries past the attempt ceiling")

    listings_parser = sub.add_parser("listings", help="Query stored listings")
    listings_parser.add_argument("--seller", type=str, default=None)
    listings_parser.add_argument("--device", type=int, default=None)
    listings_parser.add_argument("--limit", type=int, default=200)

    args = parser.parse_args()
    try:
        cfg = load_config(args.config)
    except (OSError, ConfigError) as exc:
        parser.error(str(exc))
    configure_logging(cfg["log_level"], cfg["log_json"])

    try:
        if args.command == "run":
            asyncio.run(IndexerService(cfg).start())
            return
        if args.command == "index":
            print(json_dumps(asyncio.run(_run_index(cfg, args.id, args.operator))))
            return
        if args.command in ("reconcile", "drain"):
            print(json_dumps(asyncio.run(_run_sweep(cfg, args.command))))
            return
        print(json_dumps(asyncio.run(_query(cfg, args))))
    except ConfigError as exc:
        sys.stderr.write(f"config error: {exc}\n")
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
