"""Periodic re-entry points into the indexer: retry-queue drain and chain reconciliation."""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from .indexer import IndexErrorCodes, TokenIndexer
from .store import Store

logger = structlog.get_logger(__name__)


class SweepReport:
    def __init__(self, name: str):
        self.name = name
        self.candidates: List[int] = []
        self.indexed: List[int] = []
        self.failed: List[int] = []
        self.unresolved: List[int] = []
        self.aborted: Optional[str] = None

    def as_dict(self):
        return {
            "sweep": self.name,
            "candidates": self.candidates,
            "indexed": self.indexed,
            "failed": self.failed,
            "unresolved": self.unresolved,
            "aborted": self.aborted,
        }

    def __repr__(self):
        return (
            f"SweepReport({self.name}, candidates={len(self.candidates)}, indexed={len(self.indexed)}, "
            f"failed={len(self.failed)}, unresolved={len(self.unresolved)})"
        )


class QueueDrainer:
    def __init__(self, store: Store, indexer: TokenIndexer, max_attempts: int = 10):
        self.store = store
        self.indexer = indexer
        self.max_attempts = max_attempts

    async def drain(self) -> SweepReport:
        report = SweepReport("queue")
        rows = await self.store.queue.fetch(self.max_attempts)
        report.candidates = [int(row["id"]) for row in rows]
        if rows:
            logger.info("processing queue", count=len(rows), max_attempts=self.max_attempts)

        for row in rows:
            token_id = int(row["id"])
            result = await self.indexer.index_by_id(token_id, row["operator"])
            if result:
                await self.store.queue.remove(token_id)
                report.indexed.append(token_id)
                continue

            attempts = int(row["attempts"]) + 1
            await self.store.queue.update(token_id, attempts, result.error)
            report.failed.append(token_id)
            if attempts >= self.max_attempts:
                logger.error("queue entry exhausted retries", token_id=token_id, attempts=attempts, error=result.error)
        return report


class Reconciler:
    """Finds ids that exist on chain but were neither indexed nor queued.

    An id whose mint operator cannot be recovered is skipped; the sweep goes
    on with the remaining ids.
    """

    def __init__(self, store: Store, chain: Any, indexer: TokenIndexer):
        self.store = store
        self.chain = chain
        self.indexer = indexer

    async def missing_ids(self) -> Optional[List[int]]:
        current_id = await self.chain.current_token_id()
        stored = await self.store.midi.ids()
        queued = await self.store.queue.ids()
        if stored is None or queued is None:
            return None

        known = set(stored) | set(queued)
        return [token_id for token_id in range(1, current_id + 1) if token_id not in known]

    async def sync(self) -> SweepReport:
        report = SweepReport("reconcile")
        try:
            missing = await self.missing_ids()
        except Exception as exc:
            logger.error("error reading chain state for reconciliation", error=str(exc))
            report.aborted = str(exc)
            return report
        if missing is None:
            report.aborted = "store unavailable"
            return report

        report.candidates = missing
        if not missing:
            logger.info("store in sync with chain")
            return report

        logger.warning("discrepancy found", missing=len(missing), first=missing[0], last=missing[-1])
        try:
            operators = await self.chain.mint_operators()
        except Exception as exc:
            logger.error("error fetching mint history", error=str(exc))
            report.aborted = str(exc)
            return report

        for token_id in missing:
            operator = operators.get(token_id)
            if not operator:
                logger.error(
                    "failed fetching operator",
                    token_id=token_id,
                    error_code=IndexErrorCodes.OPERATOR_RESOLUTION_FAILED,
                )
                report.unresolved.append(token_id)
                continue

            result = await self.indexer.index_by_id(token_id, operator)
            if result:
                report.indexed.append(token_id)
            else:
                await self.store.queue.enqueue(token_id, result.error, operator)
                report.failed.append(token_id)
        return report


async def run_every(interval: float, fn: Callable[[], Awaitable[Any]], name: str) -> None:
    """Sleep, run, repeat. A failing tick is logged and the loop carries on."""
    while True:
        await asyncio.sleep(interval)
        try:
            result = await fn()
            logger.info("sweep finished", sweep=name, result=repr(result))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("sweep failed", sweep=name)
