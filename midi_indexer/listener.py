"""Routing of decoded chain events to the indexer, burn handler and listings."""

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from .indexer import TokenIndexer, TokenLocks
from .store import Store
from .utils import is_zero_address

logger = structlog.get_logger(__name__)


class BurnHandler:
    def __init__(self, store: Store, chain: Any, locks: Optional[TokenLocks] = None):
        self.store = store
        self.chain = chain
        self.locks = locks if locks is not None else TokenLocks()

    async def handle(self, token_id: int) -> bool:
        """Drop the token once its on-chain supply is gone. Returns True when rows were removed.

        Holds the token's lock, so a burn waits for an in-flight index of the
        same id and then deletes what it wrote.
        """
        async with self.locks.hold(token_id):
            try:
                total_supply = await self.chain.total_supply(token_id)
                if total_supply > 0:
                    logger.info("partial burn, keeping midi", token_id=token_id, total_supply=total_supply)
                    return False
                await self.store.midi_devices.burn(token_id)
                await self.store.midi.burn(token_id)
            except Exception as exc:
                logger.error("error handling burn", token_id=token_id, error=str(exc))
                return False
        logger.info("midi burned", token_id=token_id)
        return True


class EventListener:
    """Cooperative event pump.

    ``submit`` only enqueues. A fixed number of worker tasks drain the queue,
    which bounds how many events are being handled at any moment.
    """

    def __init__(
        self,
        store: Store,
        indexer: TokenIndexer,
        burn_handler: BurnHandler,
        workers: int = 4,
    ):
        self.store = store
        self.indexer = indexer
        self.burn_handler = burn_handler
        self.workers = workers
        self.events: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    async def submit(self, event: Dict[str, Any]) -> None:
        self.events.put_nowait(event)

    def start(self) -> List[asyncio.Task]:
        if not self._tasks:
            self._tasks = [asyncio.create_task(self._worker(n)) for n in range(self.workers)]
        return self._tasks

    async def join(self) -> None:
        await self.events.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self, n: int) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("error processing event", worker=n, event_name=event.get("event"))
            finally:
                self.events.task_done()

    async def dispatch(self, event: Dict[str, Any]) -> None:
        name = event.get("event")
        if name == "TransferSingle":
            await self.handle_transfer_single(event)
        elif name == "ListingCreated":
            await self.handle_listing_created(event)
        else:
            logger.debug("ignoring event", event_name=name)

    async def handle_transfer_single(self, event: Dict[str, Any]) -> None:
        args = event["args"]
        operator = args.get("operator")
        from_addr = args.get("from")
        to_addr = args.get("to")
        token_id = int(args["id"])
        logger.info(
            "on.TransferSingle",
            operator=operator,
            from_address=from_addr,
            to_address=to_addr,
            token_id=token_id,
            block_number=event.get("block_number"),
        )

        if is_zero_address(from_addr):
            result = await self.indexer.index_by_id(token_id, operator)
            if not result:
                if await self.store.midi.get(token_id) is not None:
                    # supply top-up or a replayed mint of a token already mirrored
                    logger.info("midi already indexed, not queueing", token_id=token_id, error_code=result.error_code)
                else:
                    await self.store.queue.enqueue(token_id, result.error, operator)

        if is_zero_address(to_addr):
            await self.burn_handler.handle(token_id)

    async def handle_listing_created(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        args = event["args"]
        logger.info(
            "on.ListingCreated",
            token_id=int(args["tokenId"]),
            listing_address=args.get("listingAddress"),
            amount=int(args["amount"]),
            price=str(args["price"]),
            lister=args.get("lister"),
        )
        return await self.store.listings.create(
            token_id=int(args["tokenId"]),
            listing_address=args["listingAddress"],
            amount=int(args["amount"]),
            price=int(args["price"]),
            seller_address=args["lister"],
            transaction_hash=event.get("transaction_hash"),
            log_index=event.get("log_index"),
            block_number=event.get("block_number"),
        )
