import asyncio
from typing import Any, Dict, Optional

import structlog

from .chain import LogSubscriber, MidiChain
from .config import require
from .indexer import DeviceResolver, TokenIndexer
from .listener import BurnHandler, EventListener
from .metadata import MetadataFetcher
from .store import Store
from .sweeps import QueueDrainer, Reconciler, run_every

logger = structlog.get_logger(__name__)


class IndexerService:
    """Builds every component once and hands each one its collaborators."""

    def __init__(
        self,
        config: Dict[str, Any],
        store: Optional[Store] = None,
        chain: Optional[Any] = None,
        fetcher: Optional[Any] = None,
    ):
        self.config = config
        if chain is None:
            require(config, ("rpc_http", "midi_address", "market_address"))
            chain = MidiChain(
                config["rpc_http"],
                config["midi_address"],
                config["market_address"],
                abi_dir=config.get("abi_dir"),
                start_block=config["start_block"],
            )
        self.chain = chain
        self.store = store or Store(config["db_path"])
        self.fetcher = fetcher or MetadataFetcher(
            chain, gateway=config["ipfs_gateway"], timeout=config["http_timeout"]
        )

        self.indexer = TokenIndexer(self.store, self.fetcher, DeviceResolver(self.store))
        self.burn_handler = BurnHandler(self.store, self.chain, self.indexer.locks)
        self.listener = EventListener(
            self.store, self.indexer, self.burn_handler, workers=config["event_workers"]
        )
        self.drainer = QueueDrainer(self.store, self.indexer, config["queue_max_attempts"])
        self.reconciler = Reconciler(self.store, self.chain, self.indexer)

    async def init(self) -> None:
        await self.store.init_db()

    async def start(self) -> None:
        require(self.config, ("rpc_ws",))
        await self.init()
        subscriber = LogSubscriber(
            self.chain,
            self.config["rpc_ws"],
            self.store,
            self.listener.submit,
            reconnect_delay=self.config["reconnect_delay"],
            batch_size=self.config["batch_size"],
        )
        workers = self.listener.start()
        logger.info(
            "midi indexer running",
            midi_address=self.config["midi_address"],
            market_address=self.config["market_address"],
            queue_interval=self.config["queue_interval"],
            reconcile_interval=self.config["reconcile_interval"],
        )
        try:
            await asyncio.gather(
                subscriber.run(),
                run_every(self.config["queue_interval"], self.drainer.drain, "queue"),
                run_every(self.config["reconcile_interval"], self.reconciler.sync, "reconcile"),
                *workers,
            )
        finally:
            await self.close()

    async def close(self) -> None:
        await self.listener.stop()
        if hasattr(self.fetcher, "aclose"):
            await self.fetcher.aclose()
        await self.store.close()
