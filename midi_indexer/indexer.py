"""Token indexing: metadata -> devices -> token row + device links."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from .metadata import MidiMetadata
from .store import Store, StoreError

logger = structlog.get_logger(__name__)

MAX_DEVICES_PER_TOKEN = 5


class IndexErrorCodes:
    """Failure codes carried by IndexResult and stored in the retry queue."""

    METADATA_UNAVAILABLE = "METADATA_UNAVAILABLE"
    NO_DEVICE_PROPERTY = "NO_DEVICE_PROPERTY"
    DEVICE_CREATION_FAILED = "DEVICE_CREATION_FAILED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    OPERATOR_RESOLUTION_FAILED = "OPERATOR_RESOLUTION_FAILED"


class IndexResult:
    def __init__(self, ok: bool, error_code: Optional[str] = None, error_message: Optional[str] = None):
        self.ok = ok
        self.error_code = error_code
        self.error_message = error_message

    @classmethod
    def success(cls) -> "IndexResult":
        return cls(True)

    @classmethod
    def failure(cls, error_code: str, error_message: str) -> "IndexResult":
        return cls(False, error_code, error_message)

    @property
    def error(self) -> Optional[str]:
        """Queue-ready error text, None on success."""
        if self.ok:
            return None
        return f"{self.error_code}: {self.error_message}"

    def __bool__(self):
        return self.ok

    def __repr__(self):
        if self.ok:
            return "IndexResult(ok=True)"
        return f"IndexResult(ok=False, error={self.error_code})"


def derive_tags(metadata: MidiMetadata) -> List[str]:
    """Upper-cased, trimmed tags from the document and its entries, first-seen order."""
    raw: List[str] = list(metadata.properties.tags or [])
    for entry in metadata.properties.entries or []:
        raw.extend(entry.tags or [])

    seen = set()
    tags = []
    for tag in raw:
        if not isinstance(tag, str):
            continue
        value = tag.strip().upper()
        if value and value not in seen:
            seen.add(value)
            tags.append(value)
    return tags


class DeviceResolver:
    def __init__(self, store: Store):
        self.store = store

    async def resolve(self, name: str, manufacturer: Optional[str]) -> Optional[int]:
        manufacturer = manufacturer or ""
        existing = await self.store.devices.fetch(name, manufacturer)
        if existing:
            return int(existing["id"])

        created = await self.store.devices.create(name, manufacturer)
        if not created:
            return None
        logger.info("device created", device_id=created["id"], name=name, manufacturer=manufacturer)
        return int(created["id"])


class TokenLocks:
    """One asyncio.Lock per token id, dropped once nobody holds or waits on it.

    Indexing and burns of the same id both go through here, so a token's rows
    are only ever mutated by one task at a time.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._refs: Dict[int, int] = {}

    def held(self) -> List[int]:
        return sorted(self._locks.keys())

    @asynccontextmanager
    async def hold(self, token_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(token_id, asyncio.Lock())
        self._refs[token_id] = self._refs.get(token_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[token_id] -= 1
            if not self._refs[token_id]:
                del self._refs[token_id]
                del self._locks[token_id]


class TokenIndexer:
    def __init__(
        self,
        store: Store,
        fetcher: Any,
        resolver: Optional[DeviceResolver] = None,
        locks: Optional[TokenLocks] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.resolver = resolver or DeviceResolver(store)
        self.locks = locks if locks is not None else TokenLocks()

    def in_flight(self) -> List[int]:
        return self.locks.held()

    async def index_by_id(self, token_id: int, operator: str) -> IndexResult:
        """Index one token. Never raises; failures come back as IndexResult."""
        async with self.locks.hold(token_id):
            try:
                result = await self._index(token_id, operator)
            except Exception as exc:
                logger.exception("unexpected indexing error", token_id=token_id)
                result = IndexResult.failure(IndexErrorCodes.PERSISTENCE_ERROR, str(exc))

        if result:
            logger.info("midi indexed", token_id=token_id, operator=operator)
        else:
            logger.warning(
                "midi indexing failed",
                token_id=token_id,
                operator=operator,
                error_code=result.error_code,
                error=result.error_message,
            )
        return result

    async def _index(self, token_id: int, operator: str) -> IndexResult:
        metadata = await self.fetcher.fetch(token_id)
        if metadata is None:
            return IndexResult.failure(IndexErrorCodes.METADATA_UNAVAILABLE, "failed fetching metadata")

        declared = metadata.properties.devices
        if not declared:
            return IndexResult.failure(
                IndexErrorCodes.NO_DEVICE_PROPERTY, "no metadata.properties.devices property"
            )

        device_ids: List[int] = []
        for device in declared:
            device_id = await self.resolver.resolve(device.name, device.manufacturer)
            if device_id is None:
                return IndexResult.failure(
                    IndexErrorCodes.DEVICE_CREATION_FAILED,
                    f"creating device failed for {device.manufacturer or ''}: {device.name}",
                )
            if device_id not in device_ids:
                device_ids.append(device_id)

        try:
            await self.store.midi.create(
                token_id,
                metadata.model_dump(mode="json", exclude_none=True),
                operator,
                derive_tags(metadata),
                device_ids[:MAX_DEVICES_PER_TOKEN],
            )
        except StoreError as exc:
            return IndexResult.failure(IndexErrorCodes.PERSISTENCE_ERROR, f"failed creating midi: {exc}")

        return IndexResult.success()

