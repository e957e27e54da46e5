import pytest
import pytest_asyncio

from midi_indexer.indexer import DeviceResolver, TokenIndexer
from midi_indexer.listener import BurnHandler, EventListener
from midi_indexer.metadata import MidiMetadata
from midi_indexer.store import Store
from midi_indexer.utils import ZERO_ADDRESS

OPERATOR = "0x1111111111111111111111111111111111111111"
HOLDER = "0x2222222222222222222222222222222222222222"


def metadata_doc(devices=None, tags=None, entries=None, name="Loop Pack"):
    properties = {
        "tags": tags if tags is not None else ["lofi"],
        "entries": entries if entries is not None else [{"name": "intro", "midi": "ipfs://intro.mid", "tags": ["drums"]}],
    }
    if devices is not None:
        properties["devices"] = devices
    return {"name": name, "description": "a pack", "image": "ipfs://img.png", "properties": properties}


def transfer_event(token_id, from_addr=ZERO_ADDRESS, to_addr=HOLDER, operator=OPERATOR, block_number=100):
    return {
        "event": "TransferSingle",
        "args": {"operator": operator, "from": from_addr, "to": to_addr, "id": token_id, "value": 1},
        "address": "0x0000000000000000000000000000000000000001",
        "transaction_hash": "0x" + format(token_id, "064x"),
        "log_index": 0,
        "block_number": block_number,
    }


class FakeChain:
    def __init__(self):
        self.uris = {}
        self.supplies = {}
        self.current_id = 0
        self.operators = {}
        self.supply_error = None

    async def uri(self, token_id):
        if token_id not in self.uris:
            raise ValueError(f"execution reverted: no uri for {token_id}")
        return self.uris[token_id]

    async def total_supply(self, token_id):
        if self.supply_error:
            raise self.supply_error
        return self.supplies.get(token_id, 0)

    async def current_token_id(self):
        return self.current_id

    async def mint_operators(self):
        return dict(self.operators)

    async def find_original_minter(self, token_id):
        return self.operators.get(token_id)


class FakeFetcher:
    def __init__(self, docs=None):
        self.docs = dict(docs or {})
        self.calls = []

    async def fetch(self, token_id):
        self.calls.append(token_id)
        doc = self.docs.get(token_id)
        if doc is None:
            return None
        return MidiMetadata.model_validate(doc)


@pytest_asyncio.fixture
async def store():
    db = Store(":memory:")
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def indexer(store, fetcher):
    return TokenIndexer(store, fetcher, DeviceResolver(store))


@pytest.fixture
def burn_handler(store, chain, indexer):
    return BurnHandler(store, chain, indexer.locks)


@pytest.fixture
def listener(store, indexer, burn_handler):
    return EventListener(store, indexer, burn_handler, workers=2)
