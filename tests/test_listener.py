import asyncio

import httpx
import pytest

from midi_indexer.indexer import IndexErrorCodes, TokenIndexer
from midi_indexer.listener import BurnHandler, EventListener
from midi_indexer.metadata import MetadataFetcher
from midi_indexer.utils import ZERO_ADDRESS

from .conftest import HOLDER, OPERATOR, metadata_doc, transfer_event

ROLAND_SP404 = {"name": "SP-404", "manufacturer": "Roland"}
LISTING = "0x3333333333333333333333333333333333333333"


def listing_event(token_id, price=10**18, seller=HOLDER, log_index=1):
    return {
        "event": "ListingCreated",
        "args": {
            "tokenId": token_id,
            "listingAddress": LISTING,
            "amount": 2,
            "price": price,
            "lister": seller,
        },
        "address": "0x0000000000000000000000000000000000000002",
        "transaction_hash": "0x" + "ab" * 32,
        "log_index": log_index,
        "block_number": 120,
    }


class TestTransferSingle:
    @pytest.mark.asyncio
    async def test_mint_indexes_token(self, store, fetcher, listener):
        fetcher.docs[42] = metadata_doc(devices=[ROLAND_SP404])

        await listener.dispatch(transfer_event(42))

        row = await store.midi.get(42)
        assert row["created_by"] == OPERATOR
        assert await store.queue.fetch_all() == []

    @pytest.mark.asyncio
    async def test_failed_mint_is_queued(self, store, chain, listener):
        await listener.dispatch(transfer_event(7))

        rows = await store.queue.fetch_all()
        assert len(rows) == 1
        assert rows[0]["id"] == 7
        assert rows[0]["attempts"] == 1
        assert rows[0]["operator"] == OPERATOR
        assert rows[0]["error"].startswith(IndexErrorCodes.METADATA_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_gateway_404_queues_token(self, store, chain, burn_handler):
        chain.uris[7] = "ipfs://bafy/7.json"
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(404)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        fetcher = MetadataFetcher(chain, client=client)
        listener = EventListener(store, TokenIndexer(store, fetcher), burn_handler)

        await listener.dispatch(transfer_event(7))
        await client.aclose()

        assert requested == ["https://nftstorage.link/ipfs/bafy/7.json"]
        assert await store.midi.get(7) is None
        rows = await store.queue.fetch_all()
        assert [(r["id"], r["attempts"]) for r in rows] == [(7, 1)]
        assert rows[0]["error"] == "METADATA_UNAVAILABLE: failed fetching metadata"

    @pytest.mark.asyncio
    async def test_second_failure_keeps_single_queue_row(self, store, listener):
        await listener.dispatch(transfer_event(7))
        await listener.dispatch(transfer_event(7))
        assert len(await store.queue.fetch_all()) == 1

    @pytest.mark.asyncio
    async def test_repeat_mint_of_indexed_token_is_not_queued(self, store, fetcher, listener):
        fetcher.docs[42] = metadata_doc(devices=[ROLAND_SP404])
        await listener.dispatch(transfer_event(42))

        await listener.dispatch(transfer_event(42, block_number=101))

        assert (await store.midi.get(42))["created_by"] == OPERATOR
        assert await store.queue.fetch_all() == []

    @pytest.mark.asyncio
    async def test_plain_transfer_does_nothing(self, store, fetcher, listener):
        other = "0x4444444444444444444444444444444444444444"
        await listener.dispatch(transfer_event(42, from_addr=HOLDER, to_addr=other))
        assert fetcher.calls == []
        assert await store.queue.fetch_all() == []

    @pytest.mark.asyncio
    async def test_full_burn_removes_token(self, store, fetcher, chain, listener):
        fetcher.docs[42] = metadata_doc(devices=[ROLAND_SP404])
        await listener.dispatch(transfer_event(42))
        chain.supplies[42] = 0

        await listener.dispatch(transfer_event(42, from_addr=HOLDER, to_addr=ZERO_ADDRESS))

        assert await store.midi.get(42) is None
        assert await store.midi_devices.fetch(42) == []
        assert await store.devices.fetch("SP-404", "Roland") is not None

    @pytest.mark.asyncio
    async def test_partial_burn_keeps_token(self, store, fetcher, chain, listener):
        fetcher.docs[42] = metadata_doc(devices=[ROLAND_SP404])
        await listener.dispatch(transfer_event(42))
        chain.supplies[42] = 3

        await listener.dispatch(transfer_event(42, from_addr=HOLDER, to_addr=ZERO_ADDRESS))

        assert await store.midi.get(42) is not None
        assert len(await store.midi_devices.fetch(42)) == 1


class TestBurnHandler:
    @pytest.mark.asyncio
    async def test_unknown_token_is_noop(self, burn_handler):
        assert await burn_handler.handle(99) is True

    @pytest.mark.asyncio
    async def test_supply_read_failure(self, store, fetcher, chain, indexer):
        fetcher.docs[42] = metadata_doc(devices=[ROLAND_SP404])
        await indexer.index_by_id(42, OPERATOR)
        chain.supply_error = ValueError("execution reverted")

        assert await BurnHandler(store, chain).handle(42) is False
        assert await store.midi.get(42) is not None


class TestListingCreated:
    @pytest.mark.asyncio
    async def test_listing_row(self, store, listener):
        await listener.dispatch(listing_event(42))
        rows = await store.listings.fetch_all(seller_address=HOLDER)
        assert len(rows) == 1
        assert rows[0]["token_id"] == 42
        assert rows[0]["listing_address"] == LISTING
        assert rows[0]["amount"] == 2
        assert rows[0]["price"] == str(10**18)
        assert rows[0]["block_number"] == 120

    @pytest.mark.asyncio
    async def test_price_beyond_int64(self, store, listener):
        price = 2**200
        created = await listener.handle_listing_created(listing_event(1, price=price))
        assert int(created["price"]) == price

    @pytest.mark.asyncio
    async def test_replayed_listing_is_stored_once(self, store, listener):
        await listener.dispatch(listing_event(42))
        await listener.dispatch(listing_event(42))
        await listener.dispatch(listing_event(42, log_index=2))
        assert len(await store.listings.fetch_all(seller_address=HOLDER)) == 2


class TestEventPump:
    @pytest.mark.asyncio
    async def test_workers_drain_submitted_events(self, store, fetcher, listener):
        for token_id in (1, 2, 3):
            fetcher.docs[token_id] = metadata_doc(devices=[ROLAND_SP404])
        listener.start()
        try:
            for token_id in (1, 2, 3, 4):
                await listener.submit(transfer_event(token_id))
            await listener.submit(listing_event(1))
            await listener.submit({"event": "ApprovalForAll", "args": {}})
            await listener.join()
        finally:
            await listener.stop()

        assert await store.midi.ids() == [1, 2, 3]
        assert await store.queue.ids() == [4]
        assert len(await store.listings.fetch_all(seller_address=HOLDER)) == 1

    @pytest.mark.asyncio
    async def test_worker_survives_handler_error(self, store, fetcher, listener):
        fetcher.docs[1] = metadata_doc(devices=[ROLAND_SP404])
        listener.start()
        try:
            await listener.submit({"event": "TransferSingle", "args": {}})
            await listener.submit(transfer_event(1))
            await listener.join()
        finally:
            await listener.stop()

        assert await store.midi.ids() == [1]

    @pytest.mark.asyncio
    async def test_burn_waits_for_in_flight_mint(self, store, fetcher, chain, listener):
        fetcher.docs[5] = metadata_doc(devices=[ROLAND_SP404])
        chain.supplies[5] = 0
        fetch = fetcher.fetch

        async def slow_fetch(token_id):
            await asyncio.sleep(0.05)
            return await fetch(token_id)

        fetcher.fetch = slow_fetch
        listener.start()
        try:
            await listener.submit(transfer_event(5))
            await listener.submit(transfer_event(5, from_addr=HOLDER, to_addr=ZERO_ADDRESS))
            await listener.join()
        finally:
            await listener.stop()

        assert await store.midi.get(5) is None
        assert await store.midi_devices.fetch(5) == []
        assert await store.queue.fetch_all() == []
        assert listener.indexer.in_flight() == []
