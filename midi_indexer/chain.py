"""Chain access: contract reads, log decoding and the websocket log subscription."""

import asyncio
import json
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
import websockets
from web3 import Web3
from web3._utils.events import get_event_data

from .utils import ZERO_ADDRESS, hex_str, normalize_log, parse_int, to_checksum

logger = structlog.get_logger(__name__)

MIDI_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "TransferSingle",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "operator", "type": "address"},
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "id", "type": "uint256"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "uri",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "type": "function",
        "name": "totalSupply",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "currentTokenId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

MARKET_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "ListingCreated",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": False, "name": "listingAddress", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "price", "type": "uint256"},
            {"indexed": True, "name": "lister", "type": "address"},
        ],
    },
]

_SPLIT_ERRORS = ("too many", "query returned more than", "response size", "limit", "timeout")


def event_topic(event_abi: Dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in event_abi.get("inputs", []))
    return hex_str(Web3.keccak(text=f"{event_abi['name']}({types})"))


def _address_topic(addr: str) -> str:
    return "0x" + addr.lower().replace("0x", "").rjust(64, "0")


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def _find_abi_file(contract_name: str, abi_dir: Optional[str]) -> Optional[str]:
    if not abi_dir or not os.path.exists(abi_dir):
        return None
    for candidate in (f"{contract_name}.json", f"{contract_name}.abi.json"):
        direct = os.path.join(abi_dir, candidate)
        if os.path.exists(direct):
            return direct

    for root, _dirs, files in os.walk(abi_dir):
        for filename in files:
            if filename == f"{contract_name}.json":
                return os.path.join(root, filename)
    return None


def load_abi(contract_name: str, abi_dir: Optional[str], fallback: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """ABI from a Hardhat artifact or raw ABI file in abi_dir, else the built-in fragment."""
    path = _find_abi_file(contract_name, abi_dir)
    if path:
        with open(path, "r", encoding="utf-8") as f:
            abi = _extract_abi(json.load(f))
        if abi:
            return abi
        logger.warning("unrecognized abi file, using built-in", contract=contract_name, path=path)
    return fallback


class EventDecoder:
    def __init__(self, w3: Web3, abis: Dict[str, List[Dict[str, Any]]]):
        self.w3 = w3
        self.topic_to_abi: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for address, abi in abis.items():
            topic_map: Dict[str, Dict[str, Any]] = {}
            for item in abi:
                if isinstance(item, dict) and item.get("type") == "event" and not item.get("anonymous"):
                    topic_map[event_topic(item)] = item
            self.topic_to_abi[to_checksum(address)] = topic_map

    def decode(self, log: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        normalized = normalize_log(log)
        topics = normalized.get("topics") or []
        if not topics:
            return None
        event_abi = self.topic_to_abi.get(normalized.get("address"), {}).get(hex_str(topics[0]))
        if event_abi is None:
            return None

        try:
            event_data = get_event_data(self.w3.codec, event_abi, normalized)
        except Exception as exc:
            logger.warning("failed decoding log", address=normalized.get("address"), error=str(exc))
            return None

        tx_hash = normalized.get("transactionHash")
        return {
            "event": event_data["event"],
            "args": dict(event_data["args"]),
            "address": normalized.get("address"),
            "transaction_hash": hex_str(tx_hash) if tx_hash is not None else None,
            "log_index": normalized.get("logIndex"),
            "block_number": normalized.get("blockNumber"),
        }


class MidiChain:
    """Read-only handle over the MIDI and market contracts.

    web3's HTTP provider is synchronous, so every call runs in a worker thread
    and awaiting it yields to the rest of the loop.
    """

    def __init__(
        self,
        rpc_http: str,
        midi_address: str,
        market_address: str,
        abi_dir: Optional[str] = None,
        start_block: int = 0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 if w3 is not None else Web3(Web3.HTTPProvider(rpc_http))
        self.midi_address = to_checksum(midi_address)
        self.market_address = to_checksum(market_address)
        self.start_block = start_block

        midi_abi = load_abi("Midi", abi_dir, MIDI_ABI)
        market_abi = load_abi("Market", abi_dir, MARKET_ABI)
        self.midi = self.w3.eth.contract(address=self.midi_address, abi=midi_abi)
        self.decoder = EventDecoder(self.w3, {self.midi_address: midi_abi, self.market_address: market_abi})
        self.transfer_single_abi = next(
            item for item in midi_abi if item.get("type") == "event" and item.get("name") == "TransferSingle"
        )

    @property
    def addresses(self) -> List[str]:
        return [self.midi_address, self.market_address]

    async def current_token_id(self) -> int:
        return int(await asyncio.to_thread(self.midi.functions.currentTokenId().call))

    async def uri(self, token_id: int) -> str:
        return await asyncio.to_thread(self.midi.functions.uri(token_id).call)

    async def total_supply(self, token_id: int) -> int:
        return int(await asyncio.to_thread(self.midi.functions.totalSupply(token_id).call))

    async def block_number(self) -> int:
        return int(await asyncio.to_thread(lambda: self.w3.eth.block_number))

    async def get_logs(self, from_block: int, to_block: int, topics: Optional[List[Any]] = None,
                       address: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": address or self.addresses,
        }
        if topics:
            params["topics"] = topics
        logs = await asyncio.to_thread(self.w3.eth.get_logs, params)
        return sorted((dict(log) for log in logs), key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))

    async def _get_logs_with_split(self, from_block: int, to_block: int, topics: List[Any],
                                   address: List[str]) -> List[Dict[str, Any]]:
        try:
            return await self.get_logs(from_block, to_block, topics, address)
        except Exception as exc:
            msg = str(exc).lower()
            if to_block <= from_block or not any(x in msg for x in _SPLIT_ERRORS):
                raise
            mid = from_block + (to_block - from_block) // 2
            logger.warning("get_logs too large, splitting", from_block=from_block, to_block=to_block)
            left = await self._get_logs_with_split(from_block, mid, topics, address)
            right = await self._get_logs_with_split(mid + 1, to_block, topics, address)
            return left + right

    async def mint_operators(self) -> Dict[int, str]:
        """Map every minted token id to the operator of its first mint transfer."""
        latest = await self.block_number()
        topics = [event_topic(self.transfer_single_abi), None, _address_topic(ZERO_ADDRESS)]
        logs = await self._get_logs_with_split(self.start_block, latest, topics, [self.midi_address])

        operators: Dict[int, str] = {}
        for log in logs:
            event = self.decoder.decode(log)
            if not event or event["event"] != "TransferSingle":
                continue
            operators.setdefault(int(event["args"]["id"]), event["args"]["operator"])
        return operators

    async def find_original_minter(self, token_id: int) -> Optional[str]:
        operator = (await self.mint_operators()).get(token_id)
        if operator is None:
            logger.error("no target event found", token_id=token_id)
        return operator


class LogSubscriber:
    """Feeds decoded contract events to ``on_event``.

    Logs missed since the stored cursor are replayed through eth_getLogs
    before every (re)subscription, so delivery is at-least-once.
    """

    def __init__(
        self,
        chain: MidiChain,
        rpc_ws: str,
        store: Any,
        on_event: Callable[[Dict[str, Any]], Awaitable[None]],
        reconnect_delay: int = 5,
        batch_size: int = 1000,
    ):
        self.chain = chain
        self.rpc_ws = rpc_ws
        self.store = store
        self.on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.batch_size = batch_size
        self.last_processed_block: Optional[int] = None
        self._ws_id = 0

    async def run(self) -> None:
        backoff = max(self.reconnect_delay, 1)
        max_backoff = 60

        while True:
            try:
                await self.catch_up()
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    logger.info("websocket opened")
                    sub_id = await self._ws_subscribe(ws)
                    logger.info("subscribed to logs", subscription=sub_id, addresses=self.chain.addresses)
                    backoff = max(self.reconnect_delay, 1)

                    async for message in ws:
                        await self._handle_message(json.loads(message))
                logger.critical("subscription closed", rpc_ws=self.rpc_ws)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.critical("subscription closed", rpc_ws=self.rpc_ws, error=str(exc))
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, max_backoff)

    async def catch_up(self) -> None:
        if self.last_processed_block is None:
            self.last_processed_block = await self.store.get_last_processed_block()
        latest = await self.chain.block_number()
        if self.last_processed_block is None:
            # first run: nothing to replay, start from the head
            await self._advance(latest)
            return

        current = max(self.last_processed_block + 1, self.chain.start_block)
        batch_size = self.batch_size
        while current <= latest:
            batch_to = min(current + batch_size - 1, latest)
            try:
                logs = await self.chain.get_logs(current, batch_to)
            except Exception as exc:
                msg = str(exc).lower()
                if batch_size > 1 and any(x in msg for x in _SPLIT_ERRORS):
                    batch_size = max(batch_size // 2, 1)
                    logger.warning("get_logs too large, reducing batch size", batch_size=batch_size)
                    continue
                raise
            if logs:
                logger.info("replaying missed logs", count=len(logs), from_block=current, to_block=batch_to)
            for log in logs:
                await self._handle_log(log, advance=False)
            await self._advance(batch_to)
            current = batch_to + 1

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.chain.addresses}],
        }
        await ws.send(json.dumps(payload))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            await self._handle_message(data)

    async def _handle_message(self, payload: Dict[str, Any]) -> None:
        if payload.get("method") == "eth_subscription":
            log = payload.get("params", {}).get("result")
            if log:
                await self._handle_log(log)
        elif payload.get("id") is not None and payload.get("error"):
            logger.error("websocket error", payload=payload)

    async def _handle_log(self, log: Dict[str, Any], advance: bool = True) -> None:
        if log.get("removed"):
            logger.warning("ignoring removed log", transaction_hash=hex_str(log.get("transactionHash")))
            return
        event = self.chain.decoder.decode(log)
        if event is not None:
            await self.on_event(event)
        block_number = log.get("blockNumber")
        if advance and block_number is not None:
            # the head block may still carry more logs, so only what precedes it is done
            await self._advance(parse_int(block_number) - 1)

    async def _advance(self, block_number: int) -> None:
        if self.last_processed_block is not None and block_number <= self.last_processed_block:
            return
        await self.store.update_sync_state(block_number)
        self.last_processed_block = block_number
