import json
from typing import Any, Dict

from hexbytes import HexBytes
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, HexBytes):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + obj.hex()
    if isinstance(obj, set):
        return sorted(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return str(obj)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True)


def json_loads(text: Any) -> Any:
    if text is None or text == "":
        return None
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return None


def to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def is_zero_address(addr: Any) -> bool:
    return isinstance(addr, str) and addr.lower() == ZERO_ADDRESS


def parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def hex_str(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def normalize_key(value: Any) -> str:
    return str(value or "").strip().lower()


def normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    for key in ("transactionHash", "blockHash", "data"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out and out[key] is not None:
            out[key] = parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = to_checksum(out["address"])
    return out
