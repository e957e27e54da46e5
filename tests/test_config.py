import json

import pytest

from midi_indexer.config import DEFAULTS, ConfigError, build_config, load_config, require


def test_defaults_fill_missing_keys():
    cfg = build_config({"rpc_http": "http://localhost:8545"})
    assert cfg["rpc_http"] == "http://localhost:8545"
    assert cfg["start_block"] == DEFAULTS["start_block"]
    assert cfg["queue_interval"] == 300
    assert cfg["reconcile_interval"] == 86400
    assert cfg["queue_max_attempts"] == 10
    assert cfg["ipfs_gateway"] == "https://nftstorage.link/ipfs/"


def test_env_expansion(monkeypatch):
    monkeypatch.setenv("MIDI_RPC_KEY", "secret")
    monkeypatch.delenv("MIDI_UNSET", raising=False)
    cfg = build_config({"rpc_http": "https://rpc.example/${MIDI_RPC_KEY}", "rpc_ws": "$MIDI_UNSET"})
    assert cfg["rpc_http"] == "https://rpc.example/secret"
    assert cfg["rpc_ws"] == "$MIDI_UNSET"


def test_empty_string_becomes_none():
    assert build_config({"market_address": ""})["market_address"] is None


def test_int_coercion():
    cfg = build_config({"start_block": "123", "event_workers": "8"})
    assert cfg["start_block"] == 123
    assert cfg["event_workers"] == 8


@pytest.mark.parametrize(
    "raw",
    [
        {"batch_size": "lots"},
        {"queue_interval": None},
        {"queue_max_attempts": 0},
        {"event_workers": 0},
    ],
)
def test_invalid_values(raw):
    with pytest.raises(ConfigError):
        build_config(raw)


@pytest.mark.parametrize("value,expected", [("false", False), ("0", False), ("true", True), (False, False)])
def test_log_json_flag(value, expected):
    assert build_config({"log_json": value})["log_json"] is expected


def test_load_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"db_path": "/tmp/x.db", "batch_size": 50}))
    cfg = load_config(str(path))
    assert cfg["db_path"] == "/tmp/x.db"
    assert cfg["batch_size"] == 50

    path.write_text("[]")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_require():
    cfg = build_config({"rpc_http": "http://localhost:8545"})
    require(cfg, ["rpc_http"])
    with pytest.raises(ConfigError) as excinfo:
        require(cfg, ["rpc_http", "midi_address", "market_address"])
    assert "midi_address, market_address" in str(excinfo.value)
