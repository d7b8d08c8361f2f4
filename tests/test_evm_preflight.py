import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import TimeExhausted

from errors import CHAIN_MISMATCH, INVALID_CHAIN, MISSING_RPC_URL, RPC_UNREACHABLE, TIMEOUT, AppError
from execution import evm
from execution.evm import RpcClient, resolve_chain, resolve_rpc_url, run_rpc_preflight


async def _value(v):
    return v


def test_resolve_chain_presets_and_numeric_ids():
    assert resolve_chain("").chain_id == 8453
    assert resolve_chain("Base-Sepolia").chain_id == 84532
    custom = resolve_chain("31337")
    assert custom.key == "chain-31337"
    assert custom.chain_id == 31337
    with pytest.raises(AppError) as e:
        resolve_chain("solana")
    assert e.value.code == INVALID_CHAIN


def test_rpc_url_precedence(monkeypatch):
    for k in ("EVM_RPC_URL_BASE", "RPC_URL_BASE", "BASE_RPC_URL"):
        monkeypatch.delenv(k, raising=False)
    base = resolve_chain("base")

    assert resolve_rpc_url(base) == "https://mainnet.base.org"
    monkeypatch.setenv("READYTX_RPC_URL", "http://fallback")
    assert resolve_rpc_url(base) == "http://fallback"
    monkeypatch.setenv("BASE_RPC_URL", "http://base-legacy")
    assert resolve_rpc_url(base) == "http://base-legacy"
    monkeypatch.setenv("RPC_URL_BASE", "http://rpc-base")
    assert resolve_rpc_url(base) == "http://rpc-base"
    monkeypatch.setenv("EVM_RPC_URL_BASE", "http://evm-base")
    assert resolve_rpc_url(base) == "http://evm-base"
    assert resolve_rpc_url(base, " http://explicit ") == "http://explicit"


def test_rpc_url_missing(monkeypatch):
    for k in ("EVM_RPC_URL_ETHEREUM", "RPC_URL_ETHEREUM"):
        monkeypatch.delenv(k, raising=False)
    with pytest.raises(AppError) as e:
        resolve_rpc_url(resolve_chain("ethereum"))
    assert e.value.code == MISSING_RPC_URL


def _fake_client(chain_id=8453, block=123):
    client = MagicMock()
    client.get_chain_id = AsyncMock(return_value=chain_id)
    client.get_block_number = AsyncMock(return_value=block)
    client.aclose = AsyncMock()
    return client


def test_preflight_ok(monkeypatch):
    client = _fake_client()
    monkeypatch.setattr(evm, "create_rpc_client", lambda url: client)
    result = asyncio.run(run_rpc_preflight(resolve_chain("base"), "http://rpc"))
    assert result.client is client
    assert result.chain_id == 8453
    assert result.block_number == "123"
    assert result.chain_name == "Base"
    client.aclose.assert_not_awaited()


def test_preflight_chain_mismatch(monkeypatch):
    client = _fake_client(chain_id=1)
    monkeypatch.setattr(evm, "create_rpc_client", lambda url: client)
    with pytest.raises(AppError) as e:
        asyncio.run(run_rpc_preflight(resolve_chain("base"), "http://rpc"))
    assert e.value.code == CHAIN_MISMATCH
    assert e.value.data == {"expected_chain_id": 8453, "actual_chain_id": 1}
    client.aclose.assert_awaited_once()


def test_preflight_unreachable(monkeypatch):
    client = _fake_client()
    client.get_chain_id.side_effect = ConnectionError("refused")
    monkeypatch.setattr(evm, "create_rpc_client", lambda url: client)
    with pytest.raises(AppError) as e:
        asyncio.run(run_rpc_preflight(resolve_chain("base"), "http://rpc"))
    assert e.value.code == RPC_UNREACHABLE
    client.aclose.assert_awaited_once()


def test_eip1559_fee_estimate():
    w3 = MagicMock()
    w3.eth.get_block = AsyncMock(return_value={"baseFeePerGas": 100})
    w3.eth.max_priority_fee = _value(2)
    fees = asyncio.run(RpcClient(w3).estimate_fees_per_gas())
    assert fees.max_fee_per_gas == 122
    assert fees.max_priority_fee_per_gas == 2


def test_legacy_fee_estimate():
    w3 = MagicMock()
    w3.eth.get_block = AsyncMock(return_value={})
    w3.eth.gas_price = _value(5)
    fees = asyncio.run(RpcClient(w3).estimate_fees_per_gas())
    assert fees.max_fee_per_gas == 5
    assert fees.max_priority_fee_per_gas is None


def test_receipt_wait_timeout_is_structured():
    w3 = MagicMock()
    w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("gave up"))
    tx_hash = "0x" + "ab" * 32
    with pytest.raises(AppError) as e:
        asyncio.run(RpcClient(w3).wait_for_transaction_receipt(tx_hash, 1500))
    assert e.value.code == TIMEOUT
    assert e.value.data == {"tx_hash": tx_hash, "timeout_ms": 1500}


def test_pending_nonce_uses_checksum_address():
    w3 = MagicMock()
    w3.eth.get_transaction_count = AsyncMock(return_value=9)
    addr = "0x" + "ab" * 20
    assert asyncio.run(RpcClient(w3).get_transaction_count(addr)) == 9
    called_addr, block = w3.eth.get_transaction_count.await_args.args
    assert called_addr.lower() == addr
    assert block == "pending"


def test_aclose_disconnects_provider():
    w3 = MagicMock()
    w3.provider.disconnect = AsyncMock()
    asyncio.run(RpcClient(w3).aclose())
    w3.provider.disconnect.assert_awaited_once()
