import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from app.core.settings import settings
from app.tools import tx as tx_tools
from app.tools.tx import tx_resume, tx_send, tx_status, tx_watch
from conftest import RECIPIENT, SENDER, TX_HASH
from errors import POLICY_VIOLATION, AppError
from execution.models import NoncePolicy, TxExecutionResult
from execution.tx_engine import resolve_journal_path
from journal_store import PreparedParams, open_journal


@pytest.fixture
def tool_home(tmp_path, monkeypatch):
    home = str(tmp_path / "home")
    monkeypatch.setattr(settings, "READYTX_HOME", home)
    monkeypatch.setattr(settings, "READYTX_JOURNAL_PATH", None)
    monkeypatch.setattr(settings, "READYTX_SIGNER", "readonly")
    return home


def _result(**overrides):
    base = dict(
        idempotency_key="k",
        from_address=SENDER,
        to=RECIPIENT,
        nonce=7,
        gas_limit="21000",
        max_fee_per_gas_wei="1",
        max_priority_fee_per_gas_wei="1",
        tx_hash=TX_HASH,
        status="submitted",
    )
    base.update(overrides)
    return TxExecutionResult(**base)


def test_tx_send_builds_intent(tool_home, monkeypatch):
    engine = AsyncMock(return_value=_result())
    monkeypatch.setattr(tx_tools, "execute_tx_intent", engine)

    res = json.loads(
        asyncio.run(
            tx_send(
                to=RECIPIENT,
                value_wei="1000",
                chain="base-sepolia",
                rpc_url="http://rpc",
                nonce_policy="manual",
                nonce=3,
                dry_run=True,
            )
        )
    )

    assert res["ok"] is True
    assert res["data"]["chain_id"] == 84532
    assert res["data"]["from"] == SENDER
    intent, chain = engine.await_args.args
    assert chain.key == "base-sepolia"
    assert intent.chain_id == 84532
    assert intent.rpc_url == "http://rpc"
    assert intent.value_wei == 1000
    assert intent.nonce_policy is NoncePolicy.MANUAL
    assert intent.nonce == 3
    assert intent.dry_run is True
    assert intent.signer.type == "readonly"
    assert engine.await_args.kwargs["home"] == tool_home


@pytest.mark.parametrize(
    "kwargs",
    [
        {"to": "0x1234"},
        {"to": RECIPIENT, "value_wei": "ten"},
        {"to": RECIPIENT, "value_wei": "-1"},
        {"to": RECIPIENT, "data": "0xabc"},
        {"to": RECIPIENT, "nonce": -1},
        {"to": RECIPIENT, "timeout_ms": -1},
        {"to": RECIPIENT, "dry_run": True, "wait": True},
    ],
)
def test_tx_send_rejects_bad_arguments(tool_home, monkeypatch, kwargs):
    engine = AsyncMock()
    monkeypatch.setattr(tx_tools, "execute_tx_intent", engine)
    res = json.loads(asyncio.run(tx_send(rpc_url="http://rpc", **kwargs)))
    assert res["ok"] is False
    assert res["error"]["code"] == "INVALID_ARGUMENT"
    engine.assert_not_awaited()


def test_tx_send_reports_engine_errors(tool_home, monkeypatch):
    err = AppError(POLICY_VIOLATION, "Transaction blocked by policy checks.", {"violations": ["x"]})
    monkeypatch.setattr(tx_tools, "execute_tx_intent", AsyncMock(side_effect=err))
    res = json.loads(asyncio.run(tx_send(to=RECIPIENT, rpc_url="http://rpc")))
    assert res == {
        "ok": False,
        "error": {
            "code": POLICY_VIOLATION,
            "message": "Transaction blocked by policy checks.",
            "data": {"violations": ["x"]},
        },
    }


def test_tx_send_rejects_unknown_nonce_policy(tool_home):
    res = json.loads(asyncio.run(tx_send(to=RECIPIENT, rpc_url="http://rpc", nonce_policy="yolo")))
    assert res["error"]["code"] == "INVALID_NONCE_POLICY"


def _seed(home, key, tx_hash=""):
    with open_journal(resolve_journal_path(home)) as j:
        j.upsert_prepared(
            PreparedParams(
                idempotency_key=key,
                profile_name="default",
                chain_id=8453,
                command="tx send",
                to_address=RECIPIENT,
                from_address=SENDER,
                value_wei="0",
                data_hex="0x",
                nonce=1,
                gas_limit="21000",
                max_fee_per_gas_wei="1",
                max_priority_fee_per_gas_wei="1",
            )
        )
        if tx_hash:
            j.mark_submitted(key, tx_hash)


def test_tx_status_lookups(tool_home):
    _seed(tool_home, "a", TX_HASH)
    _seed(tool_home, "b")

    by_key = json.loads(asyncio.run(tx_status(idempotency_key="a")))
    assert by_key["data"]["entry"]["tx_hash"] == TX_HASH

    by_hash = json.loads(asyncio.run(tx_status(tx_hash=TX_HASH)))
    assert by_hash["data"]["entry"]["idempotency_key"] == "a"

    recent = json.loads(asyncio.run(tx_status(limit=5)))
    assert [e["idempotency_key"] for e in recent["data"]["entries"]] == ["b", "a"]

    missing = json.loads(asyncio.run(tx_status(idempotency_key="zzz")))
    assert missing["error"]["code"] == "TX_NOT_FOUND"

    bad = json.loads(asyncio.run(tx_status(tx_hash="0x12")))
    assert bad["error"]["code"] == "INVALID_ARGUMENT"


def test_tx_resume_unknown_key(tool_home):
    res = json.loads(asyncio.run(tx_resume("nope", chain="base", rpc_url="http://rpc")))
    assert res["error"]["code"] == "TX_NOT_FOUND"


def test_tx_watch_times_out(tool_home):
    _seed(tool_home, "a", TX_HASH)
    res = json.loads(asyncio.run(tx_watch("a", interval_ms=5, timeout_ms=20)))
    assert res["error"]["code"] == "TIMEOUT"
    assert res["error"]["data"]["timeout_ms"] == 20


def test_server_registers_tx_tools():
    import server

    assert server.mcp.name == "ReadyTx-EVM"


@pytest.mark.parametrize(
    "call",
    [
        lambda: tx_status(limit=0),
        lambda: tx_status(limit=-3),
        lambda: tx_resume("a", chain="base", rpc_url="http://rpc", timeout_ms=-1),
        lambda: tx_watch("a", interval_ms=-1),
        lambda: tx_watch("a", timeout_ms=-20),
    ],
)
def test_negative_numbers_are_rejected(tool_home, call):
    res = json.loads(asyncio.run(call()))
    assert res["ok"] is False
    assert res["error"]["code"] == "INVALID_ARGUMENT"
