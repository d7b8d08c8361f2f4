import json
import re
from typing import Any, Dict, Optional, Tuple

from fastmcp import FastMCP

from app.core.settings import settings
from errors import INVALID_ARGUMENT, TX_NOT_FOUND, AppError
from execution.evm import ResolvedChain, resolve_chain, resolve_rpc_url
from execution.models import TxIntent, parse_nonce_policy
from execution.tx_engine import (
    execute_tx_intent,
    get_journal_entry_by_hash,
    get_journal_entry_by_idempotency,
    get_recent_journal_entries,
    resume_transaction,
    watch_transaction,
)
from signing.factory import parse_signer
from signing.policy import policy_config_from_env

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _json_ok(data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": True, "data": data or {}}
    return json.dumps(payload, indent=2, sort_keys=True)


def _json_err(code: str, message: str, data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": False, "error": {"code": code, "message": message, "data": data or {}}}
    return json.dumps(payload, indent=2, sort_keys=True)


def _home() -> Optional[str]:
    # An explicit journal path wins over the home directory.
    return None if settings.READYTX_JOURNAL_PATH else settings.READYTX_HOME


def _check_non_negative(name: str, value: Optional[int]) -> None:
    if value is not None and value < 0:
        raise AppError(INVALID_ARGUMENT, f"{name} must not be negative.", {name: value})


def _parse_value_wei(value_wei: str) -> Optional[int]:
    v = (value_wei or "").strip()
    if not v:
        return None
    try:
        parsed = int(v, 0)
    except ValueError as e:
        raise AppError(INVALID_ARGUMENT, f"value_wei must be an integer, got '{value_wei}'.", {"value_wei": value_wei}) from e
    if parsed < 0:
        raise AppError(INVALID_ARGUMENT, "value_wei must not be negative.", {"value_wei": value_wei})
    return parsed


def _build_intent(
    *,
    to: str,
    data: str,
    value_wei: str,
    chain: str,
    rpc_url: str,
    signer: str,
    profile: str,
    nonce_policy: str,
    nonce: Optional[int],
    wait: bool,
    dry_run: bool,
    timeout_ms: int,
    idempotency_key: str,
) -> Tuple[TxIntent, ResolvedChain]:
    to = (to or "").strip()
    if not _ADDRESS_RE.match(to):
        raise AppError(INVALID_ARGUMENT, f"'to' must be a 20-byte hex address, got '{to}'.", {"to": to})
    data_hex = (data or "").strip() or None
    if data_hex is not None and not _HEX_RE.match(data_hex):
        raise AppError(INVALID_ARGUMENT, "'data' must be 0x-prefixed hex.", {"data": data_hex})
    _check_non_negative("nonce", nonce)
    _check_non_negative("timeout_ms", timeout_ms)
    if dry_run and wait:
        raise AppError(
            INVALID_ARGUMENT,
            "dry_run cannot be combined with wait.",
            {"dry_run": True, "wait": True},
        )

    resolved = resolve_chain(chain or settings.READYTX_CHAIN)
    intent = TxIntent(
        profile_name=(profile or settings.READYTX_PROFILE).strip(),
        chain_id=resolved.chain_id,
        rpc_url=resolve_rpc_url(resolved, rpc_url or None),
        signer=parse_signer(signer or settings.READYTX_SIGNER, remote_auth_env=settings.REMOTE_SIGNER_AUTH_ENV),
        policy=policy_config_from_env(),
        to=to,
        command="tx send",
        data=data_hex,
        value_wei=_parse_value_wei(value_wei),
        nonce_policy=parse_nonce_policy(nonce_policy),
        nonce=nonce,
        wait_for_receipt=bool(wait),
        dry_run=bool(dry_run),
        timeout_ms=int(timeout_ms or settings.TX_TIMEOUT_MS),
        idempotency_key=(idempotency_key or "").strip() or None,
    )
    return intent, resolved


async def tx_send(
    to: str,
    data: str = "",
    value_wei: str = "",
    chain: str = "",
    rpc_url: str = "",
    signer: str = "",
    profile: str = "",
    nonce_policy: str = "safe",
    nonce: Optional[int] = None,
    wait: bool = False,
    dry_run: bool = False,
    timeout_ms: int = 0,
    idempotency_key: str = "",
) -> str:
    """
    Submit an EVM transaction at most once per idempotency key.

    nonce_policy: safe | replace | manual (manual requires `nonce`).
    signer: readonly | env:<VAR> | keystore:<path> | remote:<url> | ledger.
    dry_run=true simulates and estimates without signing or journaling.
    """
    try:
        intent, resolved = _build_intent(
            to=to,
            data=data,
            value_wei=value_wei,
            chain=chain,
            rpc_url=rpc_url,
            signer=signer,
            profile=profile,
            nonce_policy=nonce_policy,
            nonce=nonce,
            wait=wait,
            dry_run=dry_run,
            timeout_ms=timeout_ms,
            idempotency_key=idempotency_key,
        )
        result = await execute_tx_intent(intent, resolved, home=_home())
    except AppError as e:
        return _json_err(e.code, e.message, e.data)
    return _json_ok({"chain": resolved.key, "chain_id": resolved.chain_id, **result.to_dict()})


async def tx_status(idempotency_key: str = "", tx_hash: str = "", limit: int = 20) -> str:
    """
    Look up a journaled transaction by idempotency key or tx hash.

    With neither given, list the most recent entries.
    """
    key = (idempotency_key or "").strip()
    h = (tx_hash or "").strip()
    if h and not _TX_HASH_RE.match(h):
        return _json_err(INVALID_ARGUMENT, "tx_hash must be a 32-byte hex string.", {"tx_hash": h})
    if limit < 1:
        return _json_err(INVALID_ARGUMENT, "limit must be at least 1.", {"limit": limit})

    try:
        if not key and not h:
            entries = await get_recent_journal_entries(limit=int(limit), home=_home())
            return _json_ok({"entries": [e.to_dict() for e in entries]})

        entry = (
            await get_journal_entry_by_idempotency(key, home=_home())
            if key
            else await get_journal_entry_by_hash(h, home=_home())
        )
    except AppError as e:
        return _json_err(e.code, e.message, e.data)
    if entry is None:
        return _json_err(
            TX_NOT_FOUND,
            "No journal entry matches the given lookup.",
            {"idempotency_key": key or None, "tx_hash": h or None},
        )
    return _json_ok({"entry": entry.to_dict()})


async def tx_resume(idempotency_key: str, chain: str = "", rpc_url: str = "", timeout_ms: int = 0) -> str:
    """
    Wait for the receipt of an already submitted transaction. Never re-signs.
    """
    try:
        _check_non_negative("timeout_ms", timeout_ms)
        resolved = resolve_chain(chain or settings.READYTX_CHAIN)
        result = await resume_transaction(
            idempotency_key.strip(),
            resolved,
            resolve_rpc_url(resolved, rpc_url or None),
            timeout_ms=int(timeout_ms or settings.TX_TIMEOUT_MS),
            home=_home(),
        )
    except AppError as e:
        return _json_err(e.code, e.message, e.data)
    return _json_ok(result.to_dict())


async def tx_watch(idempotency_key: str, interval_ms: int = 0, timeout_ms: int = 0) -> str:
    """
    Poll the local journal until the transaction is confirmed (no RPC calls).
    """
    try:
        _check_non_negative("interval_ms", interval_ms)
        _check_non_negative("timeout_ms", timeout_ms)
        entry = await watch_transaction(
            idempotency_key.strip(),
            interval_ms=int(interval_ms or settings.TX_WATCH_INTERVAL_MS),
            timeout_ms=int(timeout_ms or 180_000),
            home=_home(),
        )
    except AppError as e:
        return _json_err(e.code, e.message, e.data)
    return _json_ok({"idempotency_key": entry.idempotency_key, "status": entry.status, "entry": entry.to_dict()})


def register_tx_tools(mcp: FastMCP) -> None:
    mcp.tool(tx_send)
    mcp.tool(tx_status)
    mcp.tool(tx_resume)
    mcp.tool(tx_watch)
