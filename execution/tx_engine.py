"""
Transaction execution engine.

Drives one TxIntent through
simulate -> estimate -> balance check -> policy -> nonce -> prepared -> submitted -> confirmed,
recording every step in the journal so a crash can be resumed without re-signing.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from errors import (
    INSUFFICIENT_FUNDS_PRECHECK,
    MISSING_NONCE,
    MISSING_SIGNER_ADDRESS,
    READONLY_SIGNER,
    SIMULATION_REVERT,
    TIMEOUT,
    TX_NOT_FOUND,
    AppError,
    classify_exception,
    is_caller_correctable,
)
from execution.evm import ResolvedChain, RpcClient, run_rpc_preflight
from execution.models import (
    DEFAULT_TIMEOUT_MS,
    NoncePolicy,
    ReceiptSummary,
    SimulationSummary,
    TxExecutionResult,
    TxIntent,
)
from idempotency import resolve_idempotency_key
from journal_store import (
    STATUS_CONFIRMED,
    STATUS_PREPARED,
    STATUS_SUBMITTED,
    JournalEntry,
    JournalStore,
    PreparedParams,
    open_journal,
)
from observability import build_log_context, log_event
from signing.factory import resolve_signer_runtime
from signing.policy import enforce_policy

RESULT_SIMULATED = "simulated"
RESULT_SUBMITTED = "submitted"
RESULT_CONFIRMED = "confirmed"

JOURNAL_FILE = "journal.sqlite"
DEFAULT_HOME = "~/.readytx"
DEFAULT_WATCH_INTERVAL_MS = 3_000
DEFAULT_WATCH_TIMEOUT_MS = 180_000


def resolve_home(home: Optional[str] = None) -> str:
    if home:
        return home
    return (os.getenv("READYTX_HOME") or "").strip() or str(Path(DEFAULT_HOME).expanduser())


def resolve_journal_path(home: Optional[str] = None) -> str:
    if home is None:
        override = (os.getenv("READYTX_JOURNAL_PATH") or "").strip()
        if override:
            return override
    return str(Path(resolve_home(home)).expanduser() / JOURNAL_FILE)


class _KeyLocks:
    """
    One asyncio.Lock per idempotency key, dropped once nobody holds or waits on it.

    Serializes execute/resume for the same key inside this process.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def active_keys(self) -> List[str]:
        return list(self._locks)


_key_locks = _KeyLocks()


async def _open(home: Optional[str]) -> JournalStore:
    path = resolve_journal_path(home)
    try:
        return await asyncio.to_thread(open_journal, path)
    except (sqlite3.Error, OSError) as e:
        err = classify_exception(e)
        err.data["journal_path"] = path
        raise err from e


def _optional(value: str) -> Optional[str]:
    return value or None


def _result_from_entry(entry: JournalEntry) -> TxExecutionResult:
    return TxExecutionResult(
        idempotency_key=entry.idempotency_key,
        tx_hash=_optional(entry.tx_hash),
        from_address=entry.from_address,
        to=entry.to_address,
        nonce=entry.nonce,
        gas_limit=entry.gas_limit,
        max_fee_per_gas_wei=_optional(entry.max_fee_per_gas_wei),
        max_priority_fee_per_gas_wei=_optional(entry.max_priority_fee_per_gas_wei),
        status=RESULT_CONFIRMED if entry.status == STATUS_CONFIRMED else RESULT_SUBMITTED,
        receipt=ReceiptSummary.from_json(entry.receipt_json),
    )


async def _resolve_nonce(
    intent: TxIntent, client: RpcClient, existing: Optional[JournalEntry], address: str, ctx: Dict[str, Any]
) -> int:
    if intent.nonce_policy is NoncePolicy.MANUAL:
        if intent.nonce is None:
            raise AppError(MISSING_NONCE, "nonce policy 'manual' requires an explicit nonce.")
        return int(intent.nonce)

    if intent.nonce_policy is NoncePolicy.REPLACE:
        if existing is not None and existing.status != STATUS_CONFIRMED and existing.nonce >= 0:
            return existing.nonce
        # Nothing to replace yet: take the next free nonce.
        log_event("nonce_replace_fallback", ctx=ctx, data={"address": address})
        return await client.get_transaction_count(address, "pending")

    return await client.get_transaction_count(address, "pending")


async def _wait_for_confirmation(
    client: RpcClient,
    journal: JournalStore,
    idempotency_key: str,
    tx_hash: str,
    timeout_ms: int,
    ctx: Dict[str, Any],
) -> ReceiptSummary:
    raw = await client.wait_for_transaction_receipt(tx_hash, timeout_ms)
    receipt = ReceiptSummary.from_receipt(raw)
    await asyncio.to_thread(journal.mark_confirmed, idempotency_key, receipt.to_json())
    log_event("tx_confirmed", ctx=ctx, data={"tx_hash": tx_hash, **receipt.to_dict()})
    return receipt


async def _record_failure(journal: JournalStore, idempotency_key: str, err: AppError, ctx: Dict[str, Any]) -> None:
    """
    Best-effort failure bookkeeping; a journal error here is logged, never raised,
    so it cannot mask `err`.

    Rows with a broadcast hash, journaled or carried in `err.data["tx_hash"]`,
    stay `submitted` (with the error attached) so they remain resumable.
    """
    try:
        entry = await asyncio.to_thread(journal.get_by_idempotency_key, idempotency_key)
        tx_hash = (entry.tx_hash if entry is not None else "") or str(err.data.get("tx_hash") or "")
        if entry is not None and tx_hash and entry.status in (STATUS_PREPARED, STATUS_SUBMITTED):
            await asyncio.to_thread(
                journal.mark_submitted, idempotency_key, tx_hash, STATUS_SUBMITTED, err.code, err.message
            )
        else:
            await asyncio.to_thread(journal.mark_failed, idempotency_key, err.code, err.message)
    except (sqlite3.Error, OSError, KeyError, ValueError) as record_err:
        log_event(
            "journal_record_failed",
            ctx=ctx,
            data={"error_code": err.code, "journal_error": str(record_err)},
            level="error",
        )


async def _execute(
    intent: TxIntent,
    chain: ResolvedChain,
    journal: JournalStore,
    idempotency_key: str,
    ctx: Dict[str, Any],
) -> TxExecutionResult:
    if intent.nonce_policy is NoncePolicy.MANUAL and intent.nonce is None:
        raise AppError(MISSING_NONCE, "nonce policy 'manual' requires an explicit nonce.")

    existing = await asyncio.to_thread(journal.get_by_idempotency_key, idempotency_key)

    if existing is not None and existing.status == STATUS_CONFIRMED:
        log_event("tx_already_confirmed", ctx=ctx, data={"tx_hash": existing.tx_hash})
        return _result_from_entry(existing)

    if existing is not None and existing.status == STATUS_SUBMITTED and existing.tx_hash:
        if not intent.wait_for_receipt:
            return _result_from_entry(existing)
        # Already broadcast: attach to the existing hash, never re-sign.
        preflight = await run_rpc_preflight(chain, intent.rpc_url)
        try:
            receipt = await _wait_for_confirmation(
                preflight.client, journal, idempotency_key, existing.tx_hash, intent.timeout_ms, ctx
            )
        finally:
            await preflight.client.aclose()
        return replace(_result_from_entry(existing), status=RESULT_CONFIRMED, receipt=receipt)

    preflight = await run_rpc_preflight(chain, intent.rpc_url)
    try:
        return await _submit(intent, chain, preflight.client, journal, existing, idempotency_key, ctx)
    finally:
        await preflight.client.aclose()


async def _submit(
    intent: TxIntent,
    chain: ResolvedChain,
    client: RpcClient,
    journal: JournalStore,
    existing: Optional[JournalEntry],
    idempotency_key: str,
    ctx: Dict[str, Any],
) -> TxExecutionResult:
    runtime = await resolve_signer_runtime(intent.signer, client, chain)
    summary = runtime.summary
    if intent.dry_run:
        if not summary.address:
            raise AppError(
                MISSING_SIGNER_ADDRESS,
                "Dry-run requires a signer that exposes an address.",
                {"signer_type": summary.signer_type},
            )
    elif not summary.can_sign or runtime.send_transaction is None or not summary.address:
        raise AppError(
            READONLY_SIGNER,
            "Selected signer cannot submit transactions.",
            {"signer_type": summary.signer_type, "backend_status": summary.backend_status},
        )

    from_address = str(summary.address)
    to_address = intent.to
    data_hex = intent.data or "0x"
    value_wei = int(intent.value_wei or 0)

    try:
        await client.call(from_address=from_address, to=to_address, data=data_hex, value=value_wei)
    except Exception as e:
        raise AppError(SIMULATION_REVERT, "Transaction simulation reverted.", {"message": str(e)}) from e

    gas_limit, fees, balance_wei = await asyncio.gather(
        client.estimate_gas(from_address=from_address, to=to_address, data=data_hex, value=value_wei),
        client.estimate_fees_per_gas(),
        client.get_balance(from_address),
    )
    max_fee = fees.max_fee_per_gas
    max_priority_fee = fees.max_priority_fee_per_gas

    required_wei = value_wei + gas_limit * max_fee
    if balance_wei < required_wei and not intent.dry_run:
        raise AppError(
            INSUFFICIENT_FUNDS_PRECHECK,
            "Account balance is below estimated transaction requirement.",
            {"from": from_address, "balance_wei": str(balance_wei), "required_wei": str(required_wei)},
        )

    enforce_policy(
        intent.policy,
        to=to_address,
        value_wei=value_wei,
        gas_limit=gas_limit,
        max_fee_per_gas_wei=max_fee,
        max_priority_fee_per_gas_wei=max_priority_fee,
    )

    nonce = await _resolve_nonce(intent, client, existing, from_address, ctx)

    base = TxExecutionResult(
        idempotency_key=idempotency_key,
        from_address=from_address,
        to=to_address,
        nonce=nonce,
        gas_limit=str(gas_limit),
        max_fee_per_gas_wei=str(max_fee),
        max_priority_fee_per_gas_wei=None if max_priority_fee is None else str(max_priority_fee),
        status=RESULT_SIMULATED,
    )

    if intent.dry_run:
        log_event(
            "tx_dry_run",
            ctx=ctx,
            data={"required_wei": str(required_wei), "balance_wei": str(balance_wei), "nonce": nonce},
        )
        return replace(
            base,
            dry_run=True,
            simulation=SimulationSummary(
                required_wei=str(required_wei),
                balance_wei=str(balance_wei),
                signer_can_sign=summary.can_sign,
                nonce_policy=intent.nonce_policy.value,
            ),
        )

    await asyncio.to_thread(
        journal.upsert_prepared,
        PreparedParams(
            idempotency_key=idempotency_key,
            profile_name=intent.profile_name,
            chain_id=int(intent.chain_id),
            command=intent.command,
            to_address=to_address,
            from_address=from_address,
            value_wei=str(value_wei),
            data_hex=data_hex,
            nonce=nonce,
            gas_limit=str(gas_limit),
            max_fee_per_gas_wei=str(max_fee),
            max_priority_fee_per_gas_wei="" if max_priority_fee is None else str(max_priority_fee),
        ),
    )
    log_event("tx_prepared", ctx=ctx, data={"from": from_address, "to": to_address, "nonce": nonce})

    request: Dict[str, Any] = {
        "to": to_address,
        "data": data_hex,
        "value": value_wei,
        "gas": gas_limit,
        "nonce": nonce,
        "maxFeePerGas": max_fee,
    }
    if max_priority_fee is not None:
        request["maxPriorityFeePerGas"] = max_priority_fee

    # Non-dry-run signers were checked for a send operation above.
    tx_hash = await runtime.send_transaction(request)  # type: ignore[misc]
    log_event("tx_broadcast", ctx=ctx, data={"tx_hash": tx_hash, "nonce": nonce})

    try:
        await asyncio.to_thread(journal.mark_submitted, idempotency_key, tx_hash)
    except Exception as e:
        err = classify_exception(e)
        # The hash must survive so the failure path keeps the row resumable.
        raise AppError(err.code, err.message, {**err.data, "tx_hash": tx_hash}) from e
    log_event("tx_submitted", ctx=ctx, data={"tx_hash": tx_hash, "nonce": nonce})

    submitted = replace(base, tx_hash=tx_hash, status=RESULT_SUBMITTED)
    if not intent.wait_for_receipt:
        return submitted

    receipt = await _wait_for_confirmation(client, journal, idempotency_key, tx_hash, intent.timeout_ms, ctx)
    return replace(submitted, status=RESULT_CONFIRMED, receipt=receipt)


async def execute_tx_intent(intent: TxIntent, chain: ResolvedChain, home: Optional[str] = None) -> TxExecutionResult:
    """
    Submit `intent` at most once per idempotency key.

    A key that already reached `confirmed` returns the journaled result without
    any RPC call. Dry-runs simulate and estimate but never write the journal or
    call the signer's send operation. Failures are recorded in the journal and
    re-raised as AppError.
    """
    idempotency_key = resolve_idempotency_key(intent)
    ctx = build_log_context(tool="tx_engine", idempotency_key=idempotency_key, command=intent.command)

    async with _key_locks.hold(idempotency_key):
        journal: Optional[JournalStore] = None
        try:
            journal = await _open(home)
            return await _execute(intent, chain, journal, idempotency_key, ctx)
        except Exception as e:
            err = classify_exception(e)
            if journal is not None and not intent.dry_run:
                await _record_failure(journal, idempotency_key, err, ctx)
            log_event(
                "tx_failed",
                ctx=ctx,
                data={**err.to_dict(), "caller_correctable": is_caller_correctable(err.code)},
                level="warning",
            )
            if err is e:
                raise
            raise err from e
        finally:
            if journal is not None:
                await asyncio.to_thread(journal.close)


async def resume_transaction(
    idempotency_key: str,
    chain: ResolvedChain,
    rpc_url: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    home: Optional[str] = None,
) -> TxExecutionResult:
    """
    Re-attach to an already broadcast transaction and wait for its receipt.

    Never touches a signer.
    """
    ctx = build_log_context(tool="tx_resume", idempotency_key=idempotency_key)

    async with _key_locks.hold(idempotency_key):
        journal: Optional[JournalStore] = None
        try:
            journal = await _open(home)
            entry = await asyncio.to_thread(journal.get_by_idempotency_key, idempotency_key)
            if entry is None:
                raise AppError(
                    TX_NOT_FOUND,
                    f"No transaction found for idempotency key '{idempotency_key}'.",
                    {"idempotency_key": idempotency_key},
                )
            if not entry.tx_hash:
                raise AppError(
                    TX_NOT_FOUND,
                    f"Transaction '{idempotency_key}' has no submitted hash yet.",
                    {"idempotency_key": idempotency_key, "status": entry.status},
                )
            if entry.status == STATUS_CONFIRMED:
                return _result_from_entry(entry)

            preflight = await run_rpc_preflight(chain, rpc_url)
            try:
                receipt = await _wait_for_confirmation(
                    preflight.client, journal, idempotency_key, entry.tx_hash, timeout_ms, ctx
                )
            finally:
                await preflight.client.aclose()
            return replace(_result_from_entry(entry), status=RESULT_CONFIRMED, receipt=receipt)
        except Exception as e:
            err = classify_exception(e)
            if journal is not None and err.code != TX_NOT_FOUND:
                await _record_failure(journal, idempotency_key, err, ctx)
            log_event("tx_resume_failed", ctx=ctx, data=err.to_dict(), level="warning")
            if err is e:
                raise
            raise err from e
        finally:
            if journal is not None:
                await asyncio.to_thread(journal.close)


async def get_journal_entry_by_idempotency(idempotency_key: str, home: Optional[str] = None) -> Optional[JournalEntry]:
    journal = await _open(home)
    try:
        return await asyncio.to_thread(journal.get_by_idempotency_key, idempotency_key)
    finally:
        await asyncio.to_thread(journal.close)


async def get_journal_entry_by_hash(tx_hash: str, home: Optional[str] = None) -> Optional[JournalEntry]:
    journal = await _open(home)
    try:
        return await asyncio.to_thread(journal.get_by_tx_hash, tx_hash)
    finally:
        await asyncio.to_thread(journal.close)


async def get_recent_journal_entries(limit: int = 20, home: Optional[str] = None) -> List[JournalEntry]:
    journal = await _open(home)
    try:
        return await asyncio.to_thread(journal.list_recent, limit)
    finally:
        await asyncio.to_thread(journal.close)


async def watch_transaction(
    idempotency_key: str,
    interval_ms: int = DEFAULT_WATCH_INTERVAL_MS,
    timeout_ms: int = DEFAULT_WATCH_TIMEOUT_MS,
    home: Optional[str] = None,
) -> JournalEntry:
    """
    Poll the journal (no RPC) until the entry for `idempotency_key` is confirmed.

    Useful when another process owns the submission.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    while True:
        entry = await get_journal_entry_by_idempotency(idempotency_key, home)
        if entry is not None and entry.status == STATUS_CONFIRMED:
            return entry
        remaining = deadline - loop.time()
        if remaining <= 0:
            log_event(
                "tx_watch_timeout",
                ctx=build_log_context(tool="tx_watch", idempotency_key=idempotency_key),
                data={"timeout_ms": timeout_ms, "status": entry.status if entry else None},
                level="warning",
            )
            raise AppError(
                TIMEOUT,
                f"Timed out waiting for '{idempotency_key}' to confirm.",
                {"idempotency_key": idempotency_key, "timeout_ms": timeout_ms},
            )
        await asyncio.sleep(min(interval_ms / 1000.0, remaining))
