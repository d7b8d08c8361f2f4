from __future__ import annotations

import asyncio
import re
from typing import Any, Dict, Optional

import requests

from errors import INVALID_SIGNER_SPEC, REMOTE_SIGNER_ERROR, SIGNER_BACKEND_UNAVAILABLE, AppError
from execution.evm import ResolvedChain, RpcClient
from observability import log_event

from .base import (
    BACKEND_READY,
    SIGNER_ENV,
    SIGNER_KEYSTORE,
    SIGNER_LEDGER,
    SIGNER_READONLY,
    SIGNER_REMOTE,
    Signer,
    SignerConfig,
    SignerRuntime,
    SignerSummary,
)
from .encrypted_keystore import EncryptedKeystoreSigner
from .env_private_key import EnvPrivateKeySigner
from .intents import build_unsigned_tx
from .remote_signer import RemoteSigner

_ENV_VAR_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")

SIGNER_SPEC_HELP = "Use readonly, env:<ENV_VAR>, keystore:<path>, remote:<url>, or ledger[:path]."


def parse_signer(value: Optional[str], *, remote_auth_env: Optional[str] = None) -> SignerConfig:
    """
    Parse a signer selector string.

    Supported:
    - readonly (default)
    - env:<ENV_VAR>
    - keystore:<path> (password from KEYSTORE_PASSWORD)
    - remote:<http(s) url>
    - ledger[:<derivation path>]
    """
    v = (value or "").strip()
    if not v or v == SIGNER_READONLY:
        return SignerConfig(type=SIGNER_READONLY)

    if v.startswith("env:"):
        env_var = v[len("env:"):]
        if not _ENV_VAR_RE.match(env_var):
            raise AppError(INVALID_SIGNER_SPEC, f"Invalid env signer format '{v}'.", {"signer": v})
        return SignerConfig(type=SIGNER_ENV, env_var=env_var)

    if v.startswith("keystore:"):
        path = v[len("keystore:"):].strip()
        if not path:
            raise AppError(INVALID_SIGNER_SPEC, f"Invalid keystore signer format '{v}'.", {"signer": v})
        return SignerConfig(type=SIGNER_KEYSTORE, path=path, password_env="KEYSTORE_PASSWORD")

    if v.startswith("remote:"):
        url = v[len("remote:"):].strip()
        if not re.match(r"^https?://", url, re.IGNORECASE):
            raise AppError(INVALID_SIGNER_SPEC, f"Invalid remote signer format '{v}'.", {"signer": v})
        return SignerConfig(type=SIGNER_REMOTE, url=url, auth_env_var=remote_auth_env)

    if v == SIGNER_LEDGER or v.startswith("ledger:"):
        path = v[len("ledger:"):] if ":" in v else None
        return SignerConfig(type=SIGNER_LEDGER, derivation_path=path or None)

    raise AppError(INVALID_SIGNER_SPEC, f"Unsupported signer '{v}'. {SIGNER_SPEC_HELP}", {"signer": v})


def _build_signer(config: SignerConfig) -> Signer:
    if config.type == SIGNER_ENV:
        return EnvPrivateKeySigner(config.env_var or "PRIVATE_KEY")
    if config.type == SIGNER_KEYSTORE:
        return EncryptedKeystoreSigner(config.path or "", config.password_env or "KEYSTORE_PASSWORD")
    if config.type == SIGNER_REMOTE:
        return RemoteSigner(config.url or "", address=config.address, auth_env_var=config.auth_env_var)
    raise AppError(
        SIGNER_BACKEND_UNAVAILABLE,
        f"{config.type} signer backend is not available.",
        {"signer_type": config.type},
    )


async def resolve_signer_runtime(config: SignerConfig, client: RpcClient, chain: ResolvedChain) -> SignerRuntime:
    """
    Resolve a signer config into a capability summary plus, for signing
    backends, a coroutine that signs and broadcasts a resolved request.
    """
    if config.type == SIGNER_READONLY:
        return SignerRuntime(summary=SignerSummary(signer_type=SIGNER_READONLY, can_sign=False))

    signer = _build_signer(config)
    try:
        address = await asyncio.to_thread(signer.get_address)
    except requests.RequestException as e:
        raise AppError(REMOTE_SIGNER_ERROR, "Remote signer address lookup failed.", {"message": str(e)}) from e

    nonce, balance = await asyncio.gather(
        client.get_transaction_count(address, "pending"),
        client.get_balance(address),
    )

    async def send_transaction(request: Dict[str, Any]) -> str:
        tx = build_unsigned_tx(request, chain_id=chain.chain_id)
        try:
            signed = await asyncio.to_thread(signer.sign_transaction, tx, chain_id=chain.chain_id)
        except requests.RequestException as e:
            raise AppError(REMOTE_SIGNER_ERROR, "Remote signing request failed.", {"message": str(e)}) from e
        return await client.send_raw_transaction(signed.raw_transaction)

    summary = SignerSummary(
        signer_type=config.type,
        address=address,
        nonce=nonce,
        balance_wei=str(balance),
        can_sign=True,
        backend_status=BACKEND_READY,
    )
    log_event("signer_resolved", data={"signer_type": config.type, "address": address, "chain_id": chain.chain_id})
    return SignerRuntime(summary=summary, send_transaction=send_transaction)
