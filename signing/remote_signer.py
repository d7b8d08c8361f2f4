from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from errors import MISSING_SIGNER_SECRET, REMOTE_SIGNER_ERROR, AppError

from .base import SignedTx, Signer
from .intents import build_evm_tx_intent


@dataclass(frozen=True)
class _RemoteSignedTx:
    """
    Wire-compatible SignedTx wrapper for remote signing responses.
    """

    raw_transaction: bytes


def _http_timeout() -> float:
    return float((os.getenv("HTTP_TIMEOUT_SEC") or "10").strip())


class RemoteSigner(Signer):
    """
    Remote signer (sidecar, internal signing service, KMS/HSM proxy).

    Protocol (HTTP JSON):
    GET  {url}/address          -> {"address": "0x..."}
    POST {url}/sign_transaction -> {"rawTransactionHex": "0x..."}
         body: {"tx": {...}, "chain_id": 8453, "intent": {...}}
    """

    def __init__(self, url: str, *, address: Optional[str] = None, auth_env_var: Optional[str] = None) -> None:
        url = (url or "").strip()
        if not url:
            raise ValueError("remote signer url is required")
        self._base_url = url.rstrip("/")
        self._cached_address: Optional[str] = address
        self._headers: Dict[str, str] = {}
        if auth_env_var:
            token = (os.getenv(auth_env_var) or "").strip()
            if not token:
                raise AppError(
                    MISSING_SIGNER_SECRET,
                    f"Missing environment variable '{auth_env_var}'.",
                    {"env_var": auth_env_var},
                )
            self._headers["Authorization"] = f"Bearer {token}"

    def get_address(self) -> str:
        if self._cached_address:
            return self._cached_address
        r = requests.get(f"{self._base_url}/address", headers=self._headers, timeout=_http_timeout())
        r.raise_for_status()
        addr = str(r.json().get("address") or "").strip()
        if not addr:
            raise AppError(REMOTE_SIGNER_ERROR, "Remote signer returned empty address.", {"url": self._base_url})
        self._cached_address = addr
        return addr

    def sign_transaction(self, tx: Dict[str, Any], *, chain_id: int | None = None) -> SignedTx:
        intent = build_evm_tx_intent(tx, chain_id=chain_id)
        payload = {"tx": tx, "chain_id": chain_id, "intent": intent.to_dict()}
        r = requests.post(
            f"{self._base_url}/sign_transaction",
            json=payload,
            headers=self._headers,
            timeout=_http_timeout(),
        )
        r.raise_for_status()
        data = r.json()
        raw_hex: Optional[str] = data.get("rawTransactionHex") or data.get("raw_transaction_hex")
        if not raw_hex:
            raise AppError(
                REMOTE_SIGNER_ERROR,
                "Remote signer did not return rawTransactionHex.",
                {"url": self._base_url},
            )
        raw_hex = str(raw_hex).strip()
        if raw_hex.startswith("0x"):
            raw_hex = raw_hex[2:]
        return _RemoteSignedTx(raw_transaction=bytes.fromhex(raw_hex))
