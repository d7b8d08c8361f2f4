from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from execution.models import TxIntent


def derive_idempotency_key(intent: "TxIntent") -> str:
    """
    Fingerprint the semantic fields of an intent.

    The payload is compact JSON with a fixed key order so the same intent hashes
    to the same key across processes and releases. `nonce` is omitted when unset.
    """
    source: Dict[str, Any] = {
        "command": intent.command,
        "profileName": intent.profile_name,
        "chainId": int(intent.chain_id),
        "to": intent.to,
        "data": intent.data or "0x",
        "valueWei": str(intent.value_wei) if intent.value_wei is not None else "0",
        "noncePolicy": intent.nonce_policy.value,
    }
    if intent.nonce is not None:
        source["nonce"] = int(intent.nonce)

    payload = json.dumps(source, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def resolve_idempotency_key(intent: "TxIntent") -> str:
    # Caller-supplied keys are trusted verbatim.
    return intent.idempotency_key or derive_idempotency_key(intent)
