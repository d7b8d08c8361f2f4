from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from errors import INVALID_NONCE_POLICY, AppError
from signing.base import SignerConfig
from signing.policy import PolicyConfig

DEFAULT_TIMEOUT_MS = 120_000


class NoncePolicy(Enum):
    """How the engine picks a nonce."""

    SAFE = "safe"
    REPLACE = "replace"
    MANUAL = "manual"


def parse_nonce_policy(value: Optional[str]) -> NoncePolicy:
    if not value:
        return NoncePolicy.SAFE
    v = value.strip().lower()
    for p in NoncePolicy:
        if p.value == v:
            return p
    raise AppError(INVALID_NONCE_POLICY, f"Unsupported nonce policy '{value}'.", {"nonce_policy": value})


@dataclass(frozen=True)
class TxIntent:
    """
    A caller's request to submit one transaction.

    `nonce` is required when `nonce_policy` is MANUAL. `dry_run` and
    `wait_for_receipt` are not expected together, but the engine does not
    assume either is false.
    """

    profile_name: str
    chain_id: int
    rpc_url: str
    signer: SignerConfig
    policy: PolicyConfig
    to: str
    command: str
    data: Optional[str] = None
    value_wei: Optional[int] = None
    nonce_policy: NoncePolicy = NoncePolicy.SAFE
    nonce: Optional[int] = None
    wait_for_receipt: bool = False
    dry_run: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ReceiptSummary:
    block_number: str
    gas_used: str
    status: str  # "success" | "reverted"

    @classmethod
    def from_receipt(cls, receipt: Dict[str, Any]) -> "ReceiptSummary":
        return cls(
            block_number=str(int(receipt.get("blockNumber") or 0)),
            gas_used=str(int(receipt.get("gasUsed") or 0)),
            status="success" if int(receipt.get("status", 0)) == 1 else "reverted",
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["ReceiptSummary"]:
        if not raw:
            return None
        data = json.loads(raw)
        return cls(block_number=str(data["block_number"]), gas_used=str(data["gas_used"]), status=str(data["status"]))

    def to_dict(self) -> Dict[str, str]:
        return {"block_number": self.block_number, "gas_used": self.gas_used, "status": self.status}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


@dataclass(frozen=True)
class SimulationSummary:
    required_wei: str
    balance_wei: str
    signer_can_sign: bool
    nonce_policy: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_wei": self.required_wei,
            "balance_wei": self.balance_wei,
            "signer_can_sign": self.signer_can_sign,
            "nonce_policy": self.nonce_policy,
        }


@dataclass(frozen=True)
class TxExecutionResult:
    from_address: str
    to: str
    nonce: int
    gas_limit: str
    status: str  # "simulated" | "submitted" | "confirmed"
    idempotency_key: Optional[str] = None
    tx_hash: Optional[str] = None
    max_fee_per_gas_wei: Optional[str] = None
    max_priority_fee_per_gas_wei: Optional[str] = None
    dry_run: bool = False
    simulation: Optional[SimulationSummary] = None
    receipt: Optional[ReceiptSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "idempotency_key": self.idempotency_key,
            "tx_hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to,
            "nonce": self.nonce,
            "gas_limit": self.gas_limit,
            "max_fee_per_gas_wei": self.max_fee_per_gas_wei,
            "max_priority_fee_per_gas_wei": self.max_priority_fee_per_gas_wei,
            "status": self.status,
        }
        if self.dry_run:
            out["dry_run"] = True
        if self.simulation is not None:
            out["simulation"] = self.simulation.to_dict()
        if self.receipt is not None:
            out["receipt"] = self.receipt.to_dict()
        return {k: v for k, v in out.items() if v is not None}
