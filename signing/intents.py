from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from web3 import Web3


@dataclass(frozen=True)
class EvmTxIntent:
    """
    Explicit signing intent sent alongside a remote signing request.

    Lets remote signers / HSM proxies enforce their own policy and log what they
    are about to sign. This is a description, not the signed transaction.
    """

    intent_type: str  # currently "evm_transaction"
    chain_id: Optional[int]
    to: Optional[str]
    value_wei: Optional[int]
    data_hex: Optional[str]
    gas: Optional[int]
    max_fee_per_gas_wei: Optional[int]
    max_priority_fee_per_gas_wei: Optional[int]
    nonce: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_type": self.intent_type,
            "chain_id": self.chain_id,
            "to": self.to,
            "value_wei": self.value_wei,
            "data_hex": self.data_hex,
            "gas": self.gas,
            "max_fee_per_gas_wei": self.max_fee_per_gas_wei,
            "max_priority_fee_per_gas_wei": self.max_priority_fee_per_gas_wei,
            "nonce": self.nonce,
        }


def _to_int(x: Any) -> Optional[int]:
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, str):
        s = x.strip()
        try:
            return int(s, 16) if s.startswith("0x") else int(s)
        except ValueError:
            return None
    return None


def build_evm_tx_intent(tx: Dict[str, Any], *, chain_id: int | None) -> EvmTxIntent:
    """
    Best-effort extraction of intent fields from a web3-style tx dict.
    """
    to = tx.get("to")
    data_hex = tx.get("data")
    return EvmTxIntent(
        intent_type="evm_transaction",
        chain_id=int(chain_id) if chain_id is not None else _to_int(tx.get("chainId")),
        to=str(to) if to is not None else None,
        value_wei=_to_int(tx.get("value")),
        data_hex=str(data_hex) if data_hex is not None else None,
        gas=_to_int(tx.get("gas")),
        max_fee_per_gas_wei=_to_int(tx.get("maxFeePerGas", tx.get("gasPrice"))),
        max_priority_fee_per_gas_wei=_to_int(tx.get("maxPriorityFeePerGas")),
        nonce=_to_int(tx.get("nonce")),
    )


def build_unsigned_tx(request: Dict[str, Any], *, chain_id: int) -> Dict[str, Any]:
    """
    Turn a resolved send request into a signable tx dict.

    A priority fee selects an EIP-1559 (type 2) transaction; without one the
    max fee is used as a legacy gasPrice.
    """
    tx: Dict[str, Any] = {
        "chainId": int(chain_id),
        "to": Web3.to_checksum_address(request["to"]),
        "data": request.get("data") or "0x",
        "value": int(request.get("value") or 0),
        "gas": int(request["gas"]),
        "nonce": int(request["nonce"]),
    }
    priority = request.get("maxPriorityFeePerGas")
    max_fee = request.get("maxFeePerGas")
    if priority is not None:
        tx["type"] = 2
        tx["maxFeePerGas"] = int(max_fee if max_fee is not None else priority)
        tx["maxPriorityFeePerGas"] = int(priority)
    elif max_fee is not None:
        tx["gasPrice"] = int(max_fee)
    return tx
