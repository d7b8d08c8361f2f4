from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

from web3.exceptions import ContractLogicError, TimeExhausted

MISSING_NONCE = "MISSING_NONCE"
READONLY_SIGNER = "READONLY_SIGNER"
MISSING_SIGNER_ADDRESS = "MISSING_SIGNER_ADDRESS"
SIMULATION_REVERT = "SIMULATION_REVERT"
INSUFFICIENT_FUNDS_PRECHECK = "INSUFFICIENT_FUNDS_PRECHECK"
POLICY_VIOLATION = "POLICY_VIOLATION"
TX_NOT_FOUND = "TX_NOT_FOUND"
TIMEOUT = "TIMEOUT"
TX_EXECUTION_FAILED = "TX_EXECUTION_FAILED"

CHAIN_MISMATCH = "CHAIN_MISMATCH"
RPC_UNREACHABLE = "RPC_UNREACHABLE"
INVALID_CHAIN = "INVALID_CHAIN"
MISSING_RPC_URL = "MISSING_RPC_URL"
INVALID_SIGNER_SPEC = "INVALID_SIGNER_SPEC"
MISSING_SIGNER_SECRET = "MISSING_SIGNER_SECRET"
INVALID_PRIVATE_KEY = "INVALID_PRIVATE_KEY"
SIGNER_BACKEND_UNAVAILABLE = "SIGNER_BACKEND_UNAVAILABLE"
REMOTE_SIGNER_ERROR = "REMOTE_SIGNER_ERROR"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
INVALID_NONCE_POLICY = "INVALID_NONCE_POLICY"

# Failures that happen before anything is broadcast; the caller can fix the input and retry.
CALLER_CORRECTABLE_CODES = frozenset(
    {
        MISSING_NONCE,
        SIMULATION_REVERT,
        INSUFFICIENT_FUNDS_PRECHECK,
        POLICY_VIOLATION,
    }
)


@dataclass(eq=False)
class AppError(Exception):
    code: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": dict(self.data)}


def is_caller_correctable(code: str) -> bool:
    return code in CALLER_CORRECTABLE_CODES


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def classify_exception(e: BaseException) -> AppError:
    """
    Map web3 / runtime failures into stable error codes.

    Structured errors pass through unchanged; anything unrecognized becomes
    TX_EXECUTION_FAILED with a correlation id that is also written to the logs.
    """
    if isinstance(e, AppError):
        return e
    if isinstance(e, TimeExhausted):
        return AppError(TIMEOUT, "Timed out waiting for transaction receipt.", {"message": str(e)})
    if isinstance(e, ContractLogicError):
        return AppError(SIMULATION_REVERT, "Transaction simulation reverted.", {"message": str(e)})

    return AppError(
        TX_EXECUTION_FAILED,
        "Transaction execution failed.",
        {"correlation_id": new_correlation_id(), "message": str(e) or type(e).__name__},
    )
