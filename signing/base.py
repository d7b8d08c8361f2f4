from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

SIGNER_READONLY = "readonly"
SIGNER_ENV = "env"
SIGNER_KEYSTORE = "keystore"
SIGNER_REMOTE = "remote"
SIGNER_LEDGER = "ledger"

BACKEND_READY = "ready"


@dataclass(frozen=True)
class SignerConfig:
    """
    Which signing backend to use.

    - readonly: no key
    - env: `env_var` holds a raw hex private key
    - keystore: `path` to an encrypted JSON keystore, password in `password_env`
    - remote: HTTP signer at `url`, optional bearer token in `auth_env_var`
    - ledger: hardware bridge at `derivation_path`
    """

    type: str = SIGNER_READONLY
    env_var: Optional[str] = None
    path: Optional[str] = None
    password_env: Optional[str] = None
    url: Optional[str] = None
    address: Optional[str] = None
    auth_env_var: Optional[str] = None
    derivation_path: Optional[str] = None


class SignedTx(Protocol):
    raw_transaction: bytes


class Signer(ABC):
    """
    A minimal signing interface for EVM transactions.
    """

    @abstractmethod
    def get_address(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def sign_transaction(self, tx: Dict[str, Any], *, chain_id: int | None = None) -> SignedTx:
        raise NotImplementedError


@dataclass(frozen=True)
class SignerSummary:
    signer_type: str
    can_sign: bool
    backend_status: str = BACKEND_READY
    address: Optional[str] = None
    nonce: Optional[int] = None
    balance_wei: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer_type": self.signer_type,
            "address": self.address,
            "nonce": self.nonce,
            "balance_wei": self.balance_wei,
            "can_sign": self.can_sign,
            "backend_status": self.backend_status,
        }


# Accepts a fully resolved request (to, data, value, gas, nonce, fee fields) and returns the tx hash.
SendTransaction = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclass(frozen=True)
class SignerRuntime:
    summary: SignerSummary
    send_transaction: Optional[SendTransaction] = field(default=None)
