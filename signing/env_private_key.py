from __future__ import annotations

import os
import re
from typing import Any, Dict

from eth_account import Account
from eth_account.signers.local import LocalAccount

from errors import INVALID_PRIVATE_KEY, MISSING_SIGNER_SECRET, AppError

from .base import SignedTx, Signer

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class LocalAccountSigner(Signer):
    """
    Signs in-process with an eth_account LocalAccount.
    """

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    def get_address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: Dict[str, Any], *, chain_id: int | None = None) -> SignedTx:
        if chain_id is not None:
            tx = dict(tx)
            tx["chainId"] = chain_id
        return Account.sign_transaction(tx, self._account.key)


class EnvPrivateKeySigner(LocalAccountSigner):
    """
    Development signer that reads a raw hex private key from an env var.
    """

    def __init__(self, env_var: str = "PRIVATE_KEY") -> None:
        pk = (os.getenv(env_var) or "").strip()
        if not pk:
            raise AppError(MISSING_SIGNER_SECRET, f"Missing environment variable '{env_var}'.", {"env_var": env_var})
        if not _PRIVATE_KEY_RE.match(pk):
            raise AppError(
                INVALID_PRIVATE_KEY,
                f"Environment variable '{env_var}' is not a valid private key.",
                {"env_var": env_var},
            )
        super().__init__(Account.from_key(pk))
