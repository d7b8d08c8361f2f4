from __future__ import annotations

import json
import os
from pathlib import Path

from eth_account import Account

from errors import MISSING_SIGNER_SECRET, SIGNER_BACKEND_UNAVAILABLE, AppError

from .env_private_key import LocalAccountSigner


class EncryptedKeystoreSigner(LocalAccountSigner):
    """
    Decrypts an Ethereum keystore JSON using a passphrase taken from `password_env`.
    """

    def __init__(self, keystore_path: str, password_env: str = "KEYSTORE_PASSWORD") -> None:  # nosec B107
        password = os.getenv(password_env)
        if not password:
            raise AppError(
                MISSING_SIGNER_SECRET,
                f"Missing environment variable '{password_env}'.",
                {"env_var": password_env},
            )

        path = Path(keystore_path).expanduser()
        if not path.exists():
            raise AppError(SIGNER_BACKEND_UNAVAILABLE, f"Keystore file not found: {path}", {"path": str(path)})

        keystore = json.loads(path.read_text())
        try:
            pk_bytes = Account.decrypt(keystore, password)
        except ValueError as e:
            raise AppError(
                SIGNER_BACKEND_UNAVAILABLE,
                "Keystore could not be decrypted.",
                {"path": str(path), "message": str(e)},
            ) from e
        super().__init__(Account.from_key(pk_bytes))
