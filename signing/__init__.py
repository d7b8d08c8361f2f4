from .base import SignedTx, Signer, SignerConfig, SignerRuntime, SignerSummary
from .encrypted_keystore import EncryptedKeystoreSigner
from .env_private_key import EnvPrivateKeySigner, LocalAccountSigner
from .factory import parse_signer, resolve_signer_runtime
from .intents import EvmTxIntent, build_evm_tx_intent, build_unsigned_tx
from .policy import PolicyConfig, enforce_policy, policy_config_from_env
from .remote_signer import RemoteSigner

__all__ = [
    "SignedTx",
    "Signer",
    "SignerConfig",
    "SignerRuntime",
    "SignerSummary",
    "LocalAccountSigner",
    "EnvPrivateKeySigner",
    "EncryptedKeystoreSigner",
    "RemoteSigner",
    "parse_signer",
    "resolve_signer_runtime",
    "EvmTxIntent",
    "build_evm_tx_intent",
    "build_unsigned_tx",
    "PolicyConfig",
    "enforce_policy",
    "policy_config_from_env",
]
