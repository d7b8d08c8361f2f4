from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from errors import (
    CHAIN_MISMATCH,
    INVALID_CHAIN,
    MISSING_RPC_URL,
    RPC_UNREACHABLE,
    TIMEOUT,
    AppError,
)


@dataclass(frozen=True)
class ResolvedChain:
    key: str
    chain_id: int
    name: str = ""
    default_rpc_url: Optional[str] = None


CHAIN_PRESETS: Dict[str, ResolvedChain] = {
    "base": ResolvedChain("base", 8453, "Base", "https://mainnet.base.org"),
    "base-sepolia": ResolvedChain("base-sepolia", 84532, "Base Sepolia", "https://sepolia.base.org"),
    "ethereum": ResolvedChain("ethereum", 1, "Ethereum"),
    "arbitrum": ResolvedChain("arbitrum", 42161, "Arbitrum One"),
    "optimism": ResolvedChain("optimism", 10, "OP Mainnet"),
}

DEFAULT_CHAIN = "base"

# viem-compatible headroom applied to the latest base fee.
BASE_FEE_MULTIPLIER_NUM = 12
BASE_FEE_MULTIPLIER_DEN = 10


def resolve_chain(value: Optional[str] = None) -> ResolvedChain:
    c = (value or "").strip().lower()
    if not c:
        return CHAIN_PRESETS[DEFAULT_CHAIN]
    if c in CHAIN_PRESETS:
        return CHAIN_PRESETS[c]
    if c.isdigit():
        return ResolvedChain(key=f"chain-{c}", chain_id=int(c))
    raise AppError(
        INVALID_CHAIN,
        f"Unsupported chain '{value}'. Use {', '.join(sorted(CHAIN_PRESETS))}, or a numeric chain id.",
        {"chain": value},
    )


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


def resolve_rpc_url(chain: ResolvedChain, override: Optional[str] = None) -> str:
    """
    Resolve RPC URL for a chain.

    Precedence (chain=base-sepolia -> BASE_SEPOLIA):
    - explicit override
    - EVM_RPC_URL_<CHAIN>, then RPC_URL_<CHAIN>
    - BASE_RPC_URL (base only)
    - READYTX_RPC_URL
    - the preset's public endpoint
    """
    if override and override.strip():
        return override.strip()
    key = chain.key.upper().replace("-", "_")
    url = _env(f"EVM_RPC_URL_{key}") or _env(f"RPC_URL_{key}")
    if not url and chain.key == "base":
        url = _env("BASE_RPC_URL")
    url = url or _env("READYTX_RPC_URL") or chain.default_rpc_url
    if not url:
        raise AppError(
            MISSING_RPC_URL,
            f"Missing RPC URL for chain '{chain.key}'. Set EVM_RPC_URL_{key} (or READYTX_RPC_URL).",
            {"chain": chain.key, "chain_id": chain.chain_id},
        )
    return url


@dataclass(frozen=True)
class FeeEstimate:
    max_fee_per_gas: int
    # None on chains without EIP-1559 (legacy gasPrice only).
    max_priority_fee_per_gas: Optional[int]


class RpcClient:
    """
    Thin async facade over AsyncWeb3 exposing the calls the tx engine needs.

    Addresses are checksummed here so callers may pass lowercase hex.
    """

    def __init__(self, w3: AsyncWeb3, *, poll_latency_sec: float = 1.0) -> None:
        self._w3 = w3
        self._poll_latency = poll_latency_sec

    @property
    def web3(self) -> AsyncWeb3:
        return self._w3

    def _addr(self, address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)

    def _tx(self, *, from_address: str, to: str, data: str, value: Optional[int]) -> Dict[str, Any]:
        return {
            "from": self._addr(from_address),
            "to": self._addr(to),
            "data": data or "0x",
            "value": int(value or 0),
        }

    async def get_chain_id(self) -> int:
        return int(await self._w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def call(self, *, from_address: str, to: str, data: str, value: Optional[int] = None) -> bytes:
        return await self._w3.eth.call(self._tx(from_address=from_address, to=to, data=data, value=value))

    async def estimate_gas(self, *, from_address: str, to: str, data: str, value: Optional[int] = None) -> int:
        return int(await self._w3.eth.estimate_gas(self._tx(from_address=from_address, to=to, data=data, value=value)))

    async def estimate_fees_per_gas(self) -> FeeEstimate:
        block = await self._w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            return FeeEstimate(max_fee_per_gas=int(await self._w3.eth.gas_price), max_priority_fee_per_gas=None)
        priority = int(await self._w3.eth.max_priority_fee)
        max_fee = int(base_fee) * BASE_FEE_MULTIPLIER_NUM // BASE_FEE_MULTIPLIER_DEN + priority
        return FeeEstimate(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority)

    async def get_balance(self, address: str) -> int:
        return int(await self._w3.eth.get_balance(self._addr(address)))

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        return int(await self._w3.eth.get_transaction_count(self._addr(address), block_identifier))

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        tx_hash = await self._w3.eth.send_raw_transaction(raw_tx)
        return AsyncWeb3.to_hex(tx_hash)

    async def aclose(self) -> None:
        """Release the provider's HTTP session."""
        await self._w3.provider.disconnect()

    async def wait_for_transaction_receipt(self, tx_hash: str, timeout_ms: int) -> Dict[str, Any]:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=max(0.001, timeout_ms / 1000.0), poll_latency=self._poll_latency
            )
        except TimeExhausted as e:
            raise AppError(
                TIMEOUT,
                f"Timed out waiting for receipt of {tx_hash}.",
                {"tx_hash": tx_hash, "timeout_ms": timeout_ms},
            ) from e
        return dict(receipt)


@dataclass(frozen=True)
class RpcPreflightResult:
    client: RpcClient
    chain_id: int
    block_number: str
    chain_name: str


def create_rpc_client(rpc_url: str) -> RpcClient:
    return RpcClient(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)))


async def run_rpc_preflight(chain: ResolvedChain, rpc_url: str) -> RpcPreflightResult:
    """
    Verify the endpoint answers and reports the expected chain id.

    The caller owns the returned client and must `aclose()` it.
    """
    client = create_rpc_client(rpc_url)
    try:
        chain_id, block_number = await asyncio.gather(client.get_chain_id(), client.get_block_number())
    except Exception as e:
        await client.aclose()
        raise AppError(
            RPC_UNREACHABLE,
            "Failed to connect to RPC endpoint.",
            {"rpc_url": rpc_url, "message": str(e)},
        ) from e

    if chain_id != chain.chain_id:
        await client.aclose()
        raise AppError(
            CHAIN_MISMATCH,
            "Connected chain does not match requested chain.",
            {"expected_chain_id": chain.chain_id, "actual_chain_id": chain_id},
        )

    return RpcPreflightResult(
        client=client,
        chain_id=chain_id,
        block_number=str(block_number),
        chain_name=chain.name or chain.key,
    )
