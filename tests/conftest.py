import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from execution.evm import FeeEstimate

SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20
TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def home(tmp_path):
    return str(tmp_path / "readytx")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for k in ("READYTX_HOME", "READYTX_JOURNAL_PATH", "READYTX_RPC_URL"):
        monkeypatch.delenv(k, raising=False)


def make_client(*, balance=10**18, gas=21_000, max_fee=1, priority_fee=1, pending_nonce=7):
    client = MagicMock()
    client.call = AsyncMock(return_value=b"")
    client.estimate_gas = AsyncMock(return_value=gas)
    client.estimate_fees_per_gas = AsyncMock(return_value=FeeEstimate(max_fee, priority_fee))
    client.get_balance = AsyncMock(return_value=balance)
    client.get_transaction_count = AsyncMock(return_value=pending_nonce)
    client.send_raw_transaction = AsyncMock(return_value=TX_HASH)
    client.aclose = AsyncMock()
    client.wait_for_transaction_receipt = AsyncMock(
        return_value={"blockNumber": 100, "gasUsed": 21_000, "status": 1}
    )
    return client
