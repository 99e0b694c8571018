"""
Pytest fixtures for chainpulse tests. Each test gets a temporary DuckDB file.
"""

from __future__ import annotations

import datetime as dt

import pytest

from chainpulse.models.schema import ContractProfile, TransactionRecord, TxStatus

DAY = 86400
# 2026-03-01 00:00:00 UTC
T0 = int(dt.datetime(2026, 3, 1, tzinfo=dt.timezone.utc).timestamp())

DEX = "0x" + "a" * 40
LENDING = "0x" + "b" * 40
POLY_DEX = "0x" + "c" * 40


def wallet(n: int) -> str:
    return "0x" + f"{n:040x}"


def make_tx(
    n: int,
    contract: str,
    sender: str,
    ts: int,
    value: float = 1.0,
    status: TxStatus = TxStatus.SUCCESS,
    chain_id: int = 1,
) -> TransactionRecord:
    return TransactionRecord(
        chain_id=chain_id,
        hash=f"0x{chain_id:04x}{n:060x}",
        contract_address=contract,
        from_address=sender,
        to_address=contract,
        value=value,
        status=status,
        gas_used=21000,
        block_timestamp=ts,
    )


@pytest.fixture
def conn(tmp_path):
    from chainpulse.storage.database import get_connection

    c = get_connection(tmp_path / "test.duckdb")
    yield c
    c.close()


@pytest.fixture
def registry():
    from chainpulse.chain.registry import load_default_registry
    from chainpulse.chain.registry import BUNDLED_PROFILES

    return load_default_registry(BUNDLED_PROFILES)


@pytest.fixture
def calculator():
    from chainpulse.scoring.calculator import MetricsCalculator

    return MetricsCalculator()


@pytest.fixture
def normalizer(registry, calculator):
    from chainpulse.scoring.normalizer import CrossChainNormalizer

    return CrossChainNormalizer(registry, calculator)


@pytest.fixture
def ledger(conn):
    """A small two-chain ledger.

    - DEX (ethereum, "dex"): 10 wallets in the previous 30-day window, 30 in
      the current one (5 returning), one failed tx.
    - LENDING (ethereum, "lending"): 2 wallets hammering it, half failed.
    - POLY_DEX (polygon, "dex"): 4 wallets, 8 transactions.
    """
    from chainpulse.storage.database import (
        contracts_to_dataframe,
        insert_contracts,
        insert_transactions,
        transactions_to_dataframe,
    )

    contracts = [
        ContractProfile(chain_id=1, address=DEX, category="dex", is_verified=True, name="Swapper"),
        ContractProfile(chain_id=1, address=LENDING, category="lending", name="Lendy"),
        ContractProfile(chain_id=137, address=POLY_DEX, category="dex", name="PolySwap"),
    ]
    insert_contracts(conn, contracts_to_dataframe(contracts))

    txs = []
    n = 0
    # Previous window: days 0-29
    for i in range(10):
        txs.append(make_tx(n, DEX, wallet(i), T0 + i * DAY, value=2.0))
        n += 1
    # Current window: days 30-59, wallets 5..34
    for i in range(5, 35):
        txs.append(make_tx(n, DEX, wallet(i), T0 + (30 + (i % 30)) * DAY, value=3.0))
        n += 1
    txs.append(make_tx(n, DEX, wallet(100), T0 + 59 * DAY, status=TxStatus.FAILED))
    n += 1

    for i in range(20):
        status = TxStatus.FAILED if i % 2 else TxStatus.SUCCESS
        txs.append(make_tx(n, LENDING, wallet(200 + i % 2), T0 + (40 + i % 10) * DAY, status=status))
        n += 1

    for i in range(8):
        txs.append(make_tx(n, POLY_DEX, wallet(300 + i % 4), T0 + (50 + i) * DAY, value=10.0, chain_id=137))
        n += 1

    insert_transactions(conn, transactions_to_dataframe(txs))
    return conn
