"""
Tests for DuckDB storage and counter aggregation over a seeded ledger.
"""

from __future__ import annotations

import datetime as dt

import duckdb
import pytest

from chainpulse.errors import DataSourceError
from chainpulse.models.schema import (
    CategoryMetricsSnapshot,
    ProjectMetricsDaily,
    ProjectMetricsSnapshot,
    WalletMetricsSnapshot,
    WalletType,
)
from chainpulse.storage import database
from chainpulse.storage.aggregates import DuckDBCounterSource, day_bounds

from conftest import DAY, DEX, LENDING, POLY_DEX, T0, wallet


# --- Counter aggregation ---


def test_project_counters_anchored_on_latest_transaction(ledger):
    source = DuckDBCounterSource(ledger, window_days=30)
    c = source.project_counters(DEX, 1)

    assert c.total_transactions == 41
    assert c.successful_transactions == 40
    assert c.failed_transactions == 1
    assert c.unique_customers == 36
    assert c.total_volume == pytest.approx(111.0)
    assert c.first_activity == T0
    assert c.last_activity == T0 + 59 * DAY
    assert (c.prev_window_customers, c.window_customers) == (10, 31)
    assert (c.prev_window_transactions, c.window_transactions) == (10, 31)
    assert (c.prev_window_volume, c.window_volume) == (pytest.approx(20.0), pytest.approx(91.0))
    assert c.retained_customers == 5
    assert c.daily_active_customers == 2
    assert c.weekly_active_customers == 8
    assert c.monthly_active_customers == 31
    assert 0 < c.volume_volatility < 10


def test_project_counters_are_stable_across_reads(ledger):
    source = DuckDBCounterSource(ledger)
    assert source.project_counters(DEX, 1) == source.project_counters(DEX, 1)


def test_project_counters_with_explicit_bound(ledger):
    source = DuckDBCounterSource(ledger)
    c = source.project_counters(DEX, 1, until=T0 + 41 * DAY)
    assert c.total_transactions == 21
    assert (c.prev_window_customers, c.window_customers) == (10, 11)


def test_project_counters_unknown_contract(ledger):
    c = DuckDBCounterSource(ledger).project_counters("0x" + "f" * 40, 1)
    assert c.total_transactions == 0
    assert c.unique_customers == 0


def test_project_counters_case_insensitive(ledger):
    c = DuckDBCounterSource(ledger).project_counters(DEX.upper().replace("0X", "0x"), 1)
    assert c.total_transactions == 41


def test_wallet_counters(ledger):
    c = DuckDBCounterSource(ledger).wallet_counters(wallet(5), 1)
    assert c.total_interactions == 2
    assert c.unique_contracts == 1
    assert c.total_spent == pytest.approx(5.0)
    assert c.last_interaction - c.first_interaction == 30 * DAY
    assert c.preferred_categories == ["dex"]


def test_category_counters(ledger):
    c = DuckDBCounterSource(ledger).category_counters("dex", 1)
    assert c.project_count == 1
    assert c.total_transactions == 41
    assert c.chain_transactions == 61
    assert c.total_customers == 36
    assert c.chain_customers == 38
    assert c.avg_growth_score == 0.0


def test_daily_counters(ledger):
    c = DuckDBCounterSource(ledger).daily_counters(DEX, 1, dt.date(2026, 4, 29))
    # Day 59: wallet 29 and the failed tx from wallet 100
    assert c.daily_transactions == 2
    assert c.daily_customers == 2
    assert c.daily_volume == pytest.approx(4.0)


def test_tracked_entities(ledger):
    source = DuckDBCounterSource(ledger)
    assert set(source.tracked_projects()) == {(DEX, 1), (LENDING, 1), (POLY_DEX, 137)}
    assert source.tracked_categories() == [("dex", 1), ("lending", 1), ("dex", 137)]
    assert source.contract_categories()[(POLY_DEX, 137)] == "dex"


def test_source_errors_are_wrapped(tmp_path):
    conn = database.get_connection(tmp_path / "broken.duckdb")
    conn.execute("DROP TABLE transactions")
    with pytest.raises(DataSourceError):
        DuckDBCounterSource(conn).project_counters(DEX, 1)
    conn.close()


def test_day_bounds():
    start, end = day_bounds(dt.date(2026, 3, 1))
    assert start == T0
    assert end - start == DAY


# --- Snapshot tables ---


def test_project_metrics_roundtrip(conn):
    snapshot = ProjectMetricsSnapshot(
        contract_address=DEX,
        total_transactions=5,
        successful_transactions=4,
        failed_transactions=1,
        growth_score=77,
        last_updated=123,
    )
    database.upsert_project_metrics(conn, [snapshot])
    database.upsert_project_metrics(conn, [snapshot.model_copy(update={"growth_score": 80})])

    stored = database.get_project_metrics(conn, DEX, 1)
    assert stored.growth_score == 80
    assert stored.failed_transactions == 1
    assert conn.execute("SELECT COUNT(*) FROM project_metrics_realtime").fetchone()[0] == 1
    assert database.get_project_metrics(conn, DEX, 137) is None


def test_wallet_metrics_categories_stored_as_text(conn):
    snapshot = WalletMetricsSnapshot(
        wallet_address=wallet(1),
        wallet_type=WalletType.WHALE,
        preferred_categories=["dex", "lending"],
    )
    database.upsert_wallet_metrics(conn, [snapshot])
    raw = conn.execute("SELECT preferred_categories, wallet_type FROM wallet_metrics_realtime").fetchone()
    assert raw == ("dex,lending", "whale")
    stored = database.get_wallet_metrics(conn, wallet(1))
    assert stored.preferred_categories == ["dex", "lending"]
    assert stored.wallet_type == WalletType.WHALE


def test_list_project_metrics_joins_profiles(ledger):
    database.upsert_project_metrics(ledger, [
        ProjectMetricsSnapshot(contract_address=DEX, chain_id=1),
        ProjectMetricsSnapshot(contract_address=POLY_DEX, chain_id=137),
        ProjectMetricsSnapshot(contract_address="0x" + "e" * 40, chain_id=1),
    ])
    rows = database.list_project_metrics(ledger, category="dex")
    assert {(s.contract_address, p.name) for s, p in rows} == {(DEX, "Swapper"), (POLY_DEX, "PolySwap")}
    rows = database.list_project_metrics(ledger, chain_id=1)
    assert len(rows) == 2
    orphan = [p for s, p in rows if s.contract_address.startswith("0xeee")][0]
    assert orphan.category == "uncategorized"


def test_stale_projects(conn):
    database.upsert_project_metrics(conn, [
        ProjectMetricsSnapshot(contract_address=DEX, last_updated=100),
        ProjectMetricsSnapshot(contract_address=LENDING, last_updated=500),
    ])
    assert database.stale_projects(conn, 300) == [(DEX, 1)]


# --- Daily history ---


def _daily(address: str, day: dt.date, growth: int = 50) -> ProjectMetricsDaily:
    return ProjectMetricsDaily(contract_address=address, date=day, growth_score=growth)


def test_replace_daily_metrics_swaps_whole_day(conn):
    day = dt.date(2026, 3, 10)
    database.replace_daily_metrics(conn, day, [_daily(DEX, day), _daily(LENDING, day)], [])
    database.replace_daily_metrics(conn, day, [_daily(DEX, day, growth=70)], [
        CategoryMetricsSnapshot(category="dex", project_count=1),
    ])

    rows = database.get_daily_metrics(conn, day)
    assert [(r.contract_address, r.growth_score) for r in rows] == [(DEX, 70)]
    assert database.get_category_metrics(conn, "dex", 1).project_count == 1


def test_replace_daily_metrics_rolls_back_on_failure(conn, monkeypatch):
    """The category write fails after the day was deleted: the old rows come back."""
    day = dt.date(2026, 3, 10)
    database.replace_daily_metrics(conn, day, [_daily(DEX, day)], [
        CategoryMetricsSnapshot(category="dex", project_count=1),
    ])

    write_frame = database._write_frame

    def failing_write(c, table, df, columns, *args, **kwargs):
        if table == "category_metrics_realtime":
            raise duckdb.IOException("disk full")
        return write_frame(c, table, df, columns, *args, **kwargs)

    monkeypatch.setattr(database, "_write_frame", failing_write)
    with pytest.raises(DataSourceError, match="disk full"):
        database.replace_daily_metrics(conn, day, [_daily(LENDING, day, growth=90)], [
            CategoryMetricsSnapshot(category="dex", project_count=7),
        ])
    monkeypatch.undo()

    rows = database.get_daily_metrics(conn, day)
    assert [(r.contract_address, r.growth_score) for r in rows] == [(DEX, 50)]
    assert database.get_category_metrics(conn, "dex", 1).project_count == 1
    # The connection is usable again
    database.replace_daily_metrics(conn, day, [_daily(LENDING, day)], [])
    assert [r.contract_address for r in database.get_daily_metrics(conn, day)] == [LENDING]


def test_daily_history_bounds(conn):
    for offset in range(5):
        day = dt.date(2026, 3, 1) + dt.timedelta(days=offset)
        database.replace_daily_metrics(conn, day, [_daily(DEX, day, growth=50 + offset)], [])
    history = database.get_daily_history(conn, dt.date(2026, 3, 2), dt.date(2026, 3, 4))
    assert len(history) == 3
    assert list(history["growth_score"]) == [51, 52, 53]


# --- Audit ---


def test_audit_flags_broken_rows(ledger):
    database.upsert_project_metrics(ledger, [
        ProjectMetricsSnapshot(contract_address=DEX, total_transactions=10, successful_transactions=3, failed_transactions=1),
    ])
    issues = database.audit_metrics(ledger)
    assert any("successful + failed" in i for i in issues["project_metrics_realtime"])
    assert any("2 contracts have no metrics" in i for i in issues["data_integrity"])
    assert issues["wallet_metrics_realtime"] == []
