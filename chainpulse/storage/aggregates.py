"""Counter aggregation over the ledger tables.

The pipeline reads counters through the CounterSource protocol; the DuckDB
implementation runs each read on its own cursor so reads can be pushed to
worker threads.
"""

from __future__ import annotations

import datetime as dt
from typing import Protocol

import duckdb
import pydantic

from chainpulse.errors import DataSourceError, InputDataError
from chainpulse.models.schema import (
    CategoryCounters,
    DailyCounters,
    ProjectCounters,
    TxStatus,
    WalletCounters,
)

SECONDS_PER_DAY = 86400


class CounterSource(Protocol):
    """Where counters come from. `until` is an exclusive epoch-seconds bound."""

    def project_counters(self, contract_address: str, chain_id: int, until: int | None = None) -> ProjectCounters: ...

    def wallet_counters(self, wallet_address: str, chain_id: int, until: int | None = None) -> WalletCounters: ...

    def category_counters(self, category: str, chain_id: int, until: int | None = None) -> CategoryCounters: ...

    def daily_counters(self, contract_address: str, chain_id: int, day: dt.date) -> DailyCounters: ...

    def tracked_projects(self) -> list[tuple[str, int]]: ...

    def tracked_categories(self) -> list[tuple[str, int]]: ...

    def contract_categories(self) -> dict[tuple[str, int], str]: ...


def day_bounds(day: dt.date) -> tuple[int, int]:
    """[start, end) of a UTC calendar day in epoch seconds."""
    start = int(dt.datetime(day.year, day.month, day.day, tzinfo=dt.timezone.utc).timestamp())
    return start, start + SECONDS_PER_DAY


class DuckDBCounterSource:
    def __init__(self, conn: duckdb.DuckDBPyConnection, window_days: int = 30):
        self.conn = conn
        self.window = window_days * SECONDS_PER_DAY

    def _query(self, sql: str, params: dict) -> list[dict]:
        try:
            cursor = self.conn.cursor()
            try:
                result = cursor.execute(sql, params or None)
                cols = [d[0] for d in result.description]
                return [dict(zip(cols, row)) for row in result.fetchall()]
            finally:
                cursor.close()
        except duckdb.Error as e:
            raise DataSourceError(f"Counter query failed: {e}") from e

    @staticmethod
    def _build(model, row: dict, entity: str):
        try:
            return model(**row)
        except pydantic.ValidationError as e:
            raise InputDataError(f"Malformed counters for {entity}: {e}") from e

    def _latest_timestamp(self, column: str, address: str, chain_id: int) -> int | None:
        rows = self._query(
            f"SELECT MAX(block_timestamp) AS ts FROM transactions WHERE chain_id = $chain AND {column} = $address",
            {"chain": chain_id, "address": address},
        )
        return rows[0]["ts"] if rows else None

    def project_counters(self, contract_address: str, chain_id: int, until: int | None = None) -> ProjectCounters:
        """Counters as of `until`. Without a bound, the project's own latest
        transaction anchors the windows, so re-reads are stable."""
        address = contract_address.lower()
        if until is None:
            latest = self._latest_timestamp("contract_address", address, chain_id)
            if latest is None:
                return ProjectCounters()
            until = latest + 1

        params = {
            "chain": chain_id,
            "address": address,
            "until": until,
            "cur_start": until - self.window,
            "prev_start": until - 2 * self.window,
            "day_start": until - SECONDS_PER_DAY,
            "week_start": until - 7 * SECONDS_PER_DAY,
            "month_start": until - 30 * SECONDS_PER_DAY,
            "success": TxStatus.SUCCESS.value,
        }
        rows = self._query("""
            SELECT
                COUNT(*) AS total_transactions,
                COUNT(*) FILTER (WHERE status = $success) AS successful_transactions,
                COUNT(*) FILTER (WHERE status <> $success) AS failed_transactions,
                COUNT(DISTINCT from_address) AS unique_customers,
                COALESCE(SUM(value), 0) AS total_volume,
                COALESCE(SUM(gas_used), 0) AS total_gas_used,
                COALESCE(MIN(block_timestamp), 0) AS first_activity,
                COALESCE(MAX(block_timestamp), 0) AS last_activity,
                COUNT(DISTINCT from_address) FILTER (WHERE block_timestamp >= $cur_start) AS window_customers,
                COUNT(DISTINCT from_address) FILTER (
                    WHERE block_timestamp >= $prev_start AND block_timestamp < $cur_start
                ) AS prev_window_customers,
                COUNT(*) FILTER (WHERE block_timestamp >= $cur_start) AS window_transactions,
                COUNT(*) FILTER (
                    WHERE block_timestamp >= $prev_start AND block_timestamp < $cur_start
                ) AS prev_window_transactions,
                COALESCE(SUM(value) FILTER (WHERE block_timestamp >= $cur_start), 0) AS window_volume,
                COALESCE(SUM(value) FILTER (
                    WHERE block_timestamp >= $prev_start AND block_timestamp < $cur_start
                ), 0) AS prev_window_volume,
                COUNT(DISTINCT from_address) FILTER (WHERE block_timestamp >= $day_start) AS daily_active_customers,
                COUNT(DISTINCT from_address) FILTER (WHERE block_timestamp >= $week_start) AS weekly_active_customers,
                COUNT(DISTINCT from_address) FILTER (WHERE block_timestamp >= $month_start) AS monthly_active_customers
            FROM transactions
            WHERE chain_id = $chain AND contract_address = $address AND block_timestamp < $until
        """, params)
        row = rows[0]

        retained = self._query("""
            SELECT COUNT(*) AS retained_customers FROM (
                SELECT DISTINCT from_address FROM transactions
                WHERE chain_id = $chain AND contract_address = $address
                  AND block_timestamp >= $prev_start AND block_timestamp < $cur_start
                INTERSECT
                SELECT DISTINCT from_address FROM transactions
                WHERE chain_id = $chain AND contract_address = $address
                  AND block_timestamp >= $cur_start AND block_timestamp < $until
            )
        """, {k: params[k] for k in ("chain", "address", "prev_start", "cur_start", "until")})
        row["retained_customers"] = retained[0]["retained_customers"]

        # Coefficient of variation of daily volume over the current window, in percent
        volatility = self._query("""
            SELECT COALESCE(stddev_pop(v) / NULLIF(AVG(v), 0) * 100, 0) AS volume_volatility
            FROM (
                SELECT CAST(floor(block_timestamp / 86400) AS BIGINT) AS day, SUM(value) AS v
                FROM transactions
                WHERE chain_id = $chain AND contract_address = $address
                  AND block_timestamp >= $cur_start AND block_timestamp < $until
                GROUP BY day
            )
        """, {k: params[k] for k in ("chain", "address", "cur_start", "until")})
        row["volume_volatility"] = volatility[0]["volume_volatility"]

        return self._build(ProjectCounters, row, f"project {chain_id}:{address}")

    def wallet_counters(self, wallet_address: str, chain_id: int, until: int | None = None) -> WalletCounters:
        address = wallet_address.lower()
        params = {"chain": chain_id, "address": address, "until": until if until is not None else 2**62}
        rows = self._query("""
            SELECT
                COUNT(*) AS total_interactions,
                COUNT(DISTINCT contract_address) AS unique_contracts,
                COALESCE(SUM(value), 0) AS total_spent,
                COALESCE(SUM(gas_used), 0) AS total_gas_used,
                COALESCE(MIN(block_timestamp), 0) AS first_interaction,
                COALESCE(MAX(block_timestamp), 0) AS last_interaction
            FROM transactions
            WHERE chain_id = $chain AND from_address = $address AND block_timestamp < $until
        """, params)
        row = rows[0]

        top = self._query("""
            SELECT c.category, COUNT(*) AS n
            FROM transactions t
            JOIN contracts c ON c.chain_id = t.chain_id AND c.address = t.contract_address
            WHERE t.chain_id = $chain AND t.from_address = $address AND t.block_timestamp < $until
            GROUP BY c.category
            ORDER BY n DESC, c.category
            LIMIT 3
        """, params)
        row["preferred_categories"] = [r["category"] for r in top]

        return self._build(WalletCounters, row, f"wallet {chain_id}:{address}")

    def category_counters(self, category: str, chain_id: int, until: int | None = None) -> CategoryCounters:
        """Distinct totals for a category and for its whole chain.

        Average scores are left at 0; they come from project snapshots, not
        from the ledger.
        """
        params = {"chain": chain_id, "category": category, "until": until if until is not None else 2**62}
        rows = self._query("""
            WITH chain_tx AS (
                SELECT t.*, COALESCE(c.category, 'uncategorized') AS category
                FROM transactions t
                LEFT JOIN contracts c ON c.chain_id = t.chain_id AND c.address = t.contract_address
                WHERE t.chain_id = $chain AND t.block_timestamp < $until
            )
            SELECT
                COUNT(DISTINCT contract_address) FILTER (WHERE category = $category) AS project_count,
                COUNT(DISTINCT from_address) FILTER (WHERE category = $category) AS total_customers,
                COUNT(*) FILTER (WHERE category = $category) AS total_transactions,
                COALESCE(SUM(value) FILTER (WHERE category = $category), 0) AS total_volume,
                COUNT(DISTINCT from_address) AS chain_customers,
                COUNT(*) AS chain_transactions,
                COALESCE(SUM(value), 0) AS chain_volume
            FROM chain_tx
        """, params)
        return self._build(CategoryCounters, rows[0], f"category {chain_id}:{category}")

    def daily_counters(self, contract_address: str, chain_id: int, day: dt.date) -> DailyCounters:
        start, end = day_bounds(day)
        rows = self._query("""
            SELECT
                COUNT(*) AS daily_transactions,
                COUNT(DISTINCT from_address) AS daily_customers,
                COALESCE(SUM(value), 0) AS daily_volume
            FROM transactions
            WHERE chain_id = $chain AND contract_address = $address
              AND block_timestamp >= $start AND block_timestamp < $end
        """, {"chain": chain_id, "address": contract_address.lower(), "start": start, "end": end})
        return self._build(DailyCounters, rows[0], f"project {chain_id}:{contract_address}")

    def tracked_projects(self) -> list[tuple[str, int]]:
        """Every contract with a profile or at least one transaction."""
        rows = self._query("""
            SELECT address, chain_id FROM contracts
            UNION
            SELECT DISTINCT contract_address AS address, chain_id FROM transactions
            ORDER BY chain_id, address
        """, {})
        return [(r["address"], r["chain_id"]) for r in rows]

    def tracked_categories(self) -> list[tuple[str, int]]:
        rows = self._query("""
            SELECT DISTINCT category, chain_id FROM contracts
            ORDER BY chain_id, category
        """, {})
        return [(r["category"], r["chain_id"]) for r in rows]

    def contract_categories(self) -> dict[tuple[str, int], str]:
        rows = self._query("SELECT address, chain_id, category FROM contracts", {})
        return {(r["address"], r["chain_id"]): r["category"] for r in rows}
