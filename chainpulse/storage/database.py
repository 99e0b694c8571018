"""DuckDB storage: ledger tables (written by ingestion) and metrics tables."""

from __future__ import annotations

import datetime as dt
from pathlib import Path

import duckdb
import pandas as pd

from chainpulse.config import get_settings
from chainpulse.errors import DataSourceError
from chainpulse.models.schema import (
    CategoryMetricsSnapshot,
    ContractProfile,
    ProjectMetricsDaily,
    ProjectMetricsSnapshot,
    TransactionRecord,
    WalletMetricsSnapshot,
)

TRANSACTION_COLUMNS = list(TransactionRecord.model_fields)
CONTRACT_COLUMNS = list(ContractProfile.model_fields)
PROJECT_COLUMNS = list(ProjectMetricsSnapshot.model_fields)
WALLET_COLUMNS = list(WalletMetricsSnapshot.model_fields)
CATEGORY_COLUMNS = list(CategoryMetricsSnapshot.model_fields)
DAILY_COLUMNS = list(ProjectMetricsDaily.model_fields)


def get_connection(path: Path | str | None = None) -> duckdb.DuckDBPyConnection:
    """Get a DuckDB connection, creating tables if needed."""
    if path is None:
        path = get_settings().duckdb_path
    if str(path) == ":memory:":
        conn = duckdb.connect(":memory:")
    else:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = duckdb.connect(str(path))
    _create_tables(conn)
    return conn


def _create_tables(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS contracts (
            chain_id INTEGER NOT NULL DEFAULT 1,
            address VARCHAR NOT NULL,
            category VARCHAR DEFAULT 'uncategorized',
            is_verified BOOLEAN DEFAULT FALSE,
            name VARCHAR DEFAULT '',
            PRIMARY KEY (chain_id, address)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            chain_id INTEGER NOT NULL DEFAULT 1,
            hash VARCHAR NOT NULL,
            contract_address VARCHAR NOT NULL,
            from_address VARCHAR NOT NULL,
            to_address VARCHAR DEFAULT '',
            value DOUBLE DEFAULT 0.0,
            status VARCHAR DEFAULT 'success',
            gas_used BIGINT DEFAULT 0,
            block_timestamp BIGINT NOT NULL,
            PRIMARY KEY (chain_id, hash)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS project_metrics_realtime (
            contract_address VARCHAR NOT NULL,
            chain_id INTEGER NOT NULL DEFAULT 1,
            total_customers BIGINT DEFAULT 0,
            total_transactions BIGINT DEFAULT 0,
            successful_transactions BIGINT DEFAULT 0,
            failed_transactions BIGINT DEFAULT 0,
            total_volume DOUBLE DEFAULT 0.0,
            total_gas_used BIGINT DEFAULT 0,
            success_rate DOUBLE DEFAULT 0.0,
            customer_growth_rate DOUBLE DEFAULT 0.0,
            transaction_growth_rate DOUBLE DEFAULT 0.0,
            volume_growth_rate DOUBLE DEFAULT 0.0,
            daily_active_customers BIGINT DEFAULT 0,
            weekly_active_customers BIGINT DEFAULT 0,
            monthly_active_customers BIGINT DEFAULT 0,
            retention_rate DOUBLE DEFAULT 0.0,
            customer_stickiness DOUBLE DEFAULT 0.0,
            customer_concentration DOUBLE DEFAULT 0.0,
            volume_volatility DOUBLE DEFAULT 0.0,
            growth_score INTEGER DEFAULT 50,
            health_score INTEGER DEFAULT 50,
            risk_score INTEGER DEFAULT 50,
            first_activity BIGINT DEFAULT 0,
            last_activity BIGINT DEFAULT 0,
            last_updated BIGINT DEFAULT 0,
            PRIMARY KEY (chain_id, contract_address)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS wallet_metrics_realtime (
            wallet_address VARCHAR NOT NULL,
            chain_id INTEGER NOT NULL DEFAULT 1,
            total_interactions BIGINT DEFAULT 0,
            unique_contracts BIGINT DEFAULT 0,
            total_spent DOUBLE DEFAULT 0.0,
            avg_transaction_size DOUBLE DEFAULT 0.0,
            total_gas_used BIGINT DEFAULT 0,
            first_interaction BIGINT DEFAULT 0,
            last_interaction BIGINT DEFAULT 0,
            days_active DOUBLE DEFAULT 0.0,
            interaction_frequency DOUBLE DEFAULT 0.0,
            wallet_type VARCHAR DEFAULT 'small',
            activity_pattern VARCHAR DEFAULT 'one_time',
            preferred_categories VARCHAR DEFAULT '',
            loyalty_score INTEGER DEFAULT 0,
            last_updated BIGINT DEFAULT 0,
            PRIMARY KEY (chain_id, wallet_address)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS category_metrics_realtime (
            category VARCHAR NOT NULL,
            chain_id INTEGER NOT NULL DEFAULT 1,
            project_count BIGINT DEFAULT 0,
            total_customers BIGINT DEFAULT 0,
            total_transactions BIGINT DEFAULT 0,
            total_volume DOUBLE DEFAULT 0.0,
            avg_growth_score DOUBLE DEFAULT 0.0,
            avg_health_score DOUBLE DEFAULT 0.0,
            avg_risk_score DOUBLE DEFAULT 0.0,
            transaction_share DOUBLE DEFAULT 0.0,
            customer_share DOUBLE DEFAULT 0.0,
            volume_share DOUBLE DEFAULT 0.0,
            last_updated BIGINT DEFAULT 0,
            PRIMARY KEY (chain_id, category)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS project_metrics_daily (
            contract_address VARCHAR NOT NULL,
            chain_id INTEGER NOT NULL DEFAULT 1,
            date DATE NOT NULL,
            daily_transactions BIGINT DEFAULT 0,
            daily_customers BIGINT DEFAULT 0,
            daily_volume DOUBLE DEFAULT 0.0,
            total_customers BIGINT DEFAULT 0,
            total_transactions BIGINT DEFAULT 0,
            growth_score INTEGER DEFAULT 50,
            health_score INTEGER DEFAULT 50,
            risk_score INTEGER DEFAULT 50,
            PRIMARY KEY (chain_id, contract_address, date)
        )
    """)


def _fetch_dicts(result) -> list[dict]:
    cols = [d[0] for d in result.description]
    return [dict(zip(cols, row)) for row in result.fetchall()]


def _models_to_frame(models: list, columns: list[str]) -> pd.DataFrame:
    rows = [m.model_dump(mode="json") for m in models]
    df = pd.DataFrame(rows, columns=columns)
    return df


def _write_frame(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    df: pd.DataFrame,
    columns: list[str],
    verb: str = "INSERT OR REPLACE",
) -> int:
    if df.empty:
        return 0
    col_list = ", ".join(columns)
    conn.register("_staging", df[columns])
    try:
        conn.execute(f"{verb} INTO {table} ({col_list}) SELECT {col_list} FROM _staging")
    finally:
        conn.unregister("_staging")
    return len(df)


# --- Ledger (ingestion side) ---


def insert_transactions(conn: duckdb.DuckDBPyConnection, df: pd.DataFrame) -> int:
    """Bulk insert transactions from a DataFrame. Returns rows offered."""
    df = df.copy()
    for col in ("contract_address", "from_address", "to_address"):
        if col in df.columns:
            df[col] = df[col].fillna("").str.lower()
    return _write_frame(conn, "transactions", df, TRANSACTION_COLUMNS, verb="INSERT OR IGNORE")


def insert_contracts(conn: duckdb.DuckDBPyConnection, df: pd.DataFrame) -> int:
    df = df.copy()
    df["address"] = df["address"].str.lower()
    return _write_frame(conn, "contracts", df, CONTRACT_COLUMNS)


def transactions_to_dataframe(records: list[TransactionRecord]) -> pd.DataFrame:
    return _models_to_frame(records, TRANSACTION_COLUMNS)


def contracts_to_dataframe(profiles: list[ContractProfile]) -> pd.DataFrame:
    return _models_to_frame(profiles, CONTRACT_COLUMNS)


# --- Realtime snapshots ---


def upsert_project_metrics(conn: duckdb.DuckDBPyConnection, snapshots: list[ProjectMetricsSnapshot]) -> int:
    return _write_frame(
        conn, "project_metrics_realtime", _models_to_frame(snapshots, PROJECT_COLUMNS), PROJECT_COLUMNS
    )


def upsert_wallet_metrics(conn: duckdb.DuckDBPyConnection, snapshots: list[WalletMetricsSnapshot]) -> int:
    df = _models_to_frame(snapshots, WALLET_COLUMNS)
    if not df.empty:
        df["preferred_categories"] = df["preferred_categories"].map(lambda cats: ",".join(cats or []))
    return _write_frame(conn, "wallet_metrics_realtime", df, WALLET_COLUMNS)


def get_project_metrics(
    conn: duckdb.DuckDBPyConnection,
    contract_address: str,
    chain_id: int = 1,
) -> ProjectMetricsSnapshot | None:
    rows = _fetch_dicts(conn.execute(
        "SELECT * FROM project_metrics_realtime WHERE chain_id = ? AND contract_address = ?",
        [chain_id, contract_address.lower()],
    ))
    return ProjectMetricsSnapshot(**rows[0]) if rows else None


def get_wallet_metrics(
    conn: duckdb.DuckDBPyConnection,
    wallet_address: str,
    chain_id: int = 1,
) -> WalletMetricsSnapshot | None:
    rows = _fetch_dicts(conn.execute(
        "SELECT * FROM wallet_metrics_realtime WHERE chain_id = ? AND wallet_address = ?",
        [chain_id, wallet_address.lower()],
    ))
    return WalletMetricsSnapshot(**rows[0]) if rows else None


def get_category_metrics(
    conn: duckdb.DuckDBPyConnection,
    category: str,
    chain_id: int = 1,
) -> CategoryMetricsSnapshot | None:
    rows = _fetch_dicts(conn.execute(
        "SELECT * FROM category_metrics_realtime WHERE chain_id = ? AND category = ?",
        [chain_id, category],
    ))
    return CategoryMetricsSnapshot(**rows[0]) if rows else None


def list_project_metrics(
    conn: duckdb.DuckDBPyConnection,
    chain_id: int | None = None,
    category: str | None = None,
) -> list[tuple[ProjectMetricsSnapshot, ContractProfile]]:
    """Snapshots joined with their contract profile, optionally scoped."""
    query = """
        SELECT p.*,
               COALESCE(c.name, '') AS _name,
               COALESCE(c.category, 'uncategorized') AS _category,
               COALESCE(c.is_verified, FALSE) AS _is_verified
        FROM project_metrics_realtime p
        LEFT JOIN contracts c
          ON c.chain_id = p.chain_id AND c.address = p.contract_address
        WHERE 1 = 1
    """
    params: list = []
    if chain_id is not None:
        query += " AND p.chain_id = ?"
        params.append(chain_id)
    if category is not None:
        query += " AND COALESCE(c.category, 'uncategorized') = ?"
        params.append(category)
    query += " ORDER BY p.chain_id, p.contract_address"

    results = []
    for row in _fetch_dicts(conn.execute(query, params)):
        profile = ContractProfile(
            chain_id=row["chain_id"],
            address=row["contract_address"],
            category=row.pop("_category"),
            is_verified=row.pop("_is_verified"),
            name=row.pop("_name"),
        )
        results.append((ProjectMetricsSnapshot(**row), profile))
    return results


def stale_projects(
    conn: duckdb.DuckDBPyConnection,
    updated_before: int,
    limit: int = 500,
) -> list[tuple[str, int]]:
    """(contract, chain) pairs whose realtime snapshot is older than a timestamp."""
    rows = conn.execute("""
        SELECT contract_address, chain_id FROM project_metrics_realtime
        WHERE last_updated < ?
        ORDER BY last_updated
        LIMIT ?
    """, [updated_before, limit]).fetchall()
    return [(r[0], r[1]) for r in rows]


# --- Daily history ---


def replace_daily_metrics(
    conn: duckdb.DuckDBPyConnection,
    day: dt.date,
    daily_rows: list[ProjectMetricsDaily],
    categories: list[CategoryMetricsSnapshot],
) -> int:
    """Atomically swap in a fully staged day.

    Either every row for `day` is replaced and the category snapshots are
    upserted, or nothing changes.
    """
    daily_df = _models_to_frame(daily_rows, DAILY_COLUMNS)
    if not daily_df.empty:
        daily_df["date"] = pd.to_datetime(daily_df["date"]).dt.date
    category_df = _models_to_frame(categories, CATEGORY_COLUMNS)

    conn.begin()
    try:
        conn.execute("DELETE FROM project_metrics_daily WHERE date = ?", [day])
        _write_frame(conn, "project_metrics_daily", daily_df, DAILY_COLUMNS)
        _write_frame(conn, "category_metrics_realtime", category_df, CATEGORY_COLUMNS)
        conn.commit()
    except duckdb.Error as e:
        conn.rollback()
        raise DataSourceError(f"Failed to commit daily metrics for {day}: {e}") from e
    return len(daily_df)


def get_daily_history(
    conn: duckdb.DuckDBPyConnection,
    since: dt.date,
    until: dt.date | None = None,
    chain_id: int | None = None,
    contract_address: str | None = None,
) -> pd.DataFrame:
    """Daily rows in [since, until], oldest first."""
    query = "SELECT * FROM project_metrics_daily WHERE date >= ?"
    params: list = [since]
    if until is not None:
        query += " AND date <= ?"
        params.append(until)
    if chain_id is not None:
        query += " AND chain_id = ?"
        params.append(chain_id)
    if contract_address is not None:
        query += " AND contract_address = ?"
        params.append(contract_address.lower())
    query += " ORDER BY chain_id, contract_address, date"
    return conn.execute(query, params).fetchdf()


def get_daily_metrics(
    conn: duckdb.DuckDBPyConnection,
    day: dt.date,
) -> list[ProjectMetricsDaily]:
    rows = _fetch_dicts(conn.execute(
        "SELECT * FROM project_metrics_daily WHERE date = ? ORDER BY chain_id, contract_address",
        [day],
    ))
    return [ProjectMetricsDaily(**r) for r in rows]


# --- Integrity audit ---


def audit_metrics(conn: duckdb.DuckDBPyConnection) -> dict[str, list[str]]:
    """Read-only integrity checks over the metrics tables."""
    issues: dict[str, list[str]] = {
        "project_metrics_realtime": [],
        "wallet_metrics_realtime": [],
        "data_integrity": [],
    }

    def count(query: str) -> int:
        return conn.execute(query).fetchone()[0]

    n = count("""
        SELECT COUNT(*) FROM project_metrics_realtime
        WHERE growth_score NOT BETWEEN 0 AND 100
           OR health_score NOT BETWEEN 0 AND 100
           OR risk_score NOT BETWEEN 0 AND 100
    """)
    if n:
        issues["project_metrics_realtime"].append(f"{n} projects have scores outside [0, 100]")
    n = count("""
        SELECT COUNT(*) FROM project_metrics_realtime
        WHERE total_customers < 0 OR daily_active_customers < 0 OR total_transactions < 0
    """)
    if n:
        issues["project_metrics_realtime"].append(f"{n} projects have negative counts")
    n = count("""
        SELECT COUNT(*) FROM project_metrics_realtime
        WHERE successful_transactions + failed_transactions <> total_transactions
    """)
    if n:
        issues["project_metrics_realtime"].append(f"{n} projects have successful + failed != total")
    n = count("SELECT COUNT(*) FROM project_metrics_realtime WHERE success_rate NOT BETWEEN 0 AND 100")
    if n:
        issues["project_metrics_realtime"].append(f"{n} projects have invalid success rates")

    n = count("""
        SELECT COUNT(*) FROM wallet_metrics_realtime
        WHERE wallet_type NOT IN ('whale', 'premium', 'regular', 'small')
    """)
    if n:
        issues["wallet_metrics_realtime"].append(f"{n} wallets have invalid wallet types")
    n = count("SELECT COUNT(*) FROM wallet_metrics_realtime WHERE total_spent < 0")
    if n:
        issues["wallet_metrics_realtime"].append(f"{n} wallets have negative spend")
    n = count("SELECT COUNT(*) FROM wallet_metrics_realtime WHERE unique_contracts > total_interactions")
    if n:
        issues["wallet_metrics_realtime"].append(f"{n} wallets touch more contracts than interactions")
    n = count("SELECT COUNT(*) FROM wallet_metrics_realtime WHERE loyalty_score NOT BETWEEN 0 AND 100")
    if n:
        issues["wallet_metrics_realtime"].append(f"{n} wallets have loyalty outside [0, 100]")

    n = count("""
        SELECT COUNT(*) FROM project_metrics_realtime p
        LEFT JOIN contracts c ON c.chain_id = p.chain_id AND c.address = p.contract_address
        WHERE c.address IS NULL
    """)
    if n:
        issues["data_integrity"].append(f"{n} metrics records have no corresponding contract")
    n = count("""
        SELECT COUNT(*) FROM contracts c
        LEFT JOIN project_metrics_realtime p ON c.chain_id = p.chain_id AND c.address = p.contract_address
        WHERE p.contract_address IS NULL
    """)
    if n:
        issues["data_integrity"].append(f"{n} contracts have no metrics calculated")

    return issues
