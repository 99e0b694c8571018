"""Realtime and daily-batch recomputation of metrics snapshots.

Realtime: a change to one project or wallet recomputes that entity's snapshot
and upserts it. Recomputes of the same entity are serialized; different
entities run concurrently.

Batch: every tracked contract gets a ProjectMetricsDaily row for the day and
every (category, chain) a fresh snapshot. Rows are staged in memory and
committed in a single transaction, so an aborted or failed batch leaves the
previous day's data authoritative.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from collections import Counter, OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import duckdb
from pydantic import BaseModel, Field
from tqdm import tqdm

from chainpulse.errors import DataSourceError, InputDataError, MetricsError, SchedulingError, ValidationError
from chainpulse.models.schema import (
    CategoryCounters,
    CategoryMetricsSnapshot,
    DailyCounters,
    EntityKind,
    ProjectCounters,
    ProjectMetricsDaily,
    TransactionRecord,
    WalletCounters,
)
from chainpulse.pipeline.validation import sanitize_record, validate_record
from chainpulse.scoring.calculator import SECONDS_PER_DAY, MetricsCalculator
from chainpulse.storage import database
from chainpulse.storage.aggregates import CounterSource, day_bounds

logger = logging.getLogger(__name__)

MAX_RECENT_ISSUES = 100
MAX_TRACKED_ENTITIES = 10_000


@dataclass(frozen=True)
class EntityKey:
    kind: EntityKind
    address: str
    chain_id: int

    @classmethod
    def project(cls, address: str, chain_id: int = 1) -> "EntityKey":
        return cls(EntityKind.PROJECT, address.lower(), chain_id)

    @classmethod
    def wallet(cls, address: str, chain_id: int = 1) -> "EntityKey":
        return cls(EntityKind.WALLET, address.lower(), chain_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.chain_id}:{self.address}"


class EntityState(str, Enum):
    STALE = "stale"
    RECOMPUTING = "recomputing"
    VALIDATED = "validated"
    INVALID = "invalid"
    SANITIZED = "sanitized"
    PERSISTED = "persisted"
    FAILED = "failed"


class BatchResult(BaseModel):
    date: dt.date
    success: bool
    aborted: bool = False
    projects: int = 0
    categories: int = 0
    sanitized: int = 0
    duration: float = 0.0
    error: str | None = None


class PipelineStatus(BaseModel):
    last_realtime_run: int | None = None
    last_batch_run: int | None = None
    last_batch_date: dt.date | None = None
    last_batch_success: bool | None = None
    last_error: str | None = None
    last_validation_error: str | None = None
    realtime_processed: int = 0
    realtime_failed: int = 0
    batch_processed: int = 0
    sanitized: int = 0
    recent_issues: list[str] = Field(default_factory=list)
    entity_states: dict[str, int] = Field(default_factory=dict)


class MetricsDataPipeline:
    """Recomputes and persists snapshots from a CounterSource."""

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        source: CounterSource,
        calculator: MetricsCalculator | None = None,
        timeout: float = 30.0,
        max_concurrent: int = 16,
        clock: Callable[[], float] = time.time,
        max_tracked_entities: int = MAX_TRACKED_ENTITIES,
    ):
        self.conn = conn
        self.source = source
        self.calculator = calculator or MetricsCalculator()
        self.timeout = timeout
        self.max_concurrent = max_concurrent
        self.clock = clock
        self.max_tracked_entities = max_tracked_entities

        # asyncio primitives belong to one event loop; rebuilt by _bind_loop
        self._loop: asyncio.AbstractEventLoop | None = None
        self.semaphore: asyncio.Semaphore | None = None
        self._locks: dict[EntityKey, asyncio.Lock] = {}
        self._lock_users: Counter[EntityKey] = Counter()
        # Least recently touched entities drop out first once the cap is reached
        self._states: OrderedDict[EntityKey, EntityState] = OrderedDict()
        self._recent_issues: deque[str] = deque(maxlen=MAX_RECENT_ISSUES)

        self._last_realtime_run: int | None = None
        self._last_batch_run: int | None = None
        self._last_batch_date: dt.date | None = None
        self._last_batch_success: bool | None = None
        self._last_error: str | None = None
        self._last_validation_error: str | None = None
        self._realtime_processed = 0
        self._realtime_failed = 0
        self._batch_processed = 0
        self._sanitized = 0

    # --- Helpers ---

    def _bind_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._loop = loop
            self.semaphore = asyncio.Semaphore(self.max_concurrent)
            self._locks.clear()
            self._lock_users.clear()

    @asynccontextmanager
    async def _entity_lock(self, key: EntityKey):
        """Hold the per-entity lock; the entry is dropped once nobody uses it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] <= 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

    def _set_state(self, key: EntityKey, state: EntityState) -> None:
        self._states[key] = state
        self._states.move_to_end(key)
        while len(self._states) > self.max_tracked_entities:
            self._states.popitem(last=False)

    def state_of(self, key: EntityKey) -> EntityState:
        return self._states.get(key, EntityState.STALE)

    def mark_stale(self, key: EntityKey) -> None:
        self._set_state(key, EntityState.STALE)

    async def _read(self, fn, *args):
        """Run a blocking source read in a worker thread, bounded by the timeout."""
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)

    def _check(self, record, key: EntityKey | None, label: str):
        """Validate a record; sanitize it when it breaks a rule."""
        issues = validate_record(record)
        if not issues:
            if key is not None:
                self._set_state(key, EntityState.VALIDATED)
            return record, False

        if key is not None:
            self._set_state(key, EntityState.INVALID)
        error = ValidationError(issues)
        for issue in error.issues:
            self._recent_issues.append(f"{label}: {issue.message}")
        self._last_validation_error = f"{label}: {error}"
        logger.warning(f"{label}: {error}, sanitizing")
        record = sanitize_record(record, issues, entity=label)
        self._sanitized += 1
        if key is not None:
            self._set_state(key, EntityState.SANITIZED)
        return record, True

    async def _read_counters(self, key: EntityKey, until: int | None = None):
        if key.kind is EntityKind.PROJECT:
            reader, empty = self.source.project_counters, ProjectCounters
        else:
            reader, empty = self.source.wallet_counters, WalletCounters
        try:
            return await self._read(reader, key.address, key.chain_id, until)
        except InputDataError as e:
            logger.warning(f"{key}: {e}; using zeroed counters")
            return empty()

    # --- Realtime path ---

    async def on_entity_changed(self, key: EntityKey):
        """Recompute and persist one entity. Returns the new snapshot, or None
        if the recompute failed and the previous snapshot was kept."""
        self._bind_loop()
        async with self._entity_lock(key), self.semaphore:
            self._set_state(key, EntityState.RECOMPUTING)
            try:
                counters = await self._read_counters(key)
            except asyncio.TimeoutError:
                return self._fail(key, f"{key}: counter read timed out after {self.timeout}s")
            except DataSourceError as e:
                return self._fail(key, f"{key}: {e}")

            if key.kind is EntityKind.PROJECT:
                snapshot = self.calculator.project_snapshot(key.address, key.chain_id, counters)
            else:
                snapshot = self.calculator.wallet_snapshot(key.address, key.chain_id, counters)
            snapshot, _ = self._check(snapshot, key, str(key))

            now = int(self.clock())
            snapshot = snapshot.model_copy(update={"last_updated": now})
            # Writes stay on the loop thread: one writer, in lock order
            try:
                if key.kind is EntityKind.PROJECT:
                    database.upsert_project_metrics(self.conn, [snapshot])
                else:
                    database.upsert_wallet_metrics(self.conn, [snapshot])
            except duckdb.Error as e:
                return self._fail(key, f"{key}: failed to persist snapshot: {e}")

            self._set_state(key, EntityState.PERSISTED)
            self._realtime_processed += 1
            self._last_realtime_run = now
            logger.debug(f"Persisted {key}")
            return snapshot

    def _fail(self, key: EntityKey, message: str) -> None:
        logger.error(message)
        self._set_state(key, EntityState.FAILED)
        self._realtime_failed += 1
        self._last_error = message
        return None

    async def on_transaction(self, tx: TransactionRecord) -> list:
        """Recompute the contract and the sending wallet touched by a transaction."""
        keys = [
            EntityKey.project(tx.contract_address, tx.chain_id),
            EntityKey.wallet(tx.from_address, tx.chain_id),
        ]
        for key in keys:
            self.mark_stale(key)
        return list(await asyncio.gather(*(self.on_entity_changed(k) for k in keys)))

    async def recalculate_stale(self, max_age_days: int = 7, limit: int = 500) -> int:
        """Recompute project snapshots not refreshed within max_age_days.
        Returns how many were persisted."""
        cutoff = int(self.clock()) - max_age_days * SECONDS_PER_DAY
        stale = database.stale_projects(self.conn, cutoff, limit=limit)
        if not stale:
            return 0
        keys = [EntityKey.project(address, chain_id) for address, chain_id in stale]
        for key in keys:
            self.mark_stale(key)
        results = await asyncio.gather(*(self.on_entity_changed(k) for k in keys))
        refreshed = sum(1 for r in results if r is not None)
        logger.info(f"Recalculated {refreshed}/{len(keys)} stale project snapshots")
        return refreshed

    # --- Batch path ---

    async def run_daily_batch(
        self,
        day: dt.date,
        abort: asyncio.Event | None = None,
        progress: bool = False,
    ) -> BatchResult:
        self._bind_loop()
        started = self.clock()
        _, until = day_bounds(day)
        staged_daily: list[ProjectMetricsDaily] = []
        staged_categories: list[CategoryMetricsSnapshot] = []
        sanitized = 0

        def check_abort():
            if abort is not None and abort.is_set():
                raise SchedulingError(f"Batch for {day} aborted")

        try:
            projects = await self._read(self.source.tracked_projects)
            categories_of = await self._read(self.source.contract_categories)

            for address, chain_id in tqdm(projects, desc=f"Daily metrics {day}", disable=not progress):
                check_abort()
                key = EntityKey.project(address, chain_id)
                async with self._entity_lock(key):
                    counters = await self._read_counters(key, until)
                    try:
                        daily = await self._read(self.source.daily_counters, key.address, chain_id, day)
                    except InputDataError as e:
                        logger.warning(f"{key}: {e}; using zeroed daily counters")
                        daily = DailyCounters()
                snapshot = self.calculator.project_snapshot(key.address, chain_id, counters)
                snapshot, fixed = self._check(snapshot, None, f"{key}@{day}")
                sanitized += fixed
                row = self.calculator.daily_project_metrics(snapshot, day, daily)
                row, fixed = self._check(row, None, f"daily {key}@{day}")
                sanitized += fixed
                staged_daily.append(row)

            scores = _scores_by_category(staged_daily, categories_of)
            now = int(self.clock())
            for category, chain_id in await self._read(self.source.tracked_categories):
                check_abort()
                try:
                    counters = await self._read(self.source.category_counters, category, chain_id, until)
                except InputDataError as e:
                    logger.warning(f"category {chain_id}:{category}: {e}; using zeroed counters")
                    counters = CategoryCounters()
                averages = scores.get((category, chain_id))
                if averages:
                    counters = counters.model_copy(update=averages)
                snapshot = self.calculator.category_snapshot(category, chain_id, counters)
                snapshot, fixed = self._check(snapshot, None, f"category {chain_id}:{category}@{day}")
                sanitized += fixed
                staged_categories.append(snapshot.model_copy(update={"last_updated": now}))

            check_abort()
            # Committed on the loop thread, like the realtime upserts
            database.replace_daily_metrics(self.conn, day, staged_daily, staged_categories)
        except asyncio.CancelledError:
            self._record_batch(day, False, f"Batch for {day} cancelled")
            raise
        except asyncio.TimeoutError:
            return self._batch_failed(day, started, f"Batch for {day} timed out reading counters")
        except SchedulingError as e:
            return self._batch_failed(day, started, str(e), aborted=True)
        except DataSourceError as e:
            return self._batch_failed(day, started, f"Batch for {day} failed: {e}")
        except MetricsError as e:
            return self._batch_failed(day, started, f"Batch for {day} failed: {type(e).__name__}: {e}")

        self._record_batch(day, True, None)
        self._batch_processed += len(staged_daily)
        result = BatchResult(
            date=day,
            success=True,
            projects=len(staged_daily),
            categories=len(staged_categories),
            sanitized=sanitized,
            duration=round(self.clock() - started, 3),
        )
        logger.info(
            f"Daily batch {day}: {result.projects} projects, {result.categories} categories, "
            f"{result.sanitized} sanitized"
        )
        return result

    def _record_batch(self, day: dt.date, success: bool, error: str | None) -> None:
        self._last_batch_run = int(self.clock())
        self._last_batch_date = day
        self._last_batch_success = success
        if error is not None:
            self._last_error = error
            logger.error(error)

    def _batch_failed(self, day: dt.date, started: float, error: str, aborted: bool = False) -> BatchResult:
        self._record_batch(day, False, error)
        return BatchResult(
            date=day,
            success=False,
            aborted=aborted,
            duration=round(self.clock() - started, 3),
            error=error,
        )

    # --- Reporting ---

    def status(self) -> PipelineStatus:
        histogram = Counter(state.value for state in self._states.values())
        return PipelineStatus(
            last_realtime_run=self._last_realtime_run,
            last_batch_run=self._last_batch_run,
            last_batch_date=self._last_batch_date,
            last_batch_success=self._last_batch_success,
            last_error=self._last_error,
            last_validation_error=self._last_validation_error,
            realtime_processed=self._realtime_processed,
            realtime_failed=self._realtime_failed,
            batch_processed=self._batch_processed,
            sanitized=self._sanitized,
            recent_issues=list(self._recent_issues),
            entity_states=dict(histogram),
        )

    def audit(self) -> dict[str, list[str]]:
        issues = database.audit_metrics(self.conn)
        total = sum(len(v) for v in issues.values())
        if total:
            logger.warning(f"Audit found {total} issue(s)")
        else:
            logger.info("Audit passed")
        return issues


def _scores_by_category(
    rows: list[ProjectMetricsDaily],
    categories_of: dict[tuple[str, int], str],
) -> dict[tuple[str, int], dict[str, float]]:
    """Average day-end scores per (category, chain), over projects with activity."""
    grouped: dict[tuple[str, int], list[ProjectMetricsDaily]] = {}
    for row in rows:
        if row.total_transactions <= 0:
            continue
        category = categories_of.get((row.contract_address, row.chain_id), "uncategorized")
        grouped.setdefault((category, row.chain_id), []).append(row)

    averages = {}
    for key, members in grouped.items():
        n = len(members)
        averages[key] = {
            "avg_growth_score": sum(r.growth_score for r in members) / n,
            "avg_health_score": sum(r.health_score for r in members) / n,
            "avg_risk_score": sum(r.risk_score for r in members) / n,
        }
    return averages
