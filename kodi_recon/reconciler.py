"""
Reconciliation service.

Coordinates the components for one account at a time:
1. Parse and register statement uploads
2. Load a ledger snapshot and run the matching engine
3. Commit high-confidence matches to the state store
4. Expose review, manual override and analytics operations
"""
import random
import threading
import time
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .analytics import ReconciliationAnalytics
from .config import Config, MatchingRules
from .exceptions import (
    AlreadyMatchedError, InvalidStatusTransitionError, LedgerEntryNotFoundError,
    MatchingError, ReconciliationInProgressError,
)
from .ledger import LedgerProvider, SQLiteLedgerProvider
from .logging_config import (
    get_logger, log_commit_conflict, log_match_run_complete, log_match_run_start,
)
from .matching_engine import MatchingEngine
from .models import (
    EntityKind, ImportBatch, IngestionResult, InternalTransaction, Match, MatchCandidate,
    MatchRunResult, ReconciliationStatus, ReconciliationSummary, StatementFormat,
    StatusTransition,
)
from .state_store import SQLiteStateStore, StateStore
from .statement_parser import StatementParser

logger = get_logger("reconciler")


@dataclass
class ImportOutcome:
    """Result of importing one statement file."""
    result: IngestionResult
    batch: ImportBatch
    registered: int = 0


class ReconciliationService:
    """
    Caller layer around the matching engine and state store.

    Usage:
        service = ReconciliationService(SQLiteStateStore(), InMemoryLedgerProvider(entries))
        service.import_statement("acc-1", csv_text, StatementFormat.GENERIC_CSV)
        result = service.run_match("acc-1")
    """

    def __init__(
        self,
        store: StateStore,
        ledger: LedgerProvider,
        rules: Optional[MatchingRules] = None,
        lookback_days: int = 30
    ):
        self.store = store
        self.ledger = ledger
        self.rules = (rules or MatchingRules()).validate()
        self.lookback_days = lookback_days
        self.parser = StatementParser()
        self.analytics = ReconciliationAnalytics(store)

        self._account_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------ Ingestion ------------

    def import_statement(
        self,
        account_id: str,
        content: str,
        statement_format: StatementFormat,
        file_name: Optional[str] = None,
        actor: str = "system"
    ) -> ImportOutcome:
        """Parse a statement and register its valid rows as UNMATCHED."""
        statement_format = self.parser.coerce_format(statement_format)
        batch = ImportBatch(
            account_id=account_id,
            statement_format=statement_format,
            file_name=file_name,
            imported_by=actor,
        )

        result = self.parser.parse(
            content,
            statement_format,
            account_id,
            import_batch_id=batch.id,
            existing_keys=self.store.existing_keys(account_id),
        )

        batch.total_rows = result.total_rows
        batch.successful_rows = len(result.valid_transactions)
        batch.failed_rows = result.failed_rows
        batch.duplicate_rows = result.duplicate_rows
        if result.valid_transactions:
            dates = [tx.transaction_date for tx in result.valid_transactions]
            batch.date_from = min(dates)
            batch.date_to = max(dates)

        registered = self.store.register_transactions(
            result.valid_transactions, import_batch=batch, actor=actor
        )
        return ImportOutcome(result=result, batch=batch, registered=registered)

    # ------------ Matching ------------

    def run_match(
        self,
        account_id: str,
        rules: Optional[MatchingRules] = None,
        actor: str = "system"
    ) -> MatchRunResult:
        """
        Match the account's UNMATCHED backlog against a ledger snapshot.

        Candidates at or above the auto-approve threshold are committed;
        the rest are returned for review. Only one run per account may be
        active at a time.
        """
        rules = (rules or self.rules).validate()
        engine = MatchingEngine(rules)

        lock = self._account_lock(account_id)
        if not lock.acquire(blocking=False):
            raise ReconciliationInProgressError(account_id)

        try:
            start_time = time.time()
            result = MatchRunResult(account_id=account_id)

            externals = self.store.list_transactions(account_id, status=ReconciliationStatus.UNMATCHED)
            if not externals:
                logger.info(f"No unmatched statement lines for account {account_id}")
                result.processing_time_seconds = time.time() - start_time
                return result

            internals = self._ledger_snapshot(account_id, [tx.transaction_date for tx in externals])
            log_match_run_start(logger, account_id, len(externals), len(internals))

            plan = engine.match(
                externals,
                internals,
                excluded_internal_ids=self.store.active_internal_ids(),
            )

            unmatched = list(plan.unmatched_external_ids)
            for candidate in plan.auto_apply:
                try:
                    match = self._commit_candidate(candidate, actor, auto_applied=True)
                except (AlreadyMatchedError, InvalidStatusTransitionError) as e:
                    log_commit_conflict(logger, candidate.external.id, candidate.internal.id, e.message)
                    result.skipped_conflicts += 1
                    result.errors.append(e.message)
                    unmatched.append(candidate.external.id)
                    continue
                result.committed.append(match)

            result.matched = len(result.committed)
            result.potential_matches = plan.review
            result.unmatched_external_ids = unmatched
            result.processing_time_seconds = time.time() - start_time

            log_match_run_complete(
                logger,
                account_id,
                matched=result.matched,
                potential=len(result.potential_matches),
                conflicts=result.skipped_conflicts,
                duration_seconds=result.processing_time_seconds
            )
            return result
        finally:
            lock.release()

    def confirm_candidate(self, candidate: MatchCandidate, actor: str) -> Match:
        """Commit a reviewed candidate on an operator's behalf."""
        return self._commit_candidate(candidate, actor, auto_applied=False)

    def confirm_pair(
        self,
        external_id: str,
        internal_id: str,
        actor: str,
        rules: Optional[MatchingRules] = None
    ) -> Match:
        """Re-score a reviewed pairing against the current ledger and commit it."""
        external = self.store.get_transaction(external_id)
        internal = self._find_internal(external.account_id, external.transaction_date, internal_id)
        candidate = None
        if internal is not None:
            candidate = MatchingEngine((rules or self.rules).validate()).score_pair(external, internal)
        if candidate is None:
            raise MatchingError(
                f"{external_id} -> {internal_id} is not a match candidate under the current rules",
                external_id=external_id,
                internal_id=internal_id
            )
        return self.confirm_candidate(candidate, actor)

    def manual_match(
        self,
        external_id: str,
        internal_id: str,
        actor: str,
        note: Optional[str] = None
    ) -> Match:
        """Pair a statement line with a ledger entry the engine did not propose."""
        external = self.store.get_transaction(external_id)
        internal = self._find_internal(external.account_id, external.transaction_date, internal_id)
        if internal is None:
            raise LedgerEntryNotFoundError(internal_id, external.transaction_date)

        return self.store.manual_match(
            external_id,
            internal_id,
            actor,
            internal_amount=internal.amount,
            internal_kind=internal.kind,
            note=note,
        )

    def unmatch(self, match_id: str, actor: str = "system") -> Match:
        return self.store.revoke_match(match_id, actor=actor)

    def set_status(
        self,
        external_id: str,
        status: ReconciliationStatus,
        actor: str = "system",
        note: Optional[str] = None
    ) -> ReconciliationStatus:
        return self.store.set_status(external_id, status, actor=actor, note=note)

    def history(self, external_id: str) -> List[StatusTransition]:
        return self.store.get_history(external_id)

    # ------------ Analytics ------------

    def get_summary(self, account_id: Optional[str] = None) -> ReconciliationSummary:
        return self.analytics.get_summary(account_id)

    def unmatched_report(self, account_id: str, as_of: Optional[date] = None) -> pd.DataFrame:
        """Aging of unmatched lines with a hint of which ledger kind could explain each."""
        df = self.analytics.unmatched_aging(account_id, as_of=as_of)
        if df.empty:
            df["potential_match_type"] = pd.Series(dtype=str)
            return df

        internals = self._ledger_snapshot(account_id, list(df["transaction_date"]))
        engine = MatchingEngine(self.rules)
        hints = {
            tx.id: engine.unmatched_hint(tx, internals)
            for tx in self.store.list_transactions(account_id, status=ReconciliationStatus.UNMATCHED)
        }
        df["potential_match_type"] = df["id"].map(hints)
        return df

    # ------------ Helpers ------------

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            if account_id not in self._account_locks:
                self._account_locks[account_id] = threading.Lock()
            return self._account_locks[account_id]

    def _ledger_snapshot(self, account_id: str, dates: List[date]) -> List[InternalTransaction]:
        window = timedelta(days=self.lookback_days)
        return self.ledger.get_candidates(account_id, min(dates) - window, max(dates) + window)

    def _find_internal(
        self,
        account_id: str,
        around: date,
        internal_id: str
    ) -> Optional[InternalTransaction]:
        for tx in self._ledger_snapshot(account_id, [around]):
            if tx.id == internal_id:
                return tx
        return None

    def _commit_candidate(self, candidate: MatchCandidate, actor: str, auto_applied: bool) -> Match:
        return self.store.commit_match(
            candidate.external.id,
            candidate.internal.id,
            candidate.confidence,
            auto_applied,
            actor=actor,
            reason=candidate.reason,
            internal_amount=candidate.internal.amount,
            internal_kind=candidate.internal.kind,
        )

    def close(self):
        self.store.close()
        if hasattr(self.ledger, "close"):
            self.ledger.close()


def build_service(config: Config) -> ReconciliationService:
    """Wire the SQLite store and ledger described by the configuration."""
    db_path = config.database_path
    store = SQLiteStateStore(db_path)
    ledger = SQLiteLedgerProvider(db_path)
    return ReconciliationService(
        store,
        ledger,
        rules=config.matching,
        lookback_days=config.ledger_lookback_days,
    )


def create_sample_data(
    rows: int = 20,
    start: Optional[date] = None,
    seed: Optional[int] = None
) -> Tuple[str, List[InternalTransaction]]:
    """
    Create a sample rent-collection statement and matching ledger entries.

    Most statement lines have an exact ledger counterpart; a few are paid a
    day or two late, a few carry a small amount difference and a few have no
    counterpart at all.
    """
    rng = random.Random(seed)
    start = start or date.today() - timedelta(days=rows + 5)
    tenants = ["J. Mwangi", "A. Otieno", "M. Wanjiku", "P. Kamau", "S. Achieng", "D. Kiprop"]

    lines = ["Date,Description,Amount,Reference,Balance"]
    ledger: List[InternalTransaction] = []
    balance = Decimal("250000.00")

    for i in range(rows):
        tenant = tenants[i % len(tenants)]
        unit = f"Unit {i % 12 + 1}"
        tx_date = start + timedelta(days=i)
        amount = Decimal(rng.choice([15000, 18500, 22000, 25000, 32000]))
        reference = f"RNT{1000 + i}"
        balance += amount
        lines.append(f"{tx_date.isoformat()},Rent {unit} {tenant},{amount},{reference},{balance}")

        roll = rng.random()
        if roll < 0.15:
            continue  # no ledger entry yet
        ledger_date = tx_date
        ledger_amount = amount
        if roll < 0.35:
            ledger_date = tx_date - timedelta(days=rng.randint(1, 2))
        elif roll < 0.45:
            ledger_amount = amount - Decimal("0.01")

        ledger.append(InternalTransaction(
            id=f"INC-{2000 + i}",
            amount=ledger_amount,
            transaction_date=ledger_date,
            description=f"Rent {unit} - {tenant}",
            reference=reference,
            kind=EntityKind.INCOME,
            party=tenant,
        ))

    # Service charge debit with an expense entry
    debit_date = start + timedelta(days=rows // 2)
    lines.append(f"{debit_date.isoformat()},Service charge caretaker,-4500.00,EXP-77,{balance - 4500}")
    ledger.append(InternalTransaction(
        id="EXP-3001",
        amount=Decimal("4500.00"),
        transaction_date=debit_date,
        description="Caretaker service charge",
        reference="EXP-77",
        kind=EntityKind.EXPENSE,
    ))

    return "\n".join(lines) + "\n", ledger
