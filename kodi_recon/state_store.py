"""
Reconciliation state store.

Tracks, per statement line, its reconciliation status, its active match (if
any) and an append-only history of status transitions.
"""
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Set, Tuple, Iterable, Union

from .exceptions import (
    AlreadyMatchedError, DuplicateTransactionError, InvalidStatusTransitionError,
    MatchNotFoundError, MatchingError, TransactionNotFoundError,
)
from .logging_config import get_logger, log_match_committed, log_status_change
from .models import (
    EntityKind, ExternalTransaction, ImportBatch, Match, MatchReason,
    ReconciliationStatus, StatementFormat, StatusTransition, TransactionDirection,
)

logger = get_logger("state")

Status = ReconciliationStatus

# Manual transitions; MATCHED and MANUAL_MATCH are entered by commit and left by revoke
ALLOWED_TRANSITIONS = {
    Status.UNMATCHED: {Status.DISPUTED, Status.IGNORED, Status.PARTIALLY_MATCHED},
    Status.DISPUTED: {Status.IGNORED, Status.UNMATCHED},
    Status.IGNORED: {Status.UNMATCHED},
    Status.PARTIALLY_MATCHED: {Status.UNMATCHED, Status.DISPUTED},
}

COMMITTABLE_STATUSES = {Status.UNMATCHED, Status.DISPUTED, Status.PARTIALLY_MATCHED}


class StateStore(ABC):
    """Durable mapping of statement line -> status, active match and history."""

    @abstractmethod
    def register_transactions(
        self,
        transactions: Iterable[ExternalTransaction],
        import_batch: Optional[ImportBatch] = None,
        actor: str = "system"
    ) -> int:
        """Persist newly imported statement lines as UNMATCHED."""

    @abstractmethod
    def existing_keys(self, account_id: str) -> Set[Tuple[str, str, date]]:
        """(account, reference, date) keys already imported for an account."""

    @abstractmethod
    def get_transaction(self, external_id: str) -> ExternalTransaction:
        """Look up one statement line."""

    @abstractmethod
    def list_transactions(
        self,
        account_id: Optional[str] = None,
        status: Optional[ReconciliationStatus] = None
    ) -> List[ExternalTransaction]:
        """Statement lines, optionally filtered by account and status."""

    @abstractmethod
    def list_statuses(self, account_id: Optional[str] = None) -> List[Tuple[ExternalTransaction, ReconciliationStatus]]:
        """Statement lines paired with their current status."""

    @abstractmethod
    def get_status(self, external_id: str) -> ReconciliationStatus:
        """Current status of a statement line."""

    @abstractmethod
    def commit_match(
        self,
        external_id: str,
        internal_id: str,
        confidence: float,
        auto_applied: bool,
        actor: str = "system",
        reason: Optional[MatchReason] = None,
        internal_amount: Optional[Decimal] = None,
        internal_kind: Optional[EntityKind] = None
    ) -> Match:
        """Commit a pairing; re-committing the same pair returns the existing match."""

    @abstractmethod
    def manual_match(
        self,
        external_id: str,
        internal_id: str,
        actor: str,
        internal_amount: Optional[Decimal] = None,
        internal_kind: Optional[EntityKind] = None,
        note: Optional[str] = None
    ) -> Match:
        """Operator pairing without an engine suggestion."""

    @abstractmethod
    def revoke_match(self, match_id: str, actor: str = "system") -> Match:
        """Deactivate a match and return the line to UNMATCHED."""

    @abstractmethod
    def set_status(
        self,
        external_id: str,
        status: ReconciliationStatus,
        actor: str = "system",
        note: Optional[str] = None
    ) -> ReconciliationStatus:
        """Apply a manual status transition."""

    @abstractmethod
    def get_match(self, match_id: str) -> Match:
        """Look up a match by id."""

    @abstractmethod
    def get_active_match(self, external_id: str) -> Optional[Match]:
        """Active match of a statement line, if any."""

    @abstractmethod
    def list_matches(self, account_id: Optional[str] = None, active_only: bool = True) -> List[Match]:
        """Matches, optionally restricted to one account."""

    @abstractmethod
    def active_internal_ids(self) -> Set[str]:
        """Ledger ids currently claimed by an active match."""

    @abstractmethod
    def get_history(self, external_id: str) -> List[StatusTransition]:
        """Audit trail of a statement line, oldest first."""

    @abstractmethod
    def record_import_batch(self, batch: ImportBatch):
        """Persist provenance of one statement import."""

    @abstractmethod
    def list_import_batches(self, account_id: Optional[str] = None) -> List[ImportBatch]:
        """Recorded statement imports, newest first."""


class SQLiteStateStore(StateStore):
    """
    SQLite implementation of the state store.

    Usage:
        store = SQLiteStateStore("reconciliation.db")   # durable
        store = SQLiteStateStore()                      # in-memory
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self):
        """Create tables for statement lines, matches, history and imports."""
        with self._lock, self.db:
            self.db.executescript("""
                CREATE TABLE IF NOT EXISTS external_transactions (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    transaction_date DATE NOT NULL,
                    value_date DATE,
                    description TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    reference TEXT NOT NULL,
                    channel TEXT,
                    balance TEXT,
                    import_batch_id TEXT,
                    raw_data TEXT,
                    status TEXT NOT NULL DEFAULT 'UNMATCHED',
                    created_at TIMESTAMP,
                    UNIQUE (account_id, reference, transaction_date)
                );

                CREATE TABLE IF NOT EXISTS matches (
                    id TEXT PRIMARY KEY,
                    external_id TEXT NOT NULL REFERENCES external_transactions(id),
                    internal_id TEXT NOT NULL,
                    internal_kind TEXT,
                    confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
                    reason TEXT,
                    auto_applied INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    variance_amount TEXT NOT NULL DEFAULT '0',
                    committed_at TIMESTAMP,
                    committed_by TEXT,
                    revoked_at TIMESTAMP,
                    revoked_by TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_matches_active_external
                    ON matches(external_id) WHERE is_active = 1;
                CREATE UNIQUE INDEX IF NOT EXISTS ux_matches_active_internal
                    ON matches(internal_id) WHERE is_active = 1;

                CREATE TABLE IF NOT EXISTS status_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL REFERENCES external_transactions(id),
                    from_status TEXT,
                    to_status TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    note TEXT,
                    changed_at TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS import_batches (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    statement_format TEXT NOT NULL,
                    file_name TEXT,
                    total_rows INTEGER,
                    successful_rows INTEGER,
                    failed_rows INTEGER,
                    duplicate_rows INTEGER,
                    date_from DATE,
                    date_to DATE,
                    imported_by TEXT,
                    created_at TIMESTAMP
                );
            """)

    # ------------ Statement lines ------------

    def register_transactions(
        self,
        transactions: Iterable[ExternalTransaction],
        import_batch: Optional[ImportBatch] = None,
        actor: str = "system"
    ) -> int:
        transactions = list(transactions)
        now = datetime.now()

        with self._lock, self.db:
            for tx in transactions:
                try:
                    self.db.execute("""
                        INSERT INTO external_transactions VALUES
                        (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        tx.id,
                        tx.account_id,
                        tx.transaction_date.isoformat(),
                        tx.value_date.isoformat() if tx.value_date else None,
                        tx.description,
                        str(tx.amount),
                        tx.direction.value,
                        tx.reference,
                        tx.channel,
                        str(tx.balance) if tx.balance is not None else None,
                        tx.import_batch_id,
                        json.dumps(tx.raw_data, default=str),
                        Status.UNMATCHED.value,
                        now.isoformat(),
                    ))
                except sqlite3.IntegrityError:
                    raise DuplicateTransactionError(tx.account_id, tx.reference, tx.transaction_date)

                self._append_history(tx.id, None, Status.UNMATCHED, actor, "imported", now)

            if import_batch is not None:
                self._insert_import_batch(import_batch)

        logger.info(f"Registered {len(transactions)} statement lines")
        return len(transactions)

    def existing_keys(self, account_id: str) -> Set[Tuple[str, str, date]]:
        with self._lock:
            rows = self.db.execute(
                "SELECT account_id, reference, transaction_date FROM external_transactions WHERE account_id = ?",
                (account_id,)
            ).fetchall()
        return {(r["account_id"], r["reference"], date.fromisoformat(r["transaction_date"])) for r in rows}

    def get_transaction(self, external_id: str) -> ExternalTransaction:
        return self._row_to_transaction(self._fetch_transaction_row(external_id))

    def list_transactions(
        self,
        account_id: Optional[str] = None,
        status: Optional[ReconciliationStatus] = None
    ) -> List[ExternalTransaction]:
        query = "SELECT * FROM external_transactions WHERE 1 = 1"
        params: list = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if status is not None:
            query += " AND status = ?"
            params.append(Status(status).value)
        query += " ORDER BY transaction_date, id"

        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def list_statuses(self, account_id: Optional[str] = None) -> List[Tuple[ExternalTransaction, ReconciliationStatus]]:
        query = "SELECT * FROM external_transactions"
        params: list = []
        if account_id is not None:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY transaction_date, id"

        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [(self._row_to_transaction(r), Status(r["status"])) for r in rows]

    def get_status(self, external_id: str) -> ReconciliationStatus:
        return Status(self._fetch_transaction_row(external_id)["status"])

    # ------------ Matches ------------

    def commit_match(
        self,
        external_id: str,
        internal_id: str,
        confidence: float,
        auto_applied: bool,
        actor: str = "system",
        reason: Optional[MatchReason] = None,
        internal_amount: Optional[Decimal] = None,
        internal_kind: Optional[EntityKind] = None
    ) -> Match:
        return self._commit(
            external_id, internal_id, confidence, auto_applied, actor,
            reason=reason,
            internal_amount=internal_amount,
            internal_kind=internal_kind,
            target_status=Status.MATCHED,
        )

    def manual_match(
        self,
        external_id: str,
        internal_id: str,
        actor: str,
        internal_amount: Optional[Decimal] = None,
        internal_kind: Optional[EntityKind] = None,
        note: Optional[str] = None
    ) -> Match:
        return self._commit(
            external_id, internal_id, 1.0, False, actor,
            reason=MatchReason.MANUAL,
            internal_amount=internal_amount,
            internal_kind=internal_kind,
            target_status=Status.MANUAL_MATCH,
            note=note,
        )

    def _commit(
        self,
        external_id: str,
        internal_id: str,
        confidence: float,
        auto_applied: bool,
        actor: str,
        reason: Optional[MatchReason],
        internal_amount: Optional[Decimal],
        internal_kind: Optional[EntityKind],
        target_status: ReconciliationStatus,
        note: Optional[str] = None
    ) -> Match:
        if not 0.0 <= confidence <= 1.0:
            raise MatchingError(
                f"Confidence {confidence} outside [0, 1]",
                external_id=external_id,
                internal_id=internal_id
            )

        with self._lock:
            row = self._fetch_transaction_row(external_id)

            existing = self.get_active_match(external_id)
            if existing is not None:
                if existing.internal_id == internal_id:
                    return existing
                raise AlreadyMatchedError(external_id, internal_id, existing.id)

            claimed = self._active_match_for_internal(internal_id)
            if claimed is not None:
                raise AlreadyMatchedError(external_id, internal_id, claimed.id)

            current = Status(row["status"])
            if current not in COMMITTABLE_STATUSES:
                raise InvalidStatusTransitionError(external_id, current, target_status)

            variance = Decimal("0")
            if internal_amount is not None:
                variance = abs(Decimal(row["amount"])) - abs(Decimal(str(internal_amount)))

            match = Match(
                external_id=external_id,
                internal_id=internal_id,
                confidence=confidence,
                auto_applied=auto_applied,
                reason=reason,
                internal_kind=internal_kind,
                variance_amount=variance,
                committed_by=actor,
            )

            try:
                with self.db:
                    self.db.execute("""
                        INSERT INTO matches VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        match.id,
                        match.external_id,
                        match.internal_id,
                        match.internal_kind.value if match.internal_kind else None,
                        match.confidence,
                        match.reason.value if match.reason else None,
                        int(match.auto_applied),
                        1,
                        str(match.variance_amount),
                        match.committed_at.isoformat(),
                        match.committed_by,
                        None,
                        None,
                    ))
                    self._update_status(external_id, target_status)
                    self._append_history(
                        external_id, current, target_status, actor,
                        note or f"matched to {internal_id}", match.committed_at
                    )
            except sqlite3.IntegrityError:
                raise AlreadyMatchedError(external_id, internal_id, "unknown")

        log_match_committed(logger, match.id, external_id, internal_id, confidence, auto_applied)
        log_status_change(logger, external_id, current.value, target_status.value, actor)
        return match

    def revoke_match(self, match_id: str, actor: str = "system") -> Match:
        with self._lock:
            match = self.get_match(match_id)
            if not match.is_active:
                return match

            current = self.get_status(match.external_id)
            now = datetime.now()
            with self.db:
                self.db.execute(
                    "UPDATE matches SET is_active = 0, revoked_at = ?, revoked_by = ? WHERE id = ?",
                    (now.isoformat(), actor, match_id)
                )
                self._update_status(match.external_id, Status.UNMATCHED)
                self._append_history(
                    match.external_id, current, Status.UNMATCHED, actor,
                    f"match {match_id} revoked", now
                )

        log_status_change(logger, match.external_id, current.value, Status.UNMATCHED.value, actor)
        return self.get_match(match_id)

    def get_match(self, match_id: str) -> Match:
        with self._lock:
            row = self.db.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()
        if row is None:
            raise MatchNotFoundError(match_id)
        return self._row_to_match(row)

    def get_active_match(self, external_id: str) -> Optional[Match]:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM matches WHERE external_id = ? AND is_active = 1", (external_id,)
            ).fetchone()
        return self._row_to_match(row) if row else None

    def _active_match_for_internal(self, internal_id: str) -> Optional[Match]:
        row = self.db.execute(
            "SELECT * FROM matches WHERE internal_id = ? AND is_active = 1", (internal_id,)
        ).fetchone()
        return self._row_to_match(row) if row else None

    def list_matches(self, account_id: Optional[str] = None, active_only: bool = True) -> List[Match]:
        query = """
            SELECT m.* FROM matches m
            JOIN external_transactions e ON e.id = m.external_id
            WHERE 1 = 1
        """
        params: list = []
        if account_id is not None:
            query += " AND e.account_id = ?"
            params.append(account_id)
        if active_only:
            query += " AND m.is_active = 1"
        query += " ORDER BY m.committed_at, m.id"

        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [self._row_to_match(r) for r in rows]

    def active_internal_ids(self) -> Set[str]:
        with self._lock:
            rows = self.db.execute("SELECT internal_id FROM matches WHERE is_active = 1").fetchall()
        return {r["internal_id"] for r in rows}

    # ------------ Status ------------

    def set_status(
        self,
        external_id: str,
        status: Union[ReconciliationStatus, str],
        actor: str = "system",
        note: Optional[str] = None
    ) -> ReconciliationStatus:
        status = Status(status)

        with self._lock:
            current = self.get_status(external_id)
            if status == current:
                return current

            if status.is_matched:
                raise InvalidStatusTransitionError(
                    external_id, current, status, hint="use commit_match or manual_match"
                )
            if current.is_matched:
                raise InvalidStatusTransitionError(
                    external_id, current, status, hint="revoke the active match first"
                )
            if status not in ALLOWED_TRANSITIONS.get(current, set()):
                raise InvalidStatusTransitionError(external_id, current, status)

            with self.db:
                self._update_status(external_id, status)
                self._append_history(external_id, current, status, actor, note or "", datetime.now())

        log_status_change(logger, external_id, current.value, status.value, actor)
        return status

    def get_history(self, external_id: str) -> List[StatusTransition]:
        self._fetch_transaction_row(external_id)
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM status_history WHERE external_id = ? ORDER BY id", (external_id,)
            ).fetchall()
        return [
            StatusTransition(
                external_id=r["external_id"],
                from_status=Status(r["from_status"]) if r["from_status"] else None,
                to_status=Status(r["to_status"]),
                actor=r["actor"],
                changed_at=datetime.fromisoformat(r["changed_at"]),
                note=r["note"] or "",
            )
            for r in rows
        ]

    # ------------ Import batches ------------

    def record_import_batch(self, batch: ImportBatch):
        with self._lock, self.db:
            self._insert_import_batch(batch)

    def list_import_batches(self, account_id: Optional[str] = None) -> List[ImportBatch]:
        query = "SELECT * FROM import_batches"
        params: list = []
        if account_id is not None:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY created_at DESC"

        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [
            ImportBatch(
                id=r["id"],
                account_id=r["account_id"],
                statement_format=StatementFormat(r["statement_format"]),
                file_name=r["file_name"],
                total_rows=r["total_rows"],
                successful_rows=r["successful_rows"],
                failed_rows=r["failed_rows"],
                duplicate_rows=r["duplicate_rows"],
                date_from=date.fromisoformat(r["date_from"]) if r["date_from"] else None,
                date_to=date.fromisoformat(r["date_to"]) if r["date_to"] else None,
                imported_by=r["imported_by"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def close(self):
        """Close database connection."""
        if self.db:
            self.db.close()

    # ------------ Helpers ------------

    def _fetch_transaction_row(self, external_id: str) -> sqlite3.Row:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM external_transactions WHERE id = ?", (external_id,)
            ).fetchone()
        if row is None:
            raise TransactionNotFoundError(external_id)
        return row

    def _update_status(self, external_id: str, status: ReconciliationStatus):
        self.db.execute(
            "UPDATE external_transactions SET status = ? WHERE id = ?", (status.value, external_id)
        )

    def _append_history(
        self,
        external_id: str,
        from_status: Optional[ReconciliationStatus],
        to_status: ReconciliationStatus,
        actor: str,
        note: str,
        changed_at: datetime
    ):
        self.db.execute("""
            INSERT INTO status_history (external_id, from_status, to_status, actor, note, changed_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            external_id,
            from_status.value if from_status else None,
            to_status.value,
            actor,
            note,
            changed_at.isoformat(),
        ))

    def _insert_import_batch(self, batch: ImportBatch):
        self.db.execute("""
            INSERT OR REPLACE INTO import_batches VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            batch.id,
            batch.account_id,
            batch.statement_format.value,
            batch.file_name,
            batch.total_rows,
            batch.successful_rows,
            batch.failed_rows,
            batch.duplicate_rows,
            batch.date_from.isoformat() if batch.date_from else None,
            batch.date_to.isoformat() if batch.date_to else None,
            batch.imported_by,
            batch.created_at.isoformat(),
        ))

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> ExternalTransaction:
        return ExternalTransaction(
            id=row["id"],
            account_id=row["account_id"],
            transaction_date=date.fromisoformat(row["transaction_date"]),
            value_date=date.fromisoformat(row["value_date"]) if row["value_date"] else None,
            description=row["description"],
            amount=Decimal(row["amount"]),
            direction=TransactionDirection(row["direction"]),
            reference=row["reference"],
            channel=row["channel"],
            balance=Decimal(row["balance"]) if row["balance"] is not None else None,
            import_batch_id=row["import_batch_id"],
            raw_data=json.loads(row["raw_data"]) if row["raw_data"] else {},
        )

    @staticmethod
    def _row_to_match(row: sqlite3.Row) -> Match:
        return Match(
            id=row["id"],
            external_id=row["external_id"],
            internal_id=row["internal_id"],
            internal_kind=EntityKind(row["internal_kind"]) if row["internal_kind"] else None,
            confidence=row["confidence"],
            reason=MatchReason(row["reason"]) if row["reason"] else None,
            auto_applied=bool(row["auto_applied"]),
            is_active=bool(row["is_active"]),
            variance_amount=Decimal(row["variance_amount"]),
            committed_at=datetime.fromisoformat(row["committed_at"]),
            committed_by=row["committed_by"],
            revoked_at=datetime.fromisoformat(row["revoked_at"]) if row["revoked_at"] else None,
            revoked_by=row["revoked_by"],
        )
