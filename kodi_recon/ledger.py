"""Ledger snapshot providers supplying internal candidates for matching."""
import sqlite3
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Any

import pandas as pd

from .logging_config import get_logger
from .models import EntityKind, InternalTransaction

logger = get_logger("ledger")


class LedgerProvider(ABC):
    """Source of internal (income/expense) transactions eligible for matching."""

    @abstractmethod
    def get_candidates(
        self,
        account_id: str,
        window_start: date,
        window_end: date
    ) -> List[InternalTransaction]:
        """
        Return a stable snapshot of candidates dated within the window.

        The returned list is owned by the caller and ordered by date then id.
        """

    @staticmethod
    def _snapshot(transactions: List[InternalTransaction]) -> List[InternalTransaction]:
        return sorted(transactions, key=lambda tx: (tx.transaction_date, tx.id))


class InMemoryLedgerProvider(LedgerProvider):
    """Ledger held in memory, loaded from objects, DataFrames or CSV exports."""

    def __init__(self, transactions: Optional[List[InternalTransaction]] = None):
        self._transactions: List[InternalTransaction] = list(transactions or [])

    def add(self, *transactions: InternalTransaction):
        self._transactions.extend(transactions)

    def get_candidates(
        self,
        account_id: str,
        window_start: date,
        window_end: date
    ) -> List[InternalTransaction]:
        filtered = [
            tx for tx in self._transactions
            if window_start <= tx.transaction_date <= window_end
            and (tx.account_id is None or tx.account_id == account_id)
        ]
        return self._snapshot(filtered)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "InMemoryLedgerProvider":
        """
        Build a ledger from a DataFrame.

        Expected columns: id, date, amount; optional description, reference,
        kind (INCOME/EXPENSE/PAYMENT), party, account_id.
        """
        transactions = []
        for _, row in df.iterrows():
            transactions.append(InternalTransaction(
                id=str(row["id"]),
                amount=Decimal(str(row["amount"]).replace(",", "")),
                transaction_date=pd.to_datetime(row["date"]).date(),
                description=_text(row.get("description")),
                reference=_text(row.get("reference")),
                kind=EntityKind(_text(row.get("kind")).upper() or "INCOME"),
                party=_text(row.get("party")) or None,
                account_id=_text(row.get("account_id")) or None,
            ))
        return cls(transactions)

    @classmethod
    def from_csv(cls, path: Path) -> "InMemoryLedgerProvider":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        return cls.from_dataframe(df)


class SQLiteLedgerProvider(LedgerProvider):
    """
    Reads the host application's income and expense tables.

    Tables are expected to carry id, transaction_date, amount_kes,
    description, reference_number and (optionally) bank_account_id.
    Missing tables yield no candidates. Ids are prefixed with the entry kind
    (income-<id>, expense-<id>) as the two tables number rows independently.
    """

    TABLES = {
        "income_transactions": EntityKind.INCOME,
        "expense_transactions": EntityKind.EXPENSE,
    }

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row

    def get_candidates(
        self,
        account_id: str,
        window_start: date,
        window_end: date
    ) -> List[InternalTransaction]:
        cursor = self.db.cursor()
        transactions = []

        for table, kind in self.TABLES.items():
            cursor.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            )
            if cursor.fetchone() is None:
                logger.debug(f"Ledger table {table} not present")
                continue

            columns = {row[1] for row in cursor.execute(f"PRAGMA table_info({table})")}
            query = f"SELECT * FROM {table} WHERE transaction_date BETWEEN ? AND ?"
            params: List[Any] = [window_start.isoformat(), window_end.isoformat()]
            if "bank_account_id" in columns:
                query += " AND (bank_account_id IS NULL OR bank_account_id = ?)"
                params.append(account_id)

            for row in cursor.execute(query, params):
                record = dict(row)
                transactions.append(InternalTransaction(
                    id=f"{kind.value.lower()}-{record['id']}",
                    amount=Decimal(str(record["amount_kes"])),
                    transaction_date=_as_date(record["transaction_date"]),
                    description=_text(record.get("description")),
                    reference=_text(record.get("reference_number")),
                    kind=kind,
                    party=_text(record.get("party")) or None,
                    account_id=record.get("bank_account_id"),
                ))

        return self._snapshot(transactions)

    def close(self):
        if self.db:
            self.db.close()


def _text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value).strip()


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
