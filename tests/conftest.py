"""
Pytest fixtures for statement reconciliation tests.
"""
import pytest
from datetime import date
from decimal import Decimal
import os
import sys

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from kodi_recon.config import MatchingRules
from kodi_recon.ledger import InMemoryLedgerProvider
from kodi_recon.models import (
    EntityKind, ExternalTransaction, InternalTransaction, TransactionDirection,
)
from kodi_recon.reconciler import ReconciliationService
from kodi_recon.state_store import SQLiteStateStore


ACCOUNT_ID = "KCB-RENT-001"


@pytest.fixture
def rules():
    """Default matching rules, independent of the environment."""
    return MatchingRules(
        amount_tolerance=Decimal("0.01"),
        date_tolerance_days=3,
        description_similarity_threshold=0.8,
        minimum_confidence=0.7,
        auto_approve_threshold=0.90,
        amount_tolerance_percentage=Decimal("0"),
    )


@pytest.fixture
def make_external():
    """Factory for statement lines."""
    def _make(
        id="ext-1",
        amount="5000.00",
        tx_date=date(2024, 3, 10),
        description="Rent payment",
        reference="",
        account_id=ACCOUNT_ID
    ):
        amount = Decimal(amount)
        return ExternalTransaction(
            id=id,
            account_id=account_id,
            transaction_date=tx_date,
            description=description,
            amount=amount,
            direction=TransactionDirection.CREDIT if amount >= 0 else TransactionDirection.DEBIT,
            reference=reference or id.upper(),
        )
    return _make


@pytest.fixture
def make_internal():
    """Factory for ledger entries."""
    def _make(
        id="INC-1",
        amount="5000.00",
        tx_date=date(2024, 3, 10),
        description="Rent - Unit 4",
        reference="",
        kind=EntityKind.INCOME,
        account_id=None
    ):
        return InternalTransaction(
            id=id,
            amount=Decimal(amount),
            transaction_date=tx_date,
            description=description,
            reference=reference,
            kind=kind,
            account_id=account_id,
        )
    return _make


@pytest.fixture
def store():
    """In-memory state store."""
    s = SQLiteStateStore()
    yield s
    s.close()


@pytest.fixture
def statement_csv():
    """Generic bank statement with one exact, one late and one unexplained line."""
    return """Date,Description,Amount,Reference,Balance
2024-03-10,Rent payment,5000.00,MP001,105000.00
2024-03-12,Rent payment Unit 7,7500.00,MP002,112500.00
2024-03-15,Water bill,-1200.00,WTR55,111300.00
"""


@pytest.fixture
def ledger_entries(make_internal):
    """Ledger entries for the statement fixture."""
    return [
        make_internal(id="INC-1", amount="5000.00", tx_date=date(2024, 3, 10), description="Rent - Unit 4"),
        make_internal(id="INC-2", amount="7500.00", tx_date=date(2024, 3, 10), description="Rent - Unit 7"),
    ]


@pytest.fixture
def service(store, ledger_entries, rules):
    """Service wired to the in-memory store and ledger fixtures."""
    return ReconciliationService(store, InMemoryLedgerProvider(ledger_entries), rules=rules)


@pytest.fixture
def mpesa_csv():
    """Mobile-money statement export."""
    return """Receipt No.,Completion Time,Details,Transaction Status,Paid In/Withdrawn,Balance
QAB12XYZ,2024-03-10 14:32:10,Funds received from JOHN MWANGI,Completed,5000.00,15000.00
QAB13XYZ,2024-03-11 09:01:00,Pay Bill to KPLC PREPAID,Completed,"(1,250.00)",13750.00
"""
