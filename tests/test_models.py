"""
Tests for data models.
"""
import pytest
from datetime import date
from decimal import Decimal

from kodi_recon.models import (
    ConfidenceLevel, IngestionErrorType, IngestionResult, Match, MatchReason,
    ReconciliationStatus, RowError, TransactionDirection,
)


class TestExternalTransaction:
    """Tests for ExternalTransaction model."""

    def test_duplicate_key(self, make_external):
        tx = make_external(id="ext-9", reference="MP009", tx_date=date(2024, 3, 1))
        assert tx.duplicate_key == ("KCB-RENT-001", "MP009", date(2024, 3, 1))

    def test_debit_amounts(self, make_external):
        tx = make_external(amount="-1200.00")
        assert tx.direction == TransactionDirection.DEBIT
        assert tx.is_credit() is False
        assert tx.absolute_amount == Decimal("1200.00")

    def test_credit(self, make_external):
        assert make_external(amount="10.00").is_credit() is True


class TestReconciliationStatus:
    """Tests for status helpers."""

    @pytest.mark.parametrize("status,expected", [
        (ReconciliationStatus.MATCHED, True),
        (ReconciliationStatus.MANUAL_MATCH, True),
        (ReconciliationStatus.UNMATCHED, False),
        (ReconciliationStatus.DISPUTED, False),
        (ReconciliationStatus.IGNORED, False),
        (ReconciliationStatus.PARTIALLY_MATCHED, False),
    ])
    def test_is_matched(self, status, expected):
        assert status.is_matched is expected


class TestConfidenceLevel:
    """Tests for confidence buckets."""

    def test_buckets(self):
        assert ConfidenceLevel.from_score(0.95) == ConfidenceLevel.HIGH
        assert ConfidenceLevel.from_score(0.9) == ConfidenceLevel.HIGH
        assert ConfidenceLevel.from_score(0.85) == ConfidenceLevel.MEDIUM
        assert ConfidenceLevel.from_score(0.5) == ConfidenceLevel.LOW

    def test_manual_match_level(self):
        match = Match(
            external_id="ext-1",
            internal_id="INC-1",
            confidence=1.0,
            auto_applied=False,
            reason=MatchReason.MANUAL,
        )
        assert match.confidence_level == ConfidenceLevel.MANUAL


class TestIngestionResult:
    """Tests for ingestion result counters."""

    def test_counts_unique_rows(self):
        result = IngestionResult(
            errors=[
                RowError(1, "date", "Invalid or missing date"),
                RowError(1, "amount", "Invalid or missing amount"),
                RowError(3, "description", "Missing description"),
                RowError(4, "reference", "Duplicate", error_type=IngestionErrorType.DUPLICATE),
            ],
            total_rows=5,
        )
        assert result.failed_rows == 2
        assert result.duplicate_rows == 1

    def test_empty(self):
        result = IngestionResult()
        assert result.failed_rows == 0
        assert result.duplicate_rows == 0
        assert result.valid_transactions == []
