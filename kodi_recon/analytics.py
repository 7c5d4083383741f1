"""
Reconciliation analytics.

Read-only rollups over the state store: counts by status, variance totals,
match rate and aging of unmatched statement lines. Nothing is cached; every
call recomputes from the store.
"""
from datetime import date
from decimal import Decimal
from typing import Dict, Any, Optional

import pandas as pd

from .models import ReconciliationStatus, ReconciliationSummary
from .state_store import StateStore

AGING_COLUMNS = [
    "id", "transaction_date", "reference", "description", "amount", "direction", "days_unmatched",
]


class ReconciliationAnalytics:
    """Summary statistics for one account or across all accounts."""

    def __init__(self, store: StateStore):
        self.store = store

    def get_summary(
        self,
        account_id: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> ReconciliationSummary:
        as_of = as_of or date.today()
        rows = self.store.list_statuses(account_id)
        matches = self.store.list_matches(account_id, active_only=True)

        summary = ReconciliationSummary(account_id=account_id, as_of=as_of)
        summary.counts_by_status = {status.value: 0 for status in ReconciliationStatus}

        unmatched_days = []
        for tx, status in rows:
            summary.counts_by_status[status.value] += 1
            if tx.amount > 0:
                summary.total_credits += tx.amount
            else:
                summary.total_debits += abs(tx.amount)
            if status == ReconciliationStatus.UNMATCHED:
                unmatched_days.append((as_of - tx.transaction_date).days)

        counts = summary.counts_by_status
        summary.total_transactions = len(rows)
        summary.matched_transactions = (
            counts[ReconciliationStatus.MATCHED.value] + counts[ReconciliationStatus.MANUAL_MATCH.value]
        )
        summary.unmatched_transactions = counts[ReconciliationStatus.UNMATCHED.value]
        summary.disputed_transactions = counts[ReconciliationStatus.DISPUTED.value]
        summary.ignored_transactions = counts[ReconciliationStatus.IGNORED.value]
        summary.partially_matched_transactions = counts[ReconciliationStatus.PARTIALLY_MATCHED.value]

        summary.total_variance_amount = sum((m.variance_amount for m in matches), Decimal("0"))
        summary.auto_matched_count = sum(1 for m in matches if m.auto_applied)
        summary.manual_matched_count = len(matches) - summary.auto_matched_count
        if matches:
            summary.average_matching_score = round(sum(m.confidence for m in matches) / len(matches), 4)

        if unmatched_days:
            summary.average_days_unmatched = round(sum(unmatched_days) / len(unmatched_days), 1)

        if summary.total_transactions:
            summary.matching_rate_percent = round(
                summary.matched_transactions / summary.total_transactions * 100, 2
            )

        return summary

    def unmatched_aging(
        self,
        account_id: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> pd.DataFrame:
        """Currently UNMATCHED lines, oldest first, larger amounts first within a day."""
        as_of = as_of or date.today()
        transactions = self.store.list_transactions(account_id, status=ReconciliationStatus.UNMATCHED)

        df = pd.DataFrame(
            [
                {
                    "id": tx.id,
                    "transaction_date": tx.transaction_date,
                    "reference": tx.reference,
                    "description": tx.description,
                    "amount": tx.amount,
                    "direction": tx.direction.value,
                    "days_unmatched": (as_of - tx.transaction_date).days,
                }
                for tx in transactions
            ],
            columns=AGING_COLUMNS,
        )
        if df.empty:
            return df

        df["_abs_amount"] = df["amount"].map(abs)
        df = df.sort_values(["days_unmatched", "_abs_amount"], ascending=[False, False], kind="mergesort")
        return df.drop(columns="_abs_amount").reset_index(drop=True)

    @staticmethod
    def summary_as_dict(summary: ReconciliationSummary) -> Dict[str, Any]:
        """Serialisable form of a summary (amounts as strings)."""
        return {
            "account_id": summary.account_id,
            "as_of": summary.as_of.isoformat(),
            "total_transactions": summary.total_transactions,
            "matched_transactions": summary.matched_transactions,
            "unmatched_transactions": summary.unmatched_transactions,
            "disputed_transactions": summary.disputed_transactions,
            "ignored_transactions": summary.ignored_transactions,
            "partially_matched_transactions": summary.partially_matched_transactions,
            "counts_by_status": dict(summary.counts_by_status),
            "total_credits": str(summary.total_credits),
            "total_debits": str(summary.total_debits),
            "total_variance_amount": str(summary.total_variance_amount),
            "auto_matched_count": summary.auto_matched_count,
            "manual_matched_count": summary.manual_matched_count,
            "average_matching_score": summary.average_matching_score,
            "average_days_unmatched": summary.average_days_unmatched,
            "matching_rate_percent": summary.matching_rate_percent,
        }
