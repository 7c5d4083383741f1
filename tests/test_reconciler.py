"""
Tests for the reconciliation service.
"""
import threading
import pytest
from datetime import date
from decimal import Decimal

from kodi_recon.config import Config
from kodi_recon.exceptions import (
    InvalidRulesError, LedgerEntryNotFoundError, MatchingError, ReconciliationInProgressError,
)
from kodi_recon.ledger import InMemoryLedgerProvider, LedgerProvider
from kodi_recon.models import (
    EntityKind, MatchReason, ReconciliationStatus, StatementFormat,
)
from kodi_recon.reconciler import ReconciliationService, build_service, create_sample_data
from kodi_recon.state_store import SQLiteStateStore

from conftest import ACCOUNT_ID

Status = ReconciliationStatus


def _ids_by_reference(store, account_id=ACCOUNT_ID):
    return {tx.reference: tx.id for tx in store.list_transactions(account_id)}


@pytest.fixture
def imported(service, statement_csv):
    """Service with the three-line statement already imported."""
    service.import_statement(ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV, file_name="march.csv")
    return service


class BlockingLedger(LedgerProvider):
    """Ledger whose snapshot call waits until released."""

    def __init__(self, entries):
        self.inner = InMemoryLedgerProvider(entries)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_candidates(self, account_id, date_from, date_to):
        self.entered.set()
        self.release.wait(timeout=5)
        return self.inner.get_candidates(account_id, date_from, date_to)


class StaleClaimsStore(SQLiteStateStore):
    """Store that never reports committed ledger ids, so the engine re-proposes them."""

    def active_internal_ids(self):
        return set()


class TestImport:
    """Tests for statement import."""

    def test_import_registers_lines(self, service, statement_csv):
        outcome = service.import_statement(
            ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV, file_name="march.csv", actor="ops"
        )

        assert outcome.registered == 3
        assert outcome.batch.successful_rows == 3
        assert outcome.batch.date_from == date(2024, 3, 10)
        assert outcome.batch.date_to == date(2024, 3, 15)
        assert outcome.batch.imported_by == "ops"
        assert {tx.import_batch_id for tx in service.store.list_transactions(ACCOUNT_ID)} == {outcome.batch.id}
        assert all(status == Status.UNMATCHED for _, status in service.store.list_statuses(ACCOUNT_ID))

    def test_reimport_is_all_duplicates(self, imported, statement_csv):
        outcome = imported.import_statement(ACCOUNT_ID, statement_csv, "GENERIC_CSV")

        assert outcome.registered == 0
        assert outcome.result.duplicate_rows == 3
        assert len(imported.store.list_transactions(ACCOUNT_ID)) == 3
        assert len(imported.store.list_import_batches(ACCOUNT_ID)) == 2

    def test_mobile_money_import(self, service, mpesa_csv):
        outcome = service.import_statement(ACCOUNT_ID, mpesa_csv, "mobile_money")

        assert outcome.registered == 2
        assert outcome.batch.statement_format == StatementFormat.MOBILE_MONEY


class TestRunMatch:
    """Tests for matching runs."""

    def test_run_commits_and_proposes(self, imported):
        refs = _ids_by_reference(imported.store)

        result = imported.run_match(ACCOUNT_ID)

        assert result.matched == 1
        committed = result.committed[0]
        assert (committed.external_id, committed.internal_id) == (refs["MP001"], "INC-1")
        assert committed.auto_applied is True
        assert committed.reason == MatchReason.EXACT_AMOUNT_AND_DATE

        assert [c.pair for c in result.potential_matches] == [(refs["MP002"], "INC-2")]
        assert result.potential_matches[0].reason == MatchReason.AMOUNT_MATCH_WITH_DATE_TOLERANCE
        assert result.unmatched_external_ids == [refs["WTR55"]]

        assert imported.store.get_status(refs["MP001"]) == Status.MATCHED
        assert imported.store.get_status(refs["MP002"]) == Status.UNMATCHED

    def test_rerun_is_idempotent(self, imported):
        first = imported.run_match(ACCOUNT_ID)
        second = imported.run_match(ACCOUNT_ID)

        assert second.matched == 0
        assert second.skipped_conflicts == 0
        assert [c.pair for c in second.potential_matches] == [c.pair for c in first.potential_matches]
        assert len(imported.store.list_matches(ACCOUNT_ID)) == 1

    def test_no_backlog(self, service):
        result = service.run_match(ACCOUNT_ID)
        assert result.matched == 0
        assert result.potential_matches == []

    def test_invalid_rules_rejected_before_matching(self, imported, rules):
        with pytest.raises(InvalidRulesError) as exc_info:
            imported.run_match(ACCOUNT_ID, rules=rules.replace(amount_tolerance=Decimal("-1")))

        assert exc_info.value.code == "INVALID_RULES"
        assert imported.store.list_matches() == []

    def test_run_specific_rules(self, imported, rules):
        # wider auto-approve band picks up the two-day-late payment too
        result = imported.run_match(ACCOUNT_ID, rules=rules.replace(auto_approve_threshold=0.8))
        assert result.matched == 2
        assert result.potential_matches == []

    def test_one_ledger_entry_claimed_once(self, store, make_internal, rules):
        service = ReconciliationService(store, InMemoryLedgerProvider([make_internal()]), rules=rules)
        service.import_statement(
            ACCOUNT_ID,
            "Date,Description,Amount,Reference\n"
            "2024-03-10,Rent payment,5000.00,MP001\n"
            "2024-03-10,Rent payment,5000.00,MP002\n",
            StatementFormat.GENERIC_CSV,
        )

        result = service.run_match(ACCOUNT_ID)

        assert result.matched == 1
        assert len(result.unmatched_external_ids) == 1
        assert store.active_internal_ids() == {"INC-1"}
        # ties go to the lower external id
        assert result.committed[0].external_id == min(_ids_by_reference(store).values())

    def test_concurrent_run_for_same_account_rejected(self, store, statement_csv, ledger_entries, rules):
        ledger = BlockingLedger(ledger_entries)
        service = ReconciliationService(store, ledger, rules=rules)
        service.import_statement(ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV)

        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(result=service.run_match(ACCOUNT_ID)))
        worker.start()
        try:
            assert ledger.entered.wait(timeout=5)

            with pytest.raises(ReconciliationInProgressError) as exc_info:
                service.run_match(ACCOUNT_ID)
            assert exc_info.value.code == "RUN_IN_PROGRESS"

            # other accounts are not blocked
            assert service.run_match("OTHER-ACC").matched == 0
        finally:
            ledger.release.set()
            worker.join(timeout=5)

        assert outcome["result"].matched == 1
        # lock is released once the run finishes
        assert service.run_match(ACCOUNT_ID).matched == 0

    def test_commit_conflict_is_skipped(self, ledger_entries, statement_csv, rules):
        store = StaleClaimsStore()
        service = ReconciliationService(store, InMemoryLedgerProvider(ledger_entries), rules=rules)
        service.import_statement(ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV)
        service.run_match(ACCOUNT_ID)
        service.import_statement(
            ACCOUNT_ID,
            "Date,Description,Amount,Reference\n2024-03-10,Rent payment,5000.00,MP009\n",
            StatementFormat.GENERIC_CSV,
        )
        late_id = _ids_by_reference(store)["MP009"]

        result = service.run_match(ACCOUNT_ID)

        assert result.matched == 0
        assert result.skipped_conflicts == 1
        assert late_id in result.unmatched_external_ids
        assert "already matched" in result.errors[0]
        assert store.get_status(late_id) == Status.UNMATCHED
        store.close()


class TestReview:
    """Tests for operator review and overrides."""

    def test_confirm_candidate(self, imported):
        candidate = imported.run_match(ACCOUNT_ID).potential_matches[0]

        match = imported.confirm_candidate(candidate, actor="ops")

        assert match.auto_applied is False
        assert match.committed_by == "ops"
        assert imported.store.get_status(candidate.external.id) == Status.MATCHED

    def test_confirm_pair_rescores(self, imported):
        imported.run_match(ACCOUNT_ID)
        mp002 = _ids_by_reference(imported.store)["MP002"]

        match = imported.confirm_pair(mp002, "INC-2", actor="ops")

        assert match.internal_id == "INC-2"
        assert match.reason == MatchReason.AMOUNT_MATCH_WITH_DATE_TOLERANCE
        assert 0.8 <= match.confidence < 0.9

    @pytest.mark.parametrize("internal_id", ["INC-1", "INC-404"])
    def test_confirm_pair_rejects_non_candidates(self, imported, internal_id):
        wtr55 = _ids_by_reference(imported.store)["WTR55"]

        with pytest.raises(MatchingError):
            imported.confirm_pair(wtr55, internal_id, actor="ops")
        assert imported.store.get_status(wtr55) == Status.UNMATCHED

    def test_manual_match_records_variance(self, store, statement_csv, ledger_entries, make_internal, rules):
        water = make_internal(
            id="EXP-1", amount="1150.00", tx_date=date(2024, 3, 14), description="Water", kind=EntityKind.EXPENSE
        )
        service = ReconciliationService(store, InMemoryLedgerProvider(ledger_entries + [water]), rules=rules)
        service.import_statement(ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV)
        wtr55 = _ids_by_reference(store)["WTR55"]

        match = service.manual_match(wtr55, "EXP-1", actor="ops", note="meter reading differs")

        assert match.variance_amount == Decimal("50.00")
        assert match.internal_kind == EntityKind.EXPENSE
        assert store.get_status(wtr55) == Status.MANUAL_MATCH
        assert service.history(wtr55)[-1].note == "meter reading differs"

    def test_manual_match_to_unknown_ledger_entry(self, imported):
        wtr55 = _ids_by_reference(imported.store)["WTR55"]

        with pytest.raises(LedgerEntryNotFoundError) as exc_info:
            imported.manual_match(wtr55, "EXP-404", actor="ops")

        assert exc_info.value.code == "LEDGER_ENTRY_NOT_FOUND"
        assert exc_info.value.details["record_id"] == "EXP-404"
        assert imported.store.get_status(wtr55) == Status.UNMATCHED
        assert imported.store.list_matches(ACCOUNT_ID, active_only=False) == []

    def test_confirm_pair_with_run_rules(self, store, statement_csv, ledger_entries, make_internal, rules):
        water = make_internal(
            id="EXP-7", amount="1200.00", tx_date=date(2024, 3, 10), description="KPLC token", kind=EntityKind.EXPENSE
        )
        service = ReconciliationService(store, InMemoryLedgerProvider(ledger_entries + [water]), rules=rules)
        service.import_statement(ACCOUNT_ID, statement_csv, StatementFormat.GENERIC_CSV)
        wtr55 = _ids_by_reference(store)["WTR55"]
        wide = rules.replace(date_tolerance_days=7)

        with pytest.raises(MatchingError):
            service.confirm_pair(wtr55, "EXP-7", actor="ops")

        match = service.confirm_pair(wtr55, "EXP-7", actor="ops", rules=wide)

        assert match.auto_applied is False
        assert match.reason == MatchReason.AMOUNT_MATCH_WITH_DATE_TOLERANCE
        assert store.get_status(wtr55) == Status.MATCHED

    def test_unmatch_then_rematch(self, imported):
        first = imported.run_match(ACCOUNT_ID).committed[0]

        imported.unmatch(first.id, actor="ops")
        assert imported.store.get_status(first.external_id) == Status.UNMATCHED

        second = imported.run_match(ACCOUNT_ID).committed[0]
        assert second.id != first.id
        assert (second.external_id, second.internal_id) == (first.external_id, first.internal_id)

    def test_set_status_and_history(self, imported):
        wtr55 = _ids_by_reference(imported.store)["WTR55"]

        imported.set_status(wtr55, Status.DISPUTED, actor="ops", note="not ours")

        assert [t.to_status for t in imported.history(wtr55)] == [Status.UNMATCHED, Status.DISPUTED]
        # disputed lines are left out of the next run
        assert wtr55 not in imported.run_match(ACCOUNT_ID).unmatched_external_ids


class TestReports:
    """Tests for reporting through the service."""

    def test_unmatched_report_hints(self, imported):
        imported.run_match(ACCOUNT_ID)
        refs = _ids_by_reference(imported.store)

        df = imported.unmatched_report(ACCOUNT_ID, as_of=date(2024, 3, 31))

        assert list(df["id"]) == [refs["MP002"], refs["WTR55"]]
        assert list(df["potential_match_type"]) == ["INCOME_MATCH_POSSIBLE", "NO_OBVIOUS_MATCH"]

    def test_unmatched_report_empty(self, service):
        df = service.unmatched_report(ACCOUNT_ID)
        assert df.empty
        assert "potential_match_type" in df.columns

    def test_summary(self, imported):
        imported.run_match(ACCOUNT_ID)
        summary = imported.get_summary(ACCOUNT_ID)

        assert summary.total_transactions == 3
        assert summary.matched_transactions == 1
        assert summary.auto_matched_count == 1


class TestSampleData:
    """Tests for the sample data generator."""

    def test_deterministic_with_seed(self):
        start = date(2024, 1, 1)
        assert create_sample_data(rows=10, start=start, seed=3) == create_sample_data(rows=10, start=start, seed=3)

    def test_sample_run(self, store, rules):
        csv_text, ledger = create_sample_data(rows=12, start=date(2024, 1, 1), seed=7)
        service = ReconciliationService(store, InMemoryLedgerProvider(ledger), rules=rules)

        outcome = service.import_statement(ACCOUNT_ID, csv_text, StatementFormat.GENERIC_CSV)
        result = service.run_match(ACCOUNT_ID)

        assert outcome.registered == 13
        assert any(entry.id == "EXP-3001" for entry in ledger)
        assert result.matched >= 1
        assert result.matched + len(result.potential_matches) + len(result.unmatched_external_ids) == 13


class TestBuildService:
    """Tests for wiring from configuration."""

    def test_in_memory(self, rules):
        service = build_service(Config(matching=rules, database_url="sqlite:///:memory:"))
        try:
            service.import_statement(
                ACCOUNT_ID, "Date,Description,Amount,Reference\n2024-03-10,Rent,5000,MP001\n", "GENERIC_CSV"
            )
            result = service.run_match(ACCOUNT_ID)
            assert result.matched == 0
            assert len(result.unmatched_external_ids) == 1
        finally:
            service.close()
