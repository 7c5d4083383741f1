"""
Tests for the command-line interface.
"""
import pytest
from click.testing import CliRunner

from kodi_recon.cli import cli
from kodi_recon.models import ReconciliationStatus
from kodi_recon.state_store import SQLiteStateStore

from conftest import ACCOUNT_ID


@pytest.fixture
def workspace(tmp_path, statement_csv):
    """Statement file, ledger export and database URL in a temp directory."""
    statement = tmp_path / "march.csv"
    statement.write_text(statement_csv)

    ledger = tmp_path / "ledger.csv"
    ledger.write_text(
        "id,date,amount,description,reference,kind\n"
        "INC-1,2024-03-10,5000.00,Rent - Unit 4,,INCOME\n"
        "INC-2,2024-03-10,7500.00,Rent - Unit 7,,INCOME\n"
    )

    db_path = tmp_path / "recon.db"
    return {
        "statement": str(statement),
        "ledger": str(ledger),
        "db_path": str(db_path),
        "db": f"sqlite:///{db_path}",
    }


def _invoke(workspace, *args):
    return CliRunner().invoke(cli, ["--db", workspace["db"], *args])


def _ids_by_reference(workspace):
    store = SQLiteStateStore(workspace["db_path"])
    try:
        return {tx.reference: tx.id for tx in store.list_transactions(ACCOUNT_ID)}
    finally:
        store.close()


class TestCli:
    """End-to-end runs of the recon commands against a file database."""

    def test_import_match_and_report(self, workspace):
        result = _invoke(workspace, "import", workspace["statement"], "--account", ACCOUNT_ID)
        assert result.exit_code == 0, result.output
        assert "Imported" in result.output

        result = _invoke(workspace, "match", "--account", ACCOUNT_ID, "--ledger-csv", workspace["ledger"])
        assert result.exit_code == 0, result.output
        assert "Auto-matched" in result.output

        store = SQLiteStateStore(workspace["db_path"])
        try:
            refs = {tx.reference: tx.id for tx in store.list_transactions(ACCOUNT_ID)}
            assert store.get_status(refs["MP001"]) == ReconciliationStatus.MATCHED
        finally:
            store.close()

        result = _invoke(workspace, "summary", "--account", ACCOUNT_ID)
        assert result.exit_code == 0, result.output
        assert "Match Rate" in result.output

    def test_set_status_and_history(self, workspace):
        _invoke(workspace, "import", workspace["statement"], "--account", ACCOUNT_ID)
        wtr55 = _ids_by_reference(workspace)["WTR55"]

        result = _invoke(workspace, "set-status", wtr55, "disputed", "--note", "not ours")
        assert result.exit_code == 0, result.output
        assert "DISPUTED" in result.output

        result = _invoke(workspace, "history", wtr55)
        assert result.exit_code == 0, result.output
        assert "DISPUTED" in result.output

    def test_invalid_transition_exits_nonzero(self, workspace):
        _invoke(workspace, "import", workspace["statement"], "--account", ACCOUNT_ID)
        wtr55 = _ids_by_reference(workspace)["WTR55"]
        _invoke(workspace, "set-status", wtr55, "IGNORED")

        result = _invoke(workspace, "set-status", wtr55, "DISPUTED")

        assert result.exit_code == 1
        assert "INVALID_TRANSITION" in result.output

    def test_unknown_transaction_history(self, workspace):
        result = _invoke(workspace, "history", "ext-missing")

        assert result.exit_code == 1
        assert "TRANSACTION_NOT_FOUND" in result.output

    def test_matched_statuses_are_not_choices(self, workspace):
        result = _invoke(workspace, "set-status", "ext-1", "MATCHED")
        assert result.exit_code == 2
