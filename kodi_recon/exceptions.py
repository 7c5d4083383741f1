"""
Custom exceptions for the reconciliation matcher.

Provides structured error handling with specific exception types
for different error scenarios. Per-row ingestion problems are not
exceptions; they are reported as RowError records.
"""


class ReconError(Exception):
    """Base exception for reconciliation errors."""

    def __init__(self, message: str, code: str = None, details: dict = None):
        self.message = message
        self.code = code or "RECON_ERROR"
        self.details = details or {}
        super().__init__(self.message)


# ============== Configuration Errors ==============

class ConfigurationError(ReconError):
    """Error in configuration settings."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message,
            code="CONFIG_ERROR",
            details={"setting": setting}
        )


class InvalidRulesError(ConfigurationError):
    """Matching rules failed validation."""

    def __init__(self, setting: str, value, constraint: str):
        super().__init__(
            f"Invalid matching rule {setting}={value!r}: {constraint}",
            setting=setting
        )
        self.code = "INVALID_RULES"
        self.details["value"] = str(value)
        self.details["constraint"] = constraint


# ============== Data Errors ==============

class DataError(ReconError):
    """Error in data processing."""

    def __init__(self, message: str, field: str = None, value: str = None):
        super().__init__(
            message,
            code="DATA_ERROR",
            details={"field": field, "value": value}
        )


class ParseError(DataError):
    """Statement content could not be parsed at all."""

    def __init__(self, source: str, reason: str = None):
        message = f"Failed to parse {source}"
        if reason:
            message += f": {reason}"

        super().__init__(message, field="source", value=source)
        self.code = "PARSE_ERROR"


class DuplicateTransactionError(DataError):
    """A statement line with the same account, reference and date already exists."""

    def __init__(self, account_id: str, reference: str, transaction_date):
        super().__init__(
            f"Transaction {reference} on {transaction_date} already imported for account {account_id}",
            field="reference",
            value=reference
        )
        self.code = "DUPLICATE_TRANSACTION"
        self.details["account_id"] = account_id
        self.details["transaction_date"] = str(transaction_date)


# ============== Matching Errors ==============

class MatchingError(ReconError):
    """Error during transaction matching."""

    def __init__(self, message: str, external_id: str = None, internal_id: str = None):
        super().__init__(
            message,
            code="MATCHING_ERROR",
            details={"external_transaction_id": external_id, "internal_transaction_id": internal_id}
        )


class AlreadyMatchedError(MatchingError):
    """One side of a pairing already has an active match."""

    def __init__(self, external_id: str, internal_id: str, existing_match_id: str):
        super().__init__(
            f"Cannot match {external_id} -> {internal_id}: already matched by {existing_match_id}",
            external_id=external_id,
            internal_id=internal_id
        )
        self.code = "ALREADY_MATCHED"
        self.details["existing_match_id"] = existing_match_id


class ReconciliationInProgressError(MatchingError):
    """A matching run is already active for the account."""

    def __init__(self, account_id: str):
        super().__init__(f"A matching run is already in progress for account {account_id}")
        self.code = "RUN_IN_PROGRESS"
        self.details["account_id"] = account_id


# ============== State Errors ==============

class StateError(ReconError):
    """Reconciliation state could not be changed."""

    def __init__(self, message: str, external_id: str = None):
        super().__init__(
            message,
            code="STATE_ERROR",
            details={"external_transaction_id": external_id}
        )


class InvalidStatusTransitionError(StateError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, external_id: str, from_status, to_status, hint: str = None):
        message = f"Cannot move {external_id} from {from_status.value} to {to_status.value}"
        if hint:
            message += f" ({hint})"
        super().__init__(message, external_id=external_id)
        self.code = "INVALID_TRANSITION"
        self.details["from_status"] = from_status.value
        self.details["to_status"] = to_status.value


# ============== Lookup Errors ==============

class RecordNotFoundError(ReconError):
    """Record not found in the state store."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            f"Record {record_id} not found in {table}",
            code="RECORD_NOT_FOUND",
            details={"table": table, "record_id": record_id}
        )


class TransactionNotFoundError(RecordNotFoundError):
    """Statement line not registered with the store."""

    def __init__(self, external_id: str):
        super().__init__("external_transactions", external_id)
        self.code = "TRANSACTION_NOT_FOUND"


class MatchNotFoundError(RecordNotFoundError):
    """Committed match does not exist."""

    def __init__(self, match_id: str):
        super().__init__("matches", match_id)
        self.code = "MATCH_NOT_FOUND"


class LedgerEntryNotFoundError(RecordNotFoundError):
    """Ledger entry absent from the lookback window around a statement line."""

    def __init__(self, internal_id: str, around):
        super().__init__("ledger", internal_id)
        self.code = "LEDGER_ENTRY_NOT_FOUND"
        self.details["around"] = str(around)
