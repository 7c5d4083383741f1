"""Data models for statement reconciliation."""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
import uuid


class TransactionDirection(Enum):
    """Direction of money movement on the statement."""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class StatementFormat(Enum):
    """Supported statement layouts."""
    GENERIC_CSV = "GENERIC_CSV"
    MOBILE_MONEY = "MOBILE_MONEY"


class EntityKind(Enum):
    """Kind of ledger entry a statement line can be matched to."""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    PAYMENT = "PAYMENT"


class MatchReason(Enum):
    """Why a pairing was proposed."""
    EXACT_AMOUNT_AND_DATE = "EXACT_AMOUNT_AND_DATE"
    AMOUNT_MATCH_WITH_DATE_TOLERANCE = "AMOUNT_MATCH_WITH_DATE_TOLERANCE"
    AMOUNT_AND_DESCRIPTION_SIMILARITY = "AMOUNT_AND_DESCRIPTION_SIMILARITY"
    NO_OBVIOUS_MATCH = "NO_OBVIOUS_MATCH"
    MANUAL = "MANUAL"


class ReconciliationStatus(Enum):
    """Lifecycle state of a statement line."""
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    PARTIALLY_MATCHED = "PARTIALLY_MATCHED"
    DISPUTED = "DISPUTED"
    IGNORED = "IGNORED"
    MANUAL_MATCH = "MANUAL_MATCH"

    @property
    def is_matched(self) -> bool:
        return self in (ReconciliationStatus.MATCHED, ReconciliationStatus.MANUAL_MATCH)


class ConfidenceLevel(Enum):
    """Display bucket for a matching score."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MANUAL = "MANUAL"

    @classmethod
    def from_score(cls, score: float, manual: bool = False) -> "ConfidenceLevel":
        if manual:
            return cls.MANUAL
        if score >= 0.9:
            return cls.HIGH
        if score >= 0.7:
            return cls.MEDIUM
        return cls.LOW


class IngestionErrorType(Enum):
    """Classes of per-row ingestion problems."""
    VALIDATION = "validation"
    DUPLICATE = "duplicate"


@dataclass
class ExternalTransaction:
    """A line from an imported bank or mobile-money statement."""
    id: str
    account_id: str
    transaction_date: date
    description: str
    amount: Decimal
    direction: TransactionDirection = TransactionDirection.CREDIT
    reference: str = ""
    value_date: Optional[date] = None
    channel: str = "BANK_STATEMENT"
    balance: Optional[Decimal] = None
    import_batch_id: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)

    @property
    def duplicate_key(self) -> Tuple[str, str, date]:
        return (self.account_id, self.reference, self.transaction_date)

    def is_credit(self) -> bool:
        return self.direction == TransactionDirection.CREDIT


@dataclass
class InternalTransaction:
    """An income or expense entry already recorded in the ledger."""
    id: str
    amount: Decimal
    transaction_date: date
    description: str = ""
    reference: str = ""
    kind: EntityKind = EntityKind.INCOME
    party: Optional[str] = None  # tenant or vendor
    account_id: Optional[str] = None

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)


@dataclass
class MatchCandidate:
    """A proposed pairing produced by one matching run."""
    external: ExternalTransaction
    internal: InternalTransaction
    confidence: float
    reason: MatchReason
    amount_difference: Decimal = Decimal("0")
    days_apart: int = 0
    description_similarity: float = 0.0
    rule_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.external.id, self.internal.id)

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return ConfidenceLevel.from_score(self.confidence)


@dataclass
class Match:
    """A committed pairing between one external and one internal transaction."""
    external_id: str
    internal_id: str
    confidence: float
    auto_applied: bool
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    reason: Optional[MatchReason] = None
    internal_kind: Optional[EntityKind] = None
    variance_amount: Decimal = Decimal("0")
    is_active: bool = True
    committed_at: datetime = field(default_factory=datetime.now)
    committed_by: str = "system"
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return ConfidenceLevel.from_score(self.confidence, manual=self.reason == MatchReason.MANUAL)


@dataclass
class StatusTransition:
    """One audited status change of a statement line."""
    external_id: str
    from_status: Optional[ReconciliationStatus]
    to_status: ReconciliationStatus
    actor: str
    changed_at: datetime = field(default_factory=datetime.now)
    note: str = ""


@dataclass
class RowError:
    """A problem with one statement row."""
    row: int
    field: str
    message: str
    error_type: IngestionErrorType = IngestionErrorType.VALIDATION


@dataclass
class IngestionResult:
    """Output of parsing one statement file."""
    valid_transactions: List[ExternalTransaction] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    total_rows: int = 0

    @property
    def failed_rows(self) -> int:
        return len({
            e.row for e in self.errors if e.error_type == IngestionErrorType.VALIDATION
        })

    @property
    def duplicate_rows(self) -> int:
        return len({
            e.row for e in self.errors if e.error_type == IngestionErrorType.DUPLICATE
        })


@dataclass
class ImportBatch:
    """Provenance record of one statement import."""
    account_id: str
    statement_format: StatementFormat
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    file_name: Optional[str] = None
    total_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    duplicate_rows: int = 0
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    imported_by: str = "system"
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class MatchRunResult:
    """Outcome of one matching run for one account."""
    account_id: str
    matched: int = 0
    potential_matches: List[MatchCandidate] = field(default_factory=list)
    committed: List[Match] = field(default_factory=list)
    skipped_conflicts: int = 0
    unmatched_external_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    processing_time_seconds: float = 0.0


@dataclass
class ReconciliationSummary:
    """Read-side rollup of reconciliation state."""
    account_id: Optional[str] = None
    as_of: date = field(default_factory=date.today)

    # Counts
    total_transactions: int = 0
    matched_transactions: int = 0
    unmatched_transactions: int = 0
    disputed_transactions: int = 0
    ignored_transactions: int = 0
    partially_matched_transactions: int = 0
    counts_by_status: Dict[str, int] = field(default_factory=dict)

    # Amounts
    total_credits: Decimal = Decimal("0")
    total_debits: Decimal = Decimal("0")
    total_variance_amount: Decimal = Decimal("0")

    # Matching
    auto_matched_count: int = 0
    manual_matched_count: int = 0
    average_matching_score: float = 0.0
    average_days_unmatched: float = 0.0
    matching_rate_percent: float = 0.0
