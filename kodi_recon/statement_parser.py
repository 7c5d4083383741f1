"""Statement file parser and normalizer."""
import csv
import hashlib
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Dict, Any, Optional, Iterable, Set, Tuple

import pandas as pd
from dateutil import parser as date_parser

from .exceptions import ParseError
from .logging_config import get_logger, log_ingestion_complete
from .models import (
    ExternalTransaction, IngestionResult, IngestionErrorType, RowError,
    StatementFormat, TransactionDirection,
)

logger = get_logger("ingestion")

DuplicateKey = Tuple[str, str, date]


class StatementParser:
    """
    Parser for uploaded statement files.

    Supports two fixed column layouts:
    - GENERIC_CSV: date, description, amount, reference, [balance]
    - MOBILE_MONEY: receipt no., completion time, details, status,
      paid in / withdrawn, balance

    Parsing never raises for bad rows. Every row that fails validation is
    reported as a RowError and left out of the valid output.
    """

    # Positional column layouts
    COLUMN_LAYOUTS = {
        StatementFormat.GENERIC_CSV: {
            "date": 0,
            "description": 1,
            "amount": 2,
            "reference": 3,
            "balance": 4,
        },
        StatementFormat.MOBILE_MONEY: {
            "reference": 0,
            "date": 1,
            "description": 2,
            "status": 3,
            "amount": 4,
            "balance": 5,
        },
    }

    CHANNELS = {
        StatementFormat.GENERIC_CSV: "BANK_STATEMENT",
        StatementFormat.MOBILE_MONEY: "MPESA",
    }

    DATE_FORMATS = [
        "%Y-%m-%d",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d %H:%M",
        "%Y-%m-%dT%H:%M:%S",
        "%d/%m/%Y",
        "%d/%m/%Y %H:%M:%S",
        "%d/%m/%Y %H:%M",
        "%d-%m-%Y",
        "%d.%m.%Y",
        "%Y/%m/%d",
        "%d %b %Y",
        "%d %B %Y",
    ]

    FALLBACK_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))

    CURRENCY_PATTERN = re.compile(r"^(kshs|ksh|kes|\$)\.?", re.IGNORECASE)

    def parse(
        self,
        content: str,
        statement_format: StatementFormat,
        account_id: str,
        import_batch_id: Optional[str] = None,
        existing_keys: Optional[Iterable[DuplicateKey]] = None
    ) -> IngestionResult:
        """
        Parse raw statement text.

        Blank lines are skipped but still counted, so ``RowError.row`` is the
        data-row position in the file (the line after the header is row 1).

        Args:
            content: File content; the first non-blank line is the header
            statement_format: Column layout of the file
            account_id: Account the statement belongs to
            import_batch_id: Provenance id stamped on every transaction
            existing_keys: (account, reference, date) keys already imported

        Returns:
            IngestionResult with valid transactions and per-row errors
        """
        statement_format = self.coerce_format(statement_format)

        numbered = [(n, line) for n, line in enumerate(content.splitlines()) if line.strip()]
        if not numbered:
            return IngestionResult()

        reader = csv.reader(line for _, line in numbered)
        rows = [[cell.strip().replace('"', '') for cell in row] for row in reader]
        header, data_rows = rows[0], rows[1:]
        header_line = numbered[0][0]
        row_numbers = [n - header_line for n, _ in numbered[1:]]

        return self._parse_rows(
            header, data_rows, statement_format, account_id, import_batch_id, existing_keys,
            row_numbers=row_numbers
        )

    def parse_dataframe(
        self,
        df: pd.DataFrame,
        statement_format: StatementFormat,
        account_id: str,
        import_batch_id: Optional[str] = None,
        existing_keys: Optional[Iterable[DuplicateKey]] = None
    ) -> IngestionResult:
        """Parse statement rows already loaded into a DataFrame (header = columns)."""
        statement_format = self.coerce_format(statement_format)

        header = [str(col) for col in df.columns]
        cells = [
            [self._cell(value) for value in row]
            for row in df.itertuples(index=False, name=None)
        ]
        numbered = [(n, row) for n, row in enumerate(cells, start=1) if any(row)]

        return self._parse_rows(
            header, [row for _, row in numbered], statement_format, account_id, import_batch_id,
            existing_keys, row_numbers=[n for n, _ in numbered]
        )

    def _parse_rows(
        self,
        header: List[str],
        data_rows: List[List[str]],
        statement_format: StatementFormat,
        account_id: str,
        import_batch_id: Optional[str],
        existing_keys: Optional[Iterable[DuplicateKey]],
        row_numbers: List[int]
    ) -> IngestionResult:
        result = IngestionResult(total_rows=len(data_rows))
        seen_keys: Set[DuplicateKey] = set(existing_keys or ())
        layout = self.COLUMN_LAYOUTS[statement_format]

        for row_number, cells in zip(row_numbers, data_rows):
            fields = {name: self._column(cells, position) for name, position in layout.items()}

            row_errors = []

            tx_date = self._parse_date(fields["date"])
            if tx_date is None:
                row_errors.append(RowError(row_number, "date", "Invalid or missing date"))

            amount = self._parse_amount(fields["amount"])
            if amount is None or amount == 0:
                row_errors.append(RowError(row_number, "amount", "Invalid or missing amount"))

            description = self._normalize_description(fields["description"])
            if not description:
                row_errors.append(RowError(row_number, "description", "Missing description"))

            if row_errors:
                result.errors.extend(row_errors)
                continue

            reference = fields["reference"] or f"REF-{row_number}"
            key = (account_id, reference, tx_date)
            if key in seen_keys:
                result.errors.append(RowError(
                    row_number,
                    "reference",
                    f"Duplicate transaction {reference} on {tx_date.isoformat()}",
                    error_type=IngestionErrorType.DUPLICATE
                ))
                continue
            seen_keys.add(key)

            raw_data = {
                (header[i] if i < len(header) and header[i] else f"column_{i}"): value
                for i, value in enumerate(cells)
            }

            result.valid_transactions.append(ExternalTransaction(
                id=self._transaction_id(account_id, reference, tx_date, amount, description),
                account_id=account_id,
                transaction_date=tx_date,
                description=description,
                amount=amount,
                direction=TransactionDirection.CREDIT if amount >= 0 else TransactionDirection.DEBIT,
                reference=reference,
                channel=self.CHANNELS[statement_format],
                balance=self._parse_amount(fields["balance"]),
                import_batch_id=import_batch_id,
                raw_data=raw_data,
            ))

        log_ingestion_complete(
            logger,
            account_id,
            statement_format.value,
            valid=len(result.valid_transactions),
            invalid=result.failed_rows,
            duplicates=result.duplicate_rows
        )
        return result

    def coerce_format(self, statement_format) -> StatementFormat:
        if isinstance(statement_format, StatementFormat):
            return statement_format
        try:
            return StatementFormat(str(statement_format).upper())
        except ValueError:
            raise ParseError("statement", f"unsupported format {statement_format!r}")

    @staticmethod
    def _column(cells: List[str], position: int) -> str:
        return cells[position] if position < len(cells) else ""

    @staticmethod
    def _cell(value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str) and pd.isna(value):
            return ""
        return str(value).strip()

    @staticmethod
    def _transaction_id(
        account_id: str,
        reference: str,
        tx_date: date,
        amount: Decimal,
        description: str
    ) -> str:
        """Content-keyed id so re-parsing a file yields the same ids."""
        key = "|".join([account_id, reference, tx_date.isoformat(), format(amount, "f"), description])
        return "ext-" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]

    def _parse_date(self, value: str) -> Optional[date]:
        """Parse date from the supported formats, falling back to dateutil."""
        if not value:
            return None

        for fmt in self.DATE_FORMATS:
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                continue

        if not any(ch.isdigit() for ch in value):
            return None

        # dateutil fills missing parts from its default, so a value that
        # parses differently under two defaults lacks a day, month or year
        try:
            first = date_parser.parse(value, dayfirst=True, default=self.FALLBACK_DEFAULTS[0])
            second = date_parser.parse(value, dayfirst=True, default=self.FALLBACK_DEFAULTS[1])
        except (ValueError, OverflowError):
            return None
        if first.date() != second.date():
            return None
        return first.date()

    def _parse_amount(self, value: str) -> Optional[Decimal]:
        """Parse a signed amount; None when missing or not numeric."""
        if not value:
            return None

        value_str = re.sub(r"\s", "", value)
        value_str = self.CURRENCY_PATTERN.sub("", value_str)

        # Accounting format: (1,234.00) is negative
        if value_str.startswith("(") and value_str.endswith(")"):
            value_str = "-" + value_str[1:-1]

        value_str = value_str.replace(",", "")

        try:
            amount = Decimal(value_str)
        except InvalidOperation:
            return None

        if not amount.is_finite():
            return None
        return amount

    @staticmethod
    def _normalize_description(description: str) -> str:
        return " ".join(description.split())
