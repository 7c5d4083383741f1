"""
Structured logging configuration for the reconciliation matcher.

Every helper below emits one human-readable line plus an ``extra_data``
payload that the JSON formatter merges into the record, so the same call
works for console and log-shipping setups.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER = "kodi_recon"

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the event payload flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(getattr(record, "extra_data", {}))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False
) -> logging.Logger:
    """
    Configure the ``kodi_recon`` logger tree.

    Args:
        level: Level name such as DEBUG or WARNING
        log_file: Also write records to this file
        json_format: Emit JSON lines instead of plain text

    Returns:
        The package root logger
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT, "%Y-%m-%dT%H:%M:%S")

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.propagate = False
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child logger under the package root, e.g. ``kodi_recon.matching``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def _event(logger: logging.Logger, level: int, message: str, event: str, **fields: Any):
    fields["event"] = event
    logger.log(level, message, extra={"extra_data": fields})


def log_ingestion_complete(
    logger: logging.Logger,
    account_id: str,
    statement_format: str,
    valid: int,
    invalid: int,
    duplicates: int
):
    """Log the outcome of parsing one statement."""
    _event(
        logger, logging.INFO,
        f"Statement parsed for {account_id} ({statement_format}): "
        f"{valid} valid, {invalid} invalid, {duplicates} duplicate",
        "ingestion_complete",
        account_id=account_id,
        statement_format=statement_format,
        valid_rows=valid,
        invalid_rows=invalid,
        duplicate_rows=duplicates,
    )


def log_match_run_start(logger: logging.Logger, account_id: str, external_count: int, internal_count: int):
    _event(
        logger, logging.INFO,
        f"Match run started for {account_id}: {external_count} statement lines vs {internal_count} ledger entries",
        "match_run_start",
        account_id=account_id,
        external_transaction_count=external_count,
        internal_transaction_count=internal_count,
    )


def log_match_run_complete(
    logger: logging.Logger,
    account_id: str,
    matched: int,
    potential: int,
    conflicts: int,
    duration_seconds: float
):
    """Log matching run totals."""
    _event(
        logger, logging.INFO,
        f"Match run finished for {account_id}: {matched} committed, {potential} for review, "
        f"{conflicts} conflicts in {duration_seconds:.2f}s",
        "match_run_complete",
        account_id=account_id,
        matched_count=matched,
        potential_match_count=potential,
        conflict_count=conflicts,
        duration_seconds=duration_seconds,
    )


def log_match_committed(
    logger: logging.Logger,
    match_id: str,
    external_id: str,
    internal_id: str,
    confidence: float,
    auto_applied: bool
):
    _event(
        logger, logging.DEBUG,
        f"Committed {external_id} -> {internal_id} at {confidence:.2%} ({'auto' if auto_applied else 'operator'})",
        "match_committed",
        match_id=match_id,
        external_transaction_id=external_id,
        internal_transaction_id=internal_id,
        confidence=confidence,
        auto_applied=auto_applied,
    )


def log_commit_conflict(logger: logging.Logger, external_id: str, internal_id: str, reason: str):
    """Log a commit skipped during a matching run."""
    _event(
        logger, logging.WARNING,
        f"Skipped {external_id} -> {internal_id}: {reason}",
        "commit_conflict",
        external_transaction_id=external_id,
        internal_transaction_id=internal_id,
        reason=reason,
    )


def log_status_change(
    logger: logging.Logger,
    external_id: str,
    from_status: str,
    to_status: str,
    actor: str
):
    _event(
        logger, logging.INFO,
        f"{external_id}: {from_status} -> {to_status} by {actor}",
        "status_change",
        external_transaction_id=external_id,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
    )


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_ip: Optional[str] = None
):
    _event(
        logger, logging.INFO,
        f"{method} {path} -> {status_code} in {duration_ms:.0f}ms",
        "api_request",
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=round(duration_ms, 1),
        client_ip=client_ip,
    )


def log_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
):
    """Log an unexpected error with its traceback."""
    fields = dict(extra or {})
    fields["error_type"] = type(error).__name__
    if context:
        fields["context"] = context
    fields["event"] = "error"
    logger.error(
        f"{type(error).__name__} in {context or 'unknown context'}: {error}",
        exc_info=error,
        extra={"extra_data": fields}
    )
