"""
FastAPI backend for the statement reconciliation matcher.

Provides REST API endpoints for:
- Uploading bank and mobile-money statements
- Running matching for an account
- Confirming, manually creating and revoking matches
- Disputing, ignoring and reopening statement lines
- Summary and unmatched aging reports

Serve with: uvicorn kodi_recon.api:create_app --factory
"""
from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
import time

from . import __version__
from .config import Config, MatchingRules, load_config
from .exceptions import ReconError
from .logging_config import get_logger, log_api_request, log_error, setup_logging
from .models import (
    Match, MatchCandidate, ReconciliationStatus, StatementFormat, StatusTransition,
)
from .reconciler import ReconciliationService, build_service

logger = get_logger("api")

# Error code -> HTTP status
ERROR_STATUS_CODES = {
    "TRANSACTION_NOT_FOUND": 404,
    "MATCH_NOT_FOUND": 404,
    "RECORD_NOT_FOUND": 404,
    "LEDGER_ENTRY_NOT_FOUND": 404,
    "ALREADY_MATCHED": 409,
    "RUN_IN_PROGRESS": 409,
    "INVALID_TRANSITION": 409,
    "DUPLICATE_TRANSACTION": 409,
    "MATCHING_ERROR": 409,
    "INVALID_RULES": 422,
    "PARSE_ERROR": 422,
    "CONFIG_ERROR": 422,
    "DATA_ERROR": 422,
}


# ============== Pydantic Models ==============

class ConfigStatus(BaseModel):
    amount_tolerance: str
    amount_tolerance_percentage: str
    date_tolerance_days: int
    description_similarity_threshold: float
    minimum_confidence: float
    auto_approve_threshold: float
    ledger_lookback_days: int


class RowErrorDetail(BaseModel):
    row: int
    field: str
    message: str
    error_type: str


class ImportResponse(BaseModel):
    batch_id: str
    account_id: str
    statement_format: str
    file_name: Optional[str] = None
    total_rows: int
    successful_rows: int
    failed_rows: int
    duplicate_rows: int
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    errors: List[RowErrorDetail] = []


class RuleOverrides(BaseModel):
    """Optional per-request replacements for the configured matching rules."""
    amount_tolerance: Optional[float] = Field(None, ge=0)
    amount_tolerance_percentage: Optional[float] = Field(None, ge=0)
    date_tolerance_days: Optional[int] = Field(None, ge=0)
    description_similarity_threshold: Optional[float] = Field(None, ge=0, le=1)
    minimum_confidence: Optional[float] = Field(None, ge=0, le=1)
    auto_approve_threshold: Optional[float] = Field(None, ge=0, le=1)

    def apply_to(self, rules: MatchingRules) -> MatchingRules:
        return rules.replace(
            amount_tolerance=self.amount_tolerance,
            amount_tolerance_percentage=self.amount_tolerance_percentage,
            date_tolerance_days=self.date_tolerance_days,
            description_similarity_threshold=self.description_similarity_threshold,
            minimum_confidence=self.minimum_confidence,
            auto_approve_threshold=self.auto_approve_threshold,
        )


class MatchRunRequest(RuleOverrides):
    actor: str = "system"


class CandidateDetail(BaseModel):
    external_id: str
    internal_id: str
    internal_kind: str
    transaction_date: str
    amount: str
    description: str
    confidence: float
    confidence_level: str
    reason: str
    amount_difference: str
    days_apart: int
    description_similarity: float


class MatchDetail(BaseModel):
    match_id: str
    external_id: str
    internal_id: str
    internal_kind: Optional[str] = None
    confidence: float
    confidence_level: str
    reason: Optional[str] = None
    auto_applied: bool
    is_active: bool
    variance_amount: str
    committed_at: str
    committed_by: str
    revoked_at: Optional[str] = None
    revoked_by: Optional[str] = None


class MatchRunResponse(BaseModel):
    account_id: str
    matched: int
    committed: List[MatchDetail]
    potential_matches: List[CandidateDetail]
    unmatched_external_ids: List[str]
    skipped_conflicts: int
    errors: List[str]
    processing_time_seconds: float


class ConfirmMatchRequest(RuleOverrides):
    external_id: str
    internal_id: str
    actor: str


class ManualMatchRequest(BaseModel):
    external_id: str
    internal_id: str
    actor: str
    note: Optional[str] = None


class RevokeMatchRequest(BaseModel):
    actor: str = "system"


class StatusChangeRequest(BaseModel):
    status: ReconciliationStatus
    actor: str = "system"
    note: Optional[str] = None


class TransactionDetail(BaseModel):
    id: str
    account_id: str
    transaction_date: str
    description: str
    amount: str
    direction: str
    reference: str
    channel: str
    status: str


class TransitionDetail(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    actor: str
    changed_at: str
    note: str


def _match_detail(match: Match) -> MatchDetail:
    return MatchDetail(
        match_id=match.id,
        external_id=match.external_id,
        internal_id=match.internal_id,
        internal_kind=match.internal_kind.value if match.internal_kind else None,
        confidence=match.confidence,
        confidence_level=match.confidence_level.value,
        reason=match.reason.value if match.reason else None,
        auto_applied=match.auto_applied,
        is_active=match.is_active,
        variance_amount=str(match.variance_amount),
        committed_at=match.committed_at.isoformat(),
        committed_by=match.committed_by,
        revoked_at=match.revoked_at.isoformat() if match.revoked_at else None,
        revoked_by=match.revoked_by,
    )


def _candidate_detail(candidate: MatchCandidate) -> CandidateDetail:
    return CandidateDetail(
        external_id=candidate.external.id,
        internal_id=candidate.internal.id,
        internal_kind=candidate.internal.kind.value,
        transaction_date=candidate.external.transaction_date.isoformat(),
        amount=str(candidate.external.amount),
        description=candidate.external.description,
        confidence=candidate.confidence,
        confidence_level=candidate.confidence_level.value,
        reason=candidate.reason.value,
        amount_difference=str(candidate.amount_difference),
        days_apart=candidate.days_apart,
        description_similarity=candidate.description_similarity,
    )


def _transition_detail(t: StatusTransition) -> TransitionDetail:
    return TransitionDetail(
        from_status=t.from_status.value if t.from_status else None,
        to_status=t.to_status.value,
        actor=t.actor,
        changed_at=t.changed_at.isoformat(),
        note=t.note,
    )


def create_app(
    service: Optional[ReconciliationService] = None,
    config: Optional[Config] = None
) -> FastAPI:
    """
    Build the API around a reconciliation service.

    When no service is given, one is wired from the environment
    configuration (DATABASE_URL and matching rule settings).
    """
    if service is None:
        config = config or load_config()
        setup_logging(config.log_level, json_format=config.log_json)
        service = build_service(config)

    app = FastAPI(
        title="Statement Reconciliation API",
        description="Match bank and mobile-money statements against the income and expense ledger",
        version=__version__
    )
    app.state.service = service

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Log request timing."""
        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        log_api_request(
            logger,
            request.method,
            str(request.url.path),
            response.status_code,
            duration_ms,
            request.client.host if request.client else None
        )
        return response

    @app.exception_handler(ReconError)
    async def recon_error_handler(request: Request, exc: ReconError):
        status_code = ERROR_STATUS_CODES.get(exc.code, 500)
        if status_code >= 500:
            log_error(logger, exc, str(request.url.path))
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.code, "details": exc.details}
        )

    # ------------ Info ------------

    @app.get("/")
    async def root():
        return {
            "name": "Statement Reconciliation API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/api/status", response_model=ConfigStatus)
    async def get_status():
        """Get the active matching configuration."""
        rules = service.rules
        return ConfigStatus(
            amount_tolerance=str(rules.amount_tolerance),
            amount_tolerance_percentage=str(rules.amount_tolerance_percentage),
            date_tolerance_days=rules.date_tolerance_days,
            description_similarity_threshold=rules.description_similarity_threshold,
            minimum_confidence=rules.minimum_confidence,
            auto_approve_threshold=rules.auto_approve_threshold,
            ledger_lookback_days=service.lookback_days,
        )

    # ------------ Statements ------------

    @app.post("/api/accounts/{account_id}/statements", response_model=ImportResponse)
    async def upload_statement(
        account_id: str,
        file: UploadFile = File(...),
        statement_format: StatementFormat = Query(StatementFormat.GENERIC_CSV),
        actor: str = Query("system")
    ):
        """Import an uploaded statement file."""
        content = (await file.read()).decode("utf-8-sig")
        outcome = service.import_statement(
            account_id, content, statement_format, file_name=file.filename, actor=actor
        )

        batch = outcome.batch
        return ImportResponse(
            batch_id=batch.id,
            account_id=batch.account_id,
            statement_format=batch.statement_format.value,
            file_name=batch.file_name,
            total_rows=batch.total_rows,
            successful_rows=batch.successful_rows,
            failed_rows=batch.failed_rows,
            duplicate_rows=batch.duplicate_rows,
            date_from=batch.date_from.isoformat() if batch.date_from else None,
            date_to=batch.date_to.isoformat() if batch.date_to else None,
            errors=[
                RowErrorDetail(row=e.row, field=e.field, message=e.message, error_type=e.error_type.value)
                for e in outcome.result.errors
            ],
        )

    @app.get("/api/accounts/{account_id}/transactions", response_model=List[TransactionDetail])
    async def list_transactions(account_id: str, status: Optional[ReconciliationStatus] = Query(None)):
        """List statement lines of an account with their current status."""
        return [
            TransactionDetail(
                id=tx.id,
                account_id=tx.account_id,
                transaction_date=tx.transaction_date.isoformat(),
                description=tx.description,
                amount=str(tx.amount),
                direction=tx.direction.value,
                reference=tx.reference,
                channel=tx.channel,
                status=tx_status.value,
            )
            for tx, tx_status in service.store.list_statuses(account_id)
            if status is None or tx_status == status
        ]

    # ------------ Matching ------------

    @app.post("/api/accounts/{account_id}/match", response_model=MatchRunResponse)
    async def run_match(account_id: str, request: Optional[MatchRunRequest] = None):
        """Run the matching engine for one account."""
        request = request or MatchRunRequest()
        rules = request.apply_to(service.rules)
        result = service.run_match(account_id, rules=rules, actor=request.actor)

        return MatchRunResponse(
            account_id=result.account_id,
            matched=result.matched,
            committed=[_match_detail(m) for m in result.committed],
            potential_matches=[_candidate_detail(c) for c in result.potential_matches],
            unmatched_external_ids=result.unmatched_external_ids,
            skipped_conflicts=result.skipped_conflicts,
            errors=result.errors,
            processing_time_seconds=result.processing_time_seconds,
        )

    @app.post("/api/matches/confirm", response_model=MatchDetail)
    async def confirm_match(request: ConfirmMatchRequest):
        """Confirm a reviewed candidate, re-scored under the same rule overrides as its run."""
        match = service.confirm_pair(
            request.external_id,
            request.internal_id,
            request.actor,
            rules=request.apply_to(service.rules),
        )
        return _match_detail(match)

    @app.post("/api/matches/manual", response_model=MatchDetail)
    async def manual_match(request: ManualMatchRequest):
        """Pair a statement line with a ledger entry by hand."""
        match = service.manual_match(
            request.external_id, request.internal_id, request.actor, note=request.note
        )
        return _match_detail(match)

    @app.post("/api/matches/{match_id}/revoke", response_model=MatchDetail)
    async def revoke_match(match_id: str, request: Optional[RevokeMatchRequest] = None):
        """Revoke a committed match."""
        request = request or RevokeMatchRequest()
        return _match_detail(service.unmatch(match_id, actor=request.actor))

    @app.get("/api/accounts/{account_id}/matches", response_model=List[MatchDetail])
    async def list_matches(account_id: str, active_only: bool = Query(True)):
        return [_match_detail(m) for m in service.store.list_matches(account_id, active_only=active_only)]

    # ------------ Status ------------

    @app.put("/api/transactions/{external_id}/status")
    async def change_status(external_id: str, request: StatusChangeRequest):
        """Dispute, ignore or reopen a statement line."""
        status = service.set_status(external_id, request.status, actor=request.actor, note=request.note)
        return {"external_id": external_id, "status": status.value}

    @app.get("/api/transactions/{external_id}/history", response_model=List[TransitionDetail])
    async def get_history(external_id: str):
        """Status history of a statement line, oldest first."""
        return [_transition_detail(t) for t in service.history(external_id)]

    # ------------ Analytics ------------

    @app.get("/api/summary", response_model=Dict[str, Any])
    async def get_summary(account_id: Optional[str] = Query(None)):
        """Reconciliation summary for one account or all accounts."""
        return service.analytics.summary_as_dict(service.get_summary(account_id))

    @app.get("/api/accounts/{account_id}/unmatched")
    async def get_unmatched(account_id: str):
        """Unmatched statement lines, oldest first, with match hints."""
        df = service.unmatched_report(account_id)
        items = [
            {
                "id": row.id,
                "transaction_date": row.transaction_date.isoformat(),
                "reference": row.reference,
                "description": row.description,
                "amount": str(row.amount),
                "direction": row.direction,
                "days_unmatched": int(row.days_unmatched),
                "potential_match_type": row.potential_match_type,
            }
            for row in df.itertuples(index=False)
        ]
        return {"account_id": account_id, "total": len(items), "items": items}

    return app
