"""
api/routes/v1/security.py -- Credential security administration endpoints.

Routes (all admin only):
  POST /api/v1/security/reverify                     -- bulk: force email re-verification
  POST /api/v1/security/password-reset               -- bulk: request password change
  GET  /api/v1/security/expired?kind=...             -- expired verification / password report
  GET  /api/v1/security/requiring-action             -- union of both expired sets
  GET  /api/v1/security/principals/{type}/{id}/audits -- audit trail of one principal
  GET  /api/v1/security/audits/recent                -- recent audit records, all principals

Bulk endpoints always return 200 with per-principal results; a partial
failure is reported in "failed", not as an error status, because the
successful part has already been applied.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    AuditRecordResponse,
    BulkActionRequest,
    BulkActionResponse,
    BulkFailure,
    ExpiredKindEnum,
    ExpiredReportResponse,
    PrincipalResponse,
)
from auth.dependencies import require_admin
from auth.models import Principal
from core.config import ConfigurationError
from ledger.models import LedgerView, Trigger
from security.resolver import ByIds, Many, PrincipalSelection
from security.service import BulkOutcome, CredentialSecurityService

router = APIRouter()


def _service(request: Request, principal_type: str | None) -> CredentialSecurityService:
    """The app's service, re-targeted at principal_type when one is given."""
    service: CredentialSecurityService = request.app.state.service
    if principal_type is None:
        return service
    try:
        return service.use_principal_type(principal_type)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_principal_type", "message": str(exc)},
        ) from exc


def _outcome_response(outcome: BulkOutcome, requested: int) -> BulkActionResponse:
    return BulkActionResponse(
        action=outcome.action,
        requested=requested,
        succeeded=[p.id for p in outcome.succeeded],
        failed=[BulkFailure(id=p.id, error=type(e).__name__) for p, e in outcome.failed],
    )


# ---------------------------------------------------------------------------
# Bulk actions
# ---------------------------------------------------------------------------


@router.post("/security/reverify", response_model=BulkActionResponse)
def request_reverification(
    request: Request,
    body: BulkActionRequest,
    admin: Principal = Depends(require_admin),
) -> BulkActionResponse:
    """Clear verification for the targeted principals and send new verification links."""
    service = _service(request, body.principal_type)
    selection: PrincipalSelection
    if body.all_expired:
        selection = Many(service.get_expired_verification())
    else:
        selection = ByIds(body.ids)
    targets = service.resolve(selection)
    outcome = service.request_reverification(Many(targets), reason=body.reason, triggered_by=Trigger.principal(admin))
    return _outcome_response(outcome, len(targets))


@router.post("/security/password-reset", response_model=BulkActionResponse)
def request_password_change(
    request: Request,
    body: BulkActionRequest,
    admin: Principal = Depends(require_admin),
) -> BulkActionResponse:
    """Audit a password-change request for the targeted principals and email reset links."""
    service = _service(request, body.principal_type)
    selection: PrincipalSelection
    if body.all_expired:
        selection = Many(service.get_expired_passwords())
    else:
        selection = ByIds(body.ids)
    targets = service.resolve(selection)
    outcome = service.request_password_change(Many(targets), reason=body.reason, triggered_by=Trigger.principal(admin))
    return _outcome_response(outcome, len(targets))


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@router.get("/security/expired", response_model=ExpiredReportResponse)
def expired_report(
    request: Request,
    kind: ExpiredKindEnum = ExpiredKindEnum.all,
    principal_type: str | None = Query(default=None, max_length=50),
    admin: Principal = Depends(require_admin),
) -> ExpiredReportResponse:
    service = _service(request, principal_type)
    if kind is ExpiredKindEnum.verification:
        principals = service.get_expired_verification()
    elif kind is ExpiredKindEnum.password:
        principals = service.get_expired_passwords()
    else:
        principals = service.get_requiring_action()
    return ExpiredReportResponse(
        kind=kind,
        principal_type=service.config.default_principal_type,
        as_of=service.clock().isoformat(),
        count=len(principals),
        principals=[PrincipalResponse.from_principal(p) for p in principals],
    )


@router.get("/security/requiring-action", response_model=list[PrincipalResponse])
def requiring_action(
    request: Request,
    principal_type: str | None = Query(default=None, max_length=50),
    admin: Principal = Depends(require_admin),
) -> list[PrincipalResponse]:
    """Principals with an expired verification, an expired password, or both."""
    service = _service(request, principal_type)
    return [PrincipalResponse.from_principal(p) for p in service.get_requiring_action()]


@router.get(
    "/security/principals/{principal_type}/{principal_id}/audits",
    response_model=list[AuditRecordResponse],
)
def principal_audits(
    request: Request,
    principal_type: str,
    principal_id: int,
    view: LedgerView = LedgerView.ALL,
    recent_days: int | None = Query(default=None, gt=0, le=3650),
    admin: Principal = Depends(require_admin),
) -> list[AuditRecordResponse]:
    service = _service(request, principal_type)
    subject = service.registry.get(principal_type).get_by_id(principal_id)
    if subject is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Principal not found."},
        )
    records = service.ledger.list_for(subject, view=view, recent_days=recent_days)
    return [AuditRecordResponse.from_record(r) for r in records]


@router.get("/security/audits/recent", response_model=list[AuditRecordResponse])
def recent_audits(
    request: Request,
    days: int = Query(default=30, gt=0, le=3650),
    limit: int = Query(default=100, gt=0, le=1000),
    admin: Principal = Depends(require_admin),
) -> list[AuditRecordResponse]:
    service: CredentialSecurityService = request.app.state.service
    return [AuditRecordResponse.from_record(r) for r in service.ledger.list_recent(days=days, limit=limit)]
