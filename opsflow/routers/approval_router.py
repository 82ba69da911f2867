from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from opsflow.core.schemas import ApprovalRequest
from opsflow.core.security import verify_admin_api_key
from opsflow.db.models import ApprovalItem
from opsflow.routers.http_errors import DOMAIN_ERRORS, to_http_exception
from opsflow.services.approval_service import ApprovalService


class ResolutionRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=255)
    notes: str | None = None


class BulkApprovalRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=255)
    item_ids: list[int] | None = None


def _item_payload(item: ApprovalItem) -> dict:
    return {
        "approval_id": item.id,
        "approval_type": item.approval_type,
        "title": item.title,
        "monetary_value": item.monetary_value,
        "risk_assessment": item.risk_assessment,
        "ai_confidence": item.ai_confidence,
        "status": item.status,
        "escalation_level": item.escalation_level,
        "auto_approval_reason": item.auto_approval_reason,
        "resolution_notes": item.resolution_notes,
        "resolved_by": item.resolved_by,
        "requested_at": item.requested_at,
        "escalated_at": item.escalated_at,
        "resolved_at": item.resolved_at,
    }


def build_approval_router(approvals: ApprovalService) -> APIRouter:
    router = APIRouter(prefix="/approvals", tags=["approvals"], dependencies=[Depends(verify_admin_api_key)])

    @router.post("", status_code=201)
    def request_approval(payload: ApprovalRequest) -> dict:
        return _item_payload(approvals.request_approval(payload))

    @router.get("")
    def list_approvals(
        status: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[dict]:
        return [_item_payload(item) for item in approvals.list_items(status=status, limit=limit)]

    @router.post("/bulk-approve")
    def bulk_approve(payload: BulkApprovalRequest) -> dict:
        approved = approvals.bulk_approve(payload.actor, payload.item_ids)
        return {"approved_ids": approved, "approved_count": len(approved)}

    @router.post("/escalate")
    def escalate_overdue() -> dict:
        escalated = approvals.escalate_overdue()
        return {"escalated_ids": escalated, "escalated_count": len(escalated)}

    @router.post("/{item_id}/approve")
    def approve(item_id: int, payload: ResolutionRequest) -> dict:
        try:
            return _item_payload(approvals.approve(item_id, payload.actor, payload.notes))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.post("/{item_id}/reject")
    def reject(item_id: int, payload: ResolutionRequest) -> dict:
        try:
            return _item_payload(approvals.reject(item_id, payload.actor, payload.notes))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    return router
