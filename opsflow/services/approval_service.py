from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.errors import ApprovalError, RecordNotFoundError
from opsflow.core.schemas import ApprovalRequest
from opsflow.db.models import ApprovalItem
from opsflow.routing.approval_gate import (
    OPEN_APPROVAL_STATUSES,
    assess_risk,
    decide_new_request,
    evaluate_pending,
    select_bulk_approvable,
)

logger = logging.getLogger(__name__)


class ApprovalService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        auto_approve_threshold: float = 500.0,
        escalate_after: timedelta = timedelta(minutes=60),
    ) -> None:
        self._session_factory = session_factory
        self._threshold = auto_approve_threshold
        self._escalate_after = escalate_after

    def request_approval(self, payload: ApprovalRequest, now: datetime | None = None) -> ApprovalItem:
        now = now or datetime.now(timezone.utc)
        risk = payload.risk_assessment or assess_risk(payload.ai_confidence)
        decision = decide_new_request(risk, payload.monetary_value, self._threshold)

        item = ApprovalItem(
            approval_type=payload.approval_type,
            title=payload.title,
            monetary_value=payload.monetary_value,
            risk_assessment=risk,
            ai_confidence=payload.ai_confidence,
            status=decision.status,
            requested_at=payload.requested_at or now,
        )
        if decision.status == "auto_approved":
            item.auto_approval_reason = decision.reason
            item.resolved_at = now
            item.resolved_by = "system"
        elif decision.status == "escalated":
            item.escalated_at = now
            item.escalation_level = 1

        with self._session_factory() as session:
            session.add(item)
            session.commit()
            session.refresh(item)

        logger.info(
            "Approval requested",
            extra={
                "event": "approval_requested",
                "approval_id": item.id,
                "approval_type": item.approval_type,
                "risk_assessment": risk,
                "status": item.status,
            },
        )
        return item

    def approve(self, item_id: int, actor: str, notes: str | None = None) -> ApprovalItem:
        return self._resolve(item_id, "approved", actor, notes)

    def reject(self, item_id: int, actor: str, notes: str | None = None) -> ApprovalItem:
        return self._resolve(item_id, "rejected", actor, notes)

    def bulk_approve(self, actor: str, item_ids: list[int] | None = None) -> list[int]:
        """Approve open low-risk items below the threshold; other ids are left untouched."""
        query = select(ApprovalItem).where(ApprovalItem.status.in_(OPEN_APPROVAL_STATUSES))
        if item_ids is not None:
            query = query.where(ApprovalItem.id.in_(item_ids))

        with self._session_factory() as session:
            candidates = session.scalars(query.order_by(ApprovalItem.id)).all()
            eligible_ids = [item.id for item in select_bulk_approvable(candidates, self._threshold)]

        approved: list[int] = []
        for item_id in eligible_ids:
            try:
                self._resolve(item_id, "approved", actor, "Bulk approved")
            except ApprovalError:
                continue
            approved.append(item_id)

        logger.info(
            "Bulk approval completed",
            extra={"event": "approval_bulk_completed", "approved_count": len(approved), "actor": actor},
        )
        return approved

    def escalate_overdue(self, now: datetime | None = None) -> list[int]:
        now = now or datetime.now(timezone.utc)
        escalated: list[int] = []
        with self._session_factory() as session:
            items = session.scalars(
                select(ApprovalItem).where(ApprovalItem.status == "pending").order_by(ApprovalItem.id)
            ).all()
            for item in items:
                if evaluate_pending(item, now, self._escalate_after) == "escalated":
                    item.status = "escalated"
                    item.escalated_at = now
                    item.escalation_level += 1
                    escalated.append(item.id)
            session.commit()

        if escalated:
            logger.info(
                "Overdue approvals escalated",
                extra={"event": "approval_escalated", "approval_ids": escalated},
            )
        return escalated

    def list_items(self, status: str | None = None, limit: int = 100) -> list[ApprovalItem]:
        query = select(ApprovalItem).order_by(ApprovalItem.requested_at.desc(), ApprovalItem.id.desc()).limit(limit)
        if status:
            query = query.where(ApprovalItem.status == status)
        with self._session_factory() as session:
            return list(session.scalars(query).all())

    def _resolve(self, item_id: int, status: str, actor: str, notes: str | None) -> ApprovalItem:
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            result = session.execute(
                update(ApprovalItem)
                .where(ApprovalItem.id == item_id, ApprovalItem.status.in_(OPEN_APPROVAL_STATUSES))
                .values(status=status, resolved_by=actor, resolved_at=now, resolution_notes=notes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                existing = session.get(ApprovalItem, item_id)
                if existing is None:
                    raise RecordNotFoundError(f"Approval item {item_id} not found")
                raise ApprovalError(f"Approval item {item_id} is already {existing.status}")
            session.commit()
            item = session.get(ApprovalItem, item_id)

        logger.info(
            "Approval resolved",
            extra={"event": f"approval_{status}", "approval_id": item_id, "actor": actor},
        )
        return item
