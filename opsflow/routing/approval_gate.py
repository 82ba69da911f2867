from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from opsflow.core.schemas import ApprovalStatus, RiskLevel

TERMINAL_APPROVAL_STATUSES: frozenset[str] = frozenset({"approved", "rejected", "auto_approved"})
OPEN_APPROVAL_STATUSES: frozenset[str] = frozenset({"pending", "escalated"})


class ApprovalCandidate(Protocol):
    status: str
    risk_assessment: str
    monetary_value: float
    requested_at: datetime


@dataclass(frozen=True)
class GateDecision:
    status: ApprovalStatus
    reason: str


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def assess_risk(ai_confidence: float) -> RiskLevel:
    if ai_confidence > 80:
        return "low"
    if ai_confidence > 60:
        return "medium"
    return "high"


def should_auto_approve(risk_assessment: str, monetary_value: float, threshold: float) -> bool:
    return risk_assessment == "low" and monetary_value < threshold


def decide_new_request(risk_assessment: str, monetary_value: float, threshold: float) -> GateDecision:
    if should_auto_approve(risk_assessment, monetary_value, threshold):
        return GateDecision(
            status="auto_approved",
            reason=f"Low risk and value {monetary_value:.2f} below threshold {threshold:.2f}",
        )
    if risk_assessment == "critical":
        return GateDecision(status="escalated", reason="Critical risk requires immediate review")
    return GateDecision(status="pending", reason="Queued for human approval")


def evaluate_pending(item: ApprovalCandidate, now: datetime, escalate_after: timedelta) -> ApprovalStatus:
    """Return the status an open item should have at ``now``."""
    if item.status != "pending":
        return item.status  # type: ignore[return-value]
    if item.risk_assessment == "critical":
        return "escalated"
    if _as_utc(now) - _as_utc(item.requested_at) > escalate_after:
        return "escalated"
    return "pending"


def is_bulk_approvable(item: ApprovalCandidate, threshold: float) -> bool:
    return item.status in OPEN_APPROVAL_STATUSES and should_auto_approve(
        item.risk_assessment, item.monetary_value, threshold
    )


def select_bulk_approvable(items: Iterable[ApprovalCandidate], threshold: float) -> list[ApprovalCandidate]:
    return [item for item in items if is_bulk_approvable(item, threshold)]
