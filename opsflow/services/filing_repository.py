from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.errors import FilingConflictError, FilingTransitionError
from opsflow.db.models import AttachmentFiling, ProcessingLog

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"filed", "failed", "skipped"}),
    # Operators may file a skipped attachment by hand.
    "skipped": frozenset({"processing"}),
}

_MUTABLE_FIELDS = frozenset(
    {
        "document_category",
        "document_category_confidence",
        "extracted_document_number",
        "vendor_name",
        "vendor_id",
        "extracted_amount",
        "extracted_currency",
        "destination_type",
        "destination_path",
        "destination_reference",
        "filing_rule_id",
        "error",
        "filed_at",
        "filed_by",
        "auto_filed",
    }
)


@dataclass(frozen=True)
class FilingHandle:
    id: int
    status: str
    version: int


def _handle(filing: AttachmentFiling) -> FilingHandle:
    return FilingHandle(id=filing.id, status=filing.filing_status, version=filing.version)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise FilingTransitionError(f"Filing cannot move from '{current}' to '{target}'")


class FilingRepository:
    """Attachment filing rows with compare-and-swap status transitions."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        claim_lease: timedelta = timedelta(minutes=15),
    ) -> None:
        self._session_factory = session_factory
        self._claim_lease = claim_lease

    def latest_for_attachment(self, attachment_id: int) -> AttachmentFiling | None:
        with self._session_factory() as session:
            return session.scalars(
                select(AttachmentFiling)
                .where(AttachmentFiling.attachment_id == attachment_id)
                .order_by(AttachmentFiling.id.desc())
                .limit(1)
            ).first()

    def open_filing(self, email_id: int, attachment_id: int, now: datetime | None = None) -> FilingHandle | None:
        """Return a pending filing to work on, or None when the attachment needs no work.

        A failed attachment gets a fresh row; filed and skipped attachments are
        left alone. A row still ``processing`` inside the claim lease raises
        FilingConflictError; once the lease has run out it is failed and replaced.
        """
        now = now or datetime.now(timezone.utc)
        latest = self.latest_for_attachment(attachment_id)

        if latest is not None and latest.filing_status == "pending":
            return _handle(latest)
        if latest is not None and latest.filing_status == "processing":
            claimed_at = _as_utc(latest.updated_at or latest.created_at)
            if now - claimed_at <= self._claim_lease:
                raise FilingConflictError(f"Filing {latest.id} is being processed by another worker")
            self.mark_failed(_handle(latest), "Claim lease expired before the filing finished")
            logger.warning(
                "Stale filing claim released",
                extra={
                    "event": "filing_claim_expired",
                    "filing_id": latest.id,
                    "attachment_id": attachment_id,
                    "claimed_at": claimed_at.isoformat(),
                },
            )
        elif latest is not None and latest.filing_status != "failed":
            return None

        with self._session_factory() as session:
            filing = AttachmentFiling(
                source_email_id=email_id,
                attachment_id=attachment_id,
                filing_status="pending",
                destination_type="pending",
                version=1,
            )
            session.add(filing)
            session.commit()
            return _handle(filing)

    def transition(self, handle: FilingHandle, target: str, **fields: Any) -> FilingHandle:
        check_transition(handle.status, target)
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown filing fields: {', '.join(sorted(unknown))}")

        with self._session_factory() as session:
            result = session.execute(
                update(AttachmentFiling)
                .where(
                    AttachmentFiling.id == handle.id,
                    AttachmentFiling.filing_status == handle.status,
                    AttachmentFiling.version == handle.version,
                )
                .values(
                    filing_status=target,
                    version=AttachmentFiling.version + 1,
                    updated_at=datetime.now(timezone.utc),
                    **fields,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Filing changed concurrently",
                    extra={
                        "event": "filing_transition_conflict",
                        "filing_id": handle.id,
                        "expected_status": handle.status,
                        "expected_version": handle.version,
                        "target_status": target,
                    },
                )
                raise FilingConflictError(
                    f"Filing {handle.id} is no longer '{handle.status}' at version {handle.version}"
                )
            session.commit()

        logger.info(
            "Filing status changed",
            extra={
                "event": "filing_status_changed",
                "filing_id": handle.id,
                "from_status": handle.status,
                "to_status": target,
            },
        )
        return FilingHandle(id=handle.id, status=target, version=handle.version + 1)

    def claim(self, handle: FilingHandle) -> FilingHandle:
        return self.transition(handle, "processing")

    def mark_filed(self, handle: FilingHandle, **fields: Any) -> FilingHandle:
        fields.setdefault("filed_at", datetime.now(timezone.utc))
        return self.transition(handle, "filed", error=None, **fields)

    def mark_failed(self, handle: FilingHandle, error: str, **fields: Any) -> FilingHandle:
        return self.transition(handle, "failed", error=error[:2000], **fields)

    def mark_skipped(self, handle: FilingHandle, reason: str, **fields: Any) -> FilingHandle:
        return self.transition(handle, "skipped", error=reason, **fields)

    def get(self, filing_id: int) -> AttachmentFiling | None:
        with self._session_factory() as session:
            return session.get(AttachmentFiling, filing_id)

    def list_filings(
        self,
        *,
        status: str | None = None,
        email_id: int | None = None,
        limit: int = 100,
    ) -> list[AttachmentFiling]:
        query = select(AttachmentFiling).order_by(AttachmentFiling.id.desc()).limit(limit)
        if status:
            query = query.where(AttachmentFiling.filing_status == status)
        if email_id is not None:
            query = query.where(AttachmentFiling.source_email_id == email_id)
        with self._session_factory() as session:
            return list(session.scalars(query).all())

    def add_log(self, filing_id: int | None, stage: str, message: str, payload: dict[str, Any] | None = None) -> None:
        with self._session_factory() as session:
            session.add(ProcessingLog(filing_id=filing_id, stage=stage, message=message, payload=payload))
            session.commit()

    def statistics(self) -> dict[str, Any]:
        with self._session_factory() as session:
            by_status = dict(
                session.execute(
                    select(AttachmentFiling.filing_status, func.count()).group_by(AttachmentFiling.filing_status)
                ).all()
            )
            by_category = dict(
                session.execute(
                    select(AttachmentFiling.document_category, func.count())
                    .where(AttachmentFiling.filing_status == "filed")
                    .group_by(AttachmentFiling.document_category)
                ).all()
            )
            by_destination = dict(
                session.execute(
                    select(AttachmentFiling.destination_type, func.count())
                    .where(AttachmentFiling.filing_status == "filed")
                    .group_by(AttachmentFiling.destination_type)
                ).all()
            )

        return {
            "total": sum(by_status.values()),
            "by_status": {status: by_status.get(status, 0) for status in ("pending", "processing", "filed", "failed", "skipped")},
            "by_category": by_category,
            "by_destination": by_destination,
        }
