from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.errors import UpstreamApiError
from opsflow.core.schemas import BatchFilingReport, EmailFilingOutcome
from opsflow.db.models import EmailAttachment, InboundEmail
from opsflow.integrations.mailbox import MailboxClient, MailboxMessage
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator

logger = logging.getLogger(__name__)


def store_inbound_email(session_factory: sessionmaker[Session], message: MailboxMessage) -> tuple[int, bool]:
    """Persist a message and its attachments; returns (email_id, created)."""
    with session_factory() as session:
        if message.external_id:
            existing = session.scalars(
                select(InboundEmail.id).where(InboundEmail.external_id == message.external_id)
            ).first()
            if existing is not None:
                return existing, False

        email = InboundEmail(
            external_id=message.external_id or None,
            from_email=message.from_email,
            from_name=message.from_name,
            subject=message.subject or "",
            body_text=message.body_text or "",
            received_at=message.received_at or datetime.now(timezone.utc),
            status="pending",
        )
        email.attachments = [
            EmailAttachment(
                filename=attachment.filename,
                mime_type=attachment.mime_type or "application/octet-stream",
                size_bytes=len(attachment.content),
                content=attachment.content,
            )
            for attachment in message.attachments
        ]
        session.add(email)
        session.commit()
        return email.id, True


class InboxScanner:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        orchestrator: FilingOrchestrator,
        *,
        scan_query: str = "has:attachment newer_than:7d",
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._scan_query = scan_query

    def scan_gmail_for_attachments(self, mailbox: MailboxClient, max_emails: int = 50) -> BatchFilingReport:
        start = time.perf_counter()
        report = BatchFilingReport()

        try:
            message_ids = mailbox.list_message_ids(self._scan_query, max_emails)
        except UpstreamApiError as exc:
            logger.warning(
                "Mailbox provider rejected listing",
                extra={
                    "event": "inbox_scan_upstream_error",
                    "service": exc.service,
                    "status_code": exc.status_code,
                },
            )
            raise
        except Exception as exc:
            logger.exception(
                "Mailbox listing failed",
                extra={"event": "inbox_scan_list_failed", "error": str(exc)},
            )
            report.failures.append(f"Mailbox listing failed: {exc}")
            return self._finish(report, start, "inbox_scan_completed")

        for message_id in message_ids[:max_emails]:
            report.emails_scanned += 1
            try:
                message = mailbox.fetch_message(message_id)
                email_id, created = store_inbound_email(self._session_factory, message)
                if not created:
                    report.emails_skipped += 1
                    continue
                self._record(report, self._orchestrator.process_email_for_filing(email_id))
            except Exception as exc:
                logger.warning(
                    "Email processing failed during inbox scan",
                    extra={"event": "inbox_scan_email_failed", "message_id": message_id, "error": str(exc)},
                )
                report.emails_failed += 1
                report.failures.append(f"Message {message_id}: {exc}")

        return self._finish(report, start, "inbox_scan_completed")

    def process_unprocessed_emails(self, max_emails: int = 50) -> BatchFilingReport:
        start = time.perf_counter()
        report = BatchFilingReport()

        with self._session_factory() as session:
            email_ids = session.scalars(
                select(InboundEmail.id)
                .where(InboundEmail.status == "pending")
                .order_by(InboundEmail.received_at, InboundEmail.id)
                .limit(max_emails)
            ).all()

        for email_id in email_ids:
            report.emails_scanned += 1
            try:
                self._record(report, self._orchestrator.process_email_for_filing(email_id))
            except Exception as exc:
                logger.warning(
                    "Email processing failed during batch",
                    extra={"event": "pending_email_failed", "email_id": email_id, "error": str(exc)},
                )
                report.emails_failed += 1
                report.failures.append(f"Email {email_id}: {exc}")

        return self._finish(report, start, "pending_emails_processed")

    def get_filing_statistics(self) -> dict[str, Any]:
        with self._session_factory() as session:
            email_counts = dict(
                session.execute(
                    select(InboundEmail.status, func.count()).group_by(InboundEmail.status)
                ).all()
            )
        filings = self._orchestrator.filings.statistics()
        return {
            "total_emails": sum(email_counts.values()),
            "processed_emails": email_counts.get("processed", 0),
            "filtered_emails": email_counts.get("filtered", 0),
            "failed_emails": email_counts.get("failed", 0),
            "total_attachments": filings["total"],
            "filed_attachments": filings["by_status"]["filed"],
            "pending_filings": filings["by_status"]["pending"],
            "failed_filings": filings["by_status"]["failed"],
            "skipped_filings": filings["by_status"]["skipped"],
            "by_category": filings["by_category"],
            "by_destination": filings["by_destination"],
        }

    @staticmethod
    def _record(report: BatchFilingReport, outcome: EmailFilingOutcome) -> None:
        completed = outcome.attachments_filed + outcome.attachments_skipped
        if outcome.filtered:
            report.emails_skipped += 1
        elif outcome.attachments_failed and not completed:
            report.emails_failed += 1
        elif outcome.attachments_in_flight and not completed:
            report.emails_skipped += 1
        else:
            report.emails_processed += 1
        report.attachments_processed += outcome.attachments_processed
        report.attachments_filed += outcome.attachments_filed
        report.failures.extend(f"Email {outcome.email_id}: {error}" for error in outcome.errors)

    @staticmethod
    def _finish(report: BatchFilingReport, start: float, event: str) -> BatchFilingReport:
        report.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Email batch finished",
            extra={
                "event": event,
                "emails_scanned": report.emails_scanned,
                "emails_processed": report.emails_processed,
                "emails_skipped": report.emails_skipped,
                "emails_failed": report.emails_failed,
                "attachments_filed": report.attachments_filed,
                "failure_count": report.failure_count,
                "duration_ms": report.duration_ms,
            },
        )
        return report
