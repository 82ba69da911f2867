from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from opsflow.agents.document_agent import DocumentClassificationAgent
from opsflow.core.errors import (
    DestinationWriteError,
    FilingTransitionError,
    RecordNotFoundError,
    RuleValidationError,
)
from opsflow.core.schemas import FilingRuleCreate, SenderRuleCreate
from opsflow.db.models import AttachmentFiling, EmailAttachment, InboundEmail, ProcessingLog, Vendor
from opsflow.integrations.mailbox import MailboxAttachment, MailboxMessage
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import store_inbound_email
from opsflow.processing.document_processor import DocumentProcessor
from opsflow.routing.filing_rules import FilingRuleEngine, create_filing_rule
from opsflow.services.destination_writers import DestinationRegistry
from opsflow.services.sender_rule_service import SenderRuleService

_INVOICE = b"Invoice # 1042\nVendor: Acme Corp\nAmount Due: $1,250.00\n"


class _RecordingWriter:
    def __init__(self) -> None:
        self.fail = False
        self.writes: list[tuple[str, str]] = []
        self.discards: list[str] = []

    def write(self, destination_path, document):  # noqa: ANN001
        if self.fail:
            raise DestinationWriteError("data room offline")
        self.writes.append((destination_path, document.filename))
        return f"mem://{destination_path}{document.filename}"

    def discard(self, reference):  # noqa: ANN001
        self.discards.append(reference)


def _orchestrator(session_factory, writer: _RecordingWriter, **kwargs) -> FilingOrchestrator:
    return FilingOrchestrator(
        session_factory,
        **kwargs,
        document_processor=DocumentProcessor(),
        document_agent=DocumentClassificationAgent(llm=None),
        rule_engine=FilingRuleEngine(),
        destinations=DestinationRegistry({"data_room": writer}),
    )


def _invoice_rule(session_factory) -> None:
    with session_factory() as session:
        create_filing_rule(
            session,
            FilingRuleCreate(
                name="invoices",
                priority=1,
                destination_type="data_room",
                path_template="/Invoices/{vendorName}/",
                document_categories=["invoice"],
            ),
        )


def _store(session_factory, sender: str = "billing@acme.example", external_id: str = "m-1") -> int:
    email_id, _ = store_inbound_email(
        session_factory,
        MailboxMessage(
            external_id=external_id,
            from_email=sender,
            subject="Invoice # 1042",
            body_text="Please see attached.",
            attachments=[
                MailboxAttachment(filename="invoice.txt", mime_type="text/plain", content=_INVOICE),
                MailboxAttachment(filename="logo.zip", mime_type="application/zip", content=b"PK"),
            ],
        ),
    )
    return email_id


def _filings(session_factory, email_id: int) -> list[AttachmentFiling]:
    with session_factory() as session:
        return (
            session.query(AttachmentFiling)
            .filter(AttachmentFiling.source_email_id == email_id)
            .order_by(AttachmentFiling.id)
            .all()
        )


def test_document_is_filed_and_non_document_skipped(session_factory) -> None:
    writer = _RecordingWriter()
    _invoice_rule(session_factory)
    email_id = _store(session_factory)

    outcome = _orchestrator(session_factory, writer).process_email_for_filing(email_id)

    assert outcome.filtered is False
    assert outcome.attachments_processed == 2
    assert outcome.attachments_filed == 1
    assert outcome.attachments_skipped == 1
    assert writer.writes == [("/Invoices/Acme Corp/", "invoice.txt")]

    filed, skipped = _filings(session_factory, email_id)
    assert filed.filing_status == "filed"
    assert filed.document_category == "invoice"
    assert filed.extracted_amount == 1250.0
    assert filed.destination_reference == "mem:///Invoices/Acme Corp/invoice.txt"
    assert filed.filing_rule_id is not None
    assert skipped.filing_status == "skipped"
    assert skipped.error == "non_document_attachment"

    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "processed"
        assert session.query(ProcessingLog).count() == 2


def test_blocked_sender_is_filtered_and_nothing_written(session_factory) -> None:
    writer = _RecordingWriter()
    _invoice_rule(session_factory)
    SenderRuleService(session_factory).add_blocked_sender(
        SenderRuleCreate(pattern="acme.example", pattern_type="domain", reason="spam")
    )
    email_id = _store(session_factory)

    outcome = _orchestrator(session_factory, writer).process_email_for_filing(email_id)

    assert outcome.filtered is True
    assert outcome.classification == "spam"
    assert outcome.attachments_filed == 0
    assert writer.writes == []
    assert {f.error for f in _filings(session_factory, email_id)} == {"sender_filtered"}
    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "filtered"


def test_unmatched_document_is_left_pending_with_suggested_path(session_factory) -> None:
    writer = _RecordingWriter()
    email_id = _store(session_factory)

    outcome = _orchestrator(session_factory, writer).process_email_for_filing(email_id)

    assert outcome.attachments_filed == 0
    assert outcome.attachments_skipped == 2
    document = _filings(session_factory, email_id)[0]
    assert document.destination_type == "pending"
    assert document.error == "no_matching_rule"
    assert document.destination_path.startswith("/invoice/Acme Corp/")


def test_write_failure_marks_filing_failed_and_retry_creates_new_row(session_factory) -> None:
    writer = _RecordingWriter()
    writer.fail = True
    _invoice_rule(session_factory)
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)

    first = orchestrator.process_email_for_filing(email_id)

    assert first.attachments_failed == 1
    assert "data room offline" in first.errors[0]
    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "failed"

    writer.fail = False
    second = orchestrator.process_email_for_filing(email_id)

    assert second.attachments_processed == 1
    assert second.attachments_filed == 1
    statuses = [f.filing_status for f in _filings(session_factory, email_id)]
    assert statuses == ["failed", "skipped", "filed"]
    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "processed"


def test_unknown_email_raises_not_found(session_factory) -> None:
    with pytest.raises(RecordNotFoundError):
        _orchestrator(session_factory, _RecordingWriter()).process_email_for_filing(404)


class _RacingWriter(_RecordingWriter):
    """Another worker bumps the filing while the document is being written."""

    def __init__(self, session_factory) -> None:
        super().__init__()
        self._session_factory = session_factory

    def write(self, destination_path, document):  # noqa: ANN001
        reference = super().write(destination_path, document)
        with self._session_factory() as session:
            session.execute(
                update(AttachmentFiling)
                .where(AttachmentFiling.filing_status == "processing")
                .values(version=AttachmentFiling.version + 1)
            )
            session.commit()
        return reference


def _invoice_attachment_id(session_factory, email_id: int) -> int:
    with session_factory() as session:
        return session.query(EmailAttachment).filter_by(email_id=email_id, filename="invoice.txt").one().id


def test_attachment_claimed_elsewhere_keeps_email_pending(session_factory) -> None:
    writer = _RecordingWriter()
    _invoice_rule(session_factory)
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)
    filings = orchestrator.filings
    filings.claim(filings.open_filing(email_id, _invoice_attachment_id(session_factory, email_id)))

    outcome = orchestrator.process_email_for_filing(email_id)

    assert outcome.attachments_in_flight == 1
    assert outcome.attachments_processed == 1
    assert outcome.attachments_filed == 0
    assert writer.writes == []
    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "pending"


def test_abandoned_claim_is_refiled_after_lease(session_factory) -> None:
    writer = _RecordingWriter()
    _invoice_rule(session_factory)
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer, claim_lease=timedelta(minutes=5))
    filings = orchestrator.filings
    stuck = filings.claim(filings.open_filing(email_id, _invoice_attachment_id(session_factory, email_id)))
    with session_factory() as session:
        session.execute(
            update(AttachmentFiling)
            .where(AttachmentFiling.id == stuck.id)
            .values(updated_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        session.commit()

    outcome = orchestrator.process_email_for_filing(email_id)

    assert outcome.attachments_in_flight == 0
    assert outcome.attachments_filed == 1
    assert writer.writes == [("/Invoices/Acme Corp/", "invoice.txt")]
    assert filings.get(stuck.id).filing_status == "failed"
    with session_factory() as session:
        assert session.get(InboundEmail, email_id).status == "processed"


def test_written_document_is_discarded_when_filing_record_changed(session_factory) -> None:
    writer = _RacingWriter(session_factory)
    _invoice_rule(session_factory)
    email_id = _store(session_factory)

    outcome = _orchestrator(session_factory, writer).process_email_for_filing(email_id)

    assert outcome.attachments_filed == 0
    assert outcome.attachments_failed == 1
    assert writer.discards == ["mem:///Invoices/Acme Corp/invoice.txt"]
    assert "filed" not in {f.filing_status for f in _filings(session_factory, email_id)}


def test_rules_route_on_sender_classification_and_vendor(session_factory) -> None:
    writer = _RecordingWriter()
    with session_factory() as session:
        vendor = Vendor(name="Acme Corp", email="ap@acme.example")
        session.add(vendor)
        session.commit()
        vendor_id = vendor.id
    SenderRuleService(session_factory).add_trusted_sender(
        SenderRuleCreate(pattern="acme.example", pattern_type="domain", vendor_id=vendor_id)
    )
    with session_factory() as session:
        create_filing_rule(
            session,
            FilingRuleCreate(
                name="other vendor",
                priority=1,
                destination_type="data_room",
                path_template="/Elsewhere/",
                vendor_ids=[vendor_id + 100],
            ),
        )
        create_filing_rule(
            session,
            FilingRuleCreate(
                name="trusted acme",
                priority=2,
                destination_type="data_room",
                path_template="/Vendors/{vendorName}/",
                email_categories=["legitimate"],
                vendor_ids=[vendor_id],
            ),
        )
    email_id = _store(session_factory)

    outcome = _orchestrator(session_factory, writer).process_email_for_filing(email_id)

    assert outcome.classification == "legitimate"
    assert outcome.attachments_filed == 1
    assert writer.writes == [("/Vendors/Acme Corp/", "invoice.txt")]
    assert _filings(session_factory, email_id)[0].vendor_id == vendor_id


def test_manual_filing_of_skipped_attachment(session_factory) -> None:
    writer = _RecordingWriter()
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)
    orchestrator.process_email_for_filing(email_id)
    skipped = _filings(session_factory, email_id)[0]
    assert skipped.filing_status == "skipped"

    filed = orchestrator.manual_file_attachment(skipped.id, "data_room", "/Manual/{vendorName}/", "ops@example.com")

    assert filed.id == skipped.id
    assert filed.filing_status == "filed"
    assert filed.destination_type == "data_room"
    assert filed.destination_path == "/Manual/Acme Corp/"
    assert filed.destination_reference == "mem:///Manual/Acme Corp/invoice.txt"
    assert filed.filed_by == "ops@example.com"
    assert filed.auto_filed is False
    assert filed.filing_rule_id is None
    assert writer.writes == [("/Manual/Acme Corp/", "invoice.txt")]
    with session_factory() as session:
        assert session.query(ProcessingLog).filter_by(filing_id=filed.id, stage="manual_filed").count() == 1


def test_manual_filing_of_failed_attachment_opens_new_row(session_factory) -> None:
    writer = _RecordingWriter()
    writer.fail = True
    _invoice_rule(session_factory)
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)
    orchestrator.process_email_for_filing(email_id)
    failed = _filings(session_factory, email_id)[0]
    assert failed.filing_status == "failed"

    writer.fail = False
    filed = orchestrator.manual_file_attachment(failed.id, "data_room", "/Recovered/", "ops@example.com")

    assert filed.id != failed.id
    assert filed.filing_status == "filed"
    assert filed.attachment_id == failed.attachment_id
    assert orchestrator.filings.get(failed.id).filing_status == "failed"


def test_manual_filing_rejects_filed_attachment_and_bad_destinations(session_factory) -> None:
    writer = _RecordingWriter()
    _invoice_rule(session_factory)
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)
    orchestrator.process_email_for_filing(email_id)
    filed = _filings(session_factory, email_id)[0]

    with pytest.raises(FilingTransitionError, match="already filed"):
        orchestrator.manual_file_attachment(filed.id, "data_room", "/Again/", "ops@example.com")
    with pytest.raises(RuleValidationError, match="Unsupported destination"):
        orchestrator.manual_file_attachment(filed.id, "ftp", "/Again/", "ops@example.com")
    with pytest.raises(RuleValidationError, match=r"\.\."):
        orchestrator.manual_file_attachment(filed.id, "data_room", "/../etc/", "ops@example.com")
    with pytest.raises(RecordNotFoundError):
        orchestrator.manual_file_attachment(999, "data_room", "/Again/", "ops@example.com")
    assert writer.writes == [("/Invoices/Acme Corp/", "invoice.txt")]


def test_manual_filing_write_failure_marks_row_failed(session_factory) -> None:
    writer = _RecordingWriter()
    email_id = _store(session_factory)
    orchestrator = _orchestrator(session_factory, writer)
    orchestrator.process_email_for_filing(email_id)
    skipped = _filings(session_factory, email_id)[0]

    writer.fail = True
    with pytest.raises(DestinationWriteError):
        orchestrator.manual_file_attachment(skipped.id, "data_room", "/Manual/", "ops@example.com")

    stored = orchestrator.filings.get(skipped.id)
    assert stored.filing_status == "failed"
    assert stored.error == "data room offline"
