import pytest

from opsflow.agents.document_agent import DocumentClassificationAgent
from opsflow.core.errors import DestinationWriteError, UpstreamApiError
from opsflow.core.schemas import FilingRuleCreate
from opsflow.db.models import InboundEmail
from opsflow.integrations.mailbox import MailboxAttachment, MailboxMessage
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import InboxScanner, store_inbound_email
from opsflow.processing.document_processor import DocumentProcessor
from opsflow.routing.filing_rules import FilingRuleEngine, create_filing_rule
from opsflow.services.destination_writers import DestinationRegistry


class _MemoryWriter:
    def write(self, destination_path, document):  # noqa: ANN001
        return f"mem://{destination_path}{document.filename}"

    def discard(self, reference: str) -> None:
        pass


class _OfflineWriter(_MemoryWriter):
    def write(self, destination_path, document):  # noqa: ANN001
        raise DestinationWriteError("share is offline")


class _FakeMailbox:
    def __init__(self, messages: dict[str, MailboxMessage], broken: set[str] | None = None) -> None:
        self._messages = messages
        self._broken = broken or set()
        self.queries: list[str] = []

    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        self.queries.append(query)
        return list(self._messages)[:max_results]

    def fetch_message(self, message_id: str) -> MailboxMessage:
        if message_id in self._broken:
            raise RuntimeError("attachment download timed out")
        return self._messages[message_id]


class _UnavailableMailbox:
    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        raise UpstreamApiError("gmail", 503, "backend error")

    def fetch_message(self, message_id: str) -> MailboxMessage:
        raise AssertionError("not reached")


class _FlakyMailbox(_UnavailableMailbox):
    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        raise ConnectionError("connection reset")


def _message(external_id: str, sender: str = "billing@acme.example") -> MailboxMessage:
    return MailboxMessage(
        external_id=external_id,
        from_email=sender,
        subject=f"Invoice # {external_id}",
        attachments=[
            MailboxAttachment(
                filename=f"{external_id}.txt",
                mime_type="text/plain",
                content=b"Invoice # 77\nAmount Due: $10.00\n",
            )
        ],
    )


def _scanner(session_factory, writer=None) -> InboxScanner:  # noqa: ANN001
    with session_factory() as session:
        create_filing_rule(
            session,
            FilingRuleCreate(name="all", destination_type="data_room", path_template="/{documentType}/"),
        )
    orchestrator = FilingOrchestrator(
        session_factory,
        document_processor=DocumentProcessor(),
        document_agent=DocumentClassificationAgent(llm=None),
        rule_engine=FilingRuleEngine(),
        destinations=DestinationRegistry({"data_room": writer or _MemoryWriter()}),
    )
    return InboxScanner(session_factory, orchestrator, scan_query="has:attachment")


def test_scan_collects_per_message_failures_and_continues(session_factory) -> None:
    mailbox = _FakeMailbox(
        {"m1": _message("m1"), "m2": _message("m2"), "m3": _message("m3")},
        broken={"m2"},
    )

    report = _scanner(session_factory).scan_gmail_for_attachments(mailbox, max_emails=10)

    assert mailbox.queries == ["has:attachment"]
    assert report.emails_scanned == 3
    assert report.emails_processed == 2
    assert report.attachments_filed == 2
    assert report.failure_count == 1
    assert report.failures[0].startswith("Message m2:")
    assert report.success is True


def test_rescan_skips_already_stored_messages(session_factory) -> None:
    scanner = _scanner(session_factory)
    mailbox = _FakeMailbox({"m1": _message("m1")})

    scanner.scan_gmail_for_attachments(mailbox)
    report = scanner.scan_gmail_for_attachments(mailbox)

    assert report.emails_scanned == 1
    assert report.emails_skipped == 1
    assert report.emails_processed == 0
    with session_factory() as session:
        assert session.query(InboundEmail).count() == 1


def test_upstream_listing_error_aborts_scan(session_factory) -> None:
    with pytest.raises(UpstreamApiError) as exc:
        _scanner(session_factory).scan_gmail_for_attachments(_UnavailableMailbox())
    assert exc.value.status_code == 503


def test_listing_failure_is_reported_not_raised(session_factory) -> None:
    report = _scanner(session_factory).scan_gmail_for_attachments(_FlakyMailbox())
    assert report.emails_scanned == 0
    assert report.success is False
    assert "connection reset" in report.failures[0]


def test_process_unprocessed_emails_only_touches_pending(session_factory) -> None:
    scanner = _scanner(session_factory)
    store_inbound_email(session_factory, _message("p1"))
    store_inbound_email(session_factory, _message("p2"))

    first = scanner.process_unprocessed_emails()
    second = scanner.process_unprocessed_emails()

    assert first.emails_scanned == 2
    assert first.attachments_filed == 2
    assert second.emails_scanned == 0


def test_filing_statistics_combine_email_and_filing_counts(session_factory) -> None:
    scanner = _scanner(session_factory)
    scanner.scan_gmail_for_attachments(_FakeMailbox({"m1": _message("m1")}))

    stats = scanner.get_filing_statistics()

    assert stats["total_emails"] == 1
    assert stats["processed_emails"] == 1
    assert stats["filed_attachments"] == 1
    assert stats["by_category"] == {"invoice": 1}
    assert stats["by_destination"] == {"data_room": 1}


def test_email_whose_attachments_all_fail_is_not_counted_as_processed(session_factory) -> None:
    scanner = _scanner(session_factory, writer=_OfflineWriter())

    report = scanner.scan_gmail_for_attachments(_FakeMailbox({"m1": _message("m1")}))

    assert report.emails_scanned == 1
    assert report.emails_processed == 0
    assert report.emails_failed == 1
    assert report.attachments_filed == 0
    assert "share is offline" in report.failures[0]
    assert report.success is False
