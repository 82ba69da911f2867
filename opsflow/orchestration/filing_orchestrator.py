from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Literal, NotRequired, TypedDict

from langgraph.graph import END, StateGraph
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from opsflow.agents.document_agent import DocumentClassificationAgent
from opsflow.classification.document_classifier import is_document_mime_type
from opsflow.classification.sender_classifier import FilterPolicy, classify_sender
from opsflow.core.errors import (
    DestinationWriteError,
    FilingConflictError,
    FilingTransitionError,
    RecordNotFoundError,
    RuleValidationError,
)
from opsflow.core.schemas import (
    AttachmentContext,
    DocumentClassification,
    EmailFilingOutcome,
    RoutingOutcome,
    SenderClassification,
    SenderClassificationType,
)
from opsflow.db.models import AttachmentFiling, EmailAttachment, InboundEmail
from opsflow.processing.document_processor import DocumentProcessor
from opsflow.routing.filing_rules import (
    ROUTABLE_DESTINATIONS,
    FilingRuleEngine,
    render_path_template,
    validate_path_template,
)
from opsflow.services.destination_writers import DestinationRegistry, FiledDocument
from opsflow.services.filing_repository import FilingHandle, FilingRepository
from opsflow.services.sender_rule_service import find_vendor_id_by_domain, load_sender_rules


class AttachmentState(TypedDict):
    email_id: int
    attachment_id: int
    filename: str
    mime_type: str
    sender_email: str
    email_subject: str
    sender_allowed: bool
    sender_classification: SenderClassificationType
    vendor_id: int | None
    filing: FilingHandle
    content: NotRequired[bytes]
    text: NotRequired[str]
    classification: NotRequired[DocumentClassification]
    routing: NotRequired[RoutingOutcome]
    reference: NotRequired[str]
    skip_reason: NotRequired[str]
    outcome: NotRequired[str]


class FilingOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        document_processor: DocumentProcessor,
        document_agent: DocumentClassificationAgent,
        rule_engine: FilingRuleEngine,
        destinations: DestinationRegistry,
        filter_policy: FilterPolicy | None = None,
        max_pattern_length: int = 256,
        claim_lease: timedelta = timedelta(minutes=15),
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._session_factory = session_factory
        self._document_processor = document_processor
        self._document_agent = document_agent
        self._rule_engine = rule_engine
        self._destinations = destinations
        self._filter_policy = filter_policy or FilterPolicy()
        self._max_pattern_length = max_pattern_length
        self._filings = FilingRepository(session_factory, claim_lease=claim_lease)
        self._graph = self._compile_graph()

    @property
    def filings(self) -> FilingRepository:
        return self._filings

    def process_email_for_filing(self, email_id: int) -> EmailFilingOutcome:
        start = time.perf_counter()
        try:
            sender, attachments, email_meta = self._classify_email(email_id)
        except RecordNotFoundError:
            raise
        except Exception as exc:
            self._set_email_status(email_id, "failed", error=str(exc))
            raise

        outcome = EmailFilingOutcome(
            email_id=email_id,
            classification=sender.classification,
            filtered=not sender.should_process,
        )

        for attachment_id, filename, mime_type in attachments:
            try:
                handle = self._filings.open_filing(email_id, attachment_id)
                if handle is None:
                    continue
                handle = self._filings.claim(handle)
            except FilingConflictError:
                self._logger.info(
                    "Attachment claimed by another worker",
                    extra={"event": "filing_claim_lost", "email_id": email_id, "attachment_id": attachment_id},
                )
                outcome.attachments_in_flight += 1
                continue

            result = self._run_attachment(
                {
                    "email_id": email_id,
                    "attachment_id": attachment_id,
                    "filename": filename,
                    "mime_type": mime_type,
                    "sender_email": email_meta["from_email"],
                    "email_subject": email_meta["subject"],
                    "sender_allowed": sender.should_process,
                    "sender_classification": sender.classification,
                    "vendor_id": sender.matched_vendor_id,
                    "filing": handle,
                }
            )
            outcome.attachments_processed += 1
            outcome.filing_ids.append(handle.id)
            if result["outcome"] == "filed":
                outcome.attachments_filed += 1
            elif result["outcome"] == "skipped":
                outcome.attachments_skipped += 1
            else:
                outcome.attachments_failed += 1
                outcome.errors.append(f"{filename}: {result.get('error', 'unknown error')}")

        if outcome.filtered:
            email_status = "filtered"
        elif outcome.attachments_failed:
            email_status = "failed"
        elif outcome.attachments_in_flight:
            # Left pending so a later batch picks up whatever the other worker abandons.
            email_status = "pending"
        else:
            email_status = "processed"
        self._set_email_status(email_id, email_status, error="; ".join(outcome.errors) or None)

        self._logger.info(
            "Email filing completed",
            extra={
                "event": "email_filing_completed",
                "email_id": email_id,
                "classification": outcome.classification,
                "email_status": email_status,
                "attachments_processed": outcome.attachments_processed,
                "attachments_filed": outcome.attachments_filed,
                "attachments_skipped": outcome.attachments_skipped,
                "attachments_failed": outcome.attachments_failed,
                "attachments_in_flight": outcome.attachments_in_flight,
                "elapsed_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return outcome

    def manual_file_attachment(
        self,
        filing_id: int,
        destination_type: str,
        destination_path: str,
        actor: str,
    ) -> AttachmentFiling:
        """File an attachment the pipeline left pending, skipped or failed to an operator-chosen destination."""
        if destination_type not in ROUTABLE_DESTINATIONS:
            raise RuleValidationError(f"Unsupported destination type: {destination_type}")
        validate_path_template(destination_path)

        filing = self._filings.get(filing_id)
        if filing is None:
            raise RecordNotFoundError(f"Filing {filing_id} not found")
        latest = self._filings.latest_for_attachment(filing.attachment_id) or filing
        if latest.filing_status == "filed":
            raise FilingTransitionError(f"Attachment {filing.attachment_id} is already filed (filing {latest.id})")
        if latest.filing_status == "processing":
            raise FilingConflictError(f"Filing {latest.id} is being processed by another worker")

        if latest.filing_status == "failed":
            handle = self._filings.open_filing(latest.source_email_id, latest.attachment_id)
        else:
            handle = FilingHandle(id=latest.id, status=latest.filing_status, version=latest.version)
        handle = self._filings.claim(handle)

        with self._session_factory() as session:
            attachment = session.get(EmailAttachment, latest.attachment_id)
            if attachment is None:
                raise RecordNotFoundError(f"Attachment {latest.attachment_id} not found")
            filename, mime_type, content = attachment.filename, attachment.mime_type, attachment.content or b""

        category = latest.document_category or "other"
        path = render_path_template(
            destination_path,
            AttachmentContext(
                category=category,
                vendor_name=latest.vendor_name or "",
                document_number=latest.extracted_document_number or "",
            ),
            datetime.now(timezone.utc),
        )
        document = FiledDocument(
            filename=filename,
            mime_type=mime_type,
            content=content,
            category=category,
            vendor_name=latest.vendor_name or "",
            document_number=latest.extracted_document_number or "",
        )
        try:
            reference = self._destinations.write(destination_type, path, document)
        except DestinationWriteError as exc:
            self._filings.mark_failed(handle, str(exc), destination_type=destination_type, destination_path=path)
            raise

        handle = self._record_filed(
            handle,
            destination_type,
            reference,
            document_category=category,
            vendor_name=latest.vendor_name,
            vendor_id=latest.vendor_id,
            extracted_document_number=latest.extracted_document_number,
            destination_path=path,
            filing_rule_id=None,
            filed_by=actor,
            auto_filed=False,
        )
        self._filings.add_log(
            handle.id,
            "manual_filed",
            "Attachment filed by operator",
            {"actor": actor, "destination_type": destination_type, "destination_path": path},
        )
        self._logger.info(
            "Attachment filed manually",
            extra={
                "event": "attachment_manually_filed",
                "filing_id": handle.id,
                "attachment_id": latest.attachment_id,
                "destination_type": destination_type,
                "actor": actor,
            },
        )
        return self._filings.get(handle.id)

    def _record_filed(
        self, handle: FilingHandle, destination_type: str, reference: str, **fields
    ) -> FilingHandle:
        try:
            return self._filings.mark_filed(
                handle, destination_type=destination_type, destination_reference=reference, **fields
            )
        except FilingConflictError:
            try:
                self._destinations.discard(destination_type, reference)
            except DestinationWriteError:
                self._logger.exception(
                    "Written document left behind after losing the filing record",
                    extra={"event": "filed_document_orphaned", "filing_id": handle.id, "reference": reference},
                )
            raise

    def _classify_email(
        self, email_id: int
    ) -> tuple[SenderClassification, list[tuple[int, str, str]], dict[str, str]]:
        with self._session_factory() as session:
            email = session.get(InboundEmail, email_id)
            if email is None:
                raise RecordNotFoundError(f"Email {email_id} not found")

            blocked, trusted = load_sender_rules(session)
            sender = classify_sender(
                email.from_email,
                email.subject,
                email.body_text,
                blocked,
                trusted,
                known_vendor_id=find_vendor_id_by_domain(session, email.from_email),
                policy=self._filter_policy,
                max_pattern_length=self._max_pattern_length,
            )
            email.classification = sender.classification
            email.classification_payload = sender.model_dump(mode="json")

            attachments = [
                (attachment.id, attachment.filename, attachment.mime_type)
                for attachment in session.scalars(
                    select(EmailAttachment)
                    .where(EmailAttachment.email_id == email_id)
                    .order_by(EmailAttachment.id)
                ).all()
            ]
            meta = {"from_email": email.from_email, "subject": email.subject}
            session.commit()

        self._logger.info(
            "Sender classified",
            extra={
                "event": "sender_classified",
                "email_id": email_id,
                "classification": sender.classification,
                "sender_reputation": sender.sender_reputation,
                "should_process": sender.should_process,
            },
        )
        return sender, attachments, meta

    def _run_attachment(self, state: AttachmentState) -> dict:
        try:
            return self._graph.invoke(state)
        except Exception as exc:
            self._logger.exception(
                "Attachment filing failed",
                extra={
                    "event": "attachment_filing_failed",
                    "email_id": state["email_id"],
                    "attachment_id": state["attachment_id"],
                    "error": str(exc),
                },
            )
            try:
                self._filings.mark_failed(state["filing"], str(exc))
            except FilingConflictError:
                self._logger.warning(
                    "Could not record filing failure; record changed concurrently",
                    extra={"event": "filing_failure_not_recorded", "filing_id": state["filing"].id},
                )
            except Exception:
                # The claim lease lets a later run recover the row.
                self._logger.exception(
                    "Could not record filing failure",
                    extra={"event": "filing_failure_not_recorded", "filing_id": state["filing"].id},
                )
            self._filings.add_log(state["filing"].id, "failed", "Attachment filing failed", {"error": str(exc)})
            return {**state, "outcome": "failed", "error": str(exc)}

    def _compile_graph(self):
        graph = StateGraph(AttachmentState)
        graph.add_node("gate", self._gate_node)
        graph.add_node("extract", self._extract_node)
        graph.add_node("classify", self._classify_node)
        graph.add_node("route", self._route_node)
        graph.add_node("write", self._write_node)
        graph.add_node("skip", self._skip_node)

        graph.set_entry_point("gate")
        graph.add_conditional_edges("gate", self._next_after_gate, {"extract": "extract", "skip": "skip"})
        graph.add_edge("extract", "classify")
        graph.add_edge("classify", "route")
        graph.add_conditional_edges("route", self._next_after_route, {"write": "write", "skip": "skip"})
        graph.add_edge("write", END)
        graph.add_edge("skip", END)

        return graph.compile()

    def _gate_node(self, state: AttachmentState) -> dict:
        if not state["sender_allowed"]:
            return {"skip_reason": "sender_filtered"}
        if not is_document_mime_type(state["mime_type"]):
            return {"skip_reason": "non_document_attachment"}
        return {"skip_reason": ""}

    @staticmethod
    def _next_after_gate(state: AttachmentState) -> Literal["extract", "skip"]:
        return "skip" if state.get("skip_reason") else "extract"

    def _extract_node(self, state: AttachmentState) -> dict:
        with self._session_factory() as session:
            attachment = session.get(EmailAttachment, state["attachment_id"])
            if attachment is None:
                raise RecordNotFoundError(f"Attachment {state['attachment_id']} not found")
            content = attachment.content or b""
            text = attachment.extracted_text
            if text is None:
                text = self._document_processor.extract_text(content, attachment.mime_type, attachment.filename)
                attachment.extracted_text = text
                session.commit()
        return {"content": content, "text": text}

    def _classify_node(self, state: AttachmentState) -> dict:
        classification = self._document_agent.classify(
            state["filename"],
            state.get("text", ""),
            email_subject=state["email_subject"],
            email_from=state["sender_email"],
        )
        return {"classification": classification}

    def _route_node(self, state: AttachmentState) -> dict:
        classification = state["classification"]
        context = AttachmentContext(
            category=classification.category,
            confidence=classification.confidence,
            vendor_name=classification.vendor_name,
            document_number=classification.document_number,
            amount=classification.amount,
            currency=classification.currency,
            sender_email=state["sender_email"],
            sender_classification=state["sender_classification"],
            vendor_id=state.get("vendor_id"),
            suggested_filing_path=classification.suggested_filing_path,
        )
        with self._session_factory() as session:
            routing = self._rule_engine.resolve(session, context, datetime.now(timezone.utc))
            session.commit()
        update: dict = {"routing": routing}
        if routing.skipped:
            update["skip_reason"] = routing.reason or "no_matching_rule"
        return update

    @staticmethod
    def _next_after_route(state: AttachmentState) -> Literal["write", "skip"]:
        return "skip" if state["routing"].skipped else "write"

    def _write_node(self, state: AttachmentState) -> dict:
        classification = state["classification"]
        routing = state["routing"]
        reference = self._destinations.write(
            routing.destination_type,
            routing.destination_path,
            FiledDocument(
                filename=state["filename"],
                mime_type=state["mime_type"],
                content=state.get("content", b""),
                category=classification.category,
                vendor_name=classification.vendor_name,
                document_number=classification.document_number,
            ),
        )
        handle = self._record_filed(
            state["filing"],
            routing.destination_type,
            reference,
            **self._classification_fields(state),
            destination_path=routing.destination_path,
            filing_rule_id=routing.rule_id,
        )
        self._filings.add_log(
            handle.id,
            "filed",
            "Attachment filed",
            {"destination_type": routing.destination_type, "destination_path": routing.destination_path},
        )
        return {"filing": handle, "reference": reference, "outcome": "filed"}

    def _skip_node(self, state: AttachmentState) -> dict:
        reason = state.get("skip_reason") or "skipped"
        routing = state.get("routing")
        handle = self._filings.mark_skipped(
            state["filing"],
            reason,
            **self._classification_fields(state),
            destination_type="pending",
            destination_path=routing.destination_path if routing is not None else None,
        )
        self._filings.add_log(handle.id, "skipped", "Attachment skipped", {"reason": reason})
        return {"filing": handle, "outcome": "skipped"}

    @staticmethod
    def _classification_fields(state: AttachmentState) -> dict:
        fields: dict = {"vendor_id": state.get("vendor_id")}
        classification = state.get("classification")
        if classification is None:
            return fields
        fields.update(
            document_category=classification.category,
            document_category_confidence=classification.confidence,
            extracted_document_number=classification.document_number or None,
            vendor_name=classification.vendor_name or None,
            extracted_amount=classification.amount,
            extracted_currency=classification.currency if classification.amount is not None else None,
        )
        return fields

    def _set_email_status(self, email_id: int, status: str, error: str | None = None) -> None:
        with self._session_factory() as session:
            email = session.get(InboundEmail, email_id)
            if email is None:
                return
            email.status = status
            email.error = error
            session.commit()
