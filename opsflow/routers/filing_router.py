from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.errors import RecordNotFoundError
from opsflow.core.schemas import BlockReason, FilingRuleCreate, FilingRuleUpdate, SenderRuleCreate
from opsflow.core.security import verify_admin_api_key
from opsflow.db.models import AttachmentFiling, FilingRule, SenderRule
from opsflow.integrations.mailbox import MailboxClient
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import InboxScanner
from opsflow.routers.http_errors import DOMAIN_ERRORS, to_http_exception
from opsflow.routing.filing_rules import create_filing_rule, list_filing_rules, update_filing_rule
from opsflow.services.sender_rule_service import SenderRuleService
from opsflow.services.webhook_service import build_batch_response, build_email_intake_response


class AutoBlockRequest(BaseModel):
    email: str
    reason: BlockReason


class ManualFilingRequest(BaseModel):
    destination_type: str = Field(min_length=1, max_length=32)
    destination_path: str = Field(min_length=1, max_length=1024)
    actor: str = Field(min_length=1, max_length=255)


def _filing_payload(filing: AttachmentFiling) -> dict:
    return {
        "filing_id": filing.id,
        "email_id": filing.source_email_id,
        "attachment_id": filing.attachment_id,
        "status": filing.filing_status,
        "document_category": filing.document_category,
        "confidence": filing.document_category_confidence,
        "document_number": filing.extracted_document_number,
        "vendor_name": filing.vendor_name,
        "amount": filing.extracted_amount,
        "currency": filing.extracted_currency,
        "destination_type": filing.destination_type,
        "destination_path": filing.destination_path,
        "destination_reference": filing.destination_reference,
        "filing_rule_id": filing.filing_rule_id,
        "error": filing.error,
        "version": filing.version,
        "filed_at": filing.filed_at,
        "filed_by": filing.filed_by,
        "auto_filed": filing.auto_filed,
        "created_at": filing.created_at,
    }


def _rule_payload(rule: FilingRule) -> dict:
    return {
        "rule_id": rule.id,
        "name": rule.name,
        "priority": rule.priority,
        "is_enabled": rule.is_enabled,
        "document_categories": rule.document_categories,
        "vendor_names": rule.vendor_names,
        "email_categories": rule.email_categories,
        "vendor_ids": rule.vendor_ids,
        "sender_pattern": rule.sender_pattern,
        "min_confidence": rule.min_confidence,
        "min_amount": rule.min_amount,
        "max_amount": rule.max_amount,
        "destination_type": rule.destination_type,
        "path_template": rule.path_template,
        "times_matched": rule.times_matched,
        "last_matched_at": rule.last_matched_at,
    }


def _sender_rule_payload(rule: SenderRule) -> dict:
    return {
        "rule_id": rule.id,
        "list_type": rule.list_type,
        "pattern": rule.pattern,
        "pattern_type": rule.pattern_type,
        "reason": rule.reason,
        "vendor_id": rule.vendor_id,
        "notes": rule.notes,
        "auto_detected": rule.auto_detected,
    }


def build_filing_router(
    session_factory: sessionmaker[Session],
    orchestrator: FilingOrchestrator,
    scanner: InboxScanner,
    sender_rules: SenderRuleService,
    *,
    mailbox: MailboxClient | None = None,
    default_scan_limit: int = 50,
    max_pattern_length: int = 256,
) -> APIRouter:
    router = APIRouter(prefix="", tags=["filing"], dependencies=[Depends(verify_admin_api_key)])

    @router.post("/filing/scan")
    def scan_inbox(max_emails: int = Query(default=default_scan_limit, ge=1, le=500)) -> dict:
        if mailbox is None:
            raise HTTPException(status_code=503, detail="No mailbox integration configured")
        try:
            report = scanner.scan_gmail_for_attachments(mailbox, max_emails)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return build_batch_response(report)

    @router.post("/filing/process-pending")
    def process_pending(max_emails: int = Query(default=default_scan_limit, ge=1, le=500)) -> dict:
        return build_batch_response(scanner.process_unprocessed_emails(max_emails))

    @router.post("/emails/{email_id}/file")
    def file_email(email_id: int) -> dict:
        try:
            outcome = orchestrator.process_email_for_filing(email_id)
        except RecordNotFoundError as exc:
            raise to_http_exception(exc) from exc
        return build_email_intake_response(outcome, processing_time_ms=0)

    @router.get("/filings")
    def get_filings(
        status: str | None = Query(default=None),
        email_id: int | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> dict:
        items = orchestrator.filings.list_filings(status=status, email_id=email_id, limit=limit)
        return {"count": len(items), "items": [_filing_payload(filing) for filing in items]}

    @router.post("/filings/{filing_id}/manual-file")
    def manual_file(filing_id: int, payload: ManualFilingRequest) -> dict:
        try:
            filing = orchestrator.manual_file_attachment(
                filing_id, payload.destination_type, payload.destination_path, payload.actor
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return _filing_payload(filing)

    @router.get("/filing/statistics")
    def get_statistics() -> dict:
        return scanner.get_filing_statistics()

    @router.get("/filing-rules")
    def get_filing_rules() -> list[dict]:
        with session_factory() as session:
            return [_rule_payload(rule) for rule in list_filing_rules(session)]

    @router.post("/filing-rules", status_code=201)
    def post_filing_rule(payload: FilingRuleCreate) -> dict:
        with session_factory() as session:
            try:
                rule = create_filing_rule(session, payload, max_pattern_length=max_pattern_length)
            except DOMAIN_ERRORS as exc:
                raise to_http_exception(exc) from exc
            return _rule_payload(rule)

    @router.patch("/filing-rules/{rule_id}")
    def patch_filing_rule(rule_id: int, payload: FilingRuleUpdate) -> dict:
        with session_factory() as session:
            try:
                rule = update_filing_rule(session, rule_id, payload, max_pattern_length=max_pattern_length)
            except DOMAIN_ERRORS as exc:
                raise to_http_exception(exc) from exc
            if rule is None:
                raise HTTPException(status_code=404, detail="Filing rule not found")
            return _rule_payload(rule)

    @router.get("/sender-rules")
    def get_sender_rules(list_type: str | None = Query(default=None)) -> list[dict]:
        try:
            rules = sender_rules.list_sender_rules(list_type)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return [_sender_rule_payload(rule) for rule in rules]

    @router.post("/sender-rules/blocked", status_code=201)
    def post_blocked_sender(payload: SenderRuleCreate) -> dict:
        try:
            return _sender_rule_payload(sender_rules.add_blocked_sender(payload))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.post("/sender-rules/trusted", status_code=201)
    def post_trusted_sender(payload: SenderRuleCreate) -> dict:
        try:
            return _sender_rule_payload(sender_rules.add_trusted_sender(payload))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.post("/sender-rules/auto-block", status_code=201)
    def post_auto_block(payload: AutoBlockRequest) -> dict:
        try:
            return _sender_rule_payload(sender_rules.auto_block_sender(payload.email, payload.reason))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.delete("/sender-rules/{rule_id}")
    def delete_sender_rule(rule_id: int) -> dict:
        if not sender_rules.remove_sender_rule(rule_id):
            raise HTTPException(status_code=404, detail="Sender rule not found")
        return {"status": "removed", "rule_id": rule_id}

    return router
