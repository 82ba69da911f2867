import logging
import time

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.security import verify_webhook_api_key
from opsflow.integrations.mailbox import MailboxAttachment, MailboxMessage
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import store_inbound_email
from opsflow.services.webhook_service import build_email_intake_response

_PDF_MIME = "application/pdf"


def _sanitize_log_value(value: str) -> str:
    return " ".join(value.splitlines()).strip()


def build_email_router(
    session_factory: sessionmaker[Session],
    orchestrator: FilingOrchestrator,
    max_attachment_size_bytes: int,
) -> APIRouter:
    router = APIRouter(prefix="", tags=["email"])
    logger = logging.getLogger(__name__)

    # Plain def: FastAPI runs it in the threadpool, off the event loop.
    @router.post("/email-webhook")
    def email_webhook(
        sender: str = Form(...),
        subject: str = Form(default=""),
        body: str = Form(default=""),
        sender_name: str | None = Form(default=None),
        attachments: list[UploadFile] = File(default=[]),
        x_idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
        _authorized: None = Depends(verify_webhook_api_key),
    ) -> dict:
        start = time.perf_counter()

        files: list[MailboxAttachment] = []
        for attachment in attachments:
            if not attachment.filename:
                raise HTTPException(status_code=400, detail="Missing attachment filename")
            files.append(
                MailboxAttachment(
                    filename=attachment.filename,
                    mime_type=attachment.content_type or "application/octet-stream",
                    content=_read_attachment(
                        attachment=attachment,
                        max_attachment_size_bytes=max_attachment_size_bytes,
                    ),
                )
            )

        message = MailboxMessage(
            external_id=(x_idempotency_key or "").strip(),
            from_email=sender,
            from_name=sender_name,
            subject=subject,
            body_text=body,
            attachments=files,
        )
        email_id, created = store_inbound_email(session_factory, message)

        logger.info(
            "Email webhook accepted",
            extra={
                "event": "email_webhook_received",
                "sender": _sanitize_log_value(sender),
                "subject": _sanitize_log_value(subject),
                "attachment_count": len(files),
                "email_id": email_id,
                "duplicate": not created,
            },
        )
        if not created:
            return {"status": "duplicate", "email_id": str(email_id)}

        outcome = orchestrator.process_email_for_filing(email_id)
        processing_time_ms = int((time.perf_counter() - start) * 1000)
        response = build_email_intake_response(outcome, processing_time_ms)

        logger.info(
            "Email webhook processed",
            extra={
                "event": "email_webhook_processed",
                "email_id": email_id,
                "classification": response["classification"],
                "status": response["status"],
                "attachments_filed": response["attachments_filed"],
                "processing_time_ms": processing_time_ms,
            },
        )
        return response

    return router


def _read_attachment(*, attachment: UploadFile, max_attachment_size_bytes: int) -> bytes:
    is_pdf = attachment.content_type == _PDF_MIME or (attachment.filename or "").lower().endswith(".pdf")
    if is_pdf:
        file_header = attachment.file.read(5)
        attachment.file.seek(0)
        if file_header != b"%PDF-":
            raise HTTPException(status_code=400, detail="Attachment content is not a valid PDF")

    chunks: list[bytes] = []
    bytes_read = 0
    chunk_size = 1024 * 1024
    while True:
        chunk = attachment.file.read(chunk_size)
        if not chunk:
            break
        bytes_read += len(chunk)
        if bytes_read > max_attachment_size_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Attachment exceeds max size of {max_attachment_size_bytes} bytes",
            )
        chunks.append(chunk)
    return b"".join(chunks)
