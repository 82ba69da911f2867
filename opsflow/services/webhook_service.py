from __future__ import annotations

from typing import Any

from opsflow.core.schemas import BatchFilingReport, EmailFilingOutcome, WebhookProcessingResult


def build_email_intake_response(outcome: EmailFilingOutcome, processing_time_ms: int) -> dict[str, Any]:
    if outcome.filtered:
        status = "filtered"
    elif outcome.attachments_failed:
        status = "partial" if outcome.attachments_filed else "failed"
    elif outcome.attachments_in_flight:
        status = "pending"
    else:
        status = "processed"

    return {
        "status": status,
        "email_id": str(outcome.email_id),
        "classification": outcome.classification,
        "attachments_processed": outcome.attachments_processed,
        "attachments_filed": outcome.attachments_filed,
        "attachments_skipped": outcome.attachments_skipped,
        "attachments_failed": outcome.attachments_failed,
        "attachments_in_flight": outcome.attachments_in_flight,
        "filing_ids": [str(filing_id) for filing_id in outcome.filing_ids],
        "errors": outcome.errors,
        "processing_time_ms": processing_time_ms,
    }


def build_batch_response(report: BatchFilingReport) -> dict[str, Any]:
    return {
        "success": report.success,
        "emails_scanned": report.emails_scanned,
        "emails_processed": report.emails_processed,
        "emails_skipped": report.emails_skipped,
        "emails_failed": report.emails_failed,
        "attachments_processed": report.attachments_processed,
        "attachments_filed": report.attachments_filed,
        "failure_count": report.failure_count,
        "failures": report.failures,
        "duration_ms": report.duration_ms,
    }


def build_shopify_webhook_response(result: WebhookProcessingResult) -> dict[str, Any]:
    if result.should_process:
        return {
            "status": "accepted",
            "topic": result.topic,
            "shop_domain": result.shop_domain,
            "idempotency_key": result.idempotency_key,
        }
    # Duplicates are acknowledged so the sender stops retrying.
    return {
        "status": "duplicate" if result.error == "Already processed" else "rejected",
        "error": result.error,
        "topic": result.topic,
    }
