import logging
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from opsflow.classification.document_classifier import (
    extract_document_fields,
    heuristic_classification,
)
from opsflow.core.errors import ClassificationError
from opsflow.core.schemas import DocumentClassification
from opsflow.processing.data_cleaner import clean_payload_for_model
from opsflow.services.structured_llm import run_structured_llm

_FALLBACK_CONFIDENCE_FACTOR = 0.8


class DocumentClassificationAgent:
    def __init__(
        self,
        llm: BaseChatModel | None,
        max_retries: int = 3,
        max_input_chars: int = 4000,
    ):
        self._logger = logging.getLogger(__name__)
        self._llm = llm
        self._max_retries = max_retries
        self._max_input_chars = max(max_input_chars, 1000)

    def classify(
        self,
        filename: str,
        text: str,
        *,
        email_subject: str = "",
        email_from: str = "",
    ) -> DocumentClassification:
        if self._llm is None:
            return heuristic_classification(filename, text)

        try:
            result, usage, latency_ms = self._classify_with_llm(filename, text, email_subject, email_from)
        except ClassificationError as exc:
            fallback = heuristic_classification(filename, text)
            self._logger.warning(
                "Document classification fell back to keyword heuristics",
                extra={
                    "event": "document_classification_fallback",
                    "attachment_filename": filename,
                    "category": fallback.category,
                    "error": str(exc),
                },
            )
            return fallback.model_copy(
                update={"confidence": round(fallback.confidence * _FALLBACK_CONFIDENCE_FACTOR, 4)}
            )

        self._logger.info(
            "Document classified",
            extra={
                "event": "document_classified",
                "attachment_filename": filename,
                "category": result.category,
                "confidence": result.confidence,
                "latency_ms": latency_ms,
                "usage": usage,
            },
        )
        return result

    def _classify_with_llm(
        self,
        filename: str,
        text: str,
        email_subject: str,
        email_from: str,
    ) -> tuple[DocumentClassification, dict[str, Any], int]:
        system_prompt = (
            "You classify business documents received as email attachments and return STRICT JSON only "
            "with these keys: category, confidence, vendor_name, document_number, document_date, amount, "
            "currency, suggested_filing_path. category must be one of: invoice, receipt, purchase_order, "
            "packing_slip, bill_of_lading, customs_document, certificate_of_origin, freight_quote, "
            "shipping_label, contract, correspondence, other. confidence is between 0 and 1. "
            "Return JSON only with no prose or markdown."
        )
        body = (text or "").strip()[: self._max_input_chars] or "(No text extracted)"
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(
                content=(
                    f"FILENAME: {filename}\n"
                    f"EMAIL SUBJECT: {email_subject or 'N/A'}\n"
                    f"EMAIL FROM: {email_from or 'N/A'}\n\n"
                    f"DOCUMENT CONTENT:\n{body}"
                )
            ),
        ]
        extracted = extract_document_fields(text or "")

        def _parse_output(parsed: dict[str, Any]) -> DocumentClassification:
            cleaned = clean_payload_for_model(parsed, DocumentClassification)
            for key, value in extracted.items():
                if not cleaned.get(key):
                    cleaned[key] = value
            return DocumentClassification.model_validate(cleaned)

        return run_structured_llm(
            self._llm,
            messages,
            max_retries=self._max_retries,
            parse_output=_parse_output,
            logger=self._logger,
            parse_failure_event="document_classification_parse_failure",
            parse_failure_log_message="Document classification parse failure",
            not_found_message=(
                "Configured CLASSIFICATION_MODEL is not available for this Anthropic API key. "
                "Set CLASSIFICATION_MODEL to a model id available in your Anthropic account."
            ),
            error_type=ClassificationError,
            final_error_prefix="Document classification failed",
        )
