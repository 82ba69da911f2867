from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


SenderClassificationType = Literal[
    "legitimate", "spam", "solicitation", "phishing", "newsletter", "automated", "unknown"
]
SenderReputation = Literal["trusted", "neutral", "suspicious", "blocked"]
PatternType = Literal["exact", "domain", "regex"]
BlockReason = Literal["spam", "solicitation", "phishing", "manual"]
DocumentCategory = Literal[
    "invoice",
    "receipt",
    "purchase_order",
    "packing_slip",
    "bill_of_lading",
    "customs_document",
    "certificate_of_origin",
    "freight_quote",
    "shipping_label",
    "contract",
    "correspondence",
    "other",
]
DestinationType = Literal["data_room", "google_drive", "vendor_folder", "customs", "pending"]
FilingStatus = Literal["pending", "processing", "filed", "failed", "skipped"]
RiskLevel = Literal["low", "medium", "high", "critical"]
ApprovalStatus = Literal["pending", "escalated", "approved", "rejected", "auto_approved"]
QuoteStatus = Literal["pending", "received", "accepted", "rejected"]


class SenderClassification(BaseModel):
    classification: SenderClassificationType
    confidence: float = Field(ge=0.0, le=1.0)
    spam_score: float = 0.0
    solicitation_score: float = 0.0
    reasons: list[str] = Field(default_factory=list)
    detected_patterns: list[str] = Field(default_factory=list)
    sender_reputation: SenderReputation = "neutral"
    is_known_vendor: bool = False
    matched_vendor_id: int | None = None
    should_process: bool

    model_config = ConfigDict(extra="forbid")


class DocumentClassification(BaseModel):
    category: DocumentCategory = "other"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    vendor_name: str = ""
    document_number: str = ""
    document_date: str = ""
    amount: float | None = None
    currency: str = "USD"
    suggested_filing_path: str = ""

    model_config = ConfigDict(extra="forbid")


class AttachmentContext(BaseModel):
    category: DocumentCategory
    confidence: float = 0.0
    vendor_name: str = ""
    document_number: str = ""
    amount: float | None = None
    currency: str = "USD"
    sender_email: str = ""
    sender_classification: SenderClassificationType | None = None
    vendor_id: int | None = None
    suggested_filing_path: str = ""

    model_config = ConfigDict(extra="forbid")


class RoutingOutcome(BaseModel):
    destination_type: DestinationType
    destination_path: str
    rule_id: int | None = None
    rule_name: str | None = None
    skipped: bool = False
    reason: str = ""

    model_config = ConfigDict(extra="forbid")


class EmailFilingOutcome(BaseModel):
    email_id: int
    classification: SenderClassificationType
    filtered: bool = False
    attachments_processed: int = 0
    attachments_filed: int = 0
    attachments_skipped: int = 0
    attachments_failed: int = 0
    attachments_in_flight: int = 0
    filing_ids: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class BatchFilingReport(BaseModel):
    emails_scanned: int = 0
    emails_processed: int = 0
    emails_skipped: int = 0
    emails_failed: int = 0
    attachments_processed: int = 0
    attachments_filed: int = 0
    failures: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    model_config = ConfigDict(extra="forbid")

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def success(self) -> bool:
        if not self.failures:
            return True
        return (self.emails_processed + self.emails_skipped) > 0


class WebhookProcessingResult(BaseModel):
    should_process: bool
    error: str | None = None
    payload: dict[str, Any] | None = None
    topic: str | None = None
    shop_domain: str | None = None
    idempotency_key: str | None = None

    model_config = ConfigDict(extra="forbid")


class SenderRuleCreate(BaseModel):
    pattern: str = Field(min_length=1, max_length=320)
    pattern_type: PatternType = "exact"
    reason: BlockReason = "manual"
    vendor_id: int | None = None
    notes: str | None = None

    model_config = ConfigDict(extra="forbid")


class FilingRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    priority: int = 100
    is_enabled: bool = True
    destination_type: DestinationType
    path_template: str = Field(min_length=1, max_length=1024)
    document_categories: list[DocumentCategory] | None = None
    vendor_names: list[str] | None = None
    email_categories: list[SenderClassificationType] | None = None
    vendor_ids: list[int] | None = None
    sender_pattern: str | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    min_amount: float | None = None
    max_amount: float | None = None

    model_config = ConfigDict(extra="forbid")


class FilingRuleUpdate(BaseModel):
    name: str | None = None
    priority: int | None = None
    is_enabled: bool | None = None
    destination_type: DestinationType | None = None
    path_template: str | None = None
    document_categories: list[DocumentCategory] | None = None
    vendor_names: list[str] | None = None
    email_categories: list[SenderClassificationType] | None = None
    vendor_ids: list[int] | None = None
    sender_pattern: str | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    min_amount: float | None = None
    max_amount: float | None = None

    model_config = ConfigDict(extra="forbid")


class QuoteCreate(BaseModel):
    vendor_id: int
    unit_price: float = Field(ge=0.0)
    total_price: float = Field(ge=0.0)
    lead_time_days: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


class ApprovalRequest(BaseModel):
    approval_type: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=255)
    monetary_value: float = Field(ge=0.0)
    ai_confidence: float = Field(ge=0.0, le=100.0)
    risk_assessment: RiskLevel | None = None
    requested_at: datetime | None = None

    model_config = ConfigDict(extra="forbid")
