from __future__ import annotations

from dataclasses import dataclass, field
import re

from opsflow.core.schemas import DocumentCategory, DocumentClassification
from opsflow.processing.data_cleaner import detect_currency, parse_amount, parse_date_to_iso

DOCUMENT_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "text/csv",
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/tiff",
    }
)


@dataclass(frozen=True)
class CategoryPatterns:
    priority: int
    patterns: tuple[re.Pattern[str], ...]


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


DOCUMENT_PATTERNS: dict[DocumentCategory, CategoryPatterns] = {
    "invoice": CategoryPatterns(
        10,
        _patterns(
            r"invoice\s*#?\s*:?\s*\d",
            r"bill\s*to\s*:",
            r"amount\s*due",
            r"payment\s*terms",
            r"due\s*date",
            r"total\s*amount",
            r"invoice\s*date",
        ),
    ),
    "purchase_order": CategoryPatterns(
        9,
        _patterns(
            r"purchase\s*order",
            r"\bpo\s*#?\s*:?\s*\d",
            r"order\s*confirmation",
            r"order\s*number",
            r"vendor\s*#",
        ),
    ),
    "packing_slip": CategoryPatterns(
        8,
        _patterns(
            r"packing\s*(?:list|slip)",
            r"qty\s*shipped",
            r"items\s*included",
            r"package\s*contents",
            r"carton\s*#",
        ),
    ),
    "bill_of_lading": CategoryPatterns(
        8,
        _patterns(
            r"bill\s*of\s*lading",
            r"b/l\s*#",
            r"bol\s*#",
            r"shipper",
            r"consignee",
            r"notify\s*party",
            r"ocean\s*freight",
            r"container\s*#",
        ),
    ),
    "customs_document": CategoryPatterns(
        7,
        _patterns(
            r"customs",
            r"import\s*declaration",
            r"export\s*declaration",
            r"harmonized\s*code",
            r"hs\s*code",
            r"tariff",
            r"\bduty\b",
            r"clearance",
        ),
    ),
    "certificate_of_origin": CategoryPatterns(
        7,
        _patterns(
            r"certificate\s*of\s*origin",
            r"country\s*of\s*origin",
            r"coo\s*#",
            r"origin\s*certificate",
        ),
    ),
    "freight_quote": CategoryPatterns(
        6,
        _patterns(
            r"freight\s*quote",
            r"shipping\s*quote",
            r"rate\s*quote",
            r"quotation",
            r"freight\s*rate",
            r"estimated\s*cost",
        ),
    ),
    "receipt": CategoryPatterns(
        5,
        _patterns(
            r"receipt",
            r"payment\s*confirmation",
            r"transaction\s*id",
            r"payment\s*received",
            r"thank\s*you\s*for\s*your\s*(?:payment|purchase)",
        ),
    ),
    "shipping_label": CategoryPatterns(
        4,
        _patterns(
            r"shipping\s*label",
            r"tracking\s*#",
            r"tracking\s*number",
            r"ship\s*to",
            r"from\s*address",
        ),
    ),
    "contract": CategoryPatterns(
        3,
        _patterns(
            r"agreement",
            r"contract",
            r"terms\s*and\s*conditions",
            r"hereby\s*agree",
            r"signatures?:",
            r"effective\s*date",
        ),
    ),
    "correspondence": CategoryPatterns(
        1,
        _patterns(r"dear\s+", r"regards,", r"sincerely,", r"best\s*regards"),
    ),
    "other": CategoryPatterns(0, ()),
}

_DOCUMENT_NUMBER_RE = re.compile(
    r"(?i)\b(?:invoice|inv|purchase\s*order|po|order|b/l|bol|quote|quotation|receipt)"
    r"\s*(?:#|no\.?|number)?\s*:?\s*([A-Z0-9][A-Z0-9\-/]{2,40})"
)
_AMOUNT_RE = re.compile(
    r"(?i)\b(?:grand\s*total|total\s*amount|total\s*due|amount\s*due|balance\s*due|total)"
    r"\s*:?\s*((?:[A-Z]{3}\s*)?[$€£¥]?\s*\(?[\d,]+(?:\.\d{1,2})?\)?)"
)
_DATE_RE = re.compile(
    r"(?i)\b(?:invoice\s*date|document\s*date|date)\s*:?\s*"
    r"(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4}|[A-Z][a-z]+ \d{1,2}(?:st|nd|rd|th)?, \d{4})"
)
_VENDOR_RE = re.compile(r"(?im)^\s*(?:vendor|supplier|from|remit\s*to)\s*:\s*(.{2,80}?)\s*$")


@dataclass
class QuickClassification:
    category: DocumentCategory
    confidence: float
    matched_patterns: list[str] = field(default_factory=list)


def is_document_mime_type(mime_type: str | None) -> bool:
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    return normalized in DOCUMENT_MIME_TYPES


def quick_classify_document(filename: str, text: str | None = None) -> QuickClassification:
    content = f"{filename or ''} {text or ''}"
    matched: list[str] = []
    best_category: DocumentCategory = "other"
    best_score = 0.0
    best_priority = 0

    for category, config in DOCUMENT_PATTERNS.items():
        hits = 0
        for pattern in config.patterns:
            if pattern.search(content):
                hits += 1
                matched.append(f"{category}:{pattern.pattern}")
        if hits == 0:
            continue

        weighted = hits * (1 + config.priority / 10)
        if weighted > best_score or (weighted == best_score and config.priority > best_priority):
            best_score = weighted
            best_priority = config.priority
            best_category = category

    confidence = min(0.95, 0.3 + best_score * 0.15)
    return QuickClassification(category=best_category, confidence=round(confidence, 4), matched_patterns=matched)


def extract_document_fields(text: str) -> dict[str, object]:
    """Regex extraction of the fields the filing rules care about."""
    fields: dict[str, object] = {}
    if not text:
        return fields

    for number in _DOCUMENT_NUMBER_RE.finditer(text):
        if any(char.isdigit() for char in number.group(1)):
            fields["document_number"] = number.group(1).strip("-/")
            break

    amount = _AMOUNT_RE.search(text)
    if amount:
        parsed = parse_amount(amount.group(1))
        if parsed is not None:
            fields["amount"] = parsed
            fields["currency"] = detect_currency(amount.group(1), default=detect_currency(text))

    date = _DATE_RE.search(text)
    if date:
        iso = parse_date_to_iso(date.group(1))
        if iso:
            fields["document_date"] = iso

    vendor = _VENDOR_RE.search(text)
    if vendor:
        fields["vendor_name"] = vendor.group(1).strip()

    return fields


def heuristic_classification(filename: str, text: str | None = None) -> DocumentClassification:
    quick = quick_classify_document(filename, text)
    extracted = extract_document_fields(text or "")
    return DocumentClassification(category=quick.category, confidence=quick.confidence, **extracted)
