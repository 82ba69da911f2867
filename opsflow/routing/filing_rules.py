from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from opsflow.classification.sender_classifier import (
    DEFAULT_PATTERN_MAX_LENGTH,
    compile_sender_pattern,
    normalize_sender_address,
)
from opsflow.core.errors import RuleValidationError
from opsflow.core.schemas import (
    AttachmentContext,
    FilingRuleCreate,
    FilingRuleUpdate,
    RoutingOutcome,
)
from opsflow.db.models import FilingRule

logger = logging.getLogger(__name__)

TEMPLATE_TOKENS = frozenset({"vendorName", "documentType", "documentNumber", "date", "month", "year"})
_TOKEN_RE = re.compile(r"\{([^{}]*)\}")
_UNSAFE_SEGMENT_CHARS_RE = re.compile(r"[\\/:*?\"<>|\x00-\x1f]+")
ROUTABLE_DESTINATIONS = frozenset({"data_room", "google_drive", "vendor_folder", "customs"})
_REQUIRED_RULE_FIELDS = ("name", "priority", "is_enabled", "destination_type", "path_template")


class FilingRuleLike(Protocol):
    id: int
    name: str
    priority: int
    is_enabled: bool
    document_categories: list | None
    vendor_names: list | None
    email_categories: list | None
    vendor_ids: list | None
    sender_pattern: str | None
    min_confidence: float | None
    min_amount: float | None
    max_amount: float | None
    destination_type: str
    path_template: str


@dataclass(frozen=True)
class RuleMatch:
    rule: FilingRuleLike
    destination_type: str
    destination_path: str


def validate_path_template(template: str) -> None:
    if not template or not template.strip():
        raise RuleValidationError("Path template must not be empty")
    unknown = sorted({token for token in _TOKEN_RE.findall(template) if token not in TEMPLATE_TOKENS})
    if unknown:
        raise RuleValidationError(f"Unknown path template tokens: {', '.join(unknown)}")
    if ".." in template.split("/"):
        raise RuleValidationError("Path template must not contain '..' segments")


def _safe_segment(value: str | None) -> str:
    text = _UNSAFE_SEGMENT_CHARS_RE.sub("-", (value or "").strip()).strip(" .-")
    return text or "Unknown"


def render_path_template(template: str, attachment: AttachmentContext, now: datetime) -> str:
    values = {
        "vendorName": _safe_segment(attachment.vendor_name),
        "documentType": attachment.category,
        "documentNumber": _safe_segment(attachment.document_number),
        "date": now.strftime("%Y-%m-%d"),
        "month": now.strftime("%Y-%m"),
        "year": now.strftime("%Y"),
    }
    return _TOKEN_RE.sub(lambda match: values.get(match.group(1), "Unknown"), template)


def _sender_matches(pattern: str, sender_email: str, max_pattern_length: int) -> bool:
    try:
        compiled = compile_sender_pattern(pattern, max_pattern_length)
    except RuleValidationError as exc:
        logger.warning(
            "Skipping filing rule with invalid sender pattern",
            extra={"event": "filing_rule_pattern_invalid", "pattern": pattern, "error": str(exc)},
        )
        return False
    return compiled.search(normalize_sender_address(sender_email)) is not None


def rule_conditions_match(
    rule: FilingRuleLike,
    attachment: AttachmentContext,
    *,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> bool:
    if rule.document_categories and attachment.category not in rule.document_categories:
        return False

    if rule.vendor_names:
        vendor = (attachment.vendor_name or "").strip().lower()
        if not vendor or vendor not in {name.strip().lower() for name in rule.vendor_names}:
            return False

    if rule.email_categories and attachment.sender_classification not in rule.email_categories:
        return False

    if rule.vendor_ids and attachment.vendor_id not in rule.vendor_ids:
        return False

    if rule.min_confidence is not None and attachment.confidence < rule.min_confidence:
        return False

    if rule.min_amount is not None or rule.max_amount is not None:
        if attachment.amount is None:
            return False
        if rule.min_amount is not None and attachment.amount < rule.min_amount:
            return False
        if rule.max_amount is not None and attachment.amount > rule.max_amount:
            return False

    if rule.sender_pattern and not _sender_matches(
        rule.sender_pattern, attachment.sender_email, max_pattern_length
    ):
        return False

    return True


def select_filing_rule(
    rules: Iterable[FilingRuleLike],
    attachment: AttachmentContext,
    *,
    now: datetime,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> RuleMatch | None:
    """First enabled rule in (priority, id) order whose conditions hold."""
    ordered = sorted((rule for rule in rules if rule.is_enabled), key=lambda rule: (rule.priority, rule.id))
    for rule in ordered:
        if rule_conditions_match(rule, attachment, max_pattern_length=max_pattern_length):
            return RuleMatch(
                rule=rule,
                destination_type=rule.destination_type,
                destination_path=render_path_template(rule.path_template, attachment, now),
            )
    return None


class FilingRuleEngine:
    def __init__(
        self,
        *,
        default_destination_type: str | None = None,
        default_path_template: str = "/{documentType}/{month}/",
        max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
    ) -> None:
        if default_destination_type is not None:
            if default_destination_type not in ROUTABLE_DESTINATIONS:
                raise RuleValidationError(f"Unsupported default destination: {default_destination_type}")
            validate_path_template(default_path_template)
        self._default_destination_type = default_destination_type
        self._default_path_template = default_path_template
        self._max_pattern_length = max_pattern_length

    def resolve(
        self,
        session: Session,
        attachment: AttachmentContext,
        now: datetime | None = None,
    ) -> RoutingOutcome:
        now = now or datetime.now(timezone.utc)
        rules = session.scalars(
            select(FilingRule)
            .where(FilingRule.is_enabled.is_(True))
            .order_by(FilingRule.priority, FilingRule.id)
        ).all()

        match = select_filing_rule(rules, attachment, now=now, max_pattern_length=self._max_pattern_length)
        if match is not None:
            session.execute(
                update(FilingRule)
                .where(FilingRule.id == match.rule.id)
                .values(times_matched=FilingRule.times_matched + 1, last_matched_at=now)
            )
            logger.info(
                "Filing rule matched",
                extra={
                    "event": "filing_rule_matched",
                    "rule_id": match.rule.id,
                    "rule_name": match.rule.name,
                    "destination_type": match.destination_type,
                    "destination_path": match.destination_path,
                },
            )
            return RoutingOutcome(
                destination_type=match.destination_type,
                destination_path=match.destination_path,
                rule_id=match.rule.id,
                rule_name=match.rule.name,
                reason="rule_matched",
            )

        if self._default_destination_type:
            return RoutingOutcome(
                destination_type=self._default_destination_type,
                destination_path=render_path_template(self._default_path_template, attachment, now),
                reason="default_destination",
            )

        suggested = attachment.suggested_filing_path or render_path_template(
            "/{documentType}/{vendorName}/{month}/", attachment, now
        )
        logger.info(
            "No filing rule matched",
            extra={"event": "filing_rule_not_matched", "category": attachment.category},
        )
        return RoutingOutcome(
            destination_type="pending",
            destination_path=suggested,
            skipped=True,
            reason="no_matching_rule",
        )


def _validate_rule_fields(values: dict[str, Any], max_pattern_length: int) -> None:
    destination = values.get("destination_type")
    if destination is not None and destination not in ROUTABLE_DESTINATIONS:
        raise RuleValidationError(f"Filing rules cannot route to '{destination}'")
    if values.get("path_template") is not None:
        validate_path_template(values["path_template"])
    if values.get("sender_pattern"):
        compile_sender_pattern(values["sender_pattern"], max_pattern_length)
    min_amount = values.get("min_amount")
    max_amount = values.get("max_amount")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise RuleValidationError("min_amount must not exceed max_amount")


def create_filing_rule(
    session: Session,
    payload: FilingRuleCreate,
    *,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> FilingRule:
    values = payload.model_dump()
    _validate_rule_fields(values, max_pattern_length)

    rule = FilingRule(**values)
    session.add(rule)
    session.commit()
    session.refresh(rule)
    logger.info(
        "Filing rule created",
        extra={"event": "filing_rule_created", "rule_id": rule.id, "priority": rule.priority},
    )
    return rule


def update_filing_rule(
    session: Session,
    rule_id: int,
    payload: FilingRuleUpdate,
    *,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> FilingRule | None:
    rule = session.get(FilingRule, rule_id)
    if rule is None:
        return None

    changes = payload.model_dump(exclude_unset=True)
    cleared = sorted(key for key in _REQUIRED_RULE_FIELDS if key in changes and changes[key] is None)
    if cleared:
        raise RuleValidationError(f"Filing rule fields cannot be cleared: {', '.join(cleared)}")
    merged = {
        "destination_type": rule.destination_type,
        "path_template": rule.path_template,
        "sender_pattern": rule.sender_pattern,
        "min_amount": rule.min_amount,
        "max_amount": rule.max_amount,
        **changes,
    }
    _validate_rule_fields(merged, max_pattern_length)

    for key, value in changes.items():
        setattr(rule, key, value)
    session.commit()
    session.refresh(rule)
    logger.info(
        "Filing rule updated",
        extra={"event": "filing_rule_updated", "rule_id": rule.id, "fields": sorted(changes)},
    )
    return rule


def list_filing_rules(session: Session, *, include_disabled: bool = True) -> Sequence[FilingRule]:
    query = select(FilingRule).order_by(FilingRule.priority, FilingRule.id)
    if not include_disabled:
        query = query.where(FilingRule.is_enabled.is_(True))
    return session.scalars(query).all()
