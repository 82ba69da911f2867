from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from opsflow.classification.sender_classifier import (
    DEFAULT_PATTERN_MAX_LENGTH,
    compile_sender_pattern,
    extract_domain,
    normalize_rule_pattern,
    normalize_sender_address,
)
from opsflow.core.errors import RuleValidationError
from opsflow.core.schemas import BlockReason, PatternType, SenderRuleCreate
from opsflow.db.models import SenderRule, Vendor

logger = logging.getLogger(__name__)

_LIST_TYPES = ("blocked", "trusted")


def validate_sender_pattern(
    pattern: str,
    pattern_type: PatternType,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> str:
    normalized = normalize_rule_pattern(pattern, pattern_type)
    if not normalized:
        raise RuleValidationError("Sender pattern must not be empty")
    if pattern_type == "exact" and "@" not in normalized:
        raise RuleValidationError("Exact sender patterns must be full email addresses")
    if pattern_type == "domain" and ("@" in normalized or "." not in normalized):
        raise RuleValidationError("Domain sender patterns must look like 'example.com'")
    if pattern_type == "regex":
        compile_sender_pattern(normalized, max_pattern_length)
    return normalized


class SenderRuleService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
    ) -> None:
        self._session_factory = session_factory
        self._max_pattern_length = max_pattern_length

    def add_blocked_sender(self, payload: SenderRuleCreate, *, auto_detected: bool = False) -> SenderRule:
        return self._add_rule("blocked", payload, reason=payload.reason, auto_detected=auto_detected)

    def add_trusted_sender(self, payload: SenderRuleCreate) -> SenderRule:
        return self._add_rule("trusted", payload, reason=None, auto_detected=False)

    def remove_sender_rule(self, rule_id: int) -> bool:
        with self._session_factory() as session:
            rule = session.get(SenderRule, rule_id)
            if rule is None:
                return False
            session.delete(rule)
            session.commit()

        logger.info("Sender rule removed", extra={"event": "sender_rule_removed", "rule_id": rule_id})
        return True

    def list_sender_rules(self, list_type: str | None = None) -> list[SenderRule]:
        query = select(SenderRule).order_by(SenderRule.id)
        if list_type is not None:
            if list_type not in _LIST_TYPES:
                raise RuleValidationError(f"Unknown sender list '{list_type}'")
            query = query.where(SenderRule.list_type == list_type)
        with self._session_factory() as session:
            return list(session.scalars(query).all())

    def auto_block_sender(self, email: str, reason: BlockReason) -> SenderRule:
        """Block a sender after it was classified as unwanted.

        Spam and phishing block the whole domain; solicitations block the
        single address so colleagues at the same company stay reachable.
        """
        address = normalize_sender_address(email)
        if reason == "solicitation":
            pattern, pattern_type = address, "exact"
        else:
            pattern, pattern_type = extract_domain(address), "domain"

        payload = SenderRuleCreate(
            pattern=pattern,
            pattern_type=pattern_type,
            reason=reason,
            notes=f"Auto-blocked: classified as {reason}",
        )
        return self.add_blocked_sender(payload, auto_detected=True)

    def _add_rule(
        self,
        list_type: str,
        payload: SenderRuleCreate,
        *,
        reason: str | None,
        auto_detected: bool,
    ) -> SenderRule:
        pattern = validate_sender_pattern(payload.pattern, payload.pattern_type, self._max_pattern_length)

        with self._session_factory() as session:
            existing = session.scalars(
                select(SenderRule).where(
                    SenderRule.list_type == list_type,
                    SenderRule.pattern == pattern,
                    SenderRule.pattern_type == payload.pattern_type,
                )
            ).first()
            if existing is not None:
                return existing

            rule = SenderRule(
                list_type=list_type,
                pattern=pattern,
                pattern_type=payload.pattern_type,
                reason=reason,
                vendor_id=payload.vendor_id if list_type == "trusted" else None,
                notes=payload.notes,
                auto_detected=auto_detected,
            )
            session.add(rule)
            session.commit()
            session.refresh(rule)

        logger.info(
            "Sender rule added",
            extra={
                "event": "sender_rule_added",
                "list_type": list_type,
                "pattern_type": rule.pattern_type,
                "reason": reason,
                "auto_detected": auto_detected,
            },
        )
        return rule


def load_sender_rules(session: Session) -> tuple[list[SenderRule], list[SenderRule]]:
    rules = session.scalars(select(SenderRule).order_by(SenderRule.id)).all()
    blocked = [rule for rule in rules if rule.list_type == "blocked"]
    trusted = [rule for rule in rules if rule.list_type == "trusted"]
    return blocked, trusted


def find_vendor_id_by_domain(session: Session, from_email: str) -> int | None:
    domain = extract_domain(normalize_sender_address(from_email))
    if not domain:
        return None
    vendor = session.scalars(
        select(Vendor).where(Vendor.email.ilike(f"%@{domain}")).order_by(Vendor.id).limit(1)
    ).first()
    return vendor.id if vendor is not None else None
