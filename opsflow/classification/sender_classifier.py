from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
import re
from re import _constants as sre_constants, _parser as sre_parser
from collections.abc import Iterable
from typing import Protocol

from opsflow.core.errors import RuleValidationError
from opsflow.core.schemas import SenderClassification, SenderClassificationType

logger = logging.getLogger(__name__)

MAX_ADDRESS_LENGTH = 320
DEFAULT_PATTERN_MAX_LENGTH = 256

_ADDRESS_IN_BRACKETS_RE = re.compile(r"<([^<>]+)>")
_REPEAT_OPCODES = frozenset(
    {sre_constants.MAX_REPEAT, sre_constants.MIN_REPEAT, sre_constants.POSSESSIVE_REPEAT}
)

SPAM_PATTERNS = [
    re.compile(r"unsubscribe", re.IGNORECASE),
    re.compile(r"click here", re.IGNORECASE),
    re.compile(r"act now", re.IGNORECASE),
    re.compile(r"limited time", re.IGNORECASE),
    re.compile(r"exclusive offer", re.IGNORECASE),
    re.compile(r"free gift", re.IGNORECASE),
    re.compile(r"winner", re.IGNORECASE),
    re.compile(r"congratulations.{0,80}won", re.IGNORECASE),
    re.compile(r"claim your", re.IGNORECASE),
    re.compile(r"verify your account", re.IGNORECASE),
    re.compile(r"update your payment", re.IGNORECASE),
    re.compile(r"urgent action required", re.IGNORECASE),
    re.compile(r"your account will be", re.IGNORECASE),
    re.compile(r"suspicious activity", re.IGNORECASE),
]

SOLICITATION_PATTERNS = [
    re.compile(r"reaching out", re.IGNORECASE),
    re.compile(r"wanted to connect", re.IGNORECASE),
    re.compile(r"schedule a call", re.IGNORECASE),
    re.compile(r"book a demo", re.IGNORECASE),
    re.compile(r"free trial", re.IGNORECASE),
    re.compile(r"increase your", re.IGNORECASE),
    re.compile(r"boost your", re.IGNORECASE),
    re.compile(r"grow your business", re.IGNORECASE),
    re.compile(r"10x your", re.IGNORECASE),
    re.compile(r"roi guaranteed", re.IGNORECASE),
    re.compile(r"we help companies", re.IGNORECASE),
    re.compile(r"would you be open to", re.IGNORECASE),
    re.compile(r"quick question", re.IGNORECASE),
    re.compile(r"following up on my", re.IGNORECASE),
    re.compile(r"checking in to see", re.IGNORECASE),
    re.compile(r"thought you might be interested", re.IGNORECASE),
    re.compile(r"can i get 15 minutes", re.IGNORECASE),
    re.compile(r"schedule a quick chat", re.IGNORECASE),
    re.compile(r"partnership opportunity", re.IGNORECASE),
    re.compile(r"collaboration opportunity", re.IGNORECASE),
]

NEWSLETTER_PATTERNS = [
    re.compile(r"newsletter", re.IGNORECASE),
    re.compile(r"weekly digest", re.IGNORECASE),
    re.compile(r"monthly update", re.IGNORECASE),
    re.compile(r"issue #", re.IGNORECASE),
    re.compile(r"this week in", re.IGNORECASE),
    re.compile(r"curated for you", re.IGNORECASE),
    re.compile(r"top stories", re.IGNORECASE),
    re.compile(r"don't miss", re.IGNORECASE),
    re.compile(r"view in browser", re.IGNORECASE),
    re.compile(r"email preferences", re.IGNORECASE),
    re.compile(r"manage subscriptions", re.IGNORECASE),
]

AUTOMATED_PATTERNS = [
    re.compile(r"do not reply", re.IGNORECASE),
    re.compile(r"this is an automated", re.IGNORECASE),
    re.compile(r"auto-?reply", re.IGNORECASE),
    re.compile(r"out of (?:the )?office", re.IGNORECASE),
    re.compile(r"delivery status notification", re.IGNORECASE),
    re.compile(r"password reset", re.IGNORECASE),
    re.compile(r"system notification", re.IGNORECASE),
]

LEGITIMATE_BUSINESS_PATTERNS = [
    re.compile(r"invoice #", re.IGNORECASE),
    re.compile(r"purchase order", re.IGNORECASE),
    re.compile(r"order confirmation", re.IGNORECASE),
    re.compile(r"shipment notification", re.IGNORECASE),
    re.compile(r"tracking number", re.IGNORECASE),
    re.compile(r"delivery confirmation", re.IGNORECASE),
    re.compile(r"bill of lading", re.IGNORECASE),
    re.compile(r"packing slip", re.IGNORECASE),
    re.compile(r"commercial invoice", re.IGNORECASE),
    re.compile(r"customs declaration", re.IGNORECASE),
    re.compile(r"payment received", re.IGNORECASE),
    re.compile(r"wire transfer", re.IGNORECASE),
    re.compile(r"freight quote", re.IGNORECASE),
    re.compile(r"shipping quote", re.IGNORECASE),
    re.compile(r"rate confirmation", re.IGNORECASE),
]

MARKETING_DOMAINS = (
    "mailchimp.com",
    "constantcontact.com",
    "hubspot.com",
    "marketo.com",
    "salesforce.com",
    "outreach.io",
    "apollo.io",
    "zoominfo.com",
    "lusha.com",
    "hunter.io",
    "lemlist.com",
    "mailshake.com",
    "woodpecker.co",
    "reply.io",
    "yesware.com",
    "mixmax.com",
    "pipedrive.com",
    "sendinblue.com",
    "klaviyo.com",
    "drip.com",
    "activecampaign.com",
    "convertkit.com",
    "mailerlite.com",
)

TRANSACTIONAL_DOMAINS = (
    "ups.com",
    "fedex.com",
    "dhl.com",
    "usps.com",
    "maersk.com",
    "cosco.com",
    "msc.com",
    "evergreen-line.com",
    "flexport.com",
    "freightos.com",
    "shipbob.com",
    "quickbooks.com",
    "xero.com",
    "stripe.com",
    "paypal.com",
    "square.com",
    "brex.com",
)

_AUTOMATED_LOCAL_PARTS = ("noreply", "no-reply", "donotreply", "do-not-reply", "mailer-daemon", "postmaster")

_BLOCK_REASON_CLASSIFICATION: dict[str, SenderClassificationType] = {
    "spam": "spam",
    "solicitation": "solicitation",
    "phishing": "phishing",
    "manual": "spam",
}


class SenderPattern(Protocol):
    pattern: str
    pattern_type: str
    reason: str | None
    vendor_id: int | None


@dataclass(frozen=True)
class FilterPolicy:
    filter_spam: bool = True
    filter_solicitations: bool = True
    filter_newsletters: bool = False

    def allows(self, classification: SenderClassificationType) -> bool:
        if classification == "phishing":
            return False
        if classification == "spam":
            return not self.filter_spam
        if classification == "solicitation":
            return not self.filter_solicitations
        if classification == "newsletter":
            return not self.filter_newsletters
        return True


@dataclass(frozen=True)
class PatternScores:
    spam: float
    solicitation: float
    newsletter: float
    automated: float
    legitimate: float
    patterns: tuple[str, ...]


def normalize_sender_address(value: str) -> str:
    """Extract the bare lowercase address from ``Name <user@host>`` style headers."""
    text = (value or "").strip()
    bracketed = _ADDRESS_IN_BRACKETS_RE.search(text)
    if bracketed:
        text = bracketed.group(1)
    return text.strip().strip('"').lower()[:MAX_ADDRESS_LENGTH]


def extract_domain(address: str) -> str:
    _, sep, domain = address.rpartition("@")
    return domain.lower() if sep else ""


def normalize_rule_pattern(pattern: str, pattern_type: str) -> str:
    cleaned = (pattern or "").strip()
    if pattern_type == "regex":
        return cleaned
    cleaned = cleaned.lower()
    if pattern_type == "domain":
        cleaned = cleaned.lstrip("@*.")
    return cleaned


def compile_sender_pattern(pattern: str, max_length: int = DEFAULT_PATTERN_MAX_LENGTH) -> re.Pattern[str]:
    if not pattern:
        raise RuleValidationError("Regex sender pattern must not be empty")
    if len(pattern) > max_length:
        raise RuleValidationError(f"Regex sender pattern exceeds {max_length} characters")
    return _compile_cached(pattern)


def _child_subpatterns(argument: object) -> Iterable[sre_parser.SubPattern]:
    if isinstance(argument, sre_parser.SubPattern):
        yield argument
    elif isinstance(argument, (list, tuple)):
        for item in argument:
            yield from _child_subpatterns(item)


def _is_backtracking_trap(subpattern: sre_parser.SubPattern, inside_repeat: bool = False) -> bool:
    """True when a repeat or an alternation sits anywhere inside another repeat, however deeply grouped."""
    for opcode, argument in subpattern:
        if inside_repeat and opcode == sre_constants.BRANCH:
            return True
        if opcode in _REPEAT_OPCODES:
            _, max_repeat, body = argument
            repeats = max_repeat > 1
            if inside_repeat and repeats:
                return True
            if _is_backtracking_trap(body, inside_repeat or repeats):
                return True
            continue
        for child in _child_subpatterns(argument):
            if _is_backtracking_trap(child, inside_repeat):
                return True
    return False


@lru_cache(maxsize=512)
def _compile_cached(pattern: str) -> re.Pattern[str]:
    try:
        if _is_backtracking_trap(sre_parser.parse(pattern)):
            raise RuleValidationError("Regex sender pattern nests quantifiers or repeats an alternation")
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise RuleValidationError(f"Invalid regex sender pattern: {exc}") from exc


def domain_matches(domain: str, pattern: str) -> bool:
    return bool(domain) and (domain == pattern or domain.endswith("." + pattern))


def rule_matches(
    address: str,
    rule: SenderPattern,
    *,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> bool:
    pattern_type = rule.pattern_type
    pattern = normalize_rule_pattern(rule.pattern, pattern_type)

    if pattern_type == "exact":
        return address == pattern
    if pattern_type == "domain":
        return domain_matches(extract_domain(address), pattern)
    if pattern_type == "regex":
        try:
            compiled = compile_sender_pattern(pattern, max_pattern_length)
        except RuleValidationError as exc:
            logger.warning(
                "Skipping invalid sender pattern",
                extra={"event": "sender_pattern_invalid", "pattern": pattern, "error": str(exc)},
            )
            return False
        return compiled.search(address) is not None

    logger.warning(
        "Skipping sender rule with unknown pattern type",
        extra={"event": "sender_pattern_invalid", "pattern": pattern, "pattern_type": pattern_type},
    )
    return False


def first_matching_rule(
    address: str,
    rules: Iterable[SenderPattern],
    *,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> SenderPattern | None:
    for rule in rules:
        if rule_matches(address, rule, max_pattern_length=max_pattern_length):
            return rule
    return None


def score_content(subject: str, body_text: str, address: str) -> PatternScores:
    content = f"{subject or ''} {body_text or ''}"
    domain = extract_domain(address)
    local_part = address.partition("@")[0]
    found: list[str] = []

    def _score(prefix: str, patterns: list[re.Pattern[str]], weight: float) -> float:
        total = 0.0
        for pattern in patterns:
            if pattern.search(content):
                total += weight
                found.append(f"{prefix}:{pattern.pattern}")
        return total

    spam = _score("spam", SPAM_PATTERNS, 0.1)
    solicitation = _score("solicitation", SOLICITATION_PATTERNS, 0.08)
    newsletter = _score("newsletter", NEWSLETTER_PATTERNS, 0.12)
    automated = _score("automated", AUTOMATED_PATTERNS, 0.2)
    legitimate = _score("legitimate", LEGITIMATE_BUSINESS_PATTERNS, 0.15)

    if any(domain_matches(domain, marketing) for marketing in MARKETING_DOMAINS):
        solicitation += 0.3
        found.append("domain:marketing_platform")
    if any(domain_matches(domain, transactional) for transactional in TRANSACTIONAL_DOMAINS):
        legitimate += 0.4
        found.append("domain:transactional")
    if local_part in _AUTOMATED_LOCAL_PARTS:
        automated += 0.4
        found.append("sender:automated_mailbox")

    return PatternScores(
        spam=min(1.0, spam),
        solicitation=min(1.0, solicitation),
        newsletter=min(1.0, newsletter),
        automated=min(1.0, automated),
        legitimate=min(1.0, legitimate),
        patterns=tuple(found),
    )


def classify_sender(
    from_email: str,
    subject: str,
    body_text: str,
    blocked_rules: Iterable[SenderPattern],
    trusted_rules: Iterable[SenderPattern],
    *,
    known_vendor_id: int | None = None,
    policy: FilterPolicy | None = None,
    max_pattern_length: int = DEFAULT_PATTERN_MAX_LENGTH,
) -> SenderClassification:
    policy = policy or FilterPolicy()
    address = normalize_sender_address(from_email)

    # Blocked entries win over trusted entries for the same sender.
    blocked = first_matching_rule(address, blocked_rules, max_pattern_length=max_pattern_length)
    if blocked is not None:
        classification = _BLOCK_REASON_CLASSIFICATION.get(blocked.reason or "manual", "spam")
        return SenderClassification(
            classification=classification,
            confidence=1.0,
            spam_score=1.0 if classification != "solicitation" else 0.0,
            solicitation_score=1.0 if classification == "solicitation" else 0.0,
            reasons=[f"Sender is on blocked list ({blocked.reason or 'manual'})"],
            detected_patterns=["blocked_sender"],
            sender_reputation="blocked",
            should_process=False,
        )

    trusted = first_matching_rule(address, trusted_rules, max_pattern_length=max_pattern_length)
    if trusted is not None:
        vendor_id = trusted.vendor_id or known_vendor_id
        return SenderClassification(
            classification="legitimate",
            confidence=0.95,
            reasons=["Sender is on trusted list", "Known vendor" if vendor_id else "Known contact"],
            detected_patterns=["trusted_sender"],
            sender_reputation="trusted",
            is_known_vendor=vendor_id is not None,
            matched_vendor_id=vendor_id,
            should_process=True,
        )

    scores = score_content(subject, body_text, address)
    is_known_vendor = known_vendor_id is not None
    reasons: list[str] = []

    if scores.legitimate > 0.5 and scores.spam < 0.2 and scores.solicitation < 0.2:
        classification: SenderClassificationType = "legitimate"
        confidence = 0.8 + scores.legitimate * 0.2
        reasons.append("Strong legitimate business patterns detected")
    elif scores.spam > 0.5:
        classification = "spam"
        confidence = 0.7 + scores.spam * 0.3
        reasons.append("Spam patterns detected")
    else:
        classification = _weak_signal_classification(scores)
        confidence = 0.6 if classification != "unknown" else 0.5
        if scores.spam > 0.2:
            reasons.append(f"Spam score: {scores.spam * 100:.0f}%")
        if scores.solicitation > 0.2:
            reasons.append(f"Solicitation score: {scores.solicitation * 100:.0f}%")

    if is_known_vendor:
        reasons.append("Email domain matches known vendor")

    if is_known_vendor:
        reputation = "trusted"
    elif classification in ("spam", "solicitation"):
        reputation = "suspicious"
    else:
        reputation = "neutral"

    return SenderClassification(
        classification=classification,
        confidence=min(1.0, round(confidence, 4)),
        spam_score=scores.spam,
        solicitation_score=scores.solicitation,
        reasons=reasons,
        detected_patterns=list(scores.patterns),
        sender_reputation=reputation,
        is_known_vendor=is_known_vendor,
        matched_vendor_id=known_vendor_id,
        should_process=policy.allows(classification),
    )


def _weak_signal_classification(scores: PatternScores) -> SenderClassificationType:
    if scores.newsletter > 0.3:
        return "newsletter"
    if scores.automated > 0.3:
        return "automated"
    if scores.solicitation > 0.3:
        return "solicitation"
    if scores.spam > 0.2:
        return "spam"
    if scores.legitimate > 0.2:
        return "legitimate"
    return "unknown"
