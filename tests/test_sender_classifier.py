from dataclasses import dataclass

import pytest

from opsflow.classification.sender_classifier import (
    FilterPolicy,
    classify_sender,
    compile_sender_pattern,
    domain_matches,
    normalize_sender_address,
)
from opsflow.core.errors import RuleValidationError


@dataclass
class _Rule:
    pattern: str
    pattern_type: str
    reason: str | None = None
    vendor_id: int | None = None


def test_blocked_rule_wins_over_trusted_rule_for_same_sender() -> None:
    blocked = [_Rule("spam-domain.com", "domain", reason="spam")]
    trusted = [_Rule("sales@spam-domain.com", "exact", vendor_id=4)]

    result = classify_sender("Sales <Sales@Spam-Domain.com>", "Invoice #1", "", blocked, trusted)

    assert result.classification == "spam"
    assert result.confidence == 1.0
    assert result.sender_reputation == "blocked"
    assert result.should_process is False


@pytest.mark.parametrize(
    ("reason", "expected"),
    [("manual", "spam"), ("phishing", "phishing"), ("solicitation", "solicitation")],
)
def test_block_reason_maps_to_classification(reason: str, expected: str) -> None:
    result = classify_sender("x@bad.example", "", "", [_Rule("bad.example", "domain", reason=reason)], [])
    assert result.classification == expected
    assert result.should_process is False


def test_trusted_sender_is_processed_as_known_vendor() -> None:
    result = classify_sender("ap@vendor.example", "hello", "", [], [_Rule("vendor.example", "domain", vendor_id=9)])

    assert result.classification == "legitimate"
    assert result.confidence == 0.95
    assert result.sender_reputation == "trusted"
    assert result.matched_vendor_id == 9
    assert result.should_process is True


def test_invalid_regex_rules_are_skipped_not_fatal() -> None:
    blocked = [_Rule("(a+)+$", "regex", reason="spam"), _Rule("[unclosed", "regex", reason="spam")]

    result = classify_sender("aaaa@example.com", "hello", "", blocked, [])

    assert result.sender_reputation != "blocked"
    assert result.should_process is True


def test_regex_rule_matches_case_insensitively() -> None:
    blocked = [_Rule(r"^promo-\d+@", "regex", reason="spam")]
    result = classify_sender("PROMO-42@shop.example", "", "", blocked, [])
    assert result.sender_reputation == "blocked"


def test_strong_business_content_is_legitimate() -> None:
    result = classify_sender(
        "billing@acme.example",
        "Invoice # 1042",
        "Purchase order PO-7 with packing slip and tracking number 1Z999 attached.",
        [],
        [],
    )

    assert result.classification == "legitimate"
    assert result.confidence > 0.8
    assert result.should_process is True


def test_spam_content_is_filtered_unless_policy_allows_it() -> None:
    subject = "Congratulations, you won! Claim your free gift"
    body = "Click here and act now, this limited time exclusive offer ends soon."

    default = classify_sender("promo@random.example", subject, body, [], [])
    permissive = classify_sender(
        "promo@random.example", subject, body, [], [], policy=FilterPolicy(filter_spam=False)
    )

    assert default.classification == "spam"
    assert default.should_process is False
    assert default.sender_reputation == "suspicious"
    assert permissive.should_process is True


def test_marketing_platform_outreach_is_solicitation() -> None:
    result = classify_sender("rep@hubspot.com", "Quick question", "Would you be open to a short call?", [], [])
    assert result.classification == "solicitation"
    assert result.should_process is False


def test_unknown_sender_is_processed() -> None:
    result = classify_sender("someone@example.org", "hello", "see attached", [], [])
    assert result.classification == "unknown"
    assert result.should_process is True


def test_known_vendor_domain_marks_reputation_trusted() -> None:
    result = classify_sender("ap@vendor.example", "hello", "", [], [], known_vendor_id=3)
    assert result.is_known_vendor is True
    assert result.sender_reputation == "trusted"


def test_newsletter_policy_toggle() -> None:
    body = "Our weekly digest: top stories curated for you. View in browser."
    default = classify_sender("news@media.example", "Newsletter", body, [], [])
    strict = classify_sender(
        "news@media.example", "Newsletter", body, [], [], policy=FilterPolicy(filter_newsletters=True)
    )

    assert default.classification == "newsletter"
    assert default.should_process is True
    assert strict.should_process is False


def test_domain_match_requires_label_boundary() -> None:
    assert domain_matches("mail.example.com", "example.com")
    assert domain_matches("example.com", "example.com")
    assert not domain_matches("badexample.com", "example.com")


def test_normalize_sender_address_extracts_bracketed_address() -> None:
    assert normalize_sender_address('"John" <John@Example.COM>') == "john@example.com"


def test_compile_sender_pattern_enforces_length_limit() -> None:
    with pytest.raises(RuleValidationError):
        compile_sender_pattern("a" * 300, max_length=256)


@pytest.mark.parametrize(
    "pattern",
    ["(a+)+$", "((a+))+$", "(?:(?:(\\w*))+)*@x", "((ab|ab))+$", "(x(a{2,})y)*"],
)
def test_backtracking_patterns_are_rejected_at_any_group_depth(pattern: str) -> None:
    with pytest.raises(RuleValidationError, match="nests quantifiers"):
        compile_sender_pattern(pattern)


@pytest.mark.parametrize("pattern", [r"^promo-\d+@", r"(billing|invoices)@acme\.example$", r"(ab)?c+@"])
def test_linear_patterns_still_compile(pattern: str) -> None:
    assert compile_sender_pattern(pattern).pattern == pattern


def test_wrapped_nested_quantifier_rule_does_not_stall_classification() -> None:
    blocked = [_Rule("((a+))+$", "regex", reason="spam")]

    result = classify_sender("a" * 40 + "@b", "hello", "", blocked, [])

    assert result.sender_reputation != "blocked"
