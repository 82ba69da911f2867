import pytest

from opsflow.core.errors import RuleValidationError
from opsflow.core.schemas import SenderRuleCreate
from opsflow.db.models import Vendor
from opsflow.services.sender_rule_service import (
    SenderRuleService,
    find_vendor_id_by_domain,
    load_sender_rules,
    validate_sender_pattern,
)


def test_pattern_validation() -> None:
    assert validate_sender_pattern(" Sales@Example.COM ", "exact") == "sales@example.com"
    assert validate_sender_pattern("@Example.com", "domain") == "example.com"
    with pytest.raises(RuleValidationError, match="full email"):
        validate_sender_pattern("example.com", "exact")
    with pytest.raises(RuleValidationError):
        validate_sender_pattern("user@example.com", "domain")
    with pytest.raises(RuleValidationError):
        validate_sender_pattern("([a-z]+", "regex")
    with pytest.raises(RuleValidationError):
        validate_sender_pattern("(a+)+@x", "regex")


def test_duplicate_rules_are_not_stored_twice(session_factory) -> None:
    service = SenderRuleService(session_factory)

    first = service.add_blocked_sender(SenderRuleCreate(pattern="promo@deals.example", reason="spam"))
    second = service.add_blocked_sender(SenderRuleCreate(pattern="PROMO@deals.example", reason="spam"))

    assert first.id == second.id
    assert len(service.list_sender_rules("blocked")) == 1


def test_auto_block_scope_depends_on_reason(session_factory) -> None:
    service = SenderRuleService(session_factory)

    solicitation = service.auto_block_sender("Rep <rep@agency.example>", "solicitation")
    spam = service.auto_block_sender("noreply@spam.example", "spam")

    assert (solicitation.pattern, solicitation.pattern_type) == ("rep@agency.example", "exact")
    assert (spam.pattern, spam.pattern_type) == ("spam.example", "domain")
    assert spam.auto_detected is True
    assert spam.reason == "spam"


def test_list_filter_and_remove(session_factory) -> None:
    service = SenderRuleService(session_factory)
    blocked = service.add_blocked_sender(SenderRuleCreate(pattern="spam.example", pattern_type="domain"))
    trusted = service.add_trusted_sender(SenderRuleCreate(pattern="acme.example", pattern_type="domain", vendor_id=3))

    assert [rule.id for rule in service.list_sender_rules("trusted")] == [trusted.id]
    assert trusted.vendor_id == 3
    assert trusted.reason is None
    with pytest.raises(RuleValidationError):
        service.list_sender_rules("grey")

    assert service.remove_sender_rule(blocked.id) is True
    assert service.remove_sender_rule(blocked.id) is False
    assert [rule.id for rule in service.list_sender_rules()] == [trusted.id]


def test_rule_loading_and_vendor_lookup(session_factory) -> None:
    service = SenderRuleService(session_factory)
    service.add_blocked_sender(SenderRuleCreate(pattern="spam.example", pattern_type="domain"))
    service.add_trusted_sender(SenderRuleCreate(pattern="acme.example", pattern_type="domain"))

    with session_factory() as session:
        session.add(Vendor(name="Acme Supply", email="orders@acme.example"))
        session.commit()

        blocked, trusted = load_sender_rules(session)
        assert [rule.pattern for rule in blocked] == ["spam.example"]
        assert [rule.pattern for rule in trusted] == ["acme.example"]
        assert find_vendor_id_by_domain(session, "Billing <billing@ACME.example>") is not None
        assert find_vendor_id_by_domain(session, "someone@elsewhere.example") is None
        assert find_vendor_id_by_domain(session, "not-an-address") is None
