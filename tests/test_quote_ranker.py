import pytest

from opsflow.procurement.quote_ranker import QuoteInput, rank_quotes, recommend


def _by_id(ranked):  # noqa: ANN001
    return {item.quote_id: item for item in ranked}


def test_price_rank_orders_by_total_price() -> None:
    quotes = [
        QuoteInput(id=1, vendor_id=10, total_price=1200),
        QuoteInput(id=2, vendor_id=11, total_price=1000),
        QuoteInput(id=3, vendor_id=12, total_price=1100),
    ]

    ranked = _by_id(rank_quotes(quotes))

    assert [ranked[i].price_rank for i in (1, 2, 3)] == [3, 1, 2]


def test_neutral_scores_tie_break_on_price() -> None:
    quotes = [
        QuoteInput(id=1, vendor_id=10, total_price=1200),
        QuoteInput(id=2, vendor_id=11, total_price=1000),
        QuoteInput(id=3, vendor_id=12, total_price=1100),
    ]

    ranked = rank_quotes(quotes)

    assert [item.quote_id for item in ranked] == [2, 3, 1]
    assert [item.overall_rank for item in ranked] == [1, 2, 3]
    assert ranked[0].ai_score == 50.0
    assert recommend(ranked).quote_id == 2


def test_missing_lead_time_ranks_last() -> None:
    quotes = [
        QuoteInput(id=1, vendor_id=10, total_price=100, lead_time_days=None),
        QuoteInput(id=2, vendor_id=11, total_price=100, lead_time_days=5),
        QuoteInput(id=3, vendor_id=12, total_price=100, lead_time_days=3),
    ]

    ranked = _by_id(rank_quotes(quotes))

    assert ranked[3].lead_time_rank == 1
    assert ranked[2].lead_time_rank == 2
    assert ranked[1].lead_time_rank == 3


def test_ai_score_can_outweigh_price_and_is_clamped() -> None:
    quotes = [
        QuoteInput(id=1, vendor_id=10, total_price=1000, lead_time_days=10),
        QuoteInput(id=2, vendor_id=11, total_price=1100, lead_time_days=5),
    ]

    ranked = rank_quotes(quotes, {2: 150.0, 1: -20.0})

    assert ranked[0].quote_id == 2
    assert ranked[0].ai_score == 100.0
    assert ranked[1].ai_score == 0.0
    assert ranked[0].overall_score == 100.0 - 2 * 10 - 1 * 5


def test_ranks_are_a_permutation() -> None:
    quotes = [QuoteInput(id=i, vendor_id=i, total_price=500 + (i % 3) * 10) for i in range(1, 8)]
    ranked = rank_quotes(quotes)
    assert sorted(item.overall_rank for item in ranked) == list(range(1, 8))
    assert sorted(item.price_rank for item in ranked) == list(range(1, 8))


def test_empty_and_duplicate_inputs() -> None:
    assert rank_quotes([]) == []
    assert recommend([]) is None
    with pytest.raises(ValueError):
        rank_quotes([QuoteInput(id=1, vendor_id=1, total_price=1), QuoteInput(id=1, vendor_id=2, total_price=2)])
