from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

NEUTRAL_AI_SCORE = 50.0
PRICE_RANK_WEIGHT = 10
LEAD_TIME_RANK_WEIGHT = 5


@dataclass(frozen=True)
class QuoteInput:
    id: int
    vendor_id: int
    total_price: float
    lead_time_days: int | None = None
    unit_price: float | None = None


@dataclass(frozen=True)
class RankedQuote:
    quote_id: int
    vendor_id: int
    total_price: float
    price_rank: int
    lead_time_rank: int
    ai_score: float
    overall_score: float
    overall_rank: int


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def rank_quotes(
    quotes: Sequence[QuoteInput],
    ai_scores: Mapping[int, float] | None = None,
) -> list[RankedQuote]:
    """Rank one RFQ's quotes; the result is ordered by overall rank (1 = recommended)."""
    ids = [quote.id for quote in quotes]
    if len(ids) != len(set(ids)):
        raise ValueError("Quote ids must be unique within an RFQ")

    ai_scores = ai_scores or {}
    by_price = sorted(quotes, key=lambda quote: (quote.total_price, quote.id))
    price_rank = {quote.id: rank for rank, quote in enumerate(by_price, start=1)}

    # Quotes without a lead time sort after every quote that has one.
    by_lead_time = sorted(
        quotes,
        key=lambda quote: (
            quote.lead_time_days is None,
            quote.lead_time_days if quote.lead_time_days is not None else 0,
            quote.id,
        ),
    )
    lead_time_rank = {quote.id: rank for rank, quote in enumerate(by_lead_time, start=1)}

    scored: list[tuple[QuoteInput, float, float]] = []
    for quote in quotes:
        ai_score = _clamp_score(ai_scores.get(quote.id, NEUTRAL_AI_SCORE))
        overall = (
            ai_score
            - price_rank[quote.id] * PRICE_RANK_WEIGHT
            - lead_time_rank[quote.id] * LEAD_TIME_RANK_WEIGHT
        )
        scored.append((quote, ai_score, overall))

    scored.sort(key=lambda item: (-item[2], item[0].total_price, item[0].id))

    return [
        RankedQuote(
            quote_id=quote.id,
            vendor_id=quote.vendor_id,
            total_price=quote.total_price,
            price_rank=price_rank[quote.id],
            lead_time_rank=lead_time_rank[quote.id],
            ai_score=ai_score,
            overall_score=overall,
            overall_rank=position,
        )
        for position, (quote, ai_score, overall) in enumerate(scored, start=1)
    ]


def recommend(ranked: Sequence[RankedQuote]) -> RankedQuote | None:
    for item in ranked:
        if item.overall_rank == 1:
            return item
    return None
