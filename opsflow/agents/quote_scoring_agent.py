import logging
from collections.abc import Sequence
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from opsflow.core.errors import ClassificationError
from opsflow.procurement.quote_ranker import QuoteInput
from opsflow.services.structured_llm import run_structured_llm


class QuoteScoringAgent:
    """Asks the LLM for a 0-100 suitability score per quote.

    Returns an empty mapping when no model is configured or the model output
    cannot be parsed; the ranker then treats every quote as neutral.
    """

    def __init__(self, llm: BaseChatModel | None, max_retries: int = 3):
        self._logger = logging.getLogger(__name__)
        self._llm = llm
        self._max_retries = max_retries

    def score(
        self,
        material_name: str,
        quantity: float,
        unit: str,
        quotes: Sequence[QuoteInput],
    ) -> dict[int, float]:
        if self._llm is None or not quotes:
            return {}

        lines = [
            f"- quote_id={quote.id} vendor_id={quote.vendor_id} total_price={quote.total_price:.2f} "
            f"unit_price={quote.unit_price if quote.unit_price is not None else 'n/a'} "
            f"lead_time_days={quote.lead_time_days if quote.lead_time_days is not None else 'n/a'}"
            for quote in quotes
        ]
        messages = [
            SystemMessage(
                content=(
                    "You evaluate vendor quotes for a procurement team. Return STRICT JSON only in the form "
                    '{"scores": {"<quote_id>": <0-100>}} with one entry per quote. Higher is better. '
                    "Weigh price, lead time and completeness. Return JSON only with no prose or markdown."
                )
            ),
            HumanMessage(
                content=(
                    f"RFQ material: {material_name}\nQuantity: {quantity} {unit}\n\nQuotes:\n" + "\n".join(lines)
                )
            ),
        ]
        known_ids = {quote.id for quote in quotes}

        def _parse_output(parsed: dict[str, Any]) -> dict[int, float]:
            raw_scores = parsed.get("scores")
            if not isinstance(raw_scores, dict):
                raise ValueError("Quote scoring payload has no scores object")
            scores: dict[int, float] = {}
            for key, value in raw_scores.items():
                try:
                    quote_id = int(key)
                    score = float(value)
                except TypeError as exc:
                    raise ValueError(f"Non-numeric score for quote {key!r}") from exc
                if quote_id in known_ids:
                    scores[quote_id] = max(0.0, min(100.0, score))
            return scores

        try:
            scores, usage, latency_ms = run_structured_llm(
                self._llm,
                messages,
                max_retries=self._max_retries,
                parse_output=_parse_output,
                logger=self._logger,
                parse_failure_event="quote_scoring_parse_failure",
                parse_failure_log_message="Quote scoring parse failure",
                not_found_message=(
                    "Configured QUOTE_SCORING_MODEL is not available for this Anthropic API key."
                ),
                error_type=ClassificationError,
                final_error_prefix="Quote scoring failed",
            )
        except ClassificationError as exc:
            self._logger.warning(
                "Quote scoring unavailable; using neutral scores",
                extra={"event": "quote_scoring_failed", "error": str(exc)},
            )
            return {}

        self._logger.info(
            "Quotes scored",
            extra={"event": "quotes_scored", "quote_count": len(scores), "latency_ms": latency_ms, "usage": usage},
        )
        return scores
