from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from opsflow.core.schemas import QuoteCreate
from opsflow.core.security import verify_admin_api_key
from opsflow.db.models import VendorQuote, VendorRfq
from opsflow.routers.http_errors import DOMAIN_ERRORS, to_http_exception
from opsflow.services.quote_service import QuoteService


class RfqCreate(BaseModel):
    rfq_number: str = Field(min_length=1, max_length=64)
    material_name: str = Field(min_length=1, max_length=255)
    quantity: float = Field(gt=0)
    unit: str = Field(default="unit", max_length=32)


class AwardRequest(BaseModel):
    quote_id: int | None = None


def _rfq_payload(rfq: VendorRfq) -> dict:
    return {
        "rfq_id": rfq.id,
        "rfq_number": rfq.rfq_number,
        "material_name": rfq.material_name,
        "quantity": rfq.quantity,
        "unit": rfq.unit,
        "status": rfq.status,
        "awarded_quote_id": rfq.awarded_quote_id,
    }


def _quote_payload(quote: VendorQuote) -> dict:
    return {
        "quote_id": quote.id,
        "rfq_id": quote.rfq_id,
        "vendor_id": quote.vendor_id,
        "unit_price": quote.unit_price,
        "total_price": quote.total_price,
        "lead_time_days": quote.lead_time_days,
        "status": quote.status,
        "ai_score": quote.ai_score,
        "price_rank": quote.price_rank,
        "lead_time_rank": quote.lead_time_rank,
        "overall_score": quote.overall_score,
        "overall_rank": quote.overall_rank,
    }


def build_procurement_router(quotes: QuoteService) -> APIRouter:
    router = APIRouter(prefix="/rfqs", tags=["procurement"], dependencies=[Depends(verify_admin_api_key)])

    @router.post("", status_code=201)
    def create_rfq(payload: RfqCreate) -> dict:
        return _rfq_payload(
            quotes.create_rfq(payload.rfq_number, payload.material_name, payload.quantity, payload.unit)
        )

    @router.post("/{rfq_id}/quotes", status_code=201)
    def record_quote(rfq_id: int, payload: QuoteCreate) -> dict:
        try:
            return _quote_payload(quotes.record_quote(rfq_id, payload))
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.get("/{rfq_id}/quotes")
    def list_quotes(rfq_id: int) -> list[dict]:
        try:
            return [_quote_payload(quote) for quote in quotes.list_quotes(rfq_id)]
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc

    @router.post("/{rfq_id}/rank")
    def rank_quotes(rfq_id: int) -> dict:
        try:
            ranked = quotes.recompute_rankings(rfq_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return {
            "rfq_id": rfq_id,
            "rankings": [
                {
                    "quote_id": item.quote_id,
                    "vendor_id": item.vendor_id,
                    "price_rank": item.price_rank,
                    "lead_time_rank": item.lead_time_rank,
                    "ai_score": item.ai_score,
                    "overall_score": item.overall_score,
                    "overall_rank": item.overall_rank,
                }
                for item in ranked
            ],
        }

    @router.get("/{rfq_id}/recommendation")
    def recommendation(rfq_id: int) -> dict:
        try:
            quote = quotes.recommend(rfq_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return {"rfq_id": rfq_id, "recommended": _quote_payload(quote) if quote is not None else None}

    @router.post("/{rfq_id}/award")
    def award(rfq_id: int, payload: AwardRequest) -> dict:
        try:
            result = quotes.award_rfq(rfq_id, payload.quote_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return {
            "rfq_id": result.rfq_id,
            "winning_quote_id": result.winning_quote_id,
            "rejected_quote_ids": result.rejected_quote_ids,
            "notifications_sent": result.notifications_sent,
            "notifications_queued": result.notifications_queued,
            "notifications_failed": result.notifications_failed,
        }

    return router
