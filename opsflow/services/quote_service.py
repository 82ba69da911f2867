from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from opsflow.agents.quote_scoring_agent import QuoteScoringAgent
from opsflow.core.errors import QuoteAwardError, RecordNotFoundError
from opsflow.core.schemas import QuoteCreate
from opsflow.db.models import Vendor, VendorNotification, VendorQuote, VendorRfq
from opsflow.procurement.quote_ranker import QuoteInput, RankedQuote, rank_quotes
from opsflow.services.notifications import (
    NotificationDispatcher,
    OutboundNotification,
    award_notification,
    rejection_notification,
)

logger = logging.getLogger(__name__)

_CLOSED_RFQ_STATUSES = frozenset({"awarded", "cancelled"})


@dataclass
class AwardResult:
    rfq_id: int
    winning_quote_id: int
    rejected_quote_ids: list[int] = field(default_factory=list)
    notifications_sent: int = 0
    notifications_queued: int = 0
    notifications_failed: int = 0


class QuoteService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scoring_agent: QuoteScoringAgent | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._scoring_agent = scoring_agent
        self._dispatcher = dispatcher

    def create_rfq(self, rfq_number: str, material_name: str, quantity: float, unit: str = "unit") -> VendorRfq:
        with self._session_factory() as session:
            rfq = VendorRfq(
                rfq_number=rfq_number,
                material_name=material_name,
                quantity=quantity,
                unit=unit,
                status="sent",
            )
            session.add(rfq)
            session.commit()
            session.refresh(rfq)
            return rfq

    def record_quote(self, rfq_id: int, payload: QuoteCreate) -> VendorQuote:
        with self._session_factory() as session:
            rfq = self._get_rfq(session, rfq_id)
            if rfq.status in _CLOSED_RFQ_STATUSES:
                raise QuoteAwardError(f"RFQ {rfq.rfq_number} is {rfq.status} and no longer accepts quotes")
            if session.get(Vendor, payload.vendor_id) is None:
                raise RecordNotFoundError(f"Vendor {payload.vendor_id} not found")

            quote = VendorQuote(rfq_id=rfq.id, status="received", **payload.model_dump())
            session.add(quote)
            rfq.status = "quotes_received"
            session.commit()
            quote_id = quote.id

        logger.info(
            "Vendor quote recorded",
            extra={"event": "quote_recorded", "rfq_id": rfq_id, "quote_id": quote_id},
        )
        self.recompute_rankings(rfq_id)
        with self._session_factory() as session:
            return session.get(VendorQuote, quote_id)

    def recompute_rankings(self, rfq_id: int) -> list[RankedQuote]:
        with self._session_factory() as session:
            rfq = self._get_rfq(session, rfq_id)
            if rfq.status in _CLOSED_RFQ_STATUSES:
                raise QuoteAwardError(f"RFQ {rfq.rfq_number} is {rfq.status}; rankings are frozen")
            quotes = session.scalars(
                select(VendorQuote).where(VendorQuote.rfq_id == rfq.id).order_by(VendorQuote.id)
            ).all()
            received = [quote for quote in quotes if quote.status == "received"]

            self._score_missing(rfq, received)
            ranked = rank_quotes(
                [_quote_input(quote) for quote in received],
                {quote.id: quote.ai_score for quote in received if quote.ai_score is not None},
            )

            # Clear first so the (rfq_id, overall_rank) constraint holds while ranks move.
            for quote in quotes:
                quote.price_rank = None
                quote.lead_time_rank = None
                quote.overall_score = None
                quote.overall_rank = None
            session.flush()

            by_id = {quote.id: quote for quote in received}
            for item in ranked:
                quote = by_id[item.quote_id]
                quote.price_rank = item.price_rank
                quote.lead_time_rank = item.lead_time_rank
                quote.overall_score = item.overall_score
                quote.overall_rank = item.overall_rank
            session.commit()

        logger.info(
            "Quote rankings recomputed",
            extra={
                "event": "quote_rankings_recomputed",
                "rfq_id": rfq_id,
                "ranked_quotes": len(ranked),
                "recommended_quote_id": ranked[0].quote_id if ranked else None,
            },
        )
        return ranked

    def recommend(self, rfq_id: int) -> VendorQuote | None:
        with self._session_factory() as session:
            self._get_rfq(session, rfq_id)
            return session.scalars(
                select(VendorQuote).where(
                    VendorQuote.rfq_id == rfq_id,
                    VendorQuote.status == "received",
                    VendorQuote.overall_rank == 1,
                )
            ).first()

    def list_quotes(self, rfq_id: int) -> list[VendorQuote]:
        with self._session_factory() as session:
            self._get_rfq(session, rfq_id)
            return list(
                session.scalars(
                    select(VendorQuote)
                    .where(VendorQuote.rfq_id == rfq_id)
                    .order_by(VendorQuote.overall_rank.is_(None), VendorQuote.overall_rank, VendorQuote.id)
                ).all()
            )

    def award_rfq(self, rfq_id: int, quote_id: int | None = None) -> AwardResult:
        with self._session_factory() as session:
            rfq = self._get_rfq(session, rfq_id)
            if rfq.status in _CLOSED_RFQ_STATUSES:
                raise QuoteAwardError(f"RFQ {rfq.rfq_number} is already {rfq.status}")

        if quote_id is None:
            ranked = self.recompute_rankings(rfq_id)
            if not ranked:
                raise QuoteAwardError(f"RFQ {rfq_id} has no received quotes to award")
            quote_id = ranked[0].quote_id

        pending: list[tuple[int, OutboundNotification]] = []
        with self._session_factory() as session:
            rfq = self._get_rfq(session, rfq_id)
            if rfq.status in _CLOSED_RFQ_STATUSES:
                raise QuoteAwardError(f"RFQ {rfq.rfq_number} is already {rfq.status}")

            quotes = session.scalars(select(VendorQuote).where(VendorQuote.rfq_id == rfq.id)).all()
            winner = next((quote for quote in quotes if quote.id == quote_id), None)
            if winner is None:
                raise QuoteAwardError(f"Quote {quote_id} does not belong to RFQ {rfq.rfq_number}")
            if winner.status != "received":
                raise QuoteAwardError(f"Quote {quote_id} is {winner.status}, only received quotes can win")

            result = AwardResult(rfq_id=rfq.id, winning_quote_id=winner.id)
            winner.status = "accepted"
            for quote in quotes:
                if quote.id != winner.id and quote.status == "received":
                    quote.status = "rejected"
                    result.rejected_quote_ids.append(quote.id)

            rfq.status = "awarded"
            rfq.awarded_quote_id = winner.id
            rfq.awarded_at = datetime.now(timezone.utc)

            for quote in [winner, *(q for q in quotes if q.id in result.rejected_quote_ids)]:
                vendor = quote.vendor
                vendor_name = vendor.name if vendor is not None else f"Vendor {quote.vendor_id}"
                if quote.id == winner.id:
                    notification_type = "award_notification"
                    subject, body = award_notification(
                        rfq.rfq_number, rfq.material_name, vendor_name, quote.total_price
                    )
                else:
                    notification_type = "rejection_notification"
                    subject, body = rejection_notification(rfq.rfq_number, rfq.material_name, vendor_name)
                pending.append(
                    (
                        quote.id,
                        OutboundNotification(
                            notification_type=notification_type,
                            vendor_id=quote.vendor_id,
                            to_email=vendor.email if vendor is not None else None,
                            subject=subject,
                            body=body,
                        ),
                    )
                )
            session.commit()

        logger.info(
            "RFQ awarded",
            extra={
                "event": "rfq_awarded",
                "rfq_id": rfq_id,
                "winning_quote_id": result.winning_quote_id,
                "rejected_quote_count": len(result.rejected_quote_ids),
            },
        )

        for related_quote_id, notification in pending:
            status = self._dispatch(rfq_id, related_quote_id, notification)
            if status == "sent":
                result.notifications_sent += 1
            elif status == "failed":
                result.notifications_failed += 1
            else:
                result.notifications_queued += 1
        return result

    def _dispatch(self, rfq_id: int, quote_id: int, notification: OutboundNotification) -> str:
        send_status = "queued"
        error: str | None = None
        if self._dispatcher is not None:
            try:
                self._dispatcher.send(notification)
                send_status = "sent"
            except Exception as exc:
                send_status = "failed"
                error = str(exc)
                logger.warning(
                    "Vendor notification failed",
                    extra={
                        "event": "quote_notification_failed",
                        "rfq_id": rfq_id,
                        "quote_id": quote_id,
                        "vendor_id": notification.vendor_id,
                        "notification_type": notification.notification_type,
                        "error": error,
                    },
                )

        with self._session_factory() as session:
            session.add(
                VendorNotification(
                    rfq_id=rfq_id,
                    vendor_id=notification.vendor_id,
                    quote_id=quote_id,
                    notification_type=notification.notification_type,
                    to_email=notification.to_email,
                    subject=notification.subject,
                    body=notification.body,
                    send_status=send_status,
                    error=error,
                )
            )
            session.commit()
        return send_status

    def _score_missing(self, rfq: VendorRfq, quotes: list[VendorQuote]) -> None:
        if self._scoring_agent is None:
            return
        unscored = [quote for quote in quotes if quote.ai_score is None]
        if not unscored:
            return
        scores = self._scoring_agent.score(
            rfq.material_name,
            rfq.quantity,
            rfq.unit,
            [_quote_input(quote) for quote in unscored],
        )
        for quote in unscored:
            if quote.id in scores:
                quote.ai_score = scores[quote.id]

    @staticmethod
    def _get_rfq(session: Session, rfq_id: int) -> VendorRfq:
        rfq = session.get(VendorRfq, rfq_id)
        if rfq is None:
            raise RecordNotFoundError(f"RFQ {rfq_id} not found")
        return rfq


def _quote_input(quote: VendorQuote) -> QuoteInput:
    return QuoteInput(
        id=quote.id,
        vendor_id=quote.vendor_id,
        total_price=quote.total_price,
        lead_time_days=quote.lead_time_days,
        unit_price=quote.unit_price,
    )
