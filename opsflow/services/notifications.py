from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class OutboundNotification:
    notification_type: str
    vendor_id: int
    to_email: str | None
    subject: str
    body: str


class NotificationDispatcher(Protocol):
    def send(self, notification: OutboundNotification) -> None:
        """Deliver the message or raise; the caller records the outcome."""
        ...


def award_notification(rfq_number: str, material_name: str, vendor_name: str, total_price: float) -> tuple[str, str]:
    subject = f"Award notification: RFQ {rfq_number}"
    body = (
        f"Dear {vendor_name},\n\n"
        f"Your quote for {material_name} (RFQ {rfq_number}) has been accepted "
        f"at a total of {total_price:,.2f}. A purchase order will follow.\n\n"
        "Thank you."
    )
    return subject, body


def rejection_notification(rfq_number: str, material_name: str, vendor_name: str) -> tuple[str, str]:
    subject = f"RFQ {rfq_number} update"
    body = (
        f"Dear {vendor_name},\n\n"
        f"Thank you for quoting {material_name} for RFQ {rfq_number}. "
        "We have awarded this request to another supplier.\n\n"
        "We look forward to future opportunities."
    )
    return subject, body
