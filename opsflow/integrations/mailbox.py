from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class MailboxAttachment:
    filename: str
    mime_type: str
    content: bytes


@dataclass(frozen=True)
class MailboxMessage:
    external_id: str
    from_email: str
    subject: str = ""
    body_text: str = ""
    from_name: str | None = None
    received_at: datetime | None = None
    attachments: list[MailboxAttachment] = field(default_factory=list)


class MailboxClient(Protocol):
    """Read side of an email provider (Gmail, IMAP...)."""

    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        ...

    def fetch_message(self, message_id: str) -> MailboxMessage:
        ...
