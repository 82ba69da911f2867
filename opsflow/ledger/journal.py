from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import secrets

from sqlalchemy.orm import Session

from opsflow.core.errors import UnbalancedEntryError
from opsflow.db.models import JournalEntry, JournalLine

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE = 0.01


@dataclass(frozen=True)
class JournalLineInput:
    account_code: str
    debit: float = 0.0
    credit: float = 0.0
    description: str | None = None


def validate_journal_lines(lines: Sequence[JournalLineInput]) -> float:
    """Check the line set and return the balanced total."""
    if len(lines) < 2:
        raise UnbalancedEntryError("Journal entry needs at least two lines")

    total_debit = 0.0
    total_credit = 0.0
    for index, line in enumerate(lines):
        if not line.account_code.strip():
            raise UnbalancedEntryError(f"Line {index} has no account code")
        if not (math.isfinite(line.debit) and math.isfinite(line.credit)):
            raise UnbalancedEntryError(f"Line {index} has a non-finite amount")
        if line.debit < 0 or line.credit < 0:
            raise UnbalancedEntryError(f"Line {index} has a negative amount")
        if line.debit and line.credit:
            raise UnbalancedEntryError(f"Line {index} carries both a debit and a credit")
        total_debit += line.debit
        total_credit += line.credit

    if abs(total_debit - total_credit) > BALANCE_TOLERANCE:
        raise UnbalancedEntryError(
            f"Journal entry not balanced: debits ({total_debit:.2f}) != credits ({total_credit:.2f})"
        )
    if total_debit == 0:
        raise UnbalancedEntryError("Journal entry has no monetary value")
    return round(total_debit, 2)


def _entry_number(now: datetime) -> str:
    return f"JE-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def post_journal_entry(
    session: Session,
    description: str,
    lines: Sequence[JournalLineInput],
    *,
    now: datetime | None = None,
) -> JournalEntry:
    total = validate_journal_lines(lines)
    now = now or datetime.now(timezone.utc)

    entry = JournalEntry(
        entry_number=_entry_number(now),
        description=description,
        total_amount=total,
        posted_at=now,
    )
    entry.lines = [
        JournalLine(
            account_code=line.account_code.strip(),
            debit=line.debit,
            credit=line.credit,
            description=line.description,
        )
        for line in lines
    ]
    session.add(entry)
    session.commit()
    session.refresh(entry)

    logger.info(
        "Journal entry posted",
        extra={
            "event": "journal_entry_posted",
            "entry_id": entry.id,
            "entry_number": entry.entry_number,
            "total_amount": total,
            "line_count": len(lines),
        },
    )
    return entry
