from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from opsflow.core.security import verify_admin_api_key
from opsflow.db.session import get_db
from opsflow.ledger.journal import JournalLineInput, post_journal_entry
from opsflow.routers.http_errors import DOMAIN_ERRORS, to_http_exception


class JournalLinePayload(BaseModel):
    account_code: str = Field(min_length=1, max_length=64)
    debit: float = 0.0
    credit: float = 0.0
    description: str | None = None


class JournalEntryPayload(BaseModel):
    description: str = Field(min_length=1)
    lines: list[JournalLinePayload]


router = APIRouter(prefix="", tags=["ledger"], dependencies=[Depends(verify_admin_api_key)])


@router.post("/journal-entries", status_code=201)
def create_journal_entry(payload: JournalEntryPayload, db: Session = Depends(get_db)) -> dict:
    lines = [JournalLineInput(**line.model_dump()) for line in payload.lines]
    try:
        entry = post_journal_entry(db, payload.description, lines)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc) from exc

    return {
        "entry_id": entry.id,
        "entry_number": entry.entry_number,
        "description": entry.description,
        "total_amount": entry.total_amount,
        "posted_at": entry.posted_at,
        "lines": [
            {
                "account_code": line.account_code,
                "debit": line.debit,
                "credit": line.credit,
                "description": line.description,
            }
            for line in entry.lines
        ],
    }
