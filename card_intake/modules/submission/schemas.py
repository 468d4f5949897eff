"""Response envelopes for POST /process-card (camelCase on the wire)."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from card_intake.modules.cards.schemas import CardRecordOut

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class CardSubmissionSuccess(BaseModel):
    success: bool = True
    is_duplicate: bool = False
    name: str
    national_id: str

    model_config = _CAMEL


class CardSubmissionDuplicate(BaseModel):
    is_duplicate: bool = True
    existing_card: CardRecordOut

    model_config = _CAMEL


class CardSubmissionError(BaseModel):
    success: bool = False
    error: str
    message: str

    model_config = _CAMEL
