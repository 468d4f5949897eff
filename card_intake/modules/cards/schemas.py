from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from card_intake.modules.cards.models import CardRecord


class CardRecordOut(BaseModel):
    """Wire shape of a committed card, as the mini-app and dashboard expect it."""

    name: str
    national_id: str
    inserted_by_user_id: str
    inserted_by_username: str
    center: str
    insertion_date: datetime

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @classmethod
    def from_record(
        cls, record: CardRecord, submitter_display_name: str | None = None
    ) -> CardRecordOut:
        return cls(
            name=record.full_name,
            national_id=record.national_id,
            inserted_by_user_id=record.submitter_external_id,
            inserted_by_username=submitter_display_name or record.submitter_display_name,
            center=record.center,
            insertion_date=record.inserted_at,
        )
