"""Card extraction contract: the one shape the inference boundary must return."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


# JSON schema handed to Gemini as ``response_schema``.
CARD_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "name_lines": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "min_items": 1,
            "description": "Every line of the holder's name, top to bottom, exactly as printed.",
        },
        "national_id": {
            "type": "STRING",
            "description": "The 14-digit national ID number as printed.",
        },
    },
    "required": ["name_lines", "national_id"],
    "property_ordering": ["name_lines", "national_id"],
}


class ExtractedFields(BaseModel):
    """Raw fields as read off the card, before normalization."""

    name_lines: list[str] = Field(..., description="Name lines in top-to-bottom order")
    national_id: str = Field(..., description="Identifier as printed, any digit glyphs")

    @field_validator("national_id", mode="before")
    @classmethod
    def _accept_numeric_id(cls, value: Any) -> Any:
        # Models occasionally emit the ID as a JSON number despite the schema
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class NormalizedCard(BaseModel):
    full_name: str
    national_id: str = Field(..., pattern=r"^[0-9]{14}$")
