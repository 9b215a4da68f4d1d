from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CardInput(BaseModel):
    """One source card as it arrives from a request or the flashcard store."""
    model_config = ConfigDict(populate_by_name=True)

    front: str = ''
    back: str = ''
    options: Optional[List[str]] = None
    answers: Optional[str] = None
    note_id: Optional[int] = Field(None, alias='noteId')
    tags: List[str] = Field(default_factory=list)

    @field_validator('front', 'back', mode='before')
    @classmethod
    def none_to_empty(cls, v):
        return '' if v is None else v

    @field_validator('options', mode='before')
    @classmethod
    def coerce_options(cls, v):
        if v is None:
            return None
        return ['' if o is None else str(o) for o in v]


class GradingRow(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    statement: str = Field('', alias='aussage')
    correct: bool = Field(False, alias='richtig')
    justification: str = Field('', alias='begründung')


class EnrichedCard(BaseModel):
    """Canonical enrichment result for one card.

    Attribute names are ASCII; the wire/storage names are the German keys the
    flashcard tooling expects (``lösung``, ``erklärung`` ...). ``front`` and
    ``back`` are always strings. Instances are immutable: every fallback value
    is decided when the card is built.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    front: str = ''
    back: str = ''
    solution: str = Field('', alias='lösung')
    explanation: str = Field('', alias='erklärung')
    grading_table: Optional[List[GradingRow]] = Field(None, alias='bewertungstabelle')
    summary: Optional[str] = Field(None, alias='zusammenfassung')
    mnemonic: str = Field('', alias='eselsbrücke')
    reference: str = Field('', alias='referenz')
    extra: str = Field('', alias='extra1')
    options: Optional[List[str]] = None
    answers: Optional[str] = None
    note_id: Optional[int] = Field(None, alias='noteId')

    @field_validator('front', 'back', 'solution', 'explanation', 'mnemonic', 'reference', 'extra', mode='before')
    @classmethod
    def none_to_empty(cls, v):
        return '' if v is None else v

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
