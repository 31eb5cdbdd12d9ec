from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Gender = Literal["Male", "Female", "Other"]
CardType = Literal["Before", "After"]


class StoredModel(BaseModel):
    """Stored documents use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        return cls.model_validate(data)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Diary(StoredModel):
    id: str
    client_id: str
    name: str
    gender: Gender = "Other"
    url: str = ""
    card_reading_count: int = 0
    is_locked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Card(StoredModel):
    id: str
    diary_id: str
    topic: str = ""
    type: CardType = "Before"
    body_text: str = ""
    order: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Situation(StoredModel):
    id: str
    title: str = ""
    description: str = ""
    order: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BeforeItem(StoredModel):
    id: str
    situation_id: str
    title: str = ""
    description: str = ""
    order: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AfterItem(StoredModel):
    id: str
    before_item_id: str
    title: str = ""
    description: str = ""
    order: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ParsedBeforeItem(BaseModel):
    title: str
    after_items: List[str] = Field(default_factory=list)


class ParsedBeforeAfterData(BaseModel):
    before_items: List[ParsedBeforeItem] = Field(default_factory=list)


# Request payloads


class PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AdminLoginPayload(BaseModel):
    password: str


class ChangePasswordPayload(PayloadModel):
    new_password: str
    confirm_password: str


class CreateDiaryPayload(PayloadModel):
    client_id: str
    name: str
    gender: Gender = "Male"


class DiaryAccessPayload(PayloadModel):
    client_id: str
    password: Optional[str] = None


class DiaryLockPayload(PayloadModel):
    password: str
    confirm_password: Optional[str] = None


class CreateCardPayload(PayloadModel):
    topic: str = "New Topic"
    body_text: str = ""
    type: CardType = "Before"
    # Insert after the card at this index; omitted appends after the last card.
    after_index: Optional[int] = None
    order: Optional[float] = None


class UpdateCardPayload(PayloadModel):
    topic: Optional[str] = None
    body_text: Optional[str] = None
    type: Optional[CardType] = None
    order: Optional[float] = None


class ReorderPayload(PayloadModel):
    card_id: str
    target_index: int


class SituationsPayload(PayloadModel):
    titles: List[str] = Field(default_factory=list)
    content: Optional[str] = None


class TreeItemPayload(PayloadModel):
    title: Optional[str] = None
    description: Optional[str] = None


class BulletContentPayload(PayloadModel):
    content: str
