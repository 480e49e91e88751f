"""
Database Schemas for the MILK loyalty & reservation backend

Each Pydantic model below corresponds to one collection of the document store.
Fields are declared in snake_case and stored with camelCase keys
(e.g. user_id -> "userId"), the layout the MILK apps and admin panel read.

Collections:
- users
- rewards
- orders
- prepaid
- pointsOps
- reservations
- happy
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

USERS = "users"
REWARDS = "rewards"
ORDERS = "orders"
PREPAID = "prepaid"
POINTS_OPS = "pointsOps"
RESERVATIONS = "reservations"
HAPPY = "happy"

ORDER_RECEIVED = "Przyjęte"
ORDER_ISSUED = "Wydane"

# whole amounts are kept as int
Number = Union[int, float]


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class User(Document):
    id: str = Field(..., description="Opaque user id chosen by the client app")
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    points: int = Field(0, ge=0, description="Points balance, never negative")


class Reward(Document):
    title: str
    cost: Optional[int] = Field(None, description="Price in points")
    description: str = ""
    icon: str = ""


class Order(Document):
    items: List[Dict[str, Any]] = Field(..., description="List of {title, quantity, price}")
    total: Number = 0
    pickup_time: Optional[str] = None
    pickup_location: Optional[str] = None
    notes: str = ""
    status: str = Field(ORDER_RECEIVED, description="Free-form status text")
    user_id: Optional[str] = None
    updated_at: Optional[str] = None


class CardHistoryEntry(Document):
    delta: Number
    note: str
    date: str


class PrepaidCard(Document):
    code: str = Field(..., description="6-digit code printed on the card")
    title: str
    value: Number
    bonus: Number = 0
    total: Number
    balance: Number = Field(..., ge=0)
    user_id: Optional[str] = None
    history: List[CardHistoryEntry] = []


class PointsOperation(Document):
    user_id: str
    amount: Number = 0
    points: int
    op: Literal["add", "sub"] = "add"
    note: str = ""


class Reservation(Document):
    name: str
    phone: str
    date: str
    time: str
    guests: int = Field(..., ge=1)
    room: str
    notes: str = ""
    email: Optional[EmailStr] = None
    milk_id: Optional[str] = None
    source: str = "index"

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        return v or None


class HappyBar(Document):
    text: str
    updated_at: Optional[str] = None


"""
Notes:
- createdAt and id are assigned by the store when a document is created.
- Statuses and notes are free text; only "sub" vs "add" is a closed choice.
"""
