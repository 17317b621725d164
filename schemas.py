from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Frequency, TransactionType


class RecurringTemplateIn(BaseModel):
    title: str = Field(..., max_length=120)
    amount: Decimal
    category: str = Field(..., max_length=50)
    type: TransactionType
    # validated by recurrence.create_template (InvalidFrequency)
    frequency: str
    anchor_date: date


class RecurringTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    amount: Decimal
    category: str
    type: TransactionType
    frequency: Frequency
    anchor_date: date
    next_due_date: date
    icon: str
    color: str
    active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    amount: Decimal
    category: str
    type: TransactionType
    icon: str
    color: str
    date: date
    is_recurring: bool
    origin_template_id: Optional[int] = None


class MaterializeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    as_of: Optional[date] = None


class CategoryOut(BaseModel):
    name: str
    icon: str
    color: str
