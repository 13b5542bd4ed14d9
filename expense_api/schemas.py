"""
API Schemas

Request and response bodies exchanged with the mobile client. Request models
only check shapes and types; required-field and range rules for expenses are
enforced by :mod:`expense_api.expenses` so that they hold for every caller.
"""

import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional, Union

from pydantic import BaseModel, EmailStr, Field, PlainSerializer


def money_to_json(value: Decimal) -> Union[int, float]:
    """Render an amount as a JSON number; whole amounts come out as integers."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


Money = Annotated[Decimal, PlainSerializer(money_to_json, return_type=Union[int, float], when_used="json")]


# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserRegister(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class UserLogin(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    id: int
    name: str
    email: EmailStr

    class Config:
        from_attributes = True


class Registration(Token):
    user: UserOut


# ----------------------------------------------------------------------------
# Expenses
# ----------------------------------------------------------------------------
class ExpenseIn(BaseModel):
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    date: Optional[datetime.date] = None
    note: Optional[str] = None


class ExpenseOut(BaseModel):
    id: int
    amount: Money
    category: str
    date: datetime.date
    note: Optional[str] = None

    class Config:
        from_attributes = True


class ExpenseList(BaseModel):
    items: List[ExpenseOut]
    total: int
    total_pages: int = Field(..., alias="totalPages")
    page: int
    page_size: int = Field(..., alias="pageSize")

    class Config:
        populate_by_name = True


class Message(BaseModel):
    detail: str


CategorySummary = Dict[str, Money]
