import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

def strip_required(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v

# ------------------ User Schemas ------------------

class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)

    @field_validator("username", "email")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return strip_required(v)

class UserLogin(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, v: str) -> str:
        # normalized like registration so the registered spelling logs in
        return strip_required(v)

class UserOut(BaseModel):
    id: int
    username: str
    email: str

    model_config = ConfigDict(from_attributes=True)

# ------------------ Expense Schemas ------------------

class ExpenseCreate(BaseModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    category: str = Field(..., min_length=1, max_length=50)
    date: dt.date
    notes: Optional[str] = None

    @field_validator("category")
    @classmethod
    def category_not_blank(cls, v: str) -> str:
        return strip_required(v)

class ExpenseOut(BaseModel):
    id: int
    user_id: int
    amount: float
    category: str
    date: dt.date
    notes: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)

# ------------------ Summary Schemas ------------------

class SummaryOut(BaseModel):
    month: int
    year: int
    total: float
    by_category: dict[str, float]

# ------------------ Auth Schemas ------------------

class Identity(BaseModel):
    """Who a verified token says the caller is."""
    id: int
    username: str
