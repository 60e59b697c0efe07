from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from classbook.utils.dates import normalize_email, normalize_phone


class Identity(BaseModel):
    """Who a credit belongs to: an account, a phone number, or both."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[int] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("phone", mode="before")
    @classmethod
    def _phone(cls, v):
        return normalize_phone(v) or None

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v)

    @property
    def is_empty(self) -> bool:
        return self.user_id is None and not self.phone and not self.email


class GuestInfo(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: Optional[str] = None
    user_id: Optional[int] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone", mode="before")
    @classmethod
    def _phone(cls, v):
        return normalize_phone(v) if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def identity(self) -> Identity:
        return Identity(user_id=self.user_id, phone=self.phone, email=self.email)


class Buyer(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: Optional[str] = None
    user_id: Optional[int] = None

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v) or ""

    @field_validator("phone", mode="before")
    @classmethod
    def _phone(cls, v):
        return normalize_phone(v) or None

    @property
    def full_name(self) -> str:
        return f"{self.first_name.strip()} {self.last_name.strip()}"


class OfferingIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    price_cents: int = Field(default=0, ge=0)
    is_donation: Optional[bool] = None
    max_capacity: Optional[int] = Field(default=None, gt=0)
    skill_level: str = "all"

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @property
    def donation(self) -> bool:
        # unpriced classes are donation based unless stated otherwise
        return self.is_donation if self.is_donation is not None else self.price_cents == 0
