"""
Subscription request/response schemas.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class SubscriptionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    full_name: str = Field(min_length=1, max_length=150)
    cleaning_frequency: Literal["one_time", "weekly", "biweekly", "monthly"] = "one_time"
    cleaning_price: float = Field(gt=0)
    supplies_charges: float = Field(default=0.0, ge=0)
    discount_amount: float = Field(default=0.0, ge=0)
    cleaning_date: Optional[datetime] = None
    address: Optional[str] = Field(default=None, max_length=500)
    remarks: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _discount_within_price(self):
        if self.discount_amount > self.cleaning_price + self.supplies_charges:
            raise ValueError("discount_amount cannot exceed the price of the cleaning")
        return self


class SubscriptionCancel(BaseModel):
    subscription_id: str


class SubscriptionDetail(BaseModel):
    id: str
    subscriber_id: str
    cleaning_frequency: str
    cleaning_price: float
    supplies_charges: float
    discount_amount: float
    address: Optional[str] = None
    is_active: bool
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


def subscription_detail(subscription) -> SubscriptionDetail:
    return SubscriptionDetail(
        id=str(subscription.id),
        subscriber_id=str(subscription.subscriber_id),
        cleaning_frequency=subscription.cleaning_frequency,
        cleaning_price=subscription.cleaning_price,
        supplies_charges=subscription.supplies_charges or 0.0,
        discount_amount=subscription.discount_amount or 0.0,
        address=subscription.address,
        is_active=subscription.is_active,
        cancelled_at=subscription.cancelled_at,
        created_at=subscription.created_at,
    )
