"""
Cleaning subscription API.

AddSubscription is public: the buyer is identified by email and an account
is created on first purchase. Everything else needs a token.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.api.deps import TokenPayload, get_token_payload, require_admin
from cleanbook.config import get_settings
from cleanbook.database import get_db
from cleanbook.schemas.api_responses import PaginatedResponse, SuccessResponse
from cleanbook.schemas.subscription import SubscriptionCancel, SubscriptionCreate
from cleanbook.services import subscriptions as subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/CleaningSubscription", tags=["subscriptions"])


@router.post("/AddSubscription", response_model=SuccessResponse, status_code=201)
async def add_subscription(
    payload: SubscriptionCreate,
    db: AsyncSession = Depends(get_db),
):
    data = await subscription_service.add_subscription(db, payload)
    return SuccessResponse(message="Subscription added successfully", data=data)


@router.get("/GetUserSubscription", response_model=SuccessResponse)
async def get_user_subscription(
    db: AsyncSession = Depends(get_db),
    token: TokenPayload = Depends(get_token_payload),
):
    data = await subscription_service.get_user_subscription(db, token.user_id)
    return SuccessResponse(message="User subscriptions", data=data)


@router.patch("/CancelSubscription", response_model=SuccessResponse)
async def cancel_subscription(
    payload: SubscriptionCancel,
    db: AsyncSession = Depends(get_db),
    token: TokenPayload = Depends(get_token_payload),
):
    data = await subscription_service.cancel_subscription(
        db, token.user_id, token.user_role, payload.subscription_id,
    )
    return SuccessResponse(message="Subscription cancelled successfully", data=data)


@router.get("/GetAll", response_model=PaginatedResponse)
async def get_all_subscriptions(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    _admin: TokenPayload = Depends(require_admin),
):
    size = get_settings().page_size(page_size)
    return await subscription_service.list_subscriptions(db, page=page, page_size=size)


@router.get("/GetById/{doc_id}", response_model=SuccessResponse)
async def get_subscription_by_id(
    doc_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: TokenPayload = Depends(require_admin),
):
    data = await subscription_service.get_subscription(db, doc_id)
    return SuccessResponse(message="Subscription", data=data)
