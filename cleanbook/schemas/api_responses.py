"""
Response envelopes shared by every endpoint.
"""
from typing import Any, Optional
from pydantic import BaseModel


class SuccessResponse(BaseModel):
    message: str
    data: Optional[Any] = None


class PaginatedResponse(BaseModel):
    total_records: int
    page: int
    page_size: int
    data: list[Any]


class ErrorResponse(BaseModel):
    message: str
    code: str


class WebhookAck(BaseModel):
    received: bool = True
    event_type: Optional[str] = None
