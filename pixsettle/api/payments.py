"""
Payment webhook route.

POST /api/payments/webhook receives Asaas and PagSeguro notifications.
Any other method on the path gets 405 from the router.
"""
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from pixsettle.features.payments.service import process_payment_webhook


router = APIRouter(prefix="/api/payments", tags=["payments"])


class WebhookResponse(BaseModel):
    success: bool
    message: str
    status: Optional[str] = None


@router.post("/webhook", response_model=WebhookResponse, response_model_exclude_unset=True)
async def payment_webhook(request: Request):
    """
    Handle a provider notification.

    Responses:
        200: already confirmed, not yet paid (with status) or settled
        400: unrecognized payload or no payment identifier
        401: webhook credential configured and not matched
        404: no payment matches the identifiers
        500: internal failure; safe for the provider to retry
    """
    body = await request.body()
    # Settlement does blocking DB and HTTP I/O
    outcome = await run_in_threadpool(process_payment_webhook, dict(request.headers), body)
    return outcome.to_response()
