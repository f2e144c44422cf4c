"""Payment gateway webhook receiver."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from credit_api.dependencies import BillingServiceDep, SettingsDep
from credit_api.services.payment_gateway import SIGNATURE_HEADER, WebhookEvent, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(request: Request, settings: SettingsDep, billing: BillingServiceDep) -> dict[str, Any]:
    """Apply an asynchronous payment outcome.

    The HMAC signature over the raw body is verified before the payload is
    even parsed.  Already-settled references are acknowledged with
    ``ignored`` so the gateway stops redelivering them.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_webhook_signature(body, signature, settings.gateway_webhook_secret.get_secret_value()):
        logger.warning("Rejected payment webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Malformed webhook payload") from exc

    result = await billing.handle_gateway_webhook(event)
    return {"received": True, "result": result}
