"""
Payment Provider Webhook Handlers

Flow per delivery:
Raw body → Signature check (on the exact bytes) → JSON decode → Classify → Reconcile

Every processed delivery is acknowledged with 200, including unknown event
types and unknown references. Invalid signatures and processing errors get a
400 so the provider redelivers; reconciliation is idempotent, so redelivery
is always safe.
"""

import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from services.webhook_events import WebhookProvider, parse_webhook_event
from services.webhook_security_service import WebhookSecurityService

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": message})


def _decode_payload(raw_body: bytes) -> Dict[str, Any]:
    if not raw_body:
        raise ValueError("Empty request body")
    payload = json.loads(raw_body.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return payload


async def handle_provider_webhook(provider: WebhookProvider, request: Request) -> JSONResponse:
    raw_body = await request.body()
    client_ip = WebhookSecurityService.get_client_ip(request)
    tag = provider.value.upper()

    if not WebhookSecurityService.verify_provider_signature(provider, raw_body, request.headers):
        WebhookSecurityService.log_webhook_security_event(
            provider.value, "signature", False, {"reason": "invalid_signature"}, client_ip
        )
        return _error_response("Invalid signature")

    try:
        payload = _decode_payload(raw_body)
        event = parse_webhook_event(provider, payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"❌ {tag}_WEBHOOK_INVALID_JSON: {e}")
        return _error_response("Invalid JSON payload")
    except ValueError as e:
        logger.error(f"❌ {tag}_WEBHOOK_INVALID_PAYLOAD: {e}")
        return _error_response(str(e))

    logger.info(
        f"📥 {tag}_WEBHOOK: event={event.event_type} kind={event.kind.value} "
        f"ref={event.reference} from {client_ip}"
    )

    reconciliation_service = request.app.state.reconciliation_service
    try:
        result = await asyncio.to_thread(reconciliation_service.process_event, event)
    except Exception as e:
        # provider redelivers on non-200
        logger.error(f"❌ {tag}_WEBHOOK_ERROR: {e}", exc_info=True)
        return _error_response("Webhook processing failed")

    logger.info(f"✅ {tag}_WEBHOOK_PROCESSED: {event.event_type} ref={event.reference} outcome={result.outcome.value}")
    return JSONResponse(status_code=200, content={"success": True})


@router.post("/paystack")
async def paystack_webhook(request: Request):
    """Paystack events, signed with HMAC-SHA512 in x-paystack-signature"""
    return await handle_provider_webhook(WebhookProvider.PAYSTACK, request)


@router.post("/flutterwave")
async def flutterwave_webhook(request: Request):
    """Flutterwave events, signed with HMAC-SHA256 in verif-hash"""
    return await handle_provider_webhook(WebhookProvider.FLUTTERWAVE, request)
