"""
Webhook Event Classification
Maps (provider, raw event string) to an internal event kind and pulls out the
correlation reference, before any business logic runs
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class WebhookProvider(Enum):
    """Supported webhook providers"""
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"


class WebhookEventKind(Enum):
    """Provider-independent event kinds the reconciliation engine acts on"""
    TRANSFER_SUCCESS = "transfer_success"
    TRANSFER_FAILED = "transfer_failed"
    TRANSFER_REVERSED = "transfer_reversed"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"

    @property
    def is_transfer(self) -> bool:
        return self in (
            WebhookEventKind.TRANSFER_SUCCESS,
            WebhookEventKind.TRANSFER_FAILED,
            WebhookEventKind.TRANSFER_REVERSED,
        )

    @property
    def is_payment(self) -> bool:
        return self in (WebhookEventKind.PAYMENT_SUCCESS, WebhookEventKind.PAYMENT_FAILED)


EVENT_TYPE_MAP: Dict[WebhookProvider, Dict[str, WebhookEventKind]] = {
    WebhookProvider.PAYSTACK: {
        "transfer.success": WebhookEventKind.TRANSFER_SUCCESS,
        "transfer.failed": WebhookEventKind.TRANSFER_FAILED,
        "transfer.reversed": WebhookEventKind.TRANSFER_REVERSED,
        "charge.success": WebhookEventKind.PAYMENT_SUCCESS,
        "charge.failed": WebhookEventKind.PAYMENT_FAILED,
    },
    WebhookProvider.FLUTTERWAVE: {
        "transfer.completed": WebhookEventKind.TRANSFER_SUCCESS,
        "transfer.failed": WebhookEventKind.TRANSFER_FAILED,
        "charge.completed": WebhookEventKind.PAYMENT_SUCCESS,
        "charge.failed": WebhookEventKind.PAYMENT_FAILED,
    },
}


@dataclass
class WebhookEvent:
    """A verified, classified webhook delivery"""
    provider: WebhookProvider
    event_type: str
    kind: WebhookEventKind
    reference: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> Dict[str, Any]:
        data = self.payload.get("data")
        return data if isinstance(data, dict) else {}


def classify_event(provider: WebhookProvider, event_type: Optional[str]) -> WebhookEventKind:
    """Unrecognised event strings classify as UNKNOWN"""
    kind = EVENT_TYPE_MAP.get(provider, {}).get((event_type or "").strip())
    return kind or WebhookEventKind.UNKNOWN


def extract_reference(
    provider: WebhookProvider,
    kind: WebhookEventKind,
    data: Dict[str, Any],
) -> Optional[str]:
    """
    Correlation reference carried by the event payload.

    Paystack always echoes ``data.reference``. Flutterwave payments carry our
    reference as ``tx_ref``; its transfers carry it as ``reference``. Each
    Flutterwave lookup falls back to the other field.
    """
    if not isinstance(data, dict):
        return None

    if provider == WebhookProvider.PAYSTACK:
        candidates = ("reference",)
    elif kind.is_payment:
        candidates = ("tx_ref", "reference")
    else:
        candidates = ("reference", "tx_ref")

    for key in candidates:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def parse_webhook_event(provider: WebhookProvider, payload: Dict[str, Any]) -> WebhookEvent:
    """Build a WebhookEvent from a decoded JSON body"""
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")

    event_type = payload.get("event") or ""
    kind = classify_event(provider, event_type)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = extract_reference(provider, kind, data) if kind != WebhookEventKind.UNKNOWN else None

    logger.debug(f"🔎 WEBHOOK_CLASSIFIED: {provider.value} {event_type!r} -> {kind.value} ref={reference}")
    return WebhookEvent(
        provider=provider,
        event_type=event_type,
        kind=kind,
        reference=reference,
        payload=payload,
    )
