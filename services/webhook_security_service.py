"""
Webhook Security Service - signature validation for payment provider callbacks
Signatures are always computed over the raw request bytes, before JSON parsing
"""

import logging
import hmac
import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional
from fastapi import Request

from config import Config
from services.webhook_events import WebhookProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureScheme:
    """How a provider signs its webhook bodies"""
    header: str
    digestmod: Callable


SIGNATURE_SCHEMES: Dict[WebhookProvider, SignatureScheme] = {
    WebhookProvider.PAYSTACK: SignatureScheme(header="x-paystack-signature", digestmod=hashlib.sha512),
    WebhookProvider.FLUTTERWAVE: SignatureScheme(header="verif-hash", digestmod=hashlib.sha256),
}


def compute_signature(raw_body: bytes, secret: str, digestmod: Callable = hashlib.sha512) -> str:
    """Hex HMAC of the raw body"""
    return hmac.new(secret.encode("utf-8"), raw_body, digestmod).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    digestmod: Callable = hashlib.sha512,
    fail_open: bool = False,
) -> bool:
    """
    Validate a webhook signature.

    Args:
        raw_body: Exact request bytes as received
        signature: Hex digest from the provider's header (may be missing)
        secret: Shared secret; when missing the result is ``fail_open``
        digestmod: hashlib constructor for the provider's algorithm
        fail_open: Policy for deployments without a configured secret

    Returns:
        True if the body is accepted, False otherwise
    """
    if not secret:
        return fail_open
    if not signature:
        return False

    expected_signature = compute_signature(raw_body, secret, digestmod)
    return hmac.compare_digest(signature.strip().lower(), expected_signature)


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    @classmethod
    def signature_header(cls, provider: WebhookProvider) -> str:
        return SIGNATURE_SCHEMES[provider].header

    @classmethod
    def verify_provider_signature(
        cls,
        provider: WebhookProvider,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        """Check a delivery against the provider's scheme and configured secret"""
        scheme = SIGNATURE_SCHEMES[provider]
        secret = Config.webhook_secret_for(provider.value)
        signature = headers.get(scheme.header)
        tag = provider.value.upper()

        if not secret:
            if Config.WEBHOOK_FAIL_OPEN_WITHOUT_SECRET:
                if Config.IS_PRODUCTION:
                    logger.critical(
                        f"🚨 PRODUCTION_SECURITY_BREACH: {tag} webhook secret missing - accepting unsigned delivery"
                    )
                else:
                    logger.warning(f"⚠️ DEV_SECURITY: {tag} webhook secret missing - processing anyway")
                return True
            logger.error(f"🚨 {tag}_SECURITY: webhook secret missing - delivery rejected")
            return False

        if not signature:
            logger.error(f"🚨 {tag}_SECURITY: missing {scheme.header} header")
            return False

        is_valid = verify_signature(raw_body, signature, secret, scheme.digestmod)
        if is_valid:
            logger.info(f"✅ {tag}_SECURITY: Signature verified successfully")
        else:
            logger.error(f"🚨 WEBHOOK_SIGNATURE_INVALID: {tag} signature verification FAILED")
        return is_valid

    @classmethod
    def log_webhook_security_event(
        cls,
        provider: str,
        event_type: str,
        success: bool,
        details: Dict[str, Any],
        request_ip: str = None,
    ) -> None:
        """Log webhook security events for audit trail"""
        if success:
            logger.info(f"Webhook security: {provider} {event_type} from {request_ip} - SUCCESS")
        else:
            logger.warning(
                f"Webhook security: {provider} {event_type} from {request_ip} - FAILED: {details}"
            )

    @classmethod
    def get_client_ip(cls, request: Request) -> str:
        """Extract client IP address with proxy support"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Get first IP in case of multiple proxies
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"
