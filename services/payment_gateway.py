"""
Payment Gateway Clients
Paystack and Flutterwave behind one async interface: payment sessions for
repayments, bank transfers for disbursements, status verification and bank lists.

Every public method returns a normalized result envelope; HTTP and provider
errors are logged and reported as ``success=False`` rather than raised.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.errors import GatewayConfigurationError
from utils.helpers import mask_account_number, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "NGN"


class GatewayRequestError(Exception):
    """Provider answered with an error status or an unsuccessful body"""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        self.status = status
        self.payload = payload
        super().__init__(message)


# ============ RESULT ENVELOPES ============


@dataclass
class PaymentInitResult:
    """Payment session opened for a repayment"""
    success: bool
    reference: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


@dataclass
class PaymentVerification:
    success: bool
    reference: str
    amount: Decimal
    status: str
    gateway_response: Optional[Dict[str, Any]] = None


@dataclass
class TransferResult:
    """Outcome of a transfer request or transfer status lookup"""
    success: bool
    reference: str
    status: str
    amount: Decimal
    transfer_code: str = ""
    recipient: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe view stored on the loan"""
        return {
            "success": self.success,
            "reference": self.reference,
            "status": self.status,
            "amount": str(self.amount),
            "transfer_code": self.transfer_code,
            "recipient": self.recipient,
            "message": self.message,
            "gateway_response": self.gateway_response,
        }


# ============ BASE CLIENT ============


class BasePaymentGateway(ABC):
    """Shared HTTP plumbing for provider clients"""

    provider_name = "gateway"

    def __init__(self, secret_key: Optional[str], base_url: str, timeout_seconds: Optional[int] = None):
        if not secret_key:
            raise GatewayConfigurationError(f"{self.provider_name} secret key is required")
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.GATEWAY_TIMEOUT_SECONDS

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Authenticated JSON request; raises GatewayRequestError on failure"""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=headers, json=data, params=params) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except ValueError:
                        response_data = {"message": await response.text()}

                    if response.status in (200, 201) and self._is_success_body(response_data):
                        logger.debug(f"{self.provider_name} API success: {method} {endpoint}")
                        return response_data

                    message = response_data.get("message") if isinstance(response_data, dict) else None
                    message = message or f"HTTP {response.status}"
                    if response.status == 401:
                        logger.error(f"🔑 {self.provider_name.upper()}_AUTH_FAILED: check the configured secret key")
                    raise GatewayRequestError(message, status=response.status, payload=response_data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayRequestError(f"{self.provider_name} connection error: {e!r}") from e

    @staticmethod
    def _is_success_body(body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        status = body.get("status")
        return status is True or status == "success"

    @staticmethod
    def to_minor_units(amount) -> int:
        """Naira to kobo"""
        return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def from_minor_units(amount) -> Decimal:
        return (to_decimal(amount) / 100).quantize(Decimal("0.01"))

    @abstractmethod
    async def initiate_payment(
        self,
        amount,
        email: str,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentInitResult:
        ...

    @abstractmethod
    async def verify_payment(self, reference: str) -> PaymentVerification:
        ...

    @abstractmethod
    async def initiate_transfer(
        self,
        amount,
        bank_code: str,
        account_number: str,
        account_name: str,
        reference: str,
        reason: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY,
    ) -> TransferResult:
        ...

    @abstractmethod
    async def verify_transfer(self, reference: str) -> TransferResult:
        ...

    @abstractmethod
    async def list_banks(self) -> List[Dict[str, str]]:
        ...

    def _failed_transfer(self, reference: str, amount, error: Exception) -> TransferResult:
        return TransferResult(
            success=False,
            reference=reference,
            status="failed",
            amount=to_decimal(amount),
            message=str(error),
            gateway_response=getattr(error, "payload", None),
        )


# ============ PAYSTACK ============


class PaystackGateway(BasePaymentGateway):
    """Paystack client; amounts are sent in kobo"""

    provider_name = "paystack"
    DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money", "bank_transfer"]

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None, timeout_seconds: Optional[int] = None):
        super().__init__(
            secret_key or Config.PAYSTACK_SECRET_KEY,
            base_url or Config.PAYSTACK_BASE_URL,
            timeout_seconds,
        )

    async def initiate_payment(self, amount, email, reference, callback_url=None, metadata=None) -> PaymentInitResult:
        try:
            response = await self._make_request("POST", "/transaction/initialize", {
                "amount": self.to_minor_units(amount),
                "email": email,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata or {},
                "channels": self.DEFAULT_CHANNELS,
            })
            data = response.get("data") or {}
            logger.info(f"✅ PAYSTACK_PAYMENT_INITIALIZED: {reference}")
            return PaymentInitResult(
                success=True,
                reference=data.get("reference") or reference,
                authorization_url=data.get("authorization_url"),
                access_code=data.get("access_code"),
                data=data,
            )
        except GatewayRequestError as e:
            logger.error(f"❌ PAYSTACK_PAYMENT_INIT_FAILED: {reference}: {e}")
            return PaymentInitResult(success=False, reference=reference, message=str(e), data=e.payload)

    async def verify_payment(self, reference: str) -> PaymentVerification:
        try:
            response = await self._make_request("GET", f"/transaction/verify/{reference}")
            transaction = response.get("data") or {}
            return PaymentVerification(
                success=transaction.get("status") == "success",
                reference=transaction.get("reference") or reference,
                amount=self.from_minor_units(transaction.get("amount", 0)),
                status=transaction.get("status", "unknown"),
                gateway_response=transaction,
            )
        except GatewayRequestError as e:
            logger.error(f"❌ PAYSTACK_VERIFY_FAILED: {reference}: {e}")
            return PaymentVerification(
                success=False, reference=reference, amount=Decimal("0"), status="failed", gateway_response=e.payload
            )

    async def initiate_transfer(
        self, amount, bank_code, account_number, account_name, reference, reason=None, currency=DEFAULT_CURRENCY
    ) -> TransferResult:
        """Create a transfer recipient, then a transfer from balance"""
        try:
            recipient = await self._make_request("POST", "/transferrecipient", {
                "type": "nuban",
                "name": account_name,
                "account_number": account_number,
                "bank_code": bank_code,
                "currency": currency,
            })
            recipient_code = (recipient.get("data") or {}).get("recipient_code")
            if not recipient_code:
                raise GatewayRequestError("Paystack did not return a recipient code", payload=recipient)

            logger.info(
                f"🏦 PAYSTACK_RECIPIENT_CREATED: {recipient_code} bank={bank_code} "
                f"account={mask_account_number(account_number)}"
            )

            response = await self._make_request("POST", "/transfer", {
                "source": "balance",
                "amount": self.to_minor_units(amount),
                "recipient": recipient_code,
                "reason": reason or "Loan disbursement",
                "reference": reference,
                "currency": currency,
            })
            return self._transfer_from_payload(response.get("data") or {}, reference)
        except GatewayRequestError as e:
            logger.error(f"❌ PAYSTACK_TRANSFER_FAILED: {reference}: {e}")
            return self._failed_transfer(reference, amount, e)

    async def verify_transfer(self, reference: str) -> TransferResult:
        try:
            response = await self._make_request("GET", f"/transfer/verify/{reference}")
            return self._transfer_from_payload(response.get("data") or {}, reference)
        except GatewayRequestError as e:
            logger.error(f"❌ PAYSTACK_TRANSFER_VERIFY_FAILED: {reference}: {e}")
            return self._failed_transfer(reference, 0, e)

    async def list_banks(self) -> List[Dict[str, str]]:
        response = await self._make_request("GET", "/bank", params={"country": "nigeria"})
        return [
            {"name": bank.get("name"), "code": str(bank.get("code"))}
            for bank in response.get("data") or []
            if bank.get("code")
        ]

    def _transfer_from_payload(self, data: Dict[str, Any], reference: str) -> TransferResult:
        recipient = data.get("recipient") or {}
        details = recipient.get("details") or {}
        return TransferResult(
            success=True,
            reference=data.get("reference") or reference,
            status=data.get("status", "pending"),
            amount=self.from_minor_units(data.get("amount", 0)),
            transfer_code=data.get("transfer_code", ""),
            recipient={
                "type": recipient.get("type", "nuban"),
                "name": recipient.get("name"),
                "account_number": details.get("account_number", ""),
                "bank_code": details.get("bank_code", ""),
            },
            gateway_response=data,
        )


# ============ FLUTTERWAVE ============


class FlutterwaveGateway(BasePaymentGateway):
    """Flutterwave v3 client; amounts are sent in naira"""

    provider_name = "flutterwave"

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None, timeout_seconds: Optional[int] = None):
        super().__init__(
            secret_key or Config.FLUTTERWAVE_SECRET_KEY,
            base_url or Config.FLUTTERWAVE_BASE_URL,
            timeout_seconds,
        )

    async def initiate_payment(self, amount, email, reference, callback_url=None, metadata=None) -> PaymentInitResult:
        try:
            response = await self._make_request("POST", "/payments", {
                "tx_ref": reference,
                "amount": str(to_decimal(amount)),
                "currency": DEFAULT_CURRENCY,
                "redirect_url": callback_url,
                "customer": {"email": email},
                "customizations": {
                    "title": "Loan Repayment",
                    "description": "Payment for loan repayment",
                },
                "meta": metadata or {},
            })
            data = response.get("data") or {}
            logger.info(f"✅ FLUTTERWAVE_PAYMENT_INITIALIZED: {reference}")
            return PaymentInitResult(
                success=True,
                reference=reference,
                authorization_url=data.get("link"),
                data=data,
            )
        except GatewayRequestError as e:
            logger.error(f"❌ FLUTTERWAVE_PAYMENT_INIT_FAILED: {reference}: {e}")
            return PaymentInitResult(success=False, reference=reference, message=str(e), data=e.payload)

    async def verify_payment(self, reference: str) -> PaymentVerification:
        try:
            response = await self._make_request("GET", f"/transactions/{reference}/verify")
            transaction = response.get("data") or {}
            return PaymentVerification(
                success=transaction.get("status") == "successful",
                reference=transaction.get("tx_ref") or reference,
                amount=to_decimal(transaction.get("amount", 0)),
                status=transaction.get("status", "unknown"),
                gateway_response=transaction,
            )
        except GatewayRequestError as e:
            logger.error(f"❌ FLUTTERWAVE_VERIFY_FAILED: {reference}: {e}")
            return PaymentVerification(
                success=False, reference=reference, amount=Decimal("0"), status="failed", gateway_response=e.payload
            )

    async def initiate_transfer(
        self, amount, bank_code, account_number, account_name, reference, reason=None, currency=DEFAULT_CURRENCY
    ) -> TransferResult:
        try:
            response = await self._make_request("POST", "/transfers", {
                "account_bank": bank_code,
                "account_number": account_number,
                "amount": str(to_decimal(amount)),
                "narration": reason or "Loan disbursement",
                "currency": currency,
                "reference": reference,
                "beneficiary_name": account_name,
                "callback_url": f"{Config.APP_URL}/api/webhooks/flutterwave",
            })
            logger.info(
                f"🏦 FLUTTERWAVE_TRANSFER_QUEUED: {reference} bank={bank_code} "
                f"account={mask_account_number(account_number)}"
            )
            return self._transfer_from_payload(response.get("data") or {}, reference)
        except GatewayRequestError as e:
            logger.error(f"❌ FLUTTERWAVE_TRANSFER_FAILED: {reference}: {e}")
            return self._failed_transfer(reference, amount, e)

    async def verify_transfer(self, reference: str) -> TransferResult:
        try:
            response = await self._make_request("GET", "/transfers", params={"reference": reference})
            data = response.get("data") or {}
            if isinstance(data, list):
                data = data[0] if data else {}
            if not data:
                raise GatewayRequestError(f"No Flutterwave transfer found for {reference}", payload=response)
            return self._transfer_from_payload(data, reference)
        except GatewayRequestError as e:
            logger.error(f"❌ FLUTTERWAVE_TRANSFER_VERIFY_FAILED: {reference}: {e}")
            return self._failed_transfer(reference, 0, e)

    async def list_banks(self) -> List[Dict[str, str]]:
        response = await self._make_request("GET", "/banks/NG")
        return [
            {"name": bank.get("name"), "code": str(bank.get("code"))}
            for bank in response.get("data") or []
            if bank.get("code")
        ]

    def _transfer_from_payload(self, data: Dict[str, Any], reference: str) -> TransferResult:
        return TransferResult(
            success=True,
            reference=data.get("reference") or reference,
            status=str(data.get("status", "NEW")).lower(),
            amount=to_decimal(data.get("amount", 0)),
            transfer_code=str(data.get("id", "")),
            recipient={
                "type": "bank",
                "name": data.get("full_name") or data.get("beneficiary_name"),
                "account_number": data.get("account_number", ""),
                "bank_code": data.get("bank_code") or data.get("account_bank", ""),
            },
            gateway_response=data,
        )


# ============ FACTORY ============

GATEWAY_CLASSES = {
    PaystackGateway.provider_name: PaystackGateway,
    FlutterwaveGateway.provider_name: FlutterwaveGateway,
}


def create_payment_gateway(provider: Optional[str] = None) -> BasePaymentGateway:
    """Build the client for ``provider`` (defaults to Config.PAYMENT_PROVIDER)"""
    provider = (provider or Config.PAYMENT_PROVIDER or "paystack").lower().strip()
    gateway_class = GATEWAY_CLASSES.get(provider)
    if gateway_class is None:
        raise GatewayConfigurationError(f"Unsupported payment provider: {provider}")
    return gateway_class()


def get_available_providers() -> List[str]:
    return list(GATEWAY_CLASSES)
