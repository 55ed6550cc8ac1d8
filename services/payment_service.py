"""
Konnect payment gateway integration
"""
import asyncio
import json
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp
from loguru import logger

from config.settings import settings
from services.exceptions import GatewayAuthError, GatewayError, PaymentExpired, ValidationError


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[0-9+]+$")

# Gateway caps the payment description length
MAX_DESCRIPTION_LENGTH = 280

ACCEPTED_PAYMENT_METHODS = ["wallet", "bank_card", "e-DINAR"]

# Sent in place of the gateway reference when a redirect template was never filled
UNFILLED_PAYMENT_REF = "${paymentRef}"


@dataclass(frozen=True)
class PaymentLink:
    pay_url: str
    payment_ref: str


@dataclass(frozen=True)
class GatewayPayment:
    status: str
    amount: int  # smallest currency unit
    order_id: Optional[str]

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


class PaymentGateway(Protocol):
    async def init_payment(self, payload: Dict[str, Any]) -> PaymentLink:
        ...

    async def get_payment(self, payment_ref: str) -> GatewayPayment:
        ...


def new_order_id() -> str:
    """Fresh order id, also the idempotency key of a gateway payment"""
    return uuid.uuid4().hex


def validate_callback_params(order_id: Optional[str], record_id, payment_ref: Optional[str]) -> None:
    """Reject gateway redirects with missing or unfilled parameters"""
    if not order_id or not record_id or not payment_ref:
        raise ValidationError("Missing orderId, id or payment_ref")
    if payment_ref == UNFILLED_PAYMENT_REF:
        raise ValidationError("Invalid payment reference")


def parse_record_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid id: {value!r}")


def build_payment_payload(
    amount: int,
    description: str,
    order_id: str,
    success_url: str,
    full_name: str,
    email: str,
    phone: Optional[str] = None,
    lifespan: Optional[int] = None,
    wallet_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build an init-payment request.

    Args:
        amount: Amount in the smallest currency unit
        description: Text shown on the checkout page
        order_id: Our order id, echoed back by the gateway
        success_url: Redirect after a successful payment
        full_name: Payer name, split into first and last name
        email: Payer email
        phone: Payer phone, replaced by a placeholder when malformed
        lifespan: Minutes before the payment link expires
        wallet_id: Receiving wallet, defaults to the configured one

    Returns:
        JSON payload for the gateway
    """
    if not full_name or not email:
        raise ValidationError("Incomplete customer details (full name or email missing)")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Payment description exceeds {MAX_DESCRIPTION_LENGTH} characters")

    name_parts = full_name.strip().split(" ")
    return {
        "receiverWalletId": wallet_id or settings.konnect_wallet_id,
        "token": settings.currency,
        "amount": amount,
        "type": "immediate",
        "description": description,
        "acceptedPaymentMethods": ACCEPTED_PAYMENT_METHODS,
        "lifespan": lifespan or settings.payment_lifespan_minutes,
        "checkoutForm": True,
        "addPaymentFeesToAmount": True,
        "firstName": name_parts[0] or "N/A",
        "lastName": " ".join(name_parts[1:]) or "N/A",
        "phoneNumber": phone if phone and PHONE_RE.match(phone) else "000000000",
        "email": email,
        "orderId": order_id,
        "successUrl": success_url,
        "errorUrl": settings.error_url,
        "theme": "dark",
        "silentWebhook": False,
    }


class KonnectService:
    """Client for the Konnect payments API (wallet, bank card, e-DINAR)"""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 30):
        self.api_url = (api_url or settings.konnect_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.konnect_api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _get_headers(self) -> Dict[str, str]:
        """Request headers"""
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
        }

    def _raise_for_status(self, status: int, response_text: str, action: str) -> None:
        if status == 401:
            raise GatewayAuthError(f"Gateway rejected the API key while trying to {action}")
        if status == 410:
            raise PaymentExpired("Payment expired")
        if status == 404:
            raise GatewayError(f"Payment not found while trying to {action}", details=response_text)
        if status == 422:
            raise GatewayError(f"Gateway validation error while trying to {action}", details=response_text)
        raise GatewayError(
            f"Gateway error {status} while trying to {action}",
            retryable=status >= 500,
            details=response_text,
        )

    async def init_payment(self, payload: Dict[str, Any]) -> PaymentLink:
        """
        Create a payment on the gateway.

        Returns:
            Checkout URL and the gateway payment reference
        """
        url = f"{self.api_url}/payments/init-payment"
        logger.info(f"Creating payment for order {payload.get('orderId')}: {url}")
        logger.debug(f"Payload: {json.dumps(payload, ensure_ascii=False)}")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload, headers=self._get_headers()) as response:
                    response_text = await response.text()
                    logger.debug(f"Response: {response.status}, {response_text}")

                    if response.status not in (200, 201):
                        logger.error(f"Payment creation failed: {response.status} - {response_text}")
                        self._raise_for_status(response.status, response_text, "create a payment")

                    data = json.loads(response_text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Gateway unreachable while creating payment: {e}")
            raise GatewayError(f"Gateway unreachable: {e}", retryable=True) from e
        except json.JSONDecodeError as e:
            raise GatewayError(f"Gateway returned invalid JSON: {e}") from e

        pay_url = data.get("payUrl")
        payment_ref = data.get("paymentRef")
        if not pay_url or not payment_ref:
            logger.error(f"Gateway response without payUrl/paymentRef: {data}")
            raise GatewayError("Gateway did not return a payment URL", details=data)
        return PaymentLink(pay_url=pay_url, payment_ref=payment_ref)

    async def get_payment(self, payment_ref: str) -> GatewayPayment:
        """Authoritative status of a payment, as reported by the gateway"""
        url = f"{self.api_url}/payments/{payment_ref}"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers=self._get_headers()) as response:
                    response_text = await response.text()
                    logger.debug(f"Payment {payment_ref} details: {response.status}, {response_text}")

                    if response.status != 200:
                        logger.error(f"Payment lookup failed: {response.status} - {response_text}")
                        self._raise_for_status(response.status, response_text, "fetch a payment")

                    data = json.loads(response_text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Gateway unreachable while fetching payment {payment_ref}: {e}")
            raise GatewayError(f"Gateway unreachable: {e}", retryable=True) from e
        except json.JSONDecodeError as e:
            raise GatewayError(f"Gateway returned invalid JSON: {e}") from e

        payment = data.get("payment") or {}
        try:
            amount = int(payment.get("amount"))
        except (TypeError, ValueError):
            raise GatewayError("Gateway returned a payment without amount", details=data)
        return GatewayPayment(
            status=(payment.get("status") or "").lower(),
            amount=amount,
            order_id=payment.get("orderId"),
        )


# Global gateway instance
konnect_service = KonnectService()
