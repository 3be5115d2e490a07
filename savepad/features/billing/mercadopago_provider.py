"""
Mercado Pago payment provider implementation.

Implements the PaymentProvider protocol with the official mercadopago SDK.
The SDK answers every call with {"status": <http status>, "response": <body>};
_unwrap turns non-2xx answers into PaymentProviderError.
Also verifies the optional x-signature header sent with webhooks.
"""
import hashlib
import hmac
import json
from typing import Dict, Any, Optional

import mercadopago
import requests

from savepad.core.config import settings
from savepad.features.billing.provider import (
    CheckoutSession,
    PaymentDetail,
    PaymentProviderError,
    PaymentNotFoundError,
)


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split `ts=...,v1=...` into its parts."""
    parts: Dict[str, str] = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: Optional[str], ts: str) -> str:
    manifest = f"id:{data_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    return manifest + f"ts:{ts};"


def verify_signature(secret: str, signature_header: Optional[str], request_id: Optional[str], data_id: str) -> bool:
    """
    Check a webhook x-signature header.

    The provider signs `id:{data.id};request-id:{x-request-id};ts:{ts};` with
    HMAC-SHA256 keyed by the webhook secret and sends `ts=...,v1=<hex>`.
    """
    parts = parse_signature_header(signature_header)
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False
    # Alphanumeric ids are signed lowercased
    manifest = signature_manifest(str(data_id).lower(), request_id, ts)
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)



class MercadoPagoProvider:
    """Mercado Pago implementation of PaymentProvider protocol."""

    def __init__(self, access_token: Optional[str] = None, sdk: Optional[Any] = None):
        """
        Initialize Mercado Pago provider.

        Args:
            access_token: API access token (defaults to MERCADO_PAGO_ACCESS_TOKEN)
            sdk: Pre-built mercadopago.SDK (tests inject a Mock)
        """
        self.access_token = access_token or settings.MERCADO_PAGO_ACCESS_TOKEN
        if not self.access_token:
            raise PaymentProviderError("MERCADO_PAGO_ACCESS_TOKEN not configured")
        self.sdk = sdk or mercadopago.SDK(self.access_token)

    @staticmethod
    def _unwrap(result: Any, action: str) -> Dict[str, Any]:
        result = result if isinstance(result, dict) else {}
        status = result.get("status")
        body = result.get("response")
        text = body if isinstance(body, str) else json.dumps(body, default=str)
        if status == 404:
            raise PaymentNotFoundError(f"Mercado Pago resource not found: {action}", status_code=404, body=text)
        if not isinstance(status, int) or status >= 400:
            raise PaymentProviderError(
                f"Mercado Pago returned {status} for {action}", status_code=status, body=text
            )
        if not isinstance(body, dict):
            raise PaymentProviderError(
                f"Mercado Pago returned a non-JSON body for {action}", status_code=status, body=text
            )
        return body

    def _call(self, action: str, fn, *args) -> Dict[str, Any]:
        try:
            result = fn(*args)
        except requests.RequestException as e:
            raise PaymentProviderError(f"Mercado Pago request failed ({action}): {e}")
        return self._unwrap(result, action)

    def create_preference(
        self,
        title: str,
        amount: float,
        external_reference: str,
        *,
        currency: str = "BRL",
        notification_url: Optional[str] = None,
        back_urls: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create a one-off checkout preference."""
        body: Dict[str, Any] = {
            "items": [
                {
                    "title": title,
                    "quantity": 1,
                    "unit_price": amount,
                    "currency_id": currency,
                }
            ],
            "external_reference": external_reference,
            "auto_return": "approved",
        }
        if back_urls:
            body["back_urls"] = back_urls
        if notification_url:
            body["notification_url"] = notification_url

        data = self._call("preference.create", self.sdk.preference().create, body)
        return CheckoutSession(
            id=str(data.get("id")),
            url=data.get("init_point"),
            sandbox_url=data.get("sandbox_init_point"),
        )

    def create_preapproval(
        self,
        reason: str,
        amount: float,
        frequency_months: int,
        payer_email: str,
        external_reference: str,
        *,
        currency: str = "BRL",
        back_url: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a recurring subscription awaiting authorization."""
        body: Dict[str, Any] = {
            "reason": reason,
            "external_reference": external_reference,
            "payer_email": payer_email,
            "auto_recurring": {
                "frequency": frequency_months,
                "frequency_type": "months",
                "transaction_amount": amount,
                "currency_id": currency,
            },
        }
        if back_url:
            body["back_url"] = back_url

        data = self._call("preapproval.create", self.sdk.preapproval().create, body)
        return CheckoutSession(
            id=str(data.get("id")),
            url=data.get("init_point"),
            sandbox_url=data.get("sandbox_init_point"),
        )

    def get_payment(self, payment_id: str) -> PaymentDetail:
        data = self._call("payment.get", self.sdk.payment().get, payment_id)
        payer = data.get("payer") or {}
        return PaymentDetail(
            id=str(data.get("id", payment_id)),
            kind="payment",
            status=data.get("status"),
            status_detail=data.get("status_detail"),
            external_reference=data.get("external_reference"),
            payer_email=payer.get("email"),
            amount=_to_float(data.get("transaction_amount")),
            raw=data,
        )

    def get_preapproval(self, preapproval_id: str) -> PaymentDetail:
        data = self._call("preapproval.get", self.sdk.preapproval().get, preapproval_id)
        recurring = data.get("auto_recurring") or {}
        return PaymentDetail(
            id=str(data.get("id", preapproval_id)),
            kind="preapproval",
            status=data.get("status"),
            external_reference=data.get("external_reference"),
            payer_email=data.get("payer_email"),
            amount=_to_float(recurring.get("transaction_amount")),
            raw=data,
        )

    def cancel_preapproval(self, preapproval_id: str) -> None:
        self._call("preapproval.update", self.sdk.preapproval().update, preapproval_id, {"status": "cancelled"})
