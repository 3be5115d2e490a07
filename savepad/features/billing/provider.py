"""
Payment provider protocol.

Defines the interface the service needs from a payments provider
(Mercado Pago today). This allows swapping providers without changing
reconciliation or plan logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CheckoutSession:
    """A provider-hosted checkout (one-off preference or recurring preapproval)."""
    id: str
    url: Optional[str]
    sandbox_url: Optional[str] = None


@dataclass
class PaymentDetail:
    """Authoritative state of a payment or preapproval as reported by the provider."""
    id: str
    kind: str  # "payment" | "preapproval"
    status: Optional[str]
    external_reference: Optional[str]
    payer_email: Optional[str]
    amount: Optional[float]
    status_detail: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - One-off checkout creation (preference)
    - Recurring subscription creation and cancellation (preapproval)
    - Fetching payment / preapproval detail for webhook reconciliation
    """

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
        """
        Create a one-off checkout preference.

        Raises:
            PaymentProviderError: If the provider rejects the request
        """
        ...

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
        """
        Create a recurring subscription (preapproval) awaiting the payer's authorization.

        Raises:
            PaymentProviderError: If the provider rejects the request
        """
        ...

    def get_payment(self, payment_id: str) -> PaymentDetail:
        """
        Fetch a payment by id.

        Raises:
            PaymentNotFoundError: Unknown id (sandbox/test pings)
            PaymentProviderError: Any other failure
        """
        ...

    def get_preapproval(self, preapproval_id: str) -> PaymentDetail:
        """Fetch a recurring subscription by id (same errors as get_payment)."""
        ...

    def cancel_preapproval(self, preapproval_id: str) -> None:
        """Cancel a recurring subscription at the provider."""
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PaymentNotFoundError(PaymentProviderError):
    """The provider does not know the requested resource."""
    pass
